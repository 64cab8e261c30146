"""
API Routes
"""
from fastapi import APIRouter

from parkwash.api.routes.wallets import router as wallets_router
from parkwash.api.routes.parking_bookings import router as parking_bookings_router
from parkwash.api.routes.service_orders import router as service_orders_router
from parkwash.api.routes.admin import router as admin_router

router = APIRouter()

router.include_router(wallets_router, prefix="/wallets", tags=["wallets"])
router.include_router(parking_bookings_router, prefix="/parking-bookings", tags=["parking"])
router.include_router(service_orders_router, prefix="/service-orders", tags=["services"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
