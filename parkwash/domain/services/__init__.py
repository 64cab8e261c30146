"""
Domain Services
"""
from parkwash.domain.services.wallet_service import WalletLedger
from parkwash.domain.services.outbox_service import OutboxService
from parkwash.domain.services.parking_booking_service import ParkingBookingService
from parkwash.domain.services.service_order_service import ServiceOrderService
from parkwash.domain.services.scheduler_service import SchedulerService, SweepReport

__all__ = [
    "WalletLedger",
    "OutboxService",
    "ParkingBookingService",
    "ServiceOrderService",
    "SchedulerService",
    "SweepReport",
]
