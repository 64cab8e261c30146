"""
Service Order API Routes - customer side
"""
from datetime import datetime
from decimal import Decimal
from typing import List
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from parkwash.api.dependencies.clock import get_clock
from parkwash.core.clock import Clock
from parkwash.db.database import get_db
from parkwash.db.models.service_order import ServiceOrderStatus
from parkwash.domain.services.service_order_service import ServiceOrderService

router = APIRouter()


class ServiceOrderResponse(BaseModel):
    id: int
    user_id: int
    service_id: int
    status: ServiceOrderStatus
    price: Decimal
    booking_time: datetime
    notes: str | None
    scheduled_in_progress_at: datetime | None
    scheduled_completed_at: datetime | None
    slip_number: str | None
    invoice_number: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None

    class Config:
        from_attributes = True


class ServiceOrderCancellationResponse(BaseModel):
    order: ServiceOrderResponse
    refund_amount: Decimal


class CreateServiceOrderRequest(BaseModel):
    user_id: int
    service_id: int
    booking_time: datetime
    notes: str | None = Field(None, max_length=500)


class CancelServiceOrderRequest(BaseModel):
    user_id: int


@router.post(
    "",
    response_model=ServiceOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book a service",
    description="Charges the service price from the wallet. The order waits for staff confirmation.",
)
async def create_service_order(
    body: CreateServiceOrderRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await ServiceOrderService(db, clock).create_service_order(
        body.user_id, body.service_id, body.booking_time, body.notes
    )
    return result.unwrap()


@router.get("", response_model=List[ServiceOrderResponse], summary="A customer's service orders")
async def list_service_orders(
    user_id: int,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
):
    return await ServiceOrderService(db).list_user_orders(user_id, min(max(limit, 1), 100))


@router.get("/{order_id}", response_model=ServiceOrderResponse)
async def get_service_order(
    order_id: int,
    user_id: int | None = None,
    db: AsyncSession = Depends(get_db),
):
    return await ServiceOrderService(db).get_order(order_id, user_id)


@router.post(
    "/{order_id}/cancel",
    response_model=ServiceOrderCancellationResponse,
    summary="Cancel a service order",
    description="Refunds the full price while the order is pending or confirmed.",
)
async def cancel_service_order(
    order_id: int,
    body: CancelServiceOrderRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await ServiceOrderService(db, clock).cancel_service_order(order_id, body.user_id)
    order = result.unwrap()
    return ServiceOrderCancellationResponse(
        order=ServiceOrderResponse.model_validate(order),
        refund_amount=result.meta["refund_amount"],
    )
