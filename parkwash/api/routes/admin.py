"""
Staff API Routes - topup decisions, checkout approval, service order
progression, the scheduler tick and outbox maintenance.

Every endpoint requires the X-Admin-API-Key header.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from parkwash.api.dependencies.admin_auth import require_admin_api_key
from parkwash.api.dependencies.clock import get_clock
from parkwash.api.routes.parking_bookings import ParkingBookingResponse
from parkwash.api.routes.service_orders import (
    ServiceOrderCancellationResponse,
    ServiceOrderResponse,
)
from parkwash.api.routes.wallets import TransactionResponse
from parkwash.core.clock import Clock
from parkwash.core.logging import get_logger
from parkwash.db.database import get_db
from parkwash.db.models.outbox_message import MessageStatus, OutboxMessage
from parkwash.db.models.wallet_transaction import TransactionStatus
from parkwash.domain.services.parking_booking_service import ParkingBookingService
from parkwash.domain.services.scheduler_service import SchedulerService
from parkwash.domain.services.service_order_service import ServiceOrderService
from parkwash.domain.services.wallet_service import WalletLedger

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class StaffActionRequest(BaseModel):
    staff_id: int


class TopupQueueResponse(TransactionResponse):
    user_id: int
    mobile_number: str | None


class RejectTopupRequest(BaseModel):
    staff_id: int
    reason: str = Field(..., min_length=1, max_length=255)


class SweepResponse(BaseModel):
    expired_parking: int
    started_orders: int
    completed_orders: int
    skipped: int


class ReconciliationResponse(BaseModel):
    user_id: int
    balance: Decimal
    expected_balance: Decimal
    ledger_balance: Decimal
    drift: Decimal
    consistent: bool


class OutboxSummaryResponse(BaseModel):
    pending: int
    processing: int
    sent: int
    failed: int
    total: int


class OutboxMessageResponse(BaseModel):
    id: int
    channel: str
    recipient: str
    message_type: str
    status: MessageStatus
    retry_count: int
    max_retries: int
    last_error: str | None
    next_retry_at: datetime | None
    created_at: datetime | None
    processed_at: datetime | None

    class Config:
        from_attributes = True


class OutboxRetryResponse(BaseModel):
    message_id: int
    previous_status: str
    new_status: str
    retry_count: int


# ==================== Topups ====================

@router.get(
    "/topups",
    response_model=List[TopupQueueResponse],
    summary="Topups by status, oldest first",
    description="Defaults to verified topups, the ones waiting for approve or reject.",
)
async def list_topups(
    topup_status: Optional[TransactionStatus] = Query(default=TransactionStatus.VERIFIED, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    return await WalletLedger(db).list_topups(topup_status, limit)


@router.post(
    "/topups/{transaction_id}/approve",
    response_model=TransactionResponse,
    summary="Approve a verified topup",
    description="Credits the wallet exactly once. A second approval returns ALREADY_PROCESSED.",
)
async def approve_topup(
    transaction_id: int,
    body: StaffActionRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await WalletLedger(db, clock).approve_topup(transaction_id, body.staff_id)
    return result.unwrap()


@router.post(
    "/topups/{transaction_id}/reject",
    response_model=TransactionResponse,
    summary="Reject a verified topup",
)
async def reject_topup(
    transaction_id: int,
    body: RejectTopupRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await WalletLedger(db, clock).reject_topup(transaction_id, body.staff_id, body.reason)
    return result.unwrap()


@router.get(
    "/wallets/{user_id}/reconcile",
    response_model=ReconciliationResponse,
    summary="Compare the stored balance with transactions and ledger entries",
)
async def reconcile_wallet(
    user_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await WalletLedger(db).reconcile(user_id)


# ==================== Parking checkouts ====================

@router.get(
    "/checkouts",
    response_model=List[ParkingBookingResponse],
    summary="Bookings waiting for checkout approval",
)
async def list_pending_checkouts(
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    return await ParkingBookingService(db).list_pending_checkouts(limit)


@router.post(
    "/checkouts/{booking_id}/approve",
    response_model=ParkingBookingResponse,
    summary="Approve checkout",
    description="Collects unpaid extra charges, frees the slot and mints the parking ticket.",
)
async def approve_checkout(
    booking_id: int,
    body: StaffActionRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await ParkingBookingService(db, clock).approve_checkout(booking_id, body.staff_id)
    return result.unwrap()


@router.post(
    "/checkouts/{booking_id}/reject",
    response_model=ParkingBookingResponse,
    summary="Reject checkout",
)
async def reject_checkout(
    booking_id: int,
    body: StaffActionRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await ParkingBookingService(db, clock).reject_checkout(booking_id, body.staff_id)
    return result.unwrap()


# ==================== Service orders ====================

@router.post(
    "/service-orders/{order_id}/confirm",
    response_model=ServiceOrderResponse,
    summary="Confirm a service order",
    description="Mints the slip, fixes the schedule and emails the customer.",
)
async def confirm_service_order(
    order_id: int,
    body: StaffActionRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await ServiceOrderService(db, clock).confirm_service_order(order_id, body.staff_id)
    return result.unwrap()


@router.post("/service-orders/{order_id}/start", response_model=ServiceOrderResponse)
async def start_service_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await ServiceOrderService(db, clock).start_service_order(order_id)
    return result.unwrap()


@router.post(
    "/service-orders/{order_id}/complete",
    response_model=ServiceOrderResponse,
    summary="Complete a service order",
    description="Mints the invoice and emails the customer.",
)
async def complete_service_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await ServiceOrderService(db, clock).complete_service_order(order_id)
    return result.unwrap()


@router.post(
    "/service-orders/{order_id}/cancel",
    response_model=ServiceOrderCancellationResponse,
    summary="Cancel a service order on the customer's behalf",
)
async def cancel_service_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await ServiceOrderService(db, clock).cancel_service_order(order_id)
    order = result.unwrap()
    return ServiceOrderCancellationResponse(
        order=ServiceOrderResponse.model_validate(order),
        refund_amount=result.meta["refund_amount"],
    )


# ==================== Scheduler ====================

@router.post(
    "/scheduler/sweep",
    response_model=SweepResponse,
    summary="Run one scheduler tick now",
    description="Same work as the periodic Celery task; safe to call while it runs.",
)
async def run_scheduler_sweep(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    report = await SchedulerService(db, clock).run_sweep()
    return report.as_dict()


# ==================== Outbox ====================

@router.get("/outbox/summary", response_model=OutboxSummaryResponse)
async def get_outbox_summary(
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(OutboxMessage.status, func.count(OutboxMessage.id))
        .group_by(OutboxMessage.status)
    )
    counts = {row_status.value: count for row_status, count in result.all()}
    return OutboxSummaryResponse(
        pending=counts.get("pending", 0),
        processing=counts.get("processing", 0),
        sent=counts.get("sent", 0),
        failed=counts.get("failed", 0),
        total=sum(counts.values()),
    )


@router.get(
    "/outbox/messages",
    response_model=List[OutboxMessageResponse],
    summary="Outbox messages, failed ones by default",
)
async def get_outbox_messages(
    message_status: Optional[MessageStatus] = Query(default=MessageStatus.FAILED),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    query = select(OutboxMessage).order_by(OutboxMessage.created_at.desc()).limit(limit)
    if message_status is not None:
        query = query.where(OutboxMessage.status == message_status)
    result = await db.execute(query)
    return [
        OutboxMessageResponse(
            id=msg.id,
            channel=msg.channel.value,
            recipient=msg.recipient,
            message_type=msg.message_type,
            status=msg.status,
            retry_count=msg.retry_count,
            max_retries=msg.max_retries,
            last_error=msg.last_error,
            next_retry_at=msg.next_retry_at,
            created_at=msg.created_at,
            processed_at=msg.processed_at,
        )
        for msg in result.scalars().all()
    ]


@router.post(
    "/outbox/messages/{message_id}/retry",
    response_model=OutboxRetryResponse,
    summary="Put a failed message back in the queue",
)
async def retry_outbox_message(
    message_id: int,
    db: AsyncSession = Depends(get_db),
):
    message = await db.get(OutboxMessage, message_id)
    if message is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Outbox message {message_id} not found",
        )
    if message.status != MessageStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Only failed messages can be retried, current status: {message.status.value}",
        )

    message.status = MessageStatus.PENDING
    message.next_retry_at = None
    await db.commit()

    logger.info("Outbox message requeued", extra_data={"message_id": message_id})
    return OutboxRetryResponse(
        message_id=message.id,
        previous_status=MessageStatus.FAILED.value,
        new_status=MessageStatus.PENDING.value,
        retry_count=message.retry_count,
    )
