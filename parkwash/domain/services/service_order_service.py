"""
Service Order Service - wash and maintenance appointments

The order is paid when it is booked. Staff confirmation mints the slip and
fixes the schedule the scheduler sweep follows; completion mints the invoice.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parkwash.core.clock import Clock, system_clock
from parkwash.core.exceptions import (
    AppException,
    ErrorCode,
    NotFoundException,
    OperationResult,
    PaymentFailedError,
    ValidationException,
)
from parkwash.core.logging import get_logger
from parkwash.db.database import atomic
from parkwash.db.models.service_order import Service, ServiceOrder, ServiceOrderStatus
from parkwash.db.models.user import User
from parkwash.db.models.wallet_transaction import WalletTransaction, TransactionStatus
from parkwash.domain.services.outbox_service import OutboxService
from parkwash.domain.services.settlement import ZERO, to_money
from parkwash.domain.services.wallet_service import WalletLedger
from parkwash.state_machine.engine import BookingKind, BookingStateMachine

logger = get_logger(__name__)

REFUNDABLE_STATUSES = (ServiceOrderStatus.PENDING, ServiceOrderStatus.CONFIRMED)


def payment_reference(order_id: int) -> str:
    return f"service_order:{order_id}:payment"


def refund_reference(order_id: int) -> str:
    return f"service_order:{order_id}:refund"


def _owned_by(user_id: Optional[int], order: ServiceOrder) -> None:
    if user_id is not None and order.user_id != user_id:
        raise NotFoundException("Service order", order.id, ErrorCode.SERVICE_ORDER_NOT_FOUND)


class ServiceOrderService:
    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock
        self.ledger = WalletLedger(db, clock)
        self.machine = BookingStateMachine(db, clock)
        self.outbox = OutboxService(db, clock)

    async def get_order(self, order_id: int, user_id: Optional[int] = None) -> ServiceOrder:
        order = await self.db.get(ServiceOrder, order_id)
        if order is None:
            raise NotFoundException("Service order", order_id, ErrorCode.SERVICE_ORDER_NOT_FOUND)
        _owned_by(user_id, order)
        return order

    async def list_user_orders(self, user_id: int, limit: int = 50) -> list[ServiceOrder]:
        result = await self.db.execute(
            select(ServiceOrder)
            .where(ServiceOrder.user_id == user_id)
            .order_by(ServiceOrder.booking_time.desc(), ServiceOrder.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def create_service_order(
        self,
        user_id: int,
        service_id: int,
        booking_time: datetime,
        notes: Optional[str] = None,
    ) -> OperationResult[ServiceOrder]:
        """Book and pay in one unit; the order starts pending staff confirmation"""
        if booking_time.tzinfo is not None:
            booking_time = booking_time.astimezone(timezone.utc).replace(tzinfo=None)

        try:
            now = self.clock.now()
            if booking_time < now:
                raise ValidationException("booking_time must not be in the past", field="booking_time")

            async with atomic(self.db):
                if await self.db.get(User, user_id) is None:
                    raise NotFoundException("User", user_id)
                service = await self.db.get(Service, service_id)
                if service is None:
                    raise NotFoundException("Service", service_id)

                order = ServiceOrder(
                    user_id=user_id,
                    service_id=service_id,
                    _status=ServiceOrderStatus.PENDING,
                    price=to_money(service.price),
                    booking_time=booking_time,
                    notes=notes,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(order)
                await self.db.flush()

                await self.ledger.debit(
                    user_id,
                    order.price,
                    f"Service booking #{order.id}: {service.name}",
                    payment_reference(order.id),
                )
        except AppException as exc:
            return OperationResult.failure(exc)

        logger.info(
            "Service order created",
            extra_data={"order_id": order.id, "user_id": user_id, "price": str(order.price)}
        )
        return OperationResult.success(order)

    async def _require_payment(self, order: ServiceOrder) -> None:
        paid = await self.db.scalar(
            select(WalletTransaction.id).where(
                WalletTransaction.reference == payment_reference(order.id),
                WalletTransaction.status == TransactionStatus.COMPLETED,
            )
        )
        if paid is None:
            raise PaymentFailedError(f"service order #{order.id} has no completed payment")

    async def confirm_service_order(self, order_id: int, staff_id: int) -> OperationResult[ServiceOrder]:
        """pending -> confirmed: slip minted, schedule fixed"""

        async def step(order: ServiceOrder, source):
            await self._require_payment(order)
            order.confirmed_by = staff_id

        result = await self.machine.transition(
            BookingKind.SERVICE_ORDER, order_id, ServiceOrderStatus.CONFIRMED, step=step
        )
        if result.ok:
            await self.outbox.queue_booking_confirmed(result.value)
        return result

    async def start_service_order(self, order_id: int) -> OperationResult[ServiceOrder]:
        """confirmed -> in_progress"""
        return await self.machine.transition(
            BookingKind.SERVICE_ORDER, order_id, ServiceOrderStatus.IN_PROGRESS
        )

    async def complete_service_order(self, order_id: int) -> OperationResult[ServiceOrder]:
        """in_progress -> completed: invoice minted, customer notified"""
        result = await self.machine.transition(
            BookingKind.SERVICE_ORDER, order_id, ServiceOrderStatus.COMPLETED
        )
        if result.ok:
            await self.outbox.queue_service_completed(result.value)
        return result

    async def cancel_service_order(self, order_id: int, user_id: Optional[int] = None) -> OperationResult[ServiceOrder]:
        """
        pending|confirmed|in_progress -> cancelled.

        The payment is refunded in full unless work has already started.
        """
        refund = {"amount": ZERO}

        async def step(order: ServiceOrder, source):
            _owned_by(user_id, order)
            if source not in REFUNDABLE_STATUSES:
                return
            payment = await self.db.scalar(
                select(WalletTransaction).where(
                    WalletTransaction.reference == payment_reference(order.id),
                    WalletTransaction.status == TransactionStatus.COMPLETED,
                )
            )
            if payment is not None:
                await self.ledger.credit_refund(
                    order.user_id, payment.amount,
                    f"Refund for cancelled service order #{order.id}",
                    refund_reference(order.id),
                )
                refund["amount"] = to_money(payment.amount)

        result = await self.machine.transition(
            BookingKind.SERVICE_ORDER, order_id, ServiceOrderStatus.CANCELLED, step=step
        )
        if result.ok:
            result.meta["refund_amount"] = refund["amount"]
        return result
