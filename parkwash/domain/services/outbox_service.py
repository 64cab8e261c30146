"""
Outbox Service - Transactional Outbox for customer notifications

Notifications are written as rows after the business change has committed
and delivered later by the ``process_outbox_messages`` Celery task. A failure
to queue never undoes the committed change: it is logged and dropped.
"""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_

from parkwash.core.clock import Clock, system_clock
from parkwash.core.config import settings
from parkwash.core.logging import get_logger
from parkwash.db.models.outbox_message import OutboxMessage, MessageChannel, MessageStatus
from parkwash.db.models.parking_booking import ParkingBooking
from parkwash.db.models.service_order import ServiceOrder
from parkwash.db.models.user import User
from parkwash.db.models.wallet_transaction import WalletTransaction

logger = get_logger(__name__)


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff ``base_seconds * 2 ** retry_count`` capped at
    ``max_backoff_seconds``, without computing huge powers.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # Smallest n with base * 2**n >= max
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    threshold = (required_multiplier - 1).bit_length()

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


def _money(amount) -> str:
    return f"{Decimal(amount):.2f}"


class OutboxService:
    """Queues outbound email notifications and tracks their delivery"""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    async def queue_message(
        self,
        recipient: str,
        message_type: str,
        payload: dict,
        channel: MessageChannel = MessageChannel.EMAIL,
    ) -> OutboxMessage:
        """Add one message to the session; the caller commits"""
        message = OutboxMessage(
            channel=channel,
            recipient=recipient,
            message_type=message_type,
            payload=payload,
            status=MessageStatus.PENDING,
            created_at=self.clock.now(),
        )
        self.db.add(message)
        return message

    async def _notify_user(self, user_id: int, message_type: str, payload: dict) -> Optional[OutboxMessage]:
        """Queue and commit a message to one user; never raises"""
        try:
            user = await self.db.get(User, user_id)
            if user is None or not user.email:
                logger.warning(
                    "Notification skipped, no recipient",
                    extra_data={"user_id": user_id, "message_type": message_type}
                )
                return None

            payload = {"name": user.name, **payload}
            message = await self.queue_message(user.email, message_type, payload)
            await self.db.commit()
            return message
        except Exception as e:
            await self.db.rollback()
            logger.error(
                f"Failed to queue notification: {e}",
                extra_data={"user_id": user_id, "message_type": message_type},
                exc_info=True
            )
            return None

    # ==================== Outbound events ====================

    async def queue_verification_code(self, transaction: WalletTransaction) -> Optional[OutboxMessage]:
        return await self._notify_user(
            transaction.user_id,
            "verification_code",
            {
                "subject": "Your wallet top-up verification code",
                "reference": transaction.reference,
                "amount": _money(transaction.amount),
                "payment_method": transaction.payment_method,
                "verification_code": transaction.verification_code,
            }
        )

    async def queue_topup_approved(self, transaction: WalletTransaction) -> Optional[OutboxMessage]:
        return await self._notify_user(
            transaction.user_id,
            "topup_approved",
            {
                "subject": "Wallet top-up approved",
                "reference": transaction.reference,
                "amount": _money(transaction.amount),
                "balance_after": _money(transaction.balance_after or 0),
            }
        )

    async def queue_topup_rejected(self, transaction: WalletTransaction, reason: str) -> Optional[OutboxMessage]:
        return await self._notify_user(
            transaction.user_id,
            "topup_rejected",
            {
                "subject": "Wallet top-up rejected",
                "reference": transaction.reference,
                "amount": _money(transaction.amount),
                "reason": reason,
            }
        )

    async def queue_booking_confirmed(self, order: ServiceOrder) -> Optional[OutboxMessage]:
        return await self._notify_user(
            order.user_id,
            "booking_confirmed",
            {
                "subject": f"Service booking confirmed - {order.slip_number}",
                "order_id": order.id,
                "slip_number": order.slip_number,
                "booking_time": order.booking_time.isoformat(),
                "price": _money(order.price),
            }
        )

    async def queue_service_completed(self, order: ServiceOrder) -> Optional[OutboxMessage]:
        return await self._notify_user(
            order.user_id,
            "service_completed",
            {
                "subject": f"Service completed - Invoice {order.invoice_number}",
                "order_id": order.id,
                "invoice_number": order.invoice_number,
                "price": _money(order.price),
            }
        )

    async def queue_checkout_ticket(self, booking: ParkingBooking) -> Optional[OutboxMessage]:
        return await self._notify_user(
            booking.user_id,
            "checkout_ticket",
            {
                "subject": f"Your parking ticket {booking.ticket_number}",
                "booking_id": booking.id,
                "ticket_number": booking.ticket_number,
                "total_price": _money(booking.total_price),
                "extra_charges": _money(booking.extra_charges),
                "grand_total": _money(booking.grand_total),
            }
        )

    # ==================== Delivery bookkeeping ====================

    async def get_pending_messages(self, limit: int = 100) -> List[OutboxMessage]:
        """Pending messages whose retry time (if any) has come"""
        now = self.clock.now()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, message_id: int) -> Optional[OutboxMessage]:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_processing(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.PROCESSING
            await self.db.commit()

    async def mark_as_sent(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.SENT
            message.processed_at = self.clock.now()
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """Count the failure; reschedule with backoff or give up after max_retries"""
        message = await self._get(message_id)
        if not message:
            return

        message.retry_count += 1
        message.last_error = error[:1000]

        if message.retry_count >= message.max_retries:
            message.status = MessageStatus.FAILED
        else:
            message.status = MessageStatus.PENDING
            backoff_seconds = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.next_retry_at = self.clock.now() + timedelta(seconds=backoff_seconds)

        await self.db.commit()
