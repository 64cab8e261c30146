"""
Parking Booking Service - customer and staff commands on parking reservations

Creation pays, reserves the slot and confirms in one atomic unit. Every later
status change goes through BookingStateMachine; money moves only through
WalletLedger under deterministic references, so a retried command cannot
charge or refund twice.
"""
from datetime import timedelta
from typing import Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from parkwash.core.clock import Clock, system_clock
from parkwash.core.config import settings
from parkwash.core.exceptions import (
    AppException,
    DuplicateActiveBookingError,
    ErrorCode,
    InsufficientFundsError,
    NotFoundException,
    OperationResult,
    PaymentFailedError,
    SlotUnavailableError,
    ValidationException,
)
from parkwash.core.logging import get_logger
from parkwash.db.database import atomic
from parkwash.db.models.parking import Parking, Slot
from parkwash.db.models.parking_booking import (
    ParkingBooking,
    ParkingBookingStatus,
    LIVE_PARKING_STATUSES,
)
from parkwash.db.models.wallet_transaction import WalletTransaction, TransactionStatus
from parkwash.domain.services.outbox_service import OutboxService
from parkwash.domain.services.settlement import (
    ZERO,
    cancellation_refund,
    quote_checkout,
    to_money,
)
from parkwash.domain.services.wallet_service import WalletLedger
from parkwash.state_machine.engine import BookingKind, BookingStateMachine

logger = get_logger(__name__)

CHECKOUT_STATUSES = (ParkingBookingStatus.CHECKOUT_REQUESTED, ParkingBookingStatus.CHECKOUT_PAID)


def payment_reference(booking_id: int) -> str:
    return f"parking_booking:{booking_id}:payment"


def extra_charge_reference(booking_id: int) -> str:
    return f"parking_booking:{booking_id}:extra"


def refund_reference(booking_id: int) -> str:
    return f"parking_booking:{booking_id}:refund"


def extension_reference(booking_id: int, version: int) -> str:
    return f"parking_booking:{booking_id}:extend:{version}"


def _owned_by(user_id: Optional[int], booking: ParkingBooking) -> None:
    # Someone else's booking looks like a missing one
    if user_id is not None and booking.user_id != user_id:
        raise NotFoundException("Parking booking", booking.id, ErrorCode.BOOKING_NOT_FOUND)


class ParkingBookingService:
    """Reserve, check in, check out, extend and cancel parking bookings"""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock
        self.ledger = WalletLedger(db, clock)
        self.machine = BookingStateMachine(db, clock)
        self.outbox = OutboxService(db, clock)

    # ==================== Reads ====================

    async def get_booking(self, booking_id: int, user_id: Optional[int] = None) -> ParkingBooking:
        booking = await self.db.get(ParkingBooking, booking_id)
        if booking is None:
            raise NotFoundException("Parking booking", booking_id, ErrorCode.BOOKING_NOT_FOUND)
        _owned_by(user_id, booking)
        return booking

    async def list_user_bookings(self, user_id: int, limit: int = 50) -> list[ParkingBooking]:
        result = await self.db.execute(
            select(ParkingBooking)
            .where(ParkingBooking.user_id == user_id)
            .order_by(ParkingBooking.created_at.desc(), ParkingBooking.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_pending_checkouts(self, limit: int = 50) -> list[ParkingBooking]:
        result = await self.db.execute(
            select(ParkingBooking)
            .where(ParkingBooking.status.in_(CHECKOUT_STATUSES))
            .order_by(ParkingBooking.updated_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_availability(self, parking_id: int) -> dict:
        """Slot counts derived from the per-slot ``available`` flags"""
        parking = await self.db.get(Parking, parking_id)
        if parking is None:
            raise NotFoundException("Parking", parking_id)
        total = await self.db.scalar(
            select(func.count(Slot.id)).where(Slot.parking_id == parking_id)
        )
        available = await self.db.scalar(
            select(func.count(Slot.id)).where(Slot.parking_id == parking_id, Slot.available.is_(True))
        )
        return {
            "parking_id": parking_id,
            "total_slots": total or 0,
            "available_slots": available or 0,
            "price_per_hour": parking.price_per_hour,
        }

    # ==================== Creation ====================

    async def _find_duplicate(self, user_id: int, parking_id: int) -> Optional[ParkingBooking]:
        now = self.clock.now()
        result = await self.db.execute(
            select(ParkingBooking)
            .where(
                ParkingBooking.user_id == user_id,
                ParkingBooking.parking_id == parking_id,
                ParkingBooking.status.in_(LIVE_PARKING_STATUSES),
                (ParkingBooking.end_time.is_(None)) | (ParkingBooking.end_time > now),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_parking_booking(
        self, user_id: int, slot_id: int, hours: int
    ) -> OperationResult[ParkingBooking]:
        """
        Pay ``price_per_hour * hours``, reserve the slot and confirm.

        All or nothing: on InsufficientFunds or a taken slot no booking row,
        transaction or slot change is persisted.
        """
        try:
            if not 1 <= hours <= settings.MAX_BOOKING_HOURS:
                raise ValidationException(
                    f"hours must be between 1 and {settings.MAX_BOOKING_HOURS}", field="hours"
                )

            async with atomic(self.db):
                # Serializes the duplicate check below per user
                await self.ledger.lock_user(user_id)
                slot = await self.db.get(Slot, slot_id)
                if slot is None:
                    raise NotFoundException("Slot", slot_id)
                if not slot.available:
                    raise SlotUnavailableError(slot_id)
                parking = await self.db.get(Parking, slot.parking_id)

                duplicate = await self._find_duplicate(user_id, parking.id)
                if duplicate is not None:
                    raise DuplicateActiveBookingError(duplicate.id, parking.id)

                now = self.clock.now()
                booking = ParkingBooking(
                    user_id=user_id,
                    parking_id=parking.id,
                    slot_id=slot_id,
                    _status=ParkingBookingStatus.PENDING,
                    hours=hours,
                    total_price=to_money(parking.price_per_hour * hours),
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(booking)
                await self.db.flush()

                await self.ledger.debit(
                    user_id,
                    booking.total_price,
                    f"Parking booking #{booking.id} ({hours}h at {parking.name})",
                    payment_reference(booking.id),
                )
                await self.machine.enter_initial(BookingKind.PARKING, booking, ParkingBookingStatus.CONFIRMED)
                booking.end_time = now + timedelta(hours=hours)
        except AppException as exc:
            return OperationResult.failure(exc)

        logger.info(
            "Parking booking created",
            extra_data={
                "booking_id": booking.id,
                "user_id": user_id,
                "slot_id": slot_id,
                "total_price": str(booking.total_price),
            }
        )
        return OperationResult.success(booking)

    # ==================== Customer lifecycle ====================

    async def check_in(self, booking_id: int, user_id: Optional[int] = None) -> OperationResult[ParkingBooking]:
        """confirmed -> active"""

        async def step(booking, source):
            _owned_by(user_id, booking)

        return await self.machine.transition(
            BookingKind.PARKING, booking_id, ParkingBookingStatus.ACTIVE, step=step
        )

    async def request_checkout(self, booking_id: int, user_id: Optional[int] = None) -> OperationResult[ParkingBooking]:
        """
        active -> checkout_requested with the overrun priced.

        When nothing is owed the booking continues straight to checkout_paid.
        """

        async def step(booking: ParkingBooking, source):
            _owned_by(user_id, booking)
            parking = await self.db.get(Parking, booking.parking_id)
            now = self.clock.now()
            quote = quote_checkout(booking.end_time or now, now, parking.price_per_hour)
            booking.actual_end_time = now
            booking.extra_minutes = quote.extra_minutes
            booking.extra_charges = quote.extra_charge
            booking.checkout_requested = True

        result = await self.machine.transition(
            BookingKind.PARKING, booking_id, ParkingBookingStatus.CHECKOUT_REQUESTED, step=step
        )
        if not result.ok:
            return result

        booking = result.value
        if booking.extra_charges > 0:
            return result

        settled = await self.machine.transition(
            BookingKind.PARKING, booking_id, ParkingBookingStatus.CHECKOUT_PAID,
            allowed_from=(ParkingBookingStatus.CHECKOUT_REQUESTED,),
        )
        return settled if settled.ok else result

    async def _charge_extra(self, booking: ParkingBooking) -> None:
        if booking.extra_charges <= 0:
            return
        try:
            await self.ledger.debit(
                booking.user_id,
                booking.extra_charges,
                f"Extra parking time for booking #{booking.id} ({booking.extra_minutes} min)",
                extra_charge_reference(booking.id),
            )
        except InsufficientFundsError as e:
            raise PaymentFailedError("insufficient wallet balance for extra charges", cause=e)

    async def pay_extra_charges(self, booking_id: int, user_id: Optional[int] = None) -> OperationResult[ParkingBooking]:
        """checkout_requested -> checkout_paid; the booking stays put if the wallet is short"""

        async def step(booking: ParkingBooking, source):
            _owned_by(user_id, booking)
            await self._charge_extra(booking)

        return await self.machine.transition(
            BookingKind.PARKING, booking_id, ParkingBookingStatus.CHECKOUT_PAID,
            allowed_from=(ParkingBookingStatus.CHECKOUT_REQUESTED,),
            step=step,
        )

    async def cancel_parking_booking(self, booking_id: int, user_id: Optional[int] = None) -> OperationResult[ParkingBooking]:
        """
        pending|confirmed -> cancelled with a refund through the ledger.

        Confirmed bookings follow the time-based refund policy; a pending
        booking gets back whatever was charged for it.
        """
        refund = {"amount": ZERO}

        async def step(booking: ParkingBooking, source):
            _owned_by(user_id, booking)
            payment = await self.db.scalar(
                select(WalletTransaction).where(
                    WalletTransaction.reference == payment_reference(booking.id),
                    WalletTransaction.status == TransactionStatus.COMPLETED,
                )
            )
            if payment is None:
                return

            if source == ParkingBookingStatus.PENDING:
                amount = to_money(payment.amount)
            else:
                parking = await self.db.get(Parking, booking.parking_id)
                amount = cancellation_refund(
                    booking.created_at, self.clock.now(), booking.hours,
                    booking.total_price, parking.price_per_hour,
                )
            if amount > 0:
                await self.ledger.credit_refund(
                    booking.user_id, amount,
                    f"Refund for cancelled parking booking #{booking.id}",
                    refund_reference(booking.id),
                )
            refund["amount"] = amount

        result = await self.machine.transition(
            BookingKind.PARKING, booking_id, ParkingBookingStatus.CANCELLED, step=step
        )
        if result.ok:
            result.meta["refund_amount"] = refund["amount"]
            logger.info(
                "Parking booking cancelled",
                extra_data={"booking_id": booking_id, "refund_amount": str(refund["amount"])}
            )
        return result

    async def extend_parking_booking(
        self, booking_id: int, additional_hours: int, user_id: Optional[int] = None
    ) -> OperationResult[ParkingBooking]:
        """Pay for more hours and push ``end_time``; confirmed or active bookings only"""
        if not 1 <= additional_hours <= settings.MAX_EXTENSION_HOURS:
            return OperationResult.failure(ValidationException(
                f"additional_hours must be between 1 and {settings.MAX_EXTENSION_HOURS}",
                field="additional_hours",
            ))

        async def step(booking: ParkingBooking, current):
            _owned_by(user_id, booking)
            parking = await self.db.get(Parking, booking.parking_id)
            cost = to_money(parking.price_per_hour * additional_hours)
            await self.ledger.debit(
                booking.user_id, cost,
                f"Extension of parking booking #{booking.id} by {additional_hours}h",
                extension_reference(booking.id, booking.version),
            )
            base = booking.end_time or self.clock.now()
            booking.end_time = base + timedelta(hours=additional_hours)
            booking.hours += additional_hours
            booking.total_price = to_money(booking.total_price + cost)

        return await self.machine.mutate(
            BookingKind.PARKING, booking_id,
            allowed_in=(ParkingBookingStatus.CONFIRMED, ParkingBookingStatus.ACTIVE),
            step=step,
        )

    # ==================== Staff ====================

    async def approve_checkout(self, booking_id: int, staff_id: int) -> OperationResult[ParkingBooking]:
        """
        checkout_requested|checkout_paid -> completed: slot freed, ticket minted once.

        Unpaid extra charges are collected as part of the approval.
        """

        async def step(booking: ParkingBooking, source):
            if source == ParkingBookingStatus.CHECKOUT_REQUESTED:
                await self._charge_extra(booking)
            booking.handled_by = staff_id

        result = await self.machine.transition(
            BookingKind.PARKING, booking_id, ParkingBookingStatus.COMPLETED,
            allowed_from=CHECKOUT_STATUSES,
            step=step,
        )
        if result.ok:
            await self.outbox.queue_checkout_ticket(result.value)
        return result

    async def reject_checkout(self, booking_id: int, staff_id: int) -> OperationResult[ParkingBooking]:
        """checkout_requested|checkout_paid -> rejected; no slot or money change"""

        async def step(booking: ParkingBooking, source):
            booking.handled_by = staff_id
            booking.checkout_approved = False

        return await self.machine.transition(
            BookingKind.PARKING, booking_id, ParkingBookingStatus.REJECTED,
            allowed_from=CHECKOUT_STATUSES,
            step=step,
        )

