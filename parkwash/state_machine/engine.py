"""
Booking State Machine - one transition engine for every booking kind

Each transition is a single atomic unit:
1. Lock the booking row (SELECT ... FOR UPDATE, fresh attributes)
2. Check the current status against the kind's transition table
3. Run the caller's step (e.g. a wallet charge), then the kind's
   side effects for the target status (slot flags, document numbers)
4. Write the status and commit, or roll everything back

A concurrent writer that lost the race is caught by the row lock or, where
the database has no row locks, by the ``version`` column, and gets an
``InvalidStateTransitionError`` instead of overwriting.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from parkwash.core.clock import Clock, system_clock
from parkwash.core.config import settings
from parkwash.core.exceptions import (
    AppException,
    ErrorCode,
    InvalidStateTransitionError,
    NotFoundException,
    OperationResult,
    SlotUnavailableError,
)
from parkwash.core.logging import get_logger
from parkwash.db.database import atomic
from parkwash.db.models.parking import Slot
from parkwash.db.models.parking_booking import ParkingBooking, ParkingBookingStatus
from parkwash.db.models.service_order import Service, ServiceOrder, ServiceOrderStatus
from parkwash.state_machine.numbering import invoice_number, slip_number, ticket_number
from parkwash.state_machine.states import (
    PARKING_TRANSITIONS,
    SERVICE_ORDER_TRANSITIONS,
    terminal_states,
)

logger = get_logger(__name__)

# Caller-supplied step run inside the transition's atomic unit: (entity, source_status)
TransitionStep = Callable[[Any, Enum], Awaitable[None]]


class BookingKind(str, Enum):
    PARKING = "parking_booking"
    SERVICE_ORDER = "service_order"


@dataclass(frozen=True)
class KindSpec:
    """Everything the engine needs to know about one booking kind"""

    model: type
    transitions: dict
    not_found_code: ErrorCode
    label: str
    # target status -> name of the BookingStateMachine hook run on entry
    on_enter: dict = field(default_factory=dict)

    @property
    def terminal(self) -> frozenset:
        return terminal_states(self.transitions)


KIND_SPECS = {
    BookingKind.PARKING: KindSpec(
        model=ParkingBooking,
        transitions=PARKING_TRANSITIONS,
        not_found_code=ErrorCode.BOOKING_NOT_FOUND,
        label="Parking booking",
        on_enter={
            ParkingBookingStatus.CONFIRMED: "_reserve_slot",
            ParkingBookingStatus.COMPLETED: "_finish_parking",
            ParkingBookingStatus.CANCELLED: "_release_slot",
            ParkingBookingStatus.REJECTED: "_stamp_actual_end",
        },
    ),
    BookingKind.SERVICE_ORDER: KindSpec(
        model=ServiceOrder,
        transitions=SERVICE_ORDER_TRANSITIONS,
        not_found_code=ErrorCode.SERVICE_ORDER_NOT_FOUND,
        label="Service order",
        on_enter={
            ServiceOrderStatus.CONFIRMED: "_confirm_order",
            ServiceOrderStatus.IN_PROGRESS: "_start_order",
            ServiceOrderStatus.COMPLETED: "_complete_order",
        },
    ),
}


class BookingStateMachine:
    """Sole writer of booking/order status and of slot availability"""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    @staticmethod
    def can_transition(kind: BookingKind, current: Enum, target: Enum) -> bool:
        return target in KIND_SPECS[kind].transitions.get(current, [])

    @staticmethod
    def is_terminal(kind: BookingKind, status: Enum) -> bool:
        return status in KIND_SPECS[kind].terminal

    async def lock(self, kind: BookingKind, entity_id: int):
        """Row-lock and reload one booking; None when the id is unknown"""
        model = KIND_SPECS[kind].model
        result = await self.db.execute(
            select(model)
            .where(model.id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        kind: BookingKind,
        entity_id: int,
        target: Enum,
        *,
        allowed_from: Optional[Iterable[Enum]] = None,
        step: Optional[TransitionStep] = None,
    ) -> OperationResult:
        """
        Move one booking to ``target`` in its own atomic unit.

        ``allowed_from`` narrows the table for callers that own only some of
        the edges into ``target`` (the expiry sweep, checkout approval).
        ``step`` runs before the kind's side effects; any AppException it
        raises aborts the whole transition.
        """
        spec = KIND_SPECS[kind]
        source = None
        try:
            async with atomic(self.db):
                entity = await self.lock(kind, entity_id)
                if entity is None:
                    raise NotFoundException(spec.label, entity_id, spec.not_found_code)

                source = entity.status
                self.guard(kind, entity, target, allowed_from)

                if step is not None:
                    await step(entity, source)

                hook = spec.on_enter.get(target)
                if hook:
                    await getattr(self, hook)(entity, source)

                entity._status = target
                await self.db.flush()
        except StaleDataError:
            logger.warning(
                "Concurrent update lost the race",
                extra_data={"kind": kind.value, "entity_id": entity_id, "target": target.value}
            )
            return OperationResult.failure(
                InvalidStateTransitionError(
                    kind.value, entity_id, getattr(source, "value", "unknown"), target.value
                ),
                stale=True,
            )
        except AppException as exc:
            return OperationResult.failure(exc)

        logger.info(
            "Booking transition",
            extra_data={
                "kind": kind.value,
                "entity_id": entity_id,
                "from": source.value,
                "to": target.value,
            }
        )
        return OperationResult.success(entity, from_status=source, to_status=target)

    async def mutate(
        self,
        kind: BookingKind,
        entity_id: int,
        *,
        allowed_in: Iterable[Enum],
        step: TransitionStep,
    ) -> OperationResult:
        """
        Locked in-place change that keeps the status (e.g. extending a booking).

        Same atomicity and race handling as ``transition``.
        """
        spec = KIND_SPECS[kind]
        allowed_in = tuple(allowed_in)
        try:
            async with atomic(self.db):
                entity = await self.lock(kind, entity_id)
                if entity is None:
                    raise NotFoundException(spec.label, entity_id, spec.not_found_code)
                current = entity.status
                if current not in allowed_in:
                    raise InvalidStateTransitionError(kind.value, entity_id, current.value, current.value)
                await step(entity, current)
                await self.db.flush()
        except StaleDataError:
            return OperationResult.failure(
                InvalidStateTransitionError(kind.value, entity_id, "stale", "stale"),
                stale=True,
            )
        except AppException as exc:
            return OperationResult.failure(exc)
        return OperationResult.success(entity)

    def guard(
        self,
        kind: BookingKind,
        entity: Any,
        target: Enum,
        allowed_from: Optional[Iterable[Enum]] = None,
    ) -> None:
        current = entity.status
        legal = self.can_transition(kind, current, target)
        if legal and allowed_from is not None:
            legal = current in tuple(allowed_from)
        if not legal:
            raise InvalidStateTransitionError(kind.value, entity.id, current.value, target.value)

    async def enter_initial(self, kind: BookingKind, entity: Any, target: Enum) -> None:
        """
        Apply a transition to a booking created in the caller's open unit.

        Used by the creation flows, where insert, payment and the first
        transition commit together. The caller owns the commit.
        """
        spec = KIND_SPECS[kind]
        source = entity.status
        self.guard(kind, entity, target)
        hook = spec.on_enter.get(target)
        if hook:
            await getattr(self, hook)(entity, source)
        entity._status = target

    # ==================== Parking side effects ====================

    async def _lock_slot(self, slot_id: int) -> Slot:
        result = await self.db.execute(
            select(Slot)
            .where(Slot.id == slot_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        slot = result.scalar_one_or_none()
        if slot is None:
            raise NotFoundException("Slot", slot_id)
        return slot

    async def _reserve_slot(self, booking: ParkingBooking, source: Enum) -> None:
        slot = await self._lock_slot(booking.slot_id)
        if not slot.available:
            raise SlotUnavailableError(slot.id)
        slot._available = False

    async def _release_slot(self, booking: ParkingBooking, source: Enum) -> None:
        # A pending booking never held its slot
        if source == ParkingBookingStatus.PENDING:
            return
        slot = await self._lock_slot(booking.slot_id)
        slot._available = True

    async def _stamp_actual_end(self, booking: ParkingBooking, source: Enum) -> None:
        booking.actual_end_time = self.clock.now()

    async def _finish_parking(self, booking: ParkingBooking, source: Enum) -> None:
        now = self.clock.now()
        await self._release_slot(booking, source)
        booking.actual_end_time = now
        if source in (ParkingBookingStatus.CHECKOUT_REQUESTED, ParkingBookingStatus.CHECKOUT_PAID):
            booking.checkout_approved = True
            if not booking.ticket_number:
                booking.ticket_number = ticket_number(booking.id, now)

    # ==================== Service order side effects ====================

    async def _confirm_order(self, order: ServiceOrder, source: Enum) -> None:
        if not order.slip_number:
            order.slip_number = slip_number(order.id, self.clock.now())
        service = await self.db.get(Service, order.service_id)
        minutes = (
            service.duration_minutes(settings.DEFAULT_SERVICE_DURATION_MINUTES)
            if service else settings.DEFAULT_SERVICE_DURATION_MINUTES
        )
        order.scheduled_in_progress_at = order.booking_time
        order.scheduled_completed_at = order.booking_time + timedelta(minutes=minutes)

    async def _start_order(self, order: ServiceOrder, source: Enum) -> None:
        order.started_at = self.clock.now()

    async def _complete_order(self, order: ServiceOrder, source: Enum) -> None:
        now = self.clock.now()
        order.completed_at = now
        if not order.invoice_number:
            order.invoice_number = invoice_number(order.id, now)
            order.invoice_generated_at = now
