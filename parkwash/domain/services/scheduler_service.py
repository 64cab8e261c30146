"""
Scheduler Hooks - time-driven transitions

One ``run_sweep(now)`` call performs every time-based transition. It is safe
to run redundantly or alongside staff actions: each row is re-checked under
its own lock, and a row that has already moved on is skipped.
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parkwash.core.clock import Clock, FixedClock, system_clock
from parkwash.core.config import settings
from parkwash.core.exceptions import ErrorCode
from parkwash.core.logging import get_logger, log_async_operation
from parkwash.db.models.parking_booking import ParkingBooking, ParkingBookingStatus
from parkwash.db.models.service_order import ServiceOrder, ServiceOrderStatus
from parkwash.domain.services.outbox_service import OutboxService
from parkwash.state_machine.engine import BookingKind, BookingStateMachine

logger = get_logger(__name__)


@dataclass
class SweepReport:
    expired_parking: int = 0
    started_orders: int = 0
    completed_orders: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class SchedulerService:
    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    async def _candidate_ids(self, model, status, due_column, now: datetime, inclusive: bool) -> list[int]:
        due = due_column <= now if inclusive else due_column < now
        result = await self.db.execute(
            select(model.id)
            .where(model.status == status, due_column.is_not(None), due)
            .order_by(model.id)
            .limit(settings.SCHEDULER_BATCH_SIZE)
        )
        ids = list(result.scalars().all())
        # Release the read snapshot before per-row transitions
        await self.db.commit()
        return ids

    async def _advance(
        self,
        machine: BookingStateMachine,
        kind: BookingKind,
        ids: list[int],
        source,
        target,
        report: SweepReport,
    ) -> list:
        moved = []
        for entity_id in ids:
            result = await machine.transition(kind, entity_id, target, allowed_from=(source,))
            if result.ok:
                moved.append(result.value)
            elif result.error_code == ErrorCode.INVALID_STATE_TRANSITION:
                # Moved on since the scan; not an error
                report.skipped += 1
            else:
                logger.error(
                    "Scheduled transition failed",
                    extra_data={
                        "kind": kind.value,
                        "entity_id": entity_id,
                        "target": target.value,
                        "error": result.error.message,
                    }
                )
                report.skipped += 1
        return moved

    @log_async_operation("scheduler_sweep")
    async def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        1. confirmed parking bookings past ``end_time`` -> completed, slot released
        2. confirmed service orders due to start -> in_progress
        3. in_progress service orders due to finish -> completed, invoice + notification
        """
        now = now or self.clock.now()
        # Every stamp written by this sweep carries the same instant
        machine = BookingStateMachine(self.db, FixedClock(now))
        outbox = OutboxService(self.db, FixedClock(now))
        report = SweepReport()

        ids = await self._candidate_ids(
            ParkingBooking, ParkingBookingStatus.CONFIRMED, ParkingBooking.end_time, now, inclusive=False
        )
        expired = await self._advance(
            machine, BookingKind.PARKING, ids,
            ParkingBookingStatus.CONFIRMED, ParkingBookingStatus.COMPLETED, report,
        )
        report.expired_parking = len(expired)

        ids = await self._candidate_ids(
            ServiceOrder, ServiceOrderStatus.CONFIRMED, ServiceOrder.scheduled_in_progress_at, now, inclusive=True
        )
        started = await self._advance(
            machine, BookingKind.SERVICE_ORDER, ids,
            ServiceOrderStatus.CONFIRMED, ServiceOrderStatus.IN_PROGRESS, report,
        )
        report.started_orders = len(started)

        ids = await self._candidate_ids(
            ServiceOrder, ServiceOrderStatus.IN_PROGRESS, ServiceOrder.scheduled_completed_at, now, inclusive=True
        )
        completed = await self._advance(
            machine, BookingKind.SERVICE_ORDER, ids,
            ServiceOrderStatus.IN_PROGRESS, ServiceOrderStatus.COMPLETED, report,
        )
        report.completed_orders = len(completed)
        for order in completed:
            await outbox.queue_service_completed(order)

        logger.info("Scheduler sweep finished", extra_data={"now": now.isoformat(), **report.as_dict()})
        return report
