"""
Tests for the scheduler sweep (time-driven transitions)
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from parkwash.db.models.outbox_message import OutboxMessage
from parkwash.db.models.parking import Slot
from parkwash.db.models.parking_booking import ParkingBooking, ParkingBookingStatus
from parkwash.db.models.service_order import ServiceOrder, ServiceOrderStatus
from parkwash.domain.services.scheduler_service import SchedulerService
from tests.conftest import T0


@pytest.mark.unit
async def test_expires_confirmed_bookings_past_end_time(
    customer, user_factory, parking_factory, booking_factory, db_session, clock
):
    _, slots = await parking_factory(slots=3)
    other = await user_factory()
    third = await user_factory()
    expired = await booking_factory(customer, slots[0], end_time=T0 - timedelta(minutes=1))
    live = await booking_factory(other, slots[1], end_time=T0 + timedelta(hours=1))
    parked = await booking_factory(
        third, slots[2], status=ParkingBookingStatus.ACTIVE, end_time=T0 - timedelta(hours=1)
    )

    report = await SchedulerService(db_session, clock).run_sweep()

    assert report.expired_parking == 1
    rows = {
        b.id: b for b in (await db_session.execute(
            select(ParkingBooking).execution_options(populate_existing=True)
        )).scalars()
    }
    assert rows[expired.id].status == ParkingBookingStatus.COMPLETED
    assert rows[expired.id].actual_end_time == T0
    assert rows[expired.id].ticket_number is None
    assert rows[live.id].status == ParkingBookingStatus.CONFIRMED
    # Parked cars are never expired by the sweep
    assert rows[parked.id].status == ParkingBookingStatus.ACTIVE

    freed = await db_session.get(Slot, slots[0].id, populate_existing=True)
    assert freed.available is True


@pytest.mark.unit
async def test_end_time_equal_to_now_is_not_expired(customer, parking, booking_factory, db_session, clock):
    _, slots = parking
    await booking_factory(customer, slots[0], end_time=T0)

    report = await SchedulerService(db_session, clock).run_sweep()

    assert report.expired_parking == 0


@pytest.mark.unit
async def test_service_orders_start_and_complete_on_schedule(
    customer, service_factory, order_factory, db_session, clock
):
    wash = await service_factory(price=Decimal("200"))
    due_to_start = await order_factory(
        customer, wash,
        scheduled_in_progress_at=T0,
        scheduled_completed_at=T0 + timedelta(minutes=45),
    )
    due_to_finish = await order_factory(
        customer, wash,
        status=ServiceOrderStatus.IN_PROGRESS,
        scheduled_in_progress_at=T0 - timedelta(hours=1),
        scheduled_completed_at=T0 - timedelta(minutes=5),
    )

    report = await SchedulerService(db_session, clock).run_sweep()

    assert report.started_orders == 1
    assert report.completed_orders == 1
    started = await db_session.get(ServiceOrder, due_to_start.id, populate_existing=True)
    finished = await db_session.get(ServiceOrder, due_to_finish.id, populate_existing=True)
    assert started.status == ServiceOrderStatus.IN_PROGRESS
    assert started.started_at == T0
    assert finished.status == ServiceOrderStatus.COMPLETED
    assert finished.invoice_number == f"INV-20250410-{finished.id:05d}"

    notices = await db_session.scalar(
        select(func.count(OutboxMessage.id)).where(OutboxMessage.message_type == "service_completed")
    )
    assert notices == 1


@pytest.mark.unit
async def test_overdue_order_starts_and_completes_in_one_sweep(
    customer, service_factory, order_factory, db_session, clock
):
    wash = await service_factory(price=Decimal("200"))
    order = await order_factory(
        customer, wash,
        scheduled_in_progress_at=T0 - timedelta(hours=2),
        scheduled_completed_at=T0 - timedelta(hours=1),
    )
    scheduler = SchedulerService(db_session, clock)

    first = await scheduler.run_sweep()
    second = await scheduler.run_sweep()

    assert (first.started_orders, first.completed_orders) == (1, 1)
    assert (second.started_orders, second.completed_orders) == (0, 0)
    fresh = await db_session.get(ServiceOrder, order.id, populate_existing=True)
    assert fresh.status == ServiceOrderStatus.COMPLETED


@pytest.mark.unit
async def test_sweep_is_idempotent(customer, parking, booking_factory, service_factory, order_factory, db_session, clock):
    _, slots = parking
    await booking_factory(customer, slots[0], end_time=T0 - timedelta(minutes=1))
    wash = await service_factory(price=Decimal("200"))
    await order_factory(
        customer, wash,
        status=ServiceOrderStatus.IN_PROGRESS,
        scheduled_completed_at=T0 - timedelta(minutes=1),
    )
    scheduler = SchedulerService(db_session, clock)

    first = await scheduler.run_sweep()
    second = await scheduler.run_sweep(now=T0)

    assert first.expired_parking == 1 and first.completed_orders == 1
    assert second.as_dict() == {
        "expired_parking": 0, "started_orders": 0, "completed_orders": 0, "skipped": 0,
    }
    notices = await db_session.scalar(
        select(func.count(OutboxMessage.id)).where(OutboxMessage.message_type == "service_completed")
    )
    assert notices == 1
