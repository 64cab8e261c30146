"""
Scenario 2 - a wash booked ahead is confirmed and run by the scheduler

Covers:
- order paid at booking, confirmed by staff (slip + schedule)
- scheduler ticks start and finish the order at the scheduled times
- invoice and notifications issued exactly once
- an unconfirmed cancelled order gets its money back
"""
from datetime import timedelta

import pytest

from parkwash.db.models.service_order import ServiceOrder, ServiceOrderStatus

from tests.conftest import T0
from tests.scenarios.conftest import (
    assert_wallet_balance,
    customer_post,
    outbox_types,
    staff_post,
)


async def _sweep(client, headers) -> dict:
    response = await client.post("/api/admin/scheduler/sweep", headers=headers)
    assert response.status_code == 200
    return response.json()


@pytest.mark.scenario
class TestServiceSchedule:

    async def test_scheduler_runs_confirmed_order(
        self, test_client, db_session, customer, staff, service_factory, clock, admin_headers
    ):
        wash = await service_factory(name="Full Wash", price=500, duration="45 min")
        user_id, email, staff_id, service_id = customer.id, customer.email, staff.id, wash.id
        start = T0 + timedelta(hours=3)

        order = await customer_post(
            test_client, "/service-orders", user_id,
            service_id=service_id, booking_time=start.isoformat(), notes="White sedan",
        )
        order_id = order["id"]
        await assert_wallet_balance(db_session, user_id, "500.00")

        # Unconfirmed orders are never started by the scheduler
        clock.set(start)
        assert (await _sweep(test_client, admin_headers))["started_orders"] == 0

        await staff_post(test_client, f"/service-orders/{order_id}/confirm", admin_headers, staff_id)

        clock.set(start - timedelta(minutes=1))
        assert (await _sweep(test_client, admin_headers))["started_orders"] == 0

        clock.set(start)
        assert (await _sweep(test_client, admin_headers))["started_orders"] == 1

        clock.set(start + timedelta(minutes=44))
        assert (await _sweep(test_client, admin_headers))["completed_orders"] == 0

        clock.set(start + timedelta(minutes=45))
        assert (await _sweep(test_client, admin_headers))["completed_orders"] == 1
        assert (await _sweep(test_client, admin_headers))["completed_orders"] == 0

        done = await db_session.get(ServiceOrder, order_id, populate_existing=True)
        assert done.status == ServiceOrderStatus.COMPLETED
        assert done.started_at == start
        assert done.completed_at == start + timedelta(minutes=45)
        assert done.invoice_number == f"INV-20250410-{order_id:05d}"

        assert await outbox_types(db_session, email) == ["booking_confirmed", "service_completed"]
        await assert_wallet_balance(db_session, user_id, "500.00")

    async def test_cancelled_before_confirmation_is_refunded(
        self, test_client, db_session, customer, service_factory
    ):
        wash = await service_factory(price=350)
        user_id, service_id = customer.id, wash.id

        order = await customer_post(
            test_client, "/service-orders", user_id,
            service_id=service_id, booking_time=(T0 + timedelta(days=1)).isoformat(),
        )
        await assert_wallet_balance(db_session, user_id, "650.00")

        cancelled = await customer_post(test_client, f"/service-orders/{order['id']}/cancel", user_id)

        assert cancelled["refund_amount"] == "350.00"
        await assert_wallet_balance(db_session, user_id, "1000.00")
