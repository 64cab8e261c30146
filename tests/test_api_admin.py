"""
Tests for the staff API: key guard, topup queue, scheduler tick, reconciliation and outbox maintenance
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from httpx import AsyncClient

from parkwash.core.config import settings
from parkwash.db.models.outbox_message import MessageStatus, OutboxMessage
from parkwash.db.models.parking_booking import ParkingBookingStatus
from parkwash.domain.services.wallet_service import WalletLedger
from tests.conftest import T0


class TestAdminApiKey:

    @pytest.mark.integration
    async def test_missing_key_is_401(self, test_client: AsyncClient):
        response = await test_client.get("/api/admin/outbox/summary")
        assert response.status_code == 401

    @pytest.mark.integration
    async def test_wrong_key_is_403(self, test_client: AsyncClient):
        response = await test_client.get(
            "/api/admin/outbox/summary", headers={"X-Admin-API-Key": "wrong"}
        )
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_unconfigured_key_closes_endpoints(self, test_client: AsyncClient, admin_headers):
        with patch.object(settings, "ADMIN_API_KEY", ""):
            response = await test_client.get("/api/admin/outbox/summary", headers=admin_headers)
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_customer_endpoints_need_no_key(self, test_client: AsyncClient, customer):
        response = await test_client.get(f"/api/wallets/{customer.id}/balance")
        assert response.status_code == 200


class TestStaffActions:

    @pytest.mark.integration
    async def test_reject_checkout_keeps_slot(
        self, test_client: AsyncClient, customer, staff, parking, booking_factory, admin_headers
    ):
        _, slots = parking
        booking = await booking_factory(customer, slots[0], status=ParkingBookingStatus.CHECKOUT_PAID)

        response = await test_client.post(
            f"/api/admin/checkouts/{booking.id}/reject", json={"staff_id": staff.id}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        availability = await test_client.get(f"/api/parking-bookings/availability/{slots[0].parking_id}")
        assert availability.json()["available_slots"] == 1

    @pytest.mark.integration
    async def test_scheduler_sweep(
        self, test_client: AsyncClient, customer, parking, booking_factory, admin_headers
    ):
        _, slots = parking
        await booking_factory(customer, slots[0], end_time=T0 - timedelta(minutes=5))

        first = await test_client.post("/api/admin/scheduler/sweep", headers=admin_headers)
        second = await test_client.post("/api/admin/scheduler/sweep", headers=admin_headers)

        assert first.json()["expired_parking"] == 1
        assert second.json()["expired_parking"] == 0

    @pytest.mark.integration
    async def test_reconcile(self, test_client: AsyncClient, customer, admin_headers):
        response = await test_client.get(f"/api/admin/wallets/{customer.id}/reconcile", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["consistent"] is True
        assert data["balance"] == "1000.00"

    @pytest.mark.integration
    async def test_topup_queue_lists_verified_topups(
        self, test_client: AsyncClient, db_session, clock, customer, staff, admin_headers
    ):
        ledger = WalletLedger(db_session, clock)
        waiting = (await ledger.initiate_topup(customer.id, Decimal("300"), "bkash", "+8801712345678")).value
        await ledger.verify_topup(waiting.reference, waiting.verification_code)
        await ledger.initiate_topup(customer.id, Decimal("150"), "nagad", "+8801812345678")
        waiting_id, user_id, staff_id = waiting.id, customer.id, staff.id

        response = await test_client.get("/api/admin/topups", headers=admin_headers)

        assert response.status_code == 200
        queue = response.json()
        assert [tx["id"] for tx in queue] == [waiting_id]
        assert queue[0]["user_id"] == user_id
        assert queue[0]["amount"] == "300.00"
        assert queue[0]["status"] == "verified"

        approve = await test_client.post(
            f"/api/admin/topups/{waiting_id}/approve", json={"staff_id": staff_id}, headers=admin_headers
        )
        assert approve.status_code == 200

        assert (await test_client.get("/api/admin/topups", headers=admin_headers)).json() == []
        pending = await test_client.get("/api/admin/topups", params={"status": "pending"}, headers=admin_headers)
        assert [tx["amount"] for tx in pending.json()] == ["150.00"]

    @pytest.mark.integration
    async def test_topup_queue_rejects_unknown_status(self, test_client: AsyncClient, admin_headers):
        response = await test_client.get("/api/admin/topups", params={"status": "lost"}, headers=admin_headers)
        assert response.status_code == 422


class TestOutboxAdmin:

    async def _insert(self, db_session, status: MessageStatus) -> OutboxMessage:
        msg = OutboxMessage(
            recipient="driver@example.com",
            message_type="checkout_ticket",
            payload={"ticket_number": "PKT250410-00001"},
            status=status,
            retry_count=3 if status == MessageStatus.FAILED else 0,
            last_error="Send failed" if status == MessageStatus.FAILED else None,
            created_at=T0,
        )
        db_session.add(msg)
        await db_session.commit()
        return msg

    @pytest.mark.integration
    async def test_summary(self, test_client: AsyncClient, db_session, admin_headers):
        await self._insert(db_session, MessageStatus.PENDING)
        await self._insert(db_session, MessageStatus.FAILED)
        await self._insert(db_session, MessageStatus.FAILED)

        response = await test_client.get("/api/admin/outbox/summary", headers=admin_headers)

        assert response.json() == {"pending": 1, "processing": 0, "sent": 0, "failed": 2, "total": 3}

    @pytest.mark.integration
    async def test_failed_messages_listed_by_default(self, test_client: AsyncClient, db_session, admin_headers):
        await self._insert(db_session, MessageStatus.PENDING)
        failed = await self._insert(db_session, MessageStatus.FAILED)

        response = await test_client.get("/api/admin/outbox/messages", headers=admin_headers)

        data = response.json()
        assert [m["id"] for m in data] == [failed.id]
        assert data[0]["channel"] == "email"
        assert data[0]["last_error"] == "Send failed"

    @pytest.mark.integration
    async def test_retry_failed_message(self, test_client: AsyncClient, db_session, admin_headers):
        failed = await self._insert(db_session, MessageStatus.FAILED)

        response = await test_client.post(
            f"/api/admin/outbox/messages/{failed.id}/retry", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["new_status"] == "pending"
        await db_session.refresh(failed)
        assert failed.status == MessageStatus.PENDING

    @pytest.mark.integration
    async def test_retry_refuses_non_failed_message(self, test_client: AsyncClient, db_session, admin_headers):
        pending = await self._insert(db_session, MessageStatus.PENDING)

        response = await test_client.post(
            f"/api/admin/outbox/messages/{pending.id}/retry", headers=admin_headers
        )

        assert response.status_code == 400

    @pytest.mark.integration
    async def test_retry_unknown_message(self, test_client: AsyncClient, admin_headers):
        response = await test_client.post("/api/admin/outbox/messages/999/retry", headers=admin_headers)
        assert response.status_code == 404
