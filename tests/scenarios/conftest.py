"""
Helpers for end-to-end scenarios driven through the HTTP API.

Provides:
- concise customer/staff request helpers
- DB assertions (booking status, wallet balance, ledger, outbox)
"""
from decimal import Decimal

from httpx import AsyncClient
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from parkwash.db.models.outbox_message import OutboxMessage
from parkwash.db.models.parking_booking import ParkingBooking
from parkwash.db.models.user import User
from parkwash.db.models.wallet_ledger import WalletLedgerEntry


# ============================================================================
# Requests
# ============================================================================

async def customer_post(client: AsyncClient, path: str, user_id: int, **body) -> dict:
    """POST on behalf of a customer; fails the test on any non-2xx"""
    response = await client.post(f"/api{path}", json={"user_id": user_id, **body})
    assert response.status_code < 300, response.text
    return response.json()


async def staff_post(client: AsyncClient, path: str, headers: dict, staff_id: int | None = None) -> dict:
    body = {"staff_id": staff_id} if staff_id is not None else None
    response = await client.post(f"/api/admin{path}", json=body, headers=headers)
    assert response.status_code < 300, response.text
    return response.json()


# ============================================================================
# DB assertions
# ============================================================================

async def assert_booking_status(db: AsyncSession, booking_id: int, expected: str) -> ParkingBooking:
    booking = await db.get(ParkingBooking, booking_id, populate_existing=True)
    assert booking is not None
    assert booking.status.value == expected, f"booking {booking_id}: {booking.status.value} != {expected}"
    return booking


async def assert_wallet_balance(db: AsyncSession, user_id: int, expected: str) -> None:
    user = await db.get(User, user_id, populate_existing=True)
    assert user.wallet_balance == Decimal(expected)


async def assert_ledger_count(db: AsyncSession, user_id: int, expected: int) -> None:
    count = await db.scalar(
        select(func.count(WalletLedgerEntry.id)).where(WalletLedgerEntry.user_id == user_id)
    )
    assert count == expected


async def outbox_types(db: AsyncSession, recipient: str) -> list[str]:
    result = await db.execute(
        select(OutboxMessage.message_type)
        .where(OutboxMessage.recipient == recipient)
        .order_by(OutboxMessage.id)
    )
    return list(result.scalars().all())
