from datetime import timedelta

import pytest

from parkwash.core.config import settings
from parkwash.db.models.outbox_message import MessageChannel, MessageStatus, OutboxMessage
from parkwash.domain.services.outbox_service import OutboxService, _calculate_backoff_seconds
from tests.conftest import T0


def _message(**overrides) -> OutboxMessage:
    fields = dict(
        channel=MessageChannel.EMAIL,
        recipient="driver@example.com",
        message_type="test",
        payload={"hello": "world"},
        status=MessageStatus.PENDING,
        created_at=T0,
    )
    fields.update(overrides)
    return OutboxMessage(**fields)


def test_calculate_backoff_seconds_doubles() -> None:
    base = 30
    max_backoff = 3600

    assert _calculate_backoff_seconds(0, base_seconds=base, max_backoff_seconds=max_backoff) == 30
    assert _calculate_backoff_seconds(1, base_seconds=base, max_backoff_seconds=max_backoff) == 60
    assert _calculate_backoff_seconds(6, base_seconds=base, max_backoff_seconds=max_backoff) == 1920


def test_calculate_backoff_seconds_is_capped() -> None:
    base = 30
    max_backoff = 3600

    # 30 * 2**7 = 3840 -> capped to 3600
    assert _calculate_backoff_seconds(7, base_seconds=base, max_backoff_seconds=max_backoff) == 3600
    assert _calculate_backoff_seconds(10_000, base_seconds=base, max_backoff_seconds=max_backoff) == 3600


def test_calculate_backoff_seconds_degenerate_inputs() -> None:
    assert _calculate_backoff_seconds(-3, base_seconds=30, max_backoff_seconds=3600) == 30
    assert _calculate_backoff_seconds(2, base_seconds=0, max_backoff_seconds=3600) == 0
    assert _calculate_backoff_seconds(2, base_seconds=5000, max_backoff_seconds=3600) == 3600


@pytest.mark.asyncio
async def test_mark_as_failed_sets_next_retry_at_with_cap(db_session, clock) -> None:
    # A huge retry_count must not compute 2**retry_count
    msg = _message(retry_count=10_000, max_retries=20_000)
    db_session.add(msg)
    await db_session.commit()

    await OutboxService(db_session, clock).mark_as_failed(msg.id, "boom")

    await db_session.refresh(msg)
    assert msg.status == MessageStatus.PENDING
    assert msg.last_error == "boom"
    assert msg.next_retry_at == T0 + timedelta(seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS)


@pytest.mark.asyncio
async def test_mark_as_failed_gives_up_after_max_retries(db_session, clock) -> None:
    msg = _message(retry_count=2, max_retries=3)
    db_session.add(msg)
    await db_session.commit()

    await OutboxService(db_session, clock).mark_as_failed(msg.id, "x" * 2000)

    await db_session.refresh(msg)
    assert msg.status == MessageStatus.FAILED
    assert msg.retry_count == 3
    assert len(msg.last_error) == 1000


@pytest.mark.asyncio
async def test_pending_messages_wait_for_their_retry_time(db_session, clock) -> None:
    due = _message(message_type="due")
    later = _message(
        message_type="later",
        created_at=T0 + timedelta(seconds=1),
        next_retry_at=T0 + timedelta(minutes=5),
    )
    sent = _message(message_type="sent", status=MessageStatus.SENT)
    db_session.add_all([due, later, sent])
    await db_session.commit()
    service = OutboxService(db_session, clock)

    assert [m.message_type for m in await service.get_pending_messages()] == ["due"]

    clock.advance(minutes=5)
    assert [m.message_type for m in await service.get_pending_messages()] == ["due", "later"]


@pytest.mark.asyncio
async def test_notification_for_unknown_user_is_skipped(db_session, clock) -> None:
    queued = await OutboxService(db_session, clock)._notify_user(404, "topup_approved", {})

    assert queued is None
