"""
Celery Tasks

The scheduler tick and the worker side of the Transactional Outbox: pending
notifications are sent to the mail gateway over HTTP.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from contextlib import contextmanager
from typing import TYPE_CHECKING

import httpx
from redis.exceptions import RedisError
from sqlalchemy import delete

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

from parkwash.workers.celery_app import celery_app
from parkwash.core.clock import system_clock
from parkwash.core.config import settings
from parkwash.core.logging import get_logger, set_correlation_id
from parkwash.core.redis_client import acquire_lock, release_lock
from parkwash.db.database import get_task_session
from parkwash.db.models.outbox_message import OutboxMessage, MessageChannel, MessageStatus
from parkwash.domain.services.outbox_service import OutboxService
from parkwash.domain.services.scheduler_service import SchedulerService

logger = get_logger(__name__)

SWEEP_LOCK_NAME = "scheduler_sweep"


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before closing
            from parkwash.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


# ==================== Scheduler ====================

async def _sweep() -> dict:
    """
    One scheduler tick under a best-effort Redis lock.

    A held lock means another worker is already sweeping, so this tick is
    skipped. If Redis is down the sweep runs anyway; it is idempotent.
    """
    token = None
    try:
        token = await acquire_lock(SWEEP_LOCK_NAME, settings.SCHEDULER_LOCK_TTL_SECONDS)
        if token is None:
            logger.info("Scheduler sweep skipped: another tick holds the lock")
            return {"skipped": True}
    except (RedisError, OSError) as e:
        logger.warning("Scheduler lock unavailable, sweeping without it", extra_data={"error": str(e)})

    try:
        async with get_task_session() as db:
            report = await SchedulerService(db, system_clock).run_sweep()
            return report.as_dict()
    finally:
        if token is not None:
            try:
                await release_lock(SWEEP_LOCK_NAME, token)
            except (RedisError, OSError) as e:
                # The TTL frees it anyway
                logger.warning("Failed to release scheduler lock", extra_data={"error": str(e)})


@celery_app.task(name="parkwash.workers.tasks.run_scheduler_sweep")
def run_scheduler_sweep():
    """Periodic scheduler tick (Celery beat)"""
    return run_async(_sweep())


# ==================== Outbox delivery ====================

async def _send_email(recipient: str, message_type: str, payload: dict) -> bool:
    """POST one templated email to the mail gateway"""
    if not settings.MAIL_GATEWAY_URL:
        logger.warning("Mail gateway URL not configured")
        return False

    headers = {}
    if settings.MAIL_GATEWAY_TOKEN:
        headers["Authorization"] = f"Bearer {settings.MAIL_GATEWAY_TOKEN}"

    body = {
        "from": settings.MAIL_FROM,
        "to": recipient,
        "subject": payload.get("subject", ""),
        "template": message_type,
        "data": payload,
    }
    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                settings.MAIL_GATEWAY_URL, json=body, headers=headers, timeout=30.0
            )
        if response.status_code >= 300:
            logger.error(
                "Mail gateway rejected message",
                extra_data={"status_code": response.status_code, "message_type": message_type},
            )
            return False
        return True
    except httpx.HTTPError as exc:
        logger.error(
            "Mail gateway error",
            extra_data={"message_type": message_type, "error": str(exc)},
            exc_info=True,
        )
        return False


async def _process_single_message(db: "AsyncSession", message: OutboxMessage) -> tuple:
    """Send one outbox message and record the outcome"""
    outbox_service = OutboxService(db)
    await outbox_service.mark_as_processing(message.id)

    try:
        if message.channel != MessageChannel.EMAIL:
            await outbox_service.mark_as_failed(message.id, f"Unsupported channel {message.channel}")
            return False, "Unsupported channel"

        success = await _send_email(message.recipient, message.message_type, message.payload or {})
        if success:
            await outbox_service.mark_as_sent(message.id)
            return True, "Message sent successfully"

        await outbox_service.mark_as_failed(message.id, "Send failed")
        return False, "Send failed"

    except Exception as e:
        await outbox_service.mark_as_failed(message.id, str(e))
        return False, str(e)


async def _process_pending(limit: int = 50) -> list[dict]:
    async with get_task_session() as db:
        outbox_service = OutboxService(db)
        messages = await outbox_service.get_pending_messages(limit=limit)

        results = []
        for message in messages:
            success, result = await _process_single_message(db, message)
            results.append({
                "message_id": message.id,
                "success": success,
                "result": result
            })
        return results


@celery_app.task(name="parkwash.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """
    Process pending messages from the outbox.
    This task runs periodically to ensure reliable message delivery.
    """
    return run_async(_process_pending())


async def _cleanup(days: int) -> dict:
    async with get_task_session() as db:
        cutoff = system_clock.now() - timedelta(days=days)
        result = await db.execute(
            delete(OutboxMessage).where(
                OutboxMessage.status == MessageStatus.SENT,
                OutboxMessage.processed_at < cutoff
            )
        )
        await db.commit()
        return {"deleted": result.rowcount or 0}


@celery_app.task(name="parkwash.workers.tasks.cleanup_old_messages")
def cleanup_old_messages(days: int = 30):
    """Clean up old processed messages from the outbox"""
    return run_async(_cleanup(days))
