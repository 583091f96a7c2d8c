from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from hookline.core.config import get_settings
from hookline.core.logging import configure_logging
from hookline.persistence.db import SessionLocal
from hookline.services.webhooks.scheduler import enqueue_due_retries, process_delivery_job

logger = logging.getLogger(__name__)


async def deliver_webhook(ctx, destination_id: str, delivery_id: str) -> str:
    # Consume one queued attempt; retries are scheduled as new jobs, never by ARQ re-runs.
    async with SessionLocal() as session:
        row = await process_delivery_job(
            session=session,
            destination_id=destination_id,
            delivery_id=delivery_id,
        )
    return row.status if row is not None else "skipped"


async def _scheduler_loop() -> None:
    # Re-enqueue overdue retries so a lost delayed job cannot strand a delivery.
    settings = get_settings()
    interval_s = max(1, int(settings.webhook_worker_poll_interval_s))
    batch = max(1, int(settings.webhook_requeue_batch_size))
    while True:
        try:
            async with SessionLocal() as session:
                await enqueue_due_retries(session=session, limit=batch)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("webhook_due_retry_sweep_failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())
    logger.info("webhook_worker_started queue=%s", get_settings().webhook_queue_name)


async def _shutdown(ctx) -> None:
    # Cancel scheduler task on shutdown to avoid dangling coroutines in tests and local runs.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.webhook_queue_name
    max_jobs = max(1, int(settings.webhook_worker_max_jobs))
    # Each job is one attempt; backoff is owned by the scheduler.
    max_tries = 1
    functions = [deliver_webhook]
    on_startup = _startup
    on_shutdown = _shutdown
