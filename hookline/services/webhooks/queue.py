from __future__ import annotations

import asyncio
from datetime import timedelta
import logging

from arq import create_pool
from arq.connections import RedisSettings

from hookline.core.config import get_settings


logger = logging.getLogger(__name__)

# ARQ function name registered by the webhook worker.
DELIVER_WEBHOOK_FUNCTION = "deliver_webhook"

_webhook_queue_pool = None
_webhook_queue_pool_loop = None
_webhook_queue_lock = asyncio.Lock()


def delivery_job_id(delivery_id: str, attempt_number: int) -> str:
    # One job id per attempt so the same attempt is never queued twice.
    return f"webhook-delivery:{delivery_id}:{attempt_number}"


async def get_webhook_queue_pool():
    # Cache ARQ Redis pool per event loop to avoid reconnect churn in API and worker code paths.
    global _webhook_queue_pool, _webhook_queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _webhook_queue_pool is not None and _webhook_queue_pool_loop == current_loop:
        return _webhook_queue_pool
    if _webhook_queue_pool is not None and _webhook_queue_pool_loop != current_loop:
        _webhook_queue_pool = None
    async with _webhook_queue_lock:
        if _webhook_queue_pool is None:
            settings = get_settings()
            _webhook_queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.webhook_queue_name,
            )
            _webhook_queue_pool_loop = current_loop
    return _webhook_queue_pool


async def enqueue_webhook_delivery(
    *,
    destination_id: str,
    delivery_id: str,
    attempt_number: int,
    defer_ms: int = 0,
) -> bool:
    # Publish one attempt onto ARQ; a false return leaves recovery to the due-retry sweeper.
    settings = get_settings()
    defer_delta = timedelta(milliseconds=max(0, int(defer_ms)))
    job_id = delivery_job_id(delivery_id, attempt_number)
    try:
        redis = await get_webhook_queue_pool()
        job = await redis.enqueue_job(
            DELIVER_WEBHOOK_FUNCTION,
            destination_id,
            delivery_id,
            _job_id=job_id,
            _queue_name=settings.webhook_queue_name,
            _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
        )
    except Exception as exc:  # noqa: BLE001 - keep enqueue best-effort and rely on due-retry requeue fallback.
        logger.warning("webhook_enqueue_failed delivery_id=%s job_id=%s", delivery_id, job_id, exc_info=exc)
        return False
    if job is None:
        # ARQ returns None when the job id already exists; the attempt is already queued.
        logger.info("webhook_enqueue_duplicate delivery_id=%s job_id=%s", delivery_id, job_id)
    return True
