from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hookline.core.config import get_settings
from hookline.core.errors import DeliveryNotFoundError, DeliveryStateError
from hookline.domain.models import WebhookDelivery, WebhookDestination
from hookline.services.webhooks.executor import execute_delivery
from hookline.services.webhooks.queue import enqueue_webhook_delivery
from hookline.services.webhooks.registry import get_webhook


logger = logging.getLogger(__name__)

# Backoff by the attempt that just failed; later attempts stay at the ceiling.
RETRY_DELAYS_MS = {1: 1_000, 2: 10_000, 3: 60_000}
MAX_RETRY_DELAY_MS = 60_000
DESTINATION_UNAVAILABLE_ERROR = "destination disabled or deleted"
_EXECUTABLE_STATUSES = ("pending", "retrying")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay_ms(attempt_number: int) -> int:
    return RETRY_DELAYS_MS.get(max(1, int(attempt_number)), MAX_RETRY_DELAY_MS)


async def _publish_retry(*, delivery: WebhookDelivery) -> None:
    # The retrying state is already committed; a lost publish is recovered by the sweeper.
    delay_ms = retry_delay_ms(delivery.attempt_number - 1)
    queued = await enqueue_webhook_delivery(
        destination_id=delivery.destination_id,
        delivery_id=delivery.id,
        attempt_number=delivery.attempt_number,
        defer_ms=delay_ms,
    )
    logger.info(
        "webhook_retry_scheduled delivery_id=%s attempt=%s delay_ms=%s queued=%s",
        delivery.id,
        delivery.attempt_number,
        delay_ms,
        queued,
    )


async def process_delivery_job(
    *,
    session: AsyncSession,
    destination_id: str,
    delivery_id: str,
) -> WebhookDelivery | None:
    """Run one queued attempt and decide what happens next.

    Stale and duplicate jobs are no-ops: only ``pending`` and ``retrying``
    records are executed. A failure below ``max_attempts`` is re-enqueued with
    backoff; anything else is final.
    """
    delivery = await session.get(WebhookDelivery, delivery_id)
    if delivery is None or delivery.destination_id != destination_id:
        logger.info("webhook_job_stale delivery_id=%s webhook_id=%s", delivery_id, destination_id)
        return None
    if delivery.status not in _EXECUTABLE_STATUSES:
        logger.info("webhook_job_duplicate delivery_id=%s status=%s", delivery_id, delivery.status)
        return delivery
    destination = await session.get(WebhookDestination, destination_id)
    if destination is None or not destination.is_active:
        # Cache staleness can queue work for a destination that was disabled meanwhile.
        delivery.status = "failed"
        delivery.error_message = DESTINATION_UNAVAILABLE_ERROR
        delivery.next_retry_at = None
        await session.commit()
        logger.info("webhook_job_skipped_inactive delivery_id=%s webhook_id=%s", delivery_id, destination_id)
        return delivery

    executed = await execute_delivery(
        session=session,
        destination=destination,
        delivery=delivery,
        retry_delay_ms=retry_delay_ms,
    )
    if executed.status == "retrying":
        await _publish_retry(delivery=executed)
    elif executed.status == "failed":
        logger.warning(
            "webhook_delivery_exhausted delivery_id=%s attempts=%s",
            executed.id,
            executed.attempt_number,
        )
    return executed


async def retry_delivery(
    *,
    session: AsyncSession,
    tenant_id: str,
    webhook_id: str,
    delivery_id: str,
) -> WebhookDelivery:
    # Operator-triggered reopen of a failed record, enqueued immediately.
    destination = await get_webhook(session=session, tenant_id=tenant_id, webhook_id=webhook_id)
    delivery = await session.get(WebhookDelivery, delivery_id)
    if delivery is None or delivery.destination_id != destination.id or delivery.tenant_id != tenant_id:
        raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
    if delivery.status != "failed":
        raise DeliveryStateError(f"Only failed deliveries can be retried (status is {delivery.status})")
    if not destination.is_active:
        raise DeliveryStateError("Webhook is disabled; reactivate it before retrying deliveries")
    delivery.status = "retrying"
    delivery.attempt_number = delivery.attempt_number + 1
    delivery.next_retry_at = _utc_now()
    await session.commit()
    await session.refresh(delivery)
    queued = await enqueue_webhook_delivery(
        destination_id=destination.id,
        delivery_id=delivery.id,
        attempt_number=delivery.attempt_number,
    )
    logger.info(
        "webhook_manual_retry tenant=%s delivery_id=%s attempt=%s queued=%s",
        tenant_id,
        delivery.id,
        delivery.attempt_number,
        queued,
    )
    return delivery


async def enqueue_due_retries(*, session: AsyncSession, limit: int | None = None) -> int:
    """Re-enqueue work whose queued job appears to have been lost.

    Covers ``retrying`` records overdue by more than one poll interval and
    ``pending`` records older than that, which means the original enqueue
    failed or the broker dropped the job.
    """
    settings = get_settings()
    now = _utc_now()
    stale_cutoff = now - timedelta(seconds=max(1, int(settings.webhook_worker_poll_interval_s)))
    batch_size = max(1, int(limit if limit is not None else settings.webhook_requeue_batch_size))
    rows = (
        await session.execute(
            select(WebhookDelivery.id, WebhookDelivery.destination_id, WebhookDelivery.attempt_number)
            .where(
                or_(
                    and_(
                        WebhookDelivery.status == "retrying",
                        WebhookDelivery.next_retry_at <= stale_cutoff,
                    ),
                    and_(
                        WebhookDelivery.status == "pending",
                        WebhookDelivery.created_at <= stale_cutoff,
                    ),
                ),
                WebhookDelivery.updated_at <= stale_cutoff,
            )
            .order_by(WebhookDelivery.created_at.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
    ).all()
    if not rows:
        await session.commit()
        return 0
    # Touch updated_at so the next sweep leaves these alone for another interval.
    await session.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.id.in_([str(row.id) for row in rows]))
        .values(updated_at=now)
    )
    await session.commit()
    count = 0
    for row in rows:
        if await enqueue_webhook_delivery(
            destination_id=str(row.destination_id),
            delivery_id=str(row.id),
            attempt_number=int(row.attempt_number),
        ):
            count += 1
    if count:
        logger.info("webhook_due_retries_enqueued count=%s", count)
    return count
