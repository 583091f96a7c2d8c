from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from hookline.core.config import get_settings
from hookline.core.errors import WebhookValidationError
from hookline.domain.events import TEST_EVENT_TYPE, is_valid_event_type
from hookline.domain.models import WebhookDelivery, WebhookDestination
from hookline.persistence.db import SessionLocal
from hookline.services.webhooks.cache import load_active_destinations
from hookline.services.webhooks.executor import execute_delivery
from hookline.services.webhooks.queue import enqueue_webhook_delivery
from hookline.services.webhooks.registry import get_webhook
from hookline.services.webhooks.signing import serialize_payload


logger = logging.getLogger(__name__)

# Envelopes above this size are replaced by a summary before they are stored.
MAX_PAYLOAD_BYTES = 64 * 1024


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_envelope(
    event_type: str,
    data: dict[str, Any],
    *,
    timestamp: datetime | None = None,
) -> tuple[dict[str, Any], bool]:
    """Wrap event data in the delivery envelope.

    Returns the envelope and whether it had to be truncated. A truncated
    envelope keeps the event type and timestamp so subscribers can still
    route it and fetch the full resource themselves.
    """
    emitted_at = (timestamp or _utc_now()).isoformat()
    envelope: dict[str, Any] = {"event": event_type, "timestamp": emitted_at, "data": data}
    size = len(serialize_payload(envelope))
    if size <= MAX_PAYLOAD_BYTES:
        return envelope, False
    return {
        "event": event_type,
        "timestamp": emitted_at,
        "_truncated": True,
        "_original_size": size,
    }, True


async def _dispatch(
    *,
    session: AsyncSession,
    tenant_id: str,
    event_type: str,
    payload: dict[str, Any],
) -> list[str]:
    destinations = await load_active_destinations(session=session, tenant_id=tenant_id)
    matching = [row for row in destinations if row.subscribes_to(event_type)]
    if not matching:
        return []
    envelope, truncated = build_envelope(event_type, payload)
    if truncated:
        logger.warning(
            "webhook_payload_truncated tenant=%s event=%s original_size=%s",
            tenant_id,
            event_type,
            envelope["_original_size"],
        )
    max_attempts = max(1, int(get_settings().webhook_max_attempts))
    records = [
        WebhookDelivery(
            id=uuid4().hex,
            destination_id=row.id,
            tenant_id=tenant_id,
            event_type=event_type,
            payload=envelope,
            payload_truncated=truncated,
            status="pending",
            attempt_number=1,
            max_attempts=max_attempts,
        )
        for row in matching
    ]
    session.add_all(records)
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    # Enqueue only after commit so a worker never picks up an id that is not yet visible.
    for record in records:
        await enqueue_webhook_delivery(
            destination_id=record.destination_id,
            delivery_id=record.id,
            attempt_number=record.attempt_number,
        )
    logger.info(
        "webhook_event_dispatched tenant=%s event=%s deliveries=%s",
        tenant_id,
        event_type,
        len(records),
    )
    return [record.id for record in records]


async def dispatch_event(
    *,
    tenant_id: str,
    event_type: str,
    payload: dict[str, Any],
    session: AsyncSession | None = None,
) -> list[str]:
    """Fan an event out to every active destination subscribed to it.

    This is the producer entry point and it never raises: store, cache and
    queue problems are logged and an empty (or partial) id list is returned.
    When ``session`` is given it is committed as part of record creation.
    """
    if not is_valid_event_type(event_type):
        logger.warning("webhook_dispatch_unknown_event tenant=%s event=%s", tenant_id, event_type)
        return []
    try:
        if session is not None:
            return await _dispatch(session=session, tenant_id=tenant_id, event_type=event_type, payload=payload)
        async with SessionLocal() as own_session:
            return await _dispatch(
                session=own_session,
                tenant_id=tenant_id,
                event_type=event_type,
                payload=payload,
            )
    except Exception:  # noqa: BLE001 - producers must never fail because webhook fan-out failed
        logger.exception("webhook_dispatch_failed tenant=%s event=%s", tenant_id, event_type)
        return []


def _test_payload(destination: WebhookDestination) -> dict[str, Any]:
    return {
        "message": "This is a test webhook delivery",
        "webhook_id": destination.id,
        "tenant_id": destination.tenant_id,
    }


async def send_test_delivery(
    *,
    session: AsyncSession,
    tenant_id: str,
    webhook_id: str,
    event_type: str | None = None,
) -> WebhookDelivery:
    """Deliver a single synthetic event right now and return the finished record.

    Test sends bypass the queue and get exactly one attempt; they still count
    toward the destination's health like any other delivery.
    """
    destination = await get_webhook(session=session, tenant_id=tenant_id, webhook_id=webhook_id)
    resolved_event = event_type or TEST_EVENT_TYPE
    if resolved_event != TEST_EVENT_TYPE and not is_valid_event_type(resolved_event):
        raise WebhookValidationError(f"Unsupported event type: {resolved_event}")
    envelope, truncated = build_envelope(resolved_event, _test_payload(destination))
    delivery = WebhookDelivery(
        id=uuid4().hex,
        destination_id=destination.id,
        tenant_id=tenant_id,
        event_type=resolved_event,
        payload=envelope,
        payload_truncated=truncated,
        status="pending",
        attempt_number=1,
        max_attempts=1,
    )
    session.add(delivery)
    await session.commit()
    logger.info("webhook_test_delivery tenant=%s webhook_id=%s delivery_id=%s", tenant_id, webhook_id, delivery.id)
    return await execute_delivery(session=session, destination=destination, delivery=delivery)
