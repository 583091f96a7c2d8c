from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Callable

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from hookline.core.config import get_settings
from hookline.core.errors import KeyringConfigurationError, SecretDecryptionError
from hookline.domain.models import WebhookDelivery, WebhookDestination
from hookline.services.security.keyring import decrypt_headers, decrypt_secret
from hookline.services.webhooks.cache import invalidate_active_destinations
from hookline.services.webhooks.signing import (
    HEADER_DELIVERY,
    HEADER_EVENT,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    serialize_payload,
    signature_header,
)


logger = logging.getLogger(__name__)

# Only a short preview of the subscriber response is kept for diagnostics.
MAX_RESPONSE_BODY_BYTES = 1024


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _timeout_s() -> float:
    return max(0.1, get_settings().webhook_delivery_timeout_ms / 1000.0)


def _http_client() -> httpx.AsyncClient:
    # Redirects are not followed; a signed payload only goes to the registered URL.
    return httpx.AsyncClient(timeout=_timeout_s(), follow_redirects=False)


def _build_headers(
    *,
    destination: WebhookDestination,
    delivery: WebhookDelivery,
    body: bytes,
    secret: str,
) -> dict[str, str]:
    # Custom headers go first so contract headers always win on collision.
    headers: dict[str, str] = {}
    try:
        custom_headers = decrypt_headers(destination.headers_encrypted)
    except SecretDecryptionError:
        logger.warning(
            "webhook_custom_headers_skipped webhook_id=%s delivery_id=%s",
            destination.id,
            delivery.id,
        )
        custom_headers = {}
    headers.update(custom_headers)
    headers.update(
        {
            "Content-Type": "application/json",
            "User-Agent": get_settings().webhook_user_agent,
            HEADER_SIGNATURE: signature_header(secret, body),
            HEADER_EVENT: delivery.event_type,
            HEADER_DELIVERY: delivery.id,
            HEADER_TIMESTAMP: str(int(time.time())),
        }
    )
    return headers


async def _post(*, url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    # Stream the response so an oversized body is never buffered beyond the cap.
    async with _http_client() as client:
        async with client.stream("POST", url, content=body, headers=headers) as response:
            captured = bytearray()
            async for chunk in response.aiter_bytes():
                captured.extend(chunk[: MAX_RESPONSE_BODY_BYTES - len(captured)])
                if len(captured) >= MAX_RESPONSE_BODY_BYTES:
                    break
            return int(response.status_code), captured.decode("utf-8", errors="replace")


async def record_destination_success(*, session: AsyncSession, destination_id: str) -> None:
    await session.execute(
        update(WebhookDestination)
        .where(WebhookDestination.id == destination_id)
        .values(
            consecutive_failures=0,
            last_triggered_at=_utc_now(),
            last_delivery_status="success",
        )
    )
    await session.commit()


async def record_destination_failure(*, session: AsyncSession, destination_id: str) -> bool:
    """Count one failed attempt against a destination; return True if it was disabled.

    Both statements are evaluated by the store, so concurrent workers never
    lose an increment and the active->inactive transition happens once.
    """
    counters = (
        await session.execute(
            update(WebhookDestination)
            .where(WebhookDestination.id == destination_id)
            .values(
                failure_count=WebhookDestination.failure_count + 1,
                consecutive_failures=WebhookDestination.consecutive_failures + 1,
                last_triggered_at=_utc_now(),
                last_delivery_status="failed",
            )
            .returning(
                WebhookDestination.consecutive_failures,
                WebhookDestination.max_consecutive_failures,
            )
        )
    ).one_or_none()
    if counters is None:
        await session.commit()
        return False
    disabled = await session.execute(
        update(WebhookDestination)
        .where(
            WebhookDestination.id == destination_id,
            WebhookDestination.is_active.is_(True),
            WebhookDestination.consecutive_failures >= WebhookDestination.max_consecutive_failures,
        )
        .values(is_active=False)
    )
    await session.commit()
    if disabled.rowcount:
        logger.warning(
            "webhook_auto_disabled webhook_id=%s consecutive_failures=%s max_consecutive_failures=%s",
            destination_id,
            counters[0],
            counters[1],
        )
        return True
    return False


async def execute_delivery(
    *,
    session: AsyncSession,
    destination: WebhookDestination,
    delivery: WebhookDelivery,
    retry_delay_ms: Callable[[int], int] | None = None,
) -> WebhookDelivery:
    """Perform one signed HTTP attempt and persist its outcome.

    Never raises for subscriber-side problems: non-2xx responses, transport
    errors, timeouts and requests that cannot be built all end up as a failed
    attempt plus failure accounting on the destination.

    When ``retry_delay_ms`` is given and attempts remain, a failed attempt is
    stored directly as ``retrying`` with its ``next_retry_at`` in the same
    commit as the outcome, so a crash before the retry is published still
    leaves the record visible to the due-retry sweeper.
    """
    destination_id = destination.id
    tenant_id = destination.tenant_id
    attempt_number = delivery.attempt_number
    started = time.monotonic()
    status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    try:
        secret = decrypt_secret(destination.secret_encrypted)
    except (SecretDecryptionError, KeyringConfigurationError) as exc:
        logger.warning("webhook_secret_unavailable webhook_id=%s delivery_id=%s", destination_id, delivery.id)
        secret = None
        error_message = f"Signing secret unavailable: {exc}"

    if secret is not None:
        body = serialize_payload(delivery.payload)
        headers = _build_headers(destination=destination, delivery=delivery, body=body, secret=secret)
        timeout_s = _timeout_s()
        try:
            # Hard ceiling on the whole exchange, not just per-socket operations.
            status_code, response_body = await asyncio.wait_for(
                _post(url=destination.url, body=body, headers=headers),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            error_message = f"Request timed out after {int(timeout_s * 1000)}ms"
        except httpx.HTTPError as exc:
            error_message = str(exc) or exc.__class__.__name__
        except (httpx.InvalidURL, UnicodeError, ValueError) as exc:
            # The request could not be built (bad header bytes, unusable URL); nothing was sent.
            error_message = f"Request could not be built: {exc}"
        else:
            if not 200 <= status_code < 300:
                error_message = f"HTTP {status_code}"

    succeeded = error_message is None
    duration_ms = int((time.monotonic() - started) * 1000)
    delivery.response_code = status_code
    delivery.response_body = response_body
    delivery.duration_ms = duration_ms
    delivery.error_message = error_message
    delivery.next_retry_at = None
    if succeeded:
        delivery.status = "success"
        delivery.delivered_at = _utc_now()
    elif retry_delay_ms is not None and attempt_number < delivery.max_attempts:
        delay_ms = retry_delay_ms(attempt_number)
        delivery.status = "retrying"
        delivery.attempt_number = attempt_number + 1
        delivery.next_retry_at = _utc_now() + timedelta(milliseconds=delay_ms)
    else:
        delivery.status = "failed"
    await session.commit()

    if succeeded:
        await record_destination_success(session=session, destination_id=destination_id)
        logger.info(
            "webhook_delivered webhook_id=%s delivery_id=%s status_code=%s duration_ms=%s",
            destination_id,
            delivery.id,
            status_code,
            duration_ms,
        )
    else:
        await record_destination_failure(session=session, destination_id=destination_id)
        logger.info(
            "webhook_delivery_failed webhook_id=%s delivery_id=%s attempt=%s error=%s",
            destination_id,
            delivery.id,
            attempt_number,
            error_message,
        )
    await invalidate_active_destinations(tenant_id)
    await session.refresh(delivery)
    return delivery
