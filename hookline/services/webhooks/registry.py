from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hookline.core.config import get_settings
from hookline.core.errors import (
    SecretDecryptionError,
    WebhookNotFoundError,
    WebhookQuotaExceededError,
    WebhookValidationError,
)
from hookline.domain.events import is_valid_event_type
from hookline.domain.models import WebhookDelivery, WebhookDestination
from hookline.services.security.keyring import (
    decrypt_headers,
    encrypt_headers,
    encrypt_secret,
    generate_signing_secret,
)
from hookline.services.webhooks.cache import invalidate_active_destinations
from hookline.services.webhooks.signing import RESERVED_HEADERS


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_URL_LENGTH = 2048
REDACTED_HEADER_VALUE = "***"
# RFC 7230 token characters for header names.
_HEADER_NAME_PATTERN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_UPDATABLE_FIELDS = frozenset({"name", "url", "event_types", "headers", "is_active"})


def _validate_name(name: Any) -> str:
    if not isinstance(name, str):
        raise WebhookValidationError("name must be a string")
    normalized = name.strip()
    if not normalized or len(normalized) > MAX_NAME_LENGTH:
        raise WebhookValidationError(f"name must be between 1 and {MAX_NAME_LENGTH} characters")
    return normalized


def _validate_url(url: Any) -> str:
    # Only https targets; plaintext http would expose signed payloads in transit.
    if not isinstance(url, str):
        raise WebhookValidationError("url must be a string")
    normalized = url.strip()
    if len(normalized) > MAX_URL_LENGTH:
        raise WebhookValidationError(f"url must be at most {MAX_URL_LENGTH} characters")
    try:
        parts = urlsplit(normalized)
    except ValueError as exc:
        raise WebhookValidationError("url is not a valid URL") from exc
    if parts.scheme.lower() != "https":
        raise WebhookValidationError("url must use https://")
    if not parts.hostname:
        raise WebhookValidationError("url must include a host")
    return normalized


def _normalize_event_types(event_types: Any) -> list[str]:
    # Preserve caller order while dropping duplicates.
    if not isinstance(event_types, (list, tuple)):
        raise WebhookValidationError("event_types must be a list")
    normalized: list[str] = []
    for raw in event_types:
        if not isinstance(raw, str) or not is_valid_event_type(raw):
            raise WebhookValidationError(f"Unsupported event type: {raw}")
        if raw not in normalized:
            normalized.append(raw)
    max_event_types = get_settings().webhook_max_event_types
    if not normalized:
        raise WebhookValidationError("event_types must include at least one event type")
    if len(normalized) > max_event_types:
        raise WebhookValidationError(f"event_types must include at most {max_event_types} entries")
    return normalized


def _normalize_custom_headers(headers: Any) -> dict[str, str]:
    # Block contract headers so custom values can never spoof signature or routing metadata.
    if headers is None:
        return {}
    if not isinstance(headers, dict):
        raise WebhookValidationError("headers must be an object")
    max_headers = get_settings().webhook_max_custom_headers
    if len(headers) > max_headers:
        raise WebhookValidationError(f"headers must include at most {max_headers} entries")
    normalized: dict[str, str] = {}
    for raw_key, raw_value in headers.items():
        key = str(raw_key).strip()
        if not key:
            raise WebhookValidationError("header names must be non-empty")
        if key.lower() in RESERVED_HEADERS:
            raise WebhookValidationError(f"header '{key}' is reserved")
        if not _HEADER_NAME_PATTERN.match(key):
            raise WebhookValidationError(f"header name '{key}' contains invalid characters")
        if not isinstance(raw_value, str):
            raise WebhookValidationError(f"header '{key}' value must be a string")
        if not raw_value.isascii() or "\r" in raw_value or "\n" in raw_value:
            raise WebhookValidationError(f"header '{key}' value must be ASCII without line breaks")
        normalized[key] = raw_value
    return normalized


def redacted_headers(row: WebhookDestination) -> dict[str, str]:
    # Expose header names only; values stay write-only like the signing secret.
    try:
        headers = decrypt_headers(row.headers_encrypted)
    except SecretDecryptionError:
        logger.warning("webhook_headers_decrypt_failed webhook_id=%s", row.id)
        return {}
    return {name: REDACTED_HEADER_VALUE for name in headers}


async def _get_owned(*, session: AsyncSession, tenant_id: str, webhook_id: str) -> WebhookDestination:
    row = await session.get(WebhookDestination, webhook_id)
    if row is None or row.tenant_id != tenant_id:
        raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
    return row


async def count_webhooks(*, session: AsyncSession, tenant_id: str) -> int:
    total = await session.scalar(
        select(func.count()).select_from(WebhookDestination).where(WebhookDestination.tenant_id == tenant_id)
    )
    return int(total or 0)


async def create_webhook(
    *,
    session: AsyncSession,
    tenant_id: str,
    actor_id: str | None,
    name: str,
    url: str,
    event_types: list[str],
    headers: dict[str, str] | None = None,
) -> tuple[WebhookDestination, str]:
    """Register a destination and return it with the raw signing secret.

    The raw secret is never persisted or returned again; callers must hand it
    to the subscriber now or rotate later.
    """
    settings = get_settings()
    normalized_name = _validate_name(name)
    normalized_url = _validate_url(url)
    normalized_events = _normalize_event_types(event_types)
    normalized_headers = _normalize_custom_headers(headers)
    if await count_webhooks(session=session, tenant_id=tenant_id) >= settings.webhook_max_per_tenant:
        raise WebhookQuotaExceededError(settings.webhook_max_per_tenant)
    raw_secret = generate_signing_secret()
    row = WebhookDestination(
        id=uuid4().hex,
        tenant_id=tenant_id,
        name=normalized_name,
        url=normalized_url,
        event_types=normalized_events,
        secret_encrypted=encrypt_secret(raw_secret),
        headers_encrypted=encrypt_headers(normalized_headers),
        is_active=True,
        failure_count=0,
        consecutive_failures=0,
        max_consecutive_failures=settings.webhook_default_max_consecutive_failures,
        created_by=actor_id,
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    await invalidate_active_destinations(tenant_id)
    logger.info("webhook_created tenant=%s webhook_id=%s", tenant_id, row.id)
    return row, raw_secret


async def list_webhooks(*, session: AsyncSession, tenant_id: str) -> list[WebhookDestination]:
    # Keep listing tenant-scoped, newest first.
    rows = (
        await session.execute(
            select(WebhookDestination)
            .where(WebhookDestination.tenant_id == tenant_id)
            .order_by(WebhookDestination.created_at.desc(), WebhookDestination.id.desc())
        )
    ).scalars().all()
    return list(rows)


async def get_webhook(*, session: AsyncSession, tenant_id: str, webhook_id: str) -> WebhookDestination:
    return await _get_owned(session=session, tenant_id=tenant_id, webhook_id=webhook_id)


async def update_webhook(
    *,
    session: AsyncSession,
    tenant_id: str,
    webhook_id: str,
    updates: dict[str, Any],
) -> WebhookDestination:
    """Apply a partial update.

    Supported keys are ``name``, ``url``, ``event_types``, ``headers`` and
    ``is_active``. A changed URL or a reactivation clears the consecutive
    failure streak; ``headers={}`` (or ``None``) removes all custom headers.
    """
    unknown = set(updates) - _UPDATABLE_FIELDS
    if unknown:
        raise WebhookValidationError(f"Unsupported update fields: {', '.join(sorted(unknown))}")
    row = await _get_owned(session=session, tenant_id=tenant_id, webhook_id=webhook_id)
    # Validate everything before touching the row so a rejected update changes nothing.
    changes: dict[str, Any] = {}
    if "name" in updates:
        changes["name"] = _validate_name(updates["name"])
    if "url" in updates:
        changes["url"] = _validate_url(updates["url"])
    if "event_types" in updates:
        changes["event_types"] = _normalize_event_types(updates["event_types"])
    if "headers" in updates:
        changes["headers_encrypted"] = encrypt_headers(_normalize_custom_headers(updates["headers"]))
    if "is_active" in updates:
        if not isinstance(updates["is_active"], bool):
            raise WebhookValidationError("is_active must be a boolean")
        changes["is_active"] = updates["is_active"]

    reset_streak = False
    if "url" in changes and changes["url"] != row.url:
        reset_streak = True
    if changes.get("is_active") is True and not row.is_active:
        reset_streak = True
    for field, value in changes.items():
        setattr(row, field, value)
    if reset_streak:
        row.consecutive_failures = 0
    await session.commit()
    await session.refresh(row)
    await invalidate_active_destinations(tenant_id)
    logger.info(
        "webhook_updated tenant=%s webhook_id=%s fields=%s",
        tenant_id,
        row.id,
        ",".join(sorted(updates)),
    )
    return row


async def delete_webhook(*, session: AsyncSession, tenant_id: str, webhook_id: str) -> None:
    row = await _get_owned(session=session, tenant_id=tenant_id, webhook_id=webhook_id)
    # Remove history explicitly; not every backend enforces the FK cascade.
    await session.execute(delete(WebhookDelivery).where(WebhookDelivery.destination_id == row.id))
    await session.delete(row)
    await session.commit()
    await invalidate_active_destinations(tenant_id)
    logger.info("webhook_deleted tenant=%s webhook_id=%s", tenant_id, webhook_id)


async def rotate_secret(*, session: AsyncSession, tenant_id: str, webhook_id: str) -> str:
    # Replace the secret in place; in-flight jobs sign with whatever is stored when they run.
    row = await _get_owned(session=session, tenant_id=tenant_id, webhook_id=webhook_id)
    raw_secret = generate_signing_secret()
    row.secret_encrypted = encrypt_secret(raw_secret)
    await session.commit()
    await invalidate_active_destinations(tenant_id)
    logger.info("webhook_secret_rotated tenant=%s webhook_id=%s", tenant_id, webhook_id)
    return raw_secret
