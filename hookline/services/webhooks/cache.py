from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import json
import logging

from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hookline.core.config import get_settings
from hookline.domain.models import WebhookDestination


logger = logging.getLogger(__name__)

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


@dataclass(frozen=True)
class ActiveDestination:
    # Minimal projection needed for fan-out; secrets never enter the cache.
    id: str
    event_types: tuple[str, ...]

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in self.event_types


async def get_cache_redis() -> Redis | None:
    # Reuse one Redis client per event loop; None means caching is unavailable.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - cache is optional; dispatch falls back to the store
                logger.warning("webhook_cache_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def _cache_key(tenant_id: str) -> str:
    return f"{get_settings().webhook_cache_prefix}:{tenant_id}"


def _encode(rows: list[ActiveDestination]) -> str:
    return json.dumps([asdict(row) for row in rows])


def _decode(raw: str) -> list[ActiveDestination]:
    items = json.loads(raw)
    return [ActiveDestination(id=str(item["id"]), event_types=tuple(item["event_types"])) for item in items]


async def get_cached_active_destinations(tenant_id: str) -> list[ActiveDestination] | None:
    try:
        redis = await get_cache_redis()
        if redis is None:
            return None
        raw = await redis.get(_cache_key(tenant_id))
        if raw is None:
            return None
        return _decode(raw)
    except Exception as exc:  # noqa: BLE001 - read failure behaves like a miss
        logger.warning("webhook_cache_read_failed tenant=%s", tenant_id, exc_info=exc)
        return None


async def set_cached_active_destinations(tenant_id: str, rows: list[ActiveDestination]) -> None:
    try:
        redis = await get_cache_redis()
        if redis is None:
            return
        await redis.set(_cache_key(tenant_id), _encode(rows), ex=max(1, int(get_settings().webhook_cache_ttl_s)))
    except Exception as exc:  # noqa: BLE001 - write failure only costs a future store read
        logger.warning("webhook_cache_write_failed tenant=%s", tenant_id, exc_info=exc)


async def invalidate_active_destinations(tenant_id: str) -> None:
    try:
        redis = await get_cache_redis()
        if redis is None:
            return
        await redis.delete(_cache_key(tenant_id))
    except Exception as exc:  # noqa: BLE001 - staleness stays bounded by the TTL
        logger.warning("webhook_cache_invalidate_failed tenant=%s", tenant_id, exc_info=exc)


async def load_active_destinations(*, session: AsyncSession, tenant_id: str) -> list[ActiveDestination]:
    # Cache first; on miss read active rows from the store and repopulate.
    cached = await get_cached_active_destinations(tenant_id)
    if cached is not None:
        return cached
    rows = (
        await session.execute(
            select(WebhookDestination.id, WebhookDestination.event_types)
            .where(
                WebhookDestination.tenant_id == tenant_id,
                WebhookDestination.is_active.is_(True),
            )
            .order_by(WebhookDestination.created_at.asc(), WebhookDestination.id.asc())
        )
    ).all()
    destinations = [
        ActiveDestination(id=str(row_id), event_types=tuple(event_types or ()))
        for row_id, event_types in rows
    ]
    await set_cached_active_destinations(tenant_id, destinations)
    return destinations
