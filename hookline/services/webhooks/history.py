from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hookline.core.errors import DeliveryNotFoundError, WebhookValidationError
from hookline.domain.events import DELIVERY_STATUSES
from hookline.domain.models import WebhookDelivery
from hookline.services.webhooks.registry import get_webhook


DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def clamp_page(limit: int, offset: int) -> tuple[int, int]:
    return min(max(1, int(limit)), MAX_PAGE_SIZE), max(0, int(offset))


async def list_deliveries(
    *,
    session: AsyncSession,
    tenant_id: str,
    webhook_id: str,
    status: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> tuple[list[WebhookDelivery], int]:
    # Tenant ownership is checked through the destination before any history is read.
    await get_webhook(session=session, tenant_id=tenant_id, webhook_id=webhook_id)
    if status is not None and status not in DELIVERY_STATUSES:
        raise WebhookValidationError(f"Unsupported delivery status: {status}")
    bounded_limit, bounded_offset = clamp_page(limit, offset)
    filters = [WebhookDelivery.destination_id == webhook_id, WebhookDelivery.tenant_id == tenant_id]
    if status is not None:
        filters.append(WebhookDelivery.status == status)
    total = await session.scalar(select(func.count()).select_from(WebhookDelivery).where(*filters))
    rows = (
        await session.execute(
            select(WebhookDelivery)
            .where(*filters)
            .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
            .limit(bounded_limit)
            .offset(bounded_offset)
        )
    ).scalars().all()
    return list(rows), int(total or 0)


async def get_delivery(
    *,
    session: AsyncSession,
    tenant_id: str,
    webhook_id: str,
    delivery_id: str,
) -> WebhookDelivery:
    await get_webhook(session=session, tenant_id=tenant_id, webhook_id=webhook_id)
    row = await session.get(WebhookDelivery, delivery_id)
    if row is None or row.destination_id != webhook_id or row.tenant_id != tenant_id:
        raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
    return row
