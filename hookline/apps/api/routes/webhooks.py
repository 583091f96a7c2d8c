from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from hookline.apps.api.deps import Principal, get_db, get_principal
from hookline.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from hookline.apps.api.response import SuccessEnvelope, collection_payload, success_response
from hookline.domain.events import TEST_EVENT_TYPE, WEBHOOK_EVENT_TYPES
from hookline.domain.models import WebhookDelivery, WebhookDestination
from hookline.services.webhooks import (
    create_webhook,
    delete_webhook,
    get_webhook,
    list_deliveries,
    list_webhooks,
    retry_delivery,
    rotate_secret,
    send_test_delivery,
    update_webhook,
)
from hookline.services.webhooks.history import DEFAULT_PAGE_SIZE, clamp_page
from hookline.services.webhooks.registry import redacted_headers

router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookCreateRequest(BaseModel):
    # Field rules live in the registry so every caller gets the same validation errors.
    name: str
    url: str
    event_types: list[str]
    headers: dict[str, str] | None = None


class WebhookUpdateRequest(BaseModel):
    name: str | None = None
    url: str | None = None
    event_types: list[str] | None = None
    headers: dict[str, str] | None = None
    is_active: bool | None = None


class WebhookTestRequest(BaseModel):
    event_type: str | None = None


def _isoformat(value: Any) -> str | None:
    return value.isoformat() if value else None


def _webhook_payload(row: WebhookDestination) -> dict[str, Any]:
    # Secrets are never echoed; custom header values are masked.
    return {
        "id": row.id,
        "name": row.name,
        "url": row.url,
        "event_types": list(row.event_types or []),
        "headers": redacted_headers(row),
        "is_active": row.is_active,
        "failure_count": row.failure_count,
        "consecutive_failures": row.consecutive_failures,
        "max_consecutive_failures": row.max_consecutive_failures,
        "last_triggered_at": _isoformat(row.last_triggered_at),
        "last_delivery_status": row.last_delivery_status,
        "created_by": row.created_by,
        "created_at": _isoformat(row.created_at),
        "updated_at": _isoformat(row.updated_at),
    }


def _delivery_payload(row: WebhookDelivery) -> dict[str, Any]:
    return {
        "id": row.id,
        "webhook_id": row.destination_id,
        "event_type": row.event_type,
        "payload": row.payload,
        "payload_truncated": row.payload_truncated,
        "status": row.status,
        "attempt_number": row.attempt_number,
        "max_attempts": row.max_attempts,
        "next_retry_at": _isoformat(row.next_retry_at),
        "response_code": row.response_code,
        "response_body": row.response_body,
        "duration_ms": row.duration_ms,
        "error_message": row.error_message,
        "delivered_at": _isoformat(row.delivered_at),
        "created_at": _isoformat(row.created_at),
    }


@router.get("/events", response_model=SuccessEnvelope[dict[str, Any]])
async def list_event_types(
    request: Request,
    principal: Principal = Depends(get_principal),
) -> dict[str, Any]:
    return success_response(
        request=request,
        data={"items": list(WEBHOOK_EVENT_TYPES), "test_event_type": TEST_EVENT_TYPE},
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[dict[str, Any]])
async def create_webhook_handler(
    payload: WebhookCreateRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # The raw secret appears in this response and in rotate-secret only.
    row, secret = await create_webhook(
        session=db,
        tenant_id=principal.tenant_id,
        actor_id=principal.actor_id,
        name=payload.name,
        url=payload.url,
        event_types=payload.event_types,
        headers=payload.headers,
    )
    return success_response(request=request, data={"webhook": _webhook_payload(row), "secret": secret})


@router.get("", response_model=SuccessEnvelope[dict[str, Any]])
async def list_webhooks_handler(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_webhooks(session=db, tenant_id=principal.tenant_id)
    return success_response(request=request, data=collection_payload([_webhook_payload(row) for row in rows]))


@router.get("/{webhook_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_webhook_handler(
    webhook_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await get_webhook(session=db, tenant_id=principal.tenant_id, webhook_id=webhook_id)
    return success_response(request=request, data=_webhook_payload(row))


@router.patch("/{webhook_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def update_webhook_handler(
    webhook_id: str,
    payload: WebhookUpdateRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Only fields present in the body are applied; an explicit null headers clears them.
    row = await update_webhook(
        session=db,
        tenant_id=principal.tenant_id,
        webhook_id=webhook_id,
        updates=payload.model_dump(exclude_unset=True),
    )
    return success_response(request=request, data=_webhook_payload(row))


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def delete_webhook_handler(
    webhook_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await delete_webhook(session=db, tenant_id=principal.tenant_id, webhook_id=webhook_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{webhook_id}/rotate-secret", response_model=SuccessEnvelope[dict[str, Any]])
async def rotate_secret_handler(
    webhook_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    secret = await rotate_secret(session=db, tenant_id=principal.tenant_id, webhook_id=webhook_id)
    return success_response(request=request, data={"webhook_id": webhook_id, "secret": secret})


@router.post("/{webhook_id}/test", response_model=SuccessEnvelope[dict[str, Any]])
async def test_webhook_handler(
    webhook_id: str,
    request: Request,
    payload: WebhookTestRequest | None = None,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Synchronous single attempt; the response carries the finished delivery record.
    row = await send_test_delivery(
        session=db,
        tenant_id=principal.tenant_id,
        webhook_id=webhook_id,
        event_type=payload.event_type if payload else None,
    )
    return success_response(request=request, data=_delivery_payload(row))


@router.get("/{webhook_id}/deliveries", response_model=SuccessEnvelope[dict[str, Any]])
async def list_deliveries_handler(
    webhook_id: str,
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=DEFAULT_PAGE_SIZE),
    offset: int = Query(default=0),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    bounded_limit, bounded_offset = clamp_page(limit, offset)
    rows, total = await list_deliveries(
        session=db,
        tenant_id=principal.tenant_id,
        webhook_id=webhook_id,
        status=status_filter,
        limit=bounded_limit,
        offset=bounded_offset,
    )
    return success_response(
        request=request,
        data=collection_payload(
            [_delivery_payload(row) for row in rows],
            total=total,
            limit=bounded_limit,
            offset=bounded_offset,
        ),
    )


@router.post("/{webhook_id}/deliveries/{delivery_id}/retry", response_model=SuccessEnvelope[dict[str, Any]])
async def retry_delivery_handler(
    webhook_id: str,
    delivery_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await retry_delivery(
        session=db,
        tenant_id=principal.tenant_id,
        webhook_id=webhook_id,
        delivery_id=delivery_id,
    )
    return success_response(request=request, data=_delivery_payload(row))
