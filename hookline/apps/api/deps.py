from __future__ import annotations

from typing import AsyncGenerator

from fastapi import HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from hookline.core.config import get_settings
from hookline.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity resolved by the upstream auth gateway; used for tenant scoping and audit fields.
    tenant_id: str
    actor_id: str | None = None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_principal(request: Request) -> Principal:
    # Trust gateway-populated identity headers; requests without a tenant never reach services.
    settings = get_settings()
    tenant_id = (request.headers.get(settings.auth_tenant_header) or "").strip()
    if not tenant_id:
        raise _auth_error(f"{settings.auth_tenant_header} header is required")
    actor_id = (request.headers.get(settings.auth_actor_header) or "").strip() or None
    return Principal(tenant_id=tenant_id, actor_id=actor_id)
