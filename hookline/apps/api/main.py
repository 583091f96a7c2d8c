from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from hookline.apps.api.errors import (
    hookline_error_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from hookline.apps.api.response import API_VERSION, request_id_header
from hookline.apps.api.routes.health import router as health_router
from hookline.apps.api.routes.webhooks import router as webhooks_router
from hookline.core.errors import HooklineError
from hookline.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Hookline API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        header_name = request_id_header()
        request_id = request.headers.get(header_name) or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault(header_name, request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HooklineError)
    async def _hookline_error_handler(request: Request, exc: HooklineError):
        return await hookline_error_handler(request, exc)

    app.include_router(health_router, include_in_schema=False)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
