from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from grantline.apps.api.errors import (
    grantline_error_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from grantline.apps.api.response import API_VERSION
from grantline.apps.api.routes.admin_access import router as admin_access_router
from grantline.apps.api.routes.admin_credentials import router as admin_credentials_router
from grantline.apps.api.routes.admin_provisioning import router as admin_provisioning_router
from grantline.apps.api.routes.health import router as health_router
from grantline.apps.api.routes.webhooks import router as webhooks_router
from grantline.core.errors import GrantlineError
from grantline.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Grantline API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(GrantlineError)
    async def _grantline_error_handler(request: Request, exc: GrantlineError):
        return await grantline_error_handler(request, exc)

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

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Payment provider callbacks; authenticated by signature, not bearer token.
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_provisioning_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_access_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_credentials_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
