from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from quartermaster.apps.api.errors import (
    http_exception_handler,
    quartermaster_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from quartermaster.apps.api.response import API_VERSION, REQUEST_ID_HEADER, request_id_for
from quartermaster.apps.api.routes.auth import router as auth_router
from quartermaster.apps.api.routes.health import router as health_router
from quartermaster.apps.api.routes.items import router as items_router
from quartermaster.apps.api.routes.qr import router as qr_router
from quartermaster.apps.api.routes.users import router as users_router
from quartermaster.core.config import get_settings
from quartermaster.core.errors import QuartermasterError
from quartermaster.core.logging import configure_logging
from quartermaster.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_ROUTERS = (health_router, auth_router, items_router, qr_router, users_router)
_PUBLIC_PATHS = {"/v1/health", "/v1/auth/login", "/v1/auth/register"}


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Quartermaster API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request_id_for(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(QuartermasterError)
    async def _quartermaster_exception_handler(request: Request, exc: QuartermasterError):
        return await quartermaster_exception_handler(request, exc)

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

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Unversioned aliases return raw payloads for the existing web client.
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Quartermaster API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth and the troop header into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="Quartermaster API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        security_schemes["TroopSlug"] = {"type": "apiKey", "in": "header", "name": settings.tenant_header}
        for path, operations in schema.get("paths", {}).items():
            if path == "/v1/health":
                continue
            for operation in operations.values():
                if path in _PUBLIC_PATHS:
                    operation.setdefault("security", [{"TroopSlug": []}])
                else:
                    operation.setdefault("security", [{"BearerAuth": [], "TroopSlug": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
