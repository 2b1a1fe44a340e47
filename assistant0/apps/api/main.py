from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
import httpx
from starlette.exceptions import HTTPException as StarletteHTTPException

from assistant0.apps.api.errors import (
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from assistant0.apps.api.routes.audit import router as audit_router
from assistant0.apps.api.routes.authorization import router as authorization_router
from assistant0.apps.api.routes.health import router as health_router
from assistant0.apps.api.routes.tools import router as tools_router
from assistant0.core.config import Settings, get_settings
from assistant0.core.errors import IdentityProviderConfigError
from assistant0.core.logging import configure_logging
from assistant0.persistence.db import Database, create_database
from assistant0.services.auth.identity import Auth0IdentityProvider, IdentityProvider
from assistant0.services.authz.fga import InMemoryAuthorizer, OpenFgaAuthorizer, RelationshipAuthorizer
from assistant0.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _default_identity_provider(settings: Settings) -> IdentityProvider | None:
    try:
        return Auth0IdentityProvider(settings=settings)
    except IdentityProviderConfigError:
        logger.warning("identity_provider_not_configured step_up=disabled consent=disabled")
        return None


def _default_authorizer(settings: Settings) -> RelationshipAuthorizer:
    if settings.fga_store_id:
        return OpenFgaAuthorizer(settings=settings)
    # Empty in-memory model: every permission check fails closed.
    logger.warning("fga_store_not_configured authorizer=in_memory")
    return InMemoryAuthorizer()


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    identity_provider: IdentityProvider | None = None,
    authorizer: RelationshipAuthorizer | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Only dispose what this process created; injected handles belong to the caller.
        owned: Database | None = None
        if app.state.database is None:
            owned = create_database(settings.database_url)
            app.state.database = owned
        if app.state.identity_provider is None:
            app.state.identity_provider = _default_identity_provider(settings)
        if app.state.authorizer is None:
            app.state.authorizer = _default_authorizer(settings)
        try:
            yield
        finally:
            if owned is not None:
                await owned.dispose()
                app.state.database = None

    app = FastAPI(title="Assistant0 API", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.identity_provider = identity_provider
    app.state.authorizer = authorizer
    app.state.http_client = http_client

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        increment_counter(f"http_responses_{response.status_code // 100}xx_total")
        logger.debug(
            "request_completed path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(audit_router)
    app.include_router(tools_router)
    app.include_router(authorization_router)
    return app


app = create_app()
