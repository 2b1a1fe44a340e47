from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status
import httpx
from pydantic import BaseModel

from assistant0.core.config import Settings
from assistant0.persistence.db import Database
from assistant0.services.auth.identity import IdentityProvider
from assistant0.services.auth.step_up import StepUpFlow
from assistant0.services.authz.fga import RelationshipAuthorizer


class Caller(BaseModel):
    # Identity asserted by the identity-aware proxy in front of the service.
    user_id: str
    email: str
    # Session refresh token forwarded for delegated credential exchange.
    refresh_token: str | None = None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
    x_refresh_token: str | None = Header(default=None),
) -> Caller:
    if not x_user_id or not x_user_email:
        raise _auth_error("Missing caller identity")
    return Caller(user_id=x_user_id, email=x_user_email, refresh_token=x_refresh_token)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    database = getattr(request.app.state, "database", None)
    if database is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "DATABASE_UNAVAILABLE", "message": "Database is not ready"},
        )
    return database


def get_identity_provider(request: Request) -> IdentityProvider | None:
    return getattr(request.app.state, "identity_provider", None)


def get_authorizer(request: Request) -> RelationshipAuthorizer | None:
    return getattr(request.app.state, "authorizer", None)


def get_http_client(request: Request) -> httpx.AsyncClient | None:
    # Shared outbound client for tool integrations; None opens one per call.
    return getattr(request.app.state, "http_client", None)


def get_step_up_flow(
    database: Database = Depends(get_database),
    identity_provider: IdentityProvider | None = Depends(get_identity_provider),
    settings: Settings = Depends(get_app_settings),
) -> StepUpFlow | None:
    # Without an identity provider, gated calls report step-up without a challenge.
    if identity_provider is None:
        return None
    return StepUpFlow(database, identity_provider, settings=settings)
