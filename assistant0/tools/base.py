from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Any

import httpx

from assistant0.core.config import Settings, get_settings
from assistant0.core.errors import ConsentRequiredError, ToolExecutionError
from assistant0.domain.tools import CallContext
from assistant0.persistence.db import Database
from assistant0.services.auth.identity import IdentityProvider
from assistant0.services.authz.fga import RelationshipAuthorizer
from assistant0.services.resilience import default_retry_policy, retry_async
from assistant0.services.retrieval import CandidateSource
from assistant0.services.telemetry import record_external_call


@dataclass
class ToolDependencies:
    # Everything a concrete tool needs for one caller's chat turn.
    context: CallContext
    settings: Settings
    database: Database | None = None
    authorizer: RelationshipAuthorizer | None = None
    identity_provider: IdentityProvider | None = None
    # Session refresh token exchanged for federated connection tokens.
    refresh_token: str | None = None
    # Shop API bearer token used when no approval credential is in scope.
    shop_access_token: str | None = None
    candidate_source: CandidateSource | None = None
    http_client: httpx.AsyncClient | None = None

    @classmethod
    def for_context(cls, context: CallContext, **kwargs: Any) -> "ToolDependencies":
        settings = kwargs.pop("settings", None) or get_settings()
        return cls(context=context, settings=settings, **kwargs)


async def delegated_access_token(deps: ToolDependencies, scopes: list[str] | None = None) -> str:
    # Federated connection token from the vault; missing credentials mean consent is needed.
    connection = deps.settings.google_connection
    scopes = list(scopes or deps.settings.google_scopes)
    if deps.identity_provider is None or not deps.refresh_token:
        raise ConsentRequiredError(
            "Authorization required to access the Token Vault connection.",
            connection=connection,
            scopes=scopes,
        )
    return await deps.identity_provider.get_access_token(
        connection=connection,
        refresh_token=deps.refresh_token,
        scopes=scopes,
    )


async def send_request(
    deps: ToolDependencies,
    method: str,
    url: str,
    *,
    integration: str,
    retry: bool = False,
    **kwargs: Any,
) -> httpx.Response:
    # Single choke point for tool HTTP calls: timeout, optional retry, telemetry.
    timeout = deps.settings.ext_call_timeout_ms / 1000.0
    start = time.monotonic()

    async def _call() -> httpx.Response:
        if deps.http_client is not None:
            return await deps.http_client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, url, **kwargs)

    try:
        if retry:
            response = await retry_async(_call, policy=default_retry_policy(deps.settings))
        else:
            response = await _call()
    except (httpx.HTTPError, TimeoutError) as exc:
        record_external_call(
            integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False
        )
        raise ToolExecutionError(f"{integration} request failed") from exc
    record_external_call(
        integration=integration,
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=response.status_code < 400,
    )
    return response


def raise_for_google_status(deps: ToolDependencies, response: httpx.Response, *, integration: str) -> None:
    if response.status_code == 401:
        raise ConsentRequiredError(
            "Authorization required to access the Token Vault connection.",
            connection=deps.settings.google_connection,
            scopes=list(deps.settings.google_scopes),
        )
    if response.status_code >= 400:
        raise ToolExecutionError(f"{integration} returned {response.status_code}")
