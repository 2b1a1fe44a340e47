from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging
import time
from typing import Any, Protocol

import httpx

from assistant0.core.config import Settings, get_settings
from assistant0.core.errors import (
    ConsentRequiredError,
    IdentityProviderConfigError,
    IdentityProviderError,
)
from assistant0.services.resilience import default_retry_policy, retry_async
from assistant0.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

CIBA_GRANT_TYPE = "urn:openid:params:grant-type:ciba"
TOKEN_EXCHANGE_GRANT_TYPE = "urn:auth0:params:oauth:grant-type:token-exchange:federated-connection-access-token"
REFRESH_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:refresh_token"
FEDERATED_ACCESS_TOKEN_TYPE = "http://auth0.com/oauth/token-type/federated-connection-access-token"

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_DENIED = "denied"
STATUS_EXPIRED = "expired"

# Token endpoint error codes mapped onto challenge outcomes.
_CIBA_ERROR_STATES = {
    "authorization_pending": STATUS_PENDING,
    "slow_down": STATUS_PENDING,
    "access_denied": STATUS_DENIED,
    "expired_token": STATUS_EXPIRED,
}


@dataclass(frozen=True)
class AsyncAuthorizationRequest:
    auth_req_id: str
    expires_in: int
    interval: float


@dataclass(frozen=True)
class AsyncAuthorizationStatus:
    state: str
    access_token: str | None = None
    # Providers may ask callers to back off with slow_down.
    interval: float | None = None


class IdentityProvider(Protocol):
    async def request_async_authorization(
        self,
        *,
        user_id: str,
        binding_message: str,
        scopes: list[str],
        audience: str | None,
        requested_expiry_s: int,
    ) -> AsyncAuthorizationRequest:
        ...

    async def poll_async_authorization(self, auth_req_id: str) -> AsyncAuthorizationStatus:
        ...

    async def get_access_token(self, *, connection: str, refresh_token: str, scopes: list[str]) -> str:
        ...


class Auth0IdentityProvider:
    """Auth0 backchannel (CIBA) authorization and Token Vault exchange over httpx."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if not (
            self._settings.auth0_domain
            and self._settings.auth0_client_id
            and self._settings.auth0_client_secret
        ):
            raise IdentityProviderConfigError("auth0_domain, auth0_client_id and auth0_client_secret are required")
        self._client = client

    @property
    def _base_url(self) -> str:
        domain = str(self._settings.auth0_domain).rstrip("/")
        if not domain.startswith("http"):
            domain = f"https://{domain}"
        return domain

    def _client_credentials(self) -> dict[str, str]:
        return {
            "client_id": str(self._settings.auth0_client_id),
            "client_secret": str(self._settings.auth0_client_secret),
        }

    async def _post_form(
        self,
        path: str,
        data: dict[str, Any],
        *,
        integration: str,
        retry: bool = True,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        timeout = self._settings.ext_call_timeout_ms / 1000.0
        start = time.monotonic()

        async def _call() -> httpx.Response:
            if self._client is not None:
                return await self._client.post(url, data=data)
            async with httpx.AsyncClient(timeout=timeout) as client:
                return await client.post(url, data=data)

        policy = default_retry_policy(self._settings)
        if not retry:
            policy = replace(policy, max_attempts=1)
        try:
            response = await retry_async(_call, policy=policy)
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise IdentityProviderError(f"{integration} request failed") from exc
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 500,
        )
        return response

    @staticmethod
    def _error_code(response: httpx.Response) -> str | None:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            return body.get("error")
        return None

    async def request_async_authorization(
        self,
        *,
        user_id: str,
        binding_message: str,
        scopes: list[str],
        audience: str | None,
        requested_expiry_s: int,
    ) -> AsyncAuthorizationRequest:
        login_hint = json.dumps({"format": "iss_sub", "iss": f"{self._base_url}/", "sub": user_id})
        data: dict[str, Any] = {
            **self._client_credentials(),
            "login_hint": login_hint,
            "scope": " ".join(scopes),
            "binding_message": binding_message,
            "requested_expiry": str(requested_expiry_s),
        }
        if audience:
            data["audience"] = audience
        # Each bc-authorize call pushes a fresh prompt to the user, so it is never replayed.
        response = await self._post_form("/bc-authorize", data, integration="auth0.bc_authorize", retry=False)
        if response.status_code >= 400:
            logger.warning(
                "ciba_request_rejected status=%s error=%s",
                response.status_code,
                self._error_code(response),
            )
            raise IdentityProviderError(f"bc-authorize returned {response.status_code}")
        body = response.json()
        return AsyncAuthorizationRequest(
            auth_req_id=str(body["auth_req_id"]),
            expires_in=int(body.get("expires_in", requested_expiry_s)),
            interval=float(body.get("interval", self._settings.step_up_poll_interval_s)),
        )

    async def poll_async_authorization(self, auth_req_id: str) -> AsyncAuthorizationStatus:
        data = {
            **self._client_credentials(),
            "grant_type": CIBA_GRANT_TYPE,
            "auth_req_id": auth_req_id,
        }
        response = await self._post_form("/oauth/token", data, integration="auth0.ciba_token")
        if response.status_code < 400:
            body = response.json()
            return AsyncAuthorizationStatus(state=STATUS_APPROVED, access_token=body.get("access_token"))
        code = self._error_code(response)
        state = _CIBA_ERROR_STATES.get(code or "")
        if state is None:
            raise IdentityProviderError(f"ciba token poll failed status={response.status_code} error={code}")
        interval = None
        if code == "slow_down":
            interval = self._settings.step_up_poll_interval_s * 2
        return AsyncAuthorizationStatus(state=state, interval=interval)

    async def get_access_token(self, *, connection: str, refresh_token: str, scopes: list[str]) -> str:
        # Exchange the session refresh token for the federated connection's access token.
        data = {
            **self._client_credentials(),
            "grant_type": TOKEN_EXCHANGE_GRANT_TYPE,
            "subject_token_type": REFRESH_TOKEN_TYPE,
            "subject_token": refresh_token,
            "connection": connection,
            "requested_token_type": FEDERATED_ACCESS_TOKEN_TYPE,
        }
        response = await self._post_form("/oauth/token", data, integration="auth0.token_vault")
        if response.status_code in {400, 401, 403}:
            raise ConsentRequiredError(
                "Authorization required to access the Token Vault connection.",
                connection=connection,
                scopes=scopes,
            )
        if response.status_code >= 400:
            raise IdentityProviderError(f"token exchange returned {response.status_code}")
        token = response.json().get("access_token")
        if not token:
            raise ConsentRequiredError(
                "Token Vault returned no access token.",
                connection=connection,
                scopes=scopes,
            )
        return str(token)
