from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from assistant0.core.errors import ConsentRequiredError, IdentityProviderConfigError, IdentityProviderError
from assistant0.services.auth.identity import (
    CIBA_GRANT_TYPE,
    STATUS_APPROVED,
    STATUS_DENIED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    TOKEN_EXCHANGE_GRANT_TYPE,
    Auth0IdentityProvider,
)


@pytest.fixture
def auth0_settings(settings):
    settings.auth0_domain = "tenant.example.auth0.com"
    settings.auth0_client_id = "client-id"
    settings.auth0_client_secret = "client-secret"
    settings.ext_retry_max_attempts = 1
    return settings


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


def _provider(auth0_settings, handler) -> Auth0IdentityProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Auth0IdentityProvider(settings=auth0_settings, client=client)


def test_missing_configuration_is_rejected(settings) -> None:
    with pytest.raises(IdentityProviderConfigError):
        Auth0IdentityProvider(settings=settings)


@pytest.mark.asyncio
async def test_backchannel_request_sends_binding_message(auth0_settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"auth_req_id": "abc", "expires_in": 120, "interval": 2})

    provider = _provider(auth0_settings, handler)
    result = await provider.request_async_authorization(
        user_id="auth0|alice",
        binding_message="Do you want to buy 1 laptop",
        scopes=["openid", "product:buy"],
        audience="https://shop.example.com",
        requested_expiry_s=300,
    )

    assert result.auth_req_id == "abc"
    assert result.expires_in == 120
    assert result.interval == 2.0
    assert str(seen[0].url) == "https://tenant.example.auth0.com/bc-authorize"
    form = _form(seen[0])
    assert form["binding_message"] == "Do you want to buy 1 laptop"
    assert form["scope"] == "openid product:buy"
    assert form["audience"] == "https://shop.example.com"
    assert json.loads(form["login_hint"])["sub"] == "auth0|alice"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "body", "state"),
    [
        (200, {"access_token": "tok"}, STATUS_APPROVED),
        (400, {"error": "authorization_pending"}, STATUS_PENDING),
        (429, {"error": "slow_down"}, STATUS_PENDING),
        (403, {"error": "access_denied"}, STATUS_DENIED),
        (400, {"error": "expired_token"}, STATUS_EXPIRED),
    ],
)
async def test_poll_maps_token_endpoint_responses(auth0_settings, status_code, body, state) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert _form(request)["grant_type"] == CIBA_GRANT_TYPE
        return httpx.Response(status_code, json=body)

    status = await _provider(auth0_settings, handler).poll_async_authorization("abc")

    assert status.state == state
    if state == STATUS_APPROVED:
        assert status.access_token == "tok"


@pytest.mark.asyncio
async def test_poll_unknown_error_raises(auth0_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_client"})

    with pytest.raises(IdentityProviderError):
        await _provider(auth0_settings, handler).poll_async_authorization("abc")


@pytest.mark.asyncio
async def test_token_exchange_returns_federated_token(auth0_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        form = _form(request)
        assert form["grant_type"] == TOKEN_EXCHANGE_GRANT_TYPE
        assert form["connection"] == "google-oauth2"
        assert form["subject_token"] == "refresh-1"
        return httpx.Response(200, json={"access_token": "google-token"})

    token = await _provider(auth0_settings, handler).get_access_token(
        connection="google-oauth2",
        refresh_token="refresh-1",
        scopes=["openid"],
    )
    assert token == "google-token"


@pytest.mark.asyncio
async def test_token_exchange_rejection_requires_consent(auth0_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "federated_connection_refresh_token_not_found"})

    with pytest.raises(ConsentRequiredError) as excinfo:
        await _provider(auth0_settings, handler).get_access_token(
            connection="google-oauth2",
            refresh_token="refresh-1",
            scopes=["https://www.googleapis.com/auth/calendar.events"],
        )
    assert excinfo.value.connection == "google-oauth2"
    assert excinfo.value.scopes == ["https://www.googleapis.com/auth/calendar.events"]


@pytest.mark.asyncio
async def test_network_failure_is_a_provider_error(auth0_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(IdentityProviderError):
        await _provider(auth0_settings, handler).poll_async_authorization("abc")


@pytest.mark.asyncio
async def test_backchannel_request_is_not_retried(auth0_settings) -> None:
    # A replayed bc-authorize would push a second prompt to the user's device.
    auth0_settings.ext_retry_max_attempts = 3
    auth0_settings.ext_retry_backoff_ms = 0
    attempts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        raise httpx.ConnectError("refused", request=request)

    provider = _provider(auth0_settings, handler)
    with pytest.raises(IdentityProviderError):
        await provider.request_async_authorization(
            user_id="auth0|alice",
            binding_message="Do you want to buy 1 laptop",
            scopes=["openid"],
            audience=None,
            requested_expiry_s=300,
        )
    assert attempts == ["/bc-authorize"]

    attempts.clear()
    with pytest.raises(IdentityProviderError):
        await provider.poll_async_authorization("abc")
    assert attempts == ["/oauth/token"] * 3
