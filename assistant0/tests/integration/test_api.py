from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import httpx
from httpx import ASGITransport, AsyncClient
import pytest

from assistant0.apps.api.main import create_app
from assistant0.services.auth.identity import STATUS_APPROVED, STATUS_DENIED
from assistant0.services.authz.fga import InMemoryAuthorizer
from assistant0.tests.utils.stubs import StubIdentityProvider


HEADERS = {"X-User-Id": "auth0|alice", "X-User-Email": "alice@example.com"}
PURCHASE = {"product": "laptop", "qty": 1, "priceLimit": 1000}


@pytest.fixture
def identity_provider() -> StubIdentityProvider:
    return StubIdentityProvider()


@pytest.fixture
def app(settings, database, identity_provider):
    return create_app(
        settings=settings,
        database=database,
        identity_provider=identity_provider,
        authorizer=InMemoryAuthorizer(),
    )


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_missing_identity_is_unauthorized(client) -> None:
    response = await client.get("/audit/logs")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_purchase_flow_over_http(client, identity_provider) -> None:
    # Gate, approve out of band, re-submit, then read the trail.
    first = await client.post("/tools/shopOnlineTool/invoke", json={"arguments": PURCHASE, "thread_id": "t-1"}, headers=HEADERS)
    assert first.status_code == 200
    body = first.json()
    assert body["status"] == "requires_step_up"
    assert body["riskLevel"] == "medium"
    challenge_id = body["challengeId"]

    identity_provider.decision = STATUS_APPROVED
    state = await client.get(f"/authorization/challenges/{challenge_id}", headers=HEADERS)
    assert state.status_code == 200
    assert state.json()["state"] == "approved"
    assert state.json()["binding_message"] == "Do you want to buy 1 laptop"

    second = await client.post(
        "/tools/shopOnlineTool/invoke",
        json={"arguments": PURCHASE, "thread_id": "t-1", "challenge_id": challenge_id},
        headers=HEADERS,
    )
    assert second.json() == {"status": "ok", "result": "Ordered 1 laptop"}

    logs = await client.get("/audit/logs", headers=HEADERS)
    assert logs.status_code == 200
    payload = logs.json()
    assert payload["items"][0]["action"] == "tool_success"
    assert payload["counts"]["success"] == 2
    assert payload["counts"]["total"] == len(payload["items"])


@pytest.mark.asyncio
async def test_approved_purchase_reaches_shop_with_approval_token(settings, database) -> None:
    seen: list[httpx.Request] = []

    def shop(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    settings.shop_api_url = "https://shop.example.com/orders"
    identity_provider = StubIdentityProvider(ciba_access_token="ciba-token")
    app = create_app(
        settings=settings,
        database=database,
        identity_provider=identity_provider,
        authorizer=InMemoryAuthorizer(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(shop)),
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/tools/shopOnlineTool/invoke", json={"arguments": PURCHASE}, headers=HEADERS)
        identity_provider.decision = STATUS_APPROVED
        second = await client.post(
            "/tools/shopOnlineTool/invoke",
            json={"arguments": PURCHASE, "challenge_id": first.json()["challengeId"]},
            headers=HEADERS,
        )
        challenge = await client.get(f"/authorization/challenges/{first.json()['challengeId']}", headers=HEADERS)

    assert second.json() == {"status": "ok", "result": "OK"}
    assert [request.headers.get("Authorization") for request in seen] == ["Bearer ciba-token"]
    assert "ciba-token" not in challenge.text


@pytest.mark.asyncio
async def test_denied_purchase_over_http(client, identity_provider) -> None:
    first = await client.post("/tools/shopOnlineTool/invoke", json={"arguments": PURCHASE}, headers=HEADERS)
    identity_provider.decision = STATUS_DENIED

    second = await client.post(
        "/tools/shopOnlineTool/invoke",
        json={"arguments": PURCHASE, "challenge_id": first.json()["challengeId"]},
        headers=HEADERS,
    )

    assert second.status_code == 200
    assert second.json()["status"] == "access_denied"
    assert second.json()["message"] == "The user has denied the request"


@pytest.mark.asyncio
async def test_challenges_are_private_to_their_caller(client) -> None:
    first = await client.post("/tools/shopOnlineTool/invoke", json={"arguments": PURCHASE}, headers=HEADERS)
    response = await client.get(
        f"/authorization/challenges/{first.json()['challengeId']}",
        headers={"X-User-Id": "auth0|mallory", "X-User-Email": "mallory@example.com"},
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "CHALLENGE_NOT_FOUND"


@pytest.mark.asyncio
async def test_unknown_tool_is_not_found(client) -> None:
    response = await client.post("/tools/launchRocketTool/invoke", json={"arguments": {}}, headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "TOOL_NOT_FOUND"


@pytest.mark.asyncio
async def test_google_tool_without_credentials_asks_for_consent(client) -> None:
    response = await client.post(
        "/tools/getCalendarEventsTool/invoke",
        json={"arguments": {"date": "2025-03-01"}},
        headers=HEADERS,
    )
    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "CONSENT_REQUIRED"
    assert error["details"]["connection"] == "google-oauth2"

    logs = await client.get("/audit/logs", headers=HEADERS)
    assert [item["action"] for item in logs.json()["items"]] == ["tool_error", "tool_start"]


@pytest.mark.asyncio
async def test_tool_failure_is_bad_gateway(client) -> None:
    response = await client.post("/tools/serpApiTool/invoke", json={"arguments": {"q": "weather"}}, headers=HEADERS)
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "TOOL_EXECUTION_FAILED"


@pytest.mark.asyncio
async def test_consent_url(client) -> None:
    response = await client.post(
        "/authorization/consent",
        json={"connection": "google-oauth2", "scopes": ["openid", "email"]},
        headers=HEADERS,
    )
    assert response.status_code == 200
    url = urlparse(response.json()["authorize_url"])
    assert url.path == "/auth/login"
    assert parse_qs(url.query)["connection_scope"] == ["openid,email"]
