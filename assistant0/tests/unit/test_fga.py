from __future__ import annotations

import json

import httpx
import pytest

from assistant0.core.errors import AuthorizerError
from assistant0.services import telemetry
from assistant0.services.authz.fga import (
    AUTHORIZATION_MODEL,
    RELATION_CAN_VIEW,
    OpenFgaAuthorizer,
    PermissionGrant,
    share_document,
)


@pytest.fixture
def fga_settings(settings):
    settings.fga_api_url = "http://fga.local"
    settings.fga_store_id = "store-1"
    settings.fga_model_id = "model-1"
    settings.fga_api_token = "fga-token"
    settings.ext_retry_max_attempts = 1
    return settings


def _authorizer(fga_settings, handler) -> OpenFgaAuthorizer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenFgaAuthorizer(settings=fga_settings, client=client)


def test_store_is_required(settings) -> None:
    with pytest.raises(AuthorizerError):
        OpenFgaAuthorizer(settings=settings)


def test_model_defines_can_view_as_owner_or_viewer() -> None:
    doc = next(t for t in AUTHORIZATION_MODEL["type_definitions"] if t["type"] == "doc")
    union = doc["relations"][RELATION_CAN_VIEW]["union"]["child"]
    assert [child["computedUserset"]["relation"] for child in union] == ["owner", "viewer"]


def test_model_declares_only_user_and_doc_types() -> None:
    assert [t["type"] for t in AUTHORIZATION_MODEL["type_definitions"]] == ["user", "doc"]


@pytest.mark.asyncio
async def test_check_posts_tuple_key(fga_settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"allowed": True})

    allowed = await _authorizer(fga_settings, handler).check("user:alice@example.com", "can_view", "doc:d1")

    assert allowed is True
    assert str(seen[0].url) == "http://fga.local/stores/store-1/check"
    assert seen[0].headers["Authorization"] == "Bearer fga-token"
    body = json.loads(seen[0].content)
    assert body == {
        "tuple_key": {"user": "user:alice@example.com", "relation": "can_view", "object": "doc:d1"},
        "authorization_model_id": "model-1",
    }
    assert telemetry.external_call_samples("fga")[0].success is True


@pytest.mark.asyncio
async def test_write_authorization_model_is_not_pinned(fga_settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"authorization_model_id": "model-2"})

    model_id = await _authorizer(fga_settings, handler).write_authorization_model()

    assert model_id == "model-2"
    assert seen[0].url.path == "/stores/store-1/authorization-models"
    assert json.loads(seen[0].content) == AUTHORIZATION_MODEL


@pytest.mark.asyncio
async def test_share_writes_viewer_tuples(fga_settings) -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={})

    await share_document(_authorizer(fga_settings, handler), "d1", ["bob@example.com", "carol@example.com"])

    assert bodies[0]["writes"]["tuple_keys"] == [
        {"user": "user:bob@example.com", "relation": "viewer", "object": "doc:d1"},
        {"user": "user:carol@example.com", "relation": "viewer", "object": "doc:d1"},
    ]


@pytest.mark.asyncio
async def test_empty_writes_skip_the_network(fga_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    authorizer = _authorizer(fga_settings, handler)
    await authorizer.write([])
    await authorizer.delete([])


@pytest.mark.asyncio
async def test_error_status_raises(fga_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": "validation_error"})

    with pytest.raises(AuthorizerError):
        await _authorizer(fga_settings, handler).write(
            [PermissionGrant("user:alice@example.com", "owner", "doc:d1")]
        )
    assert telemetry.external_call_samples("fga")[0].success is False
