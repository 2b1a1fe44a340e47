from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Any, Iterable, Protocol

import httpx

from assistant0.core.config import Settings, get_settings
from assistant0.core.errors import AuthorizerError
from assistant0.services.resilience import default_retry_policy, retry_async
from assistant0.services.telemetry import record_external_call


RELATION_OWNER = "owner"
RELATION_VIEWER = "viewer"
RELATION_CAN_VIEW = "can_view"

# can_view on a doc is the union of owner and viewer.
AUTHORIZATION_MODEL: dict[str, Any] = {
    "schema_version": "1.1",
    "type_definitions": [
        {"type": "user"},
        {
            "type": "doc",
            "relations": {
                RELATION_OWNER: {"this": {}},
                RELATION_VIEWER: {"this": {}},
                RELATION_CAN_VIEW: {
                    "union": {
                        "child": [
                            {"computedUserset": {"relation": RELATION_OWNER}},
                            {"computedUserset": {"relation": RELATION_VIEWER}},
                        ]
                    }
                },
            },
            "metadata": {
                "relations": {
                    RELATION_OWNER: {"directly_related_user_types": [{"type": "user"}]},
                    RELATION_VIEWER: {
                        "directly_related_user_types": [{"type": "user"}, {"type": "user", "wildcard": {}}]
                    },
                    RELATION_CAN_VIEW: {},
                }
            },
        },
    ],
}

_COMPUTED_RELATIONS: dict[str, tuple[str, ...]] = {
    RELATION_CAN_VIEW: (RELATION_OWNER, RELATION_VIEWER),
}


@dataclass(frozen=True)
class PermissionGrant:
    user: str
    relation: str
    object: str

    def as_tuple_key(self) -> dict[str, str]:
        return {"user": self.user, "relation": self.relation, "object": self.object}


def user_ref(email: str) -> str:
    return f"user:{email}"


def doc_ref(document_id: str) -> str:
    return f"doc:{document_id}"


class RelationshipAuthorizer(Protocol):
    async def write(self, grants: Iterable[PermissionGrant]) -> None:
        ...

    async def delete(self, grants: Iterable[PermissionGrant]) -> None:
        ...

    async def check(self, user: str, relation: str, object: str) -> bool:
        ...


class InMemoryAuthorizer:
    # Resolves the same model locally; used for development and tests.
    def __init__(self, grants: Iterable[PermissionGrant] = ()) -> None:
        self._tuples: set[tuple[str, str, str]] = {(g.user, g.relation, g.object) for g in grants}

    async def write(self, grants: Iterable[PermissionGrant]) -> None:
        for grant in grants:
            self._tuples.add((grant.user, grant.relation, grant.object))

    async def delete(self, grants: Iterable[PermissionGrant]) -> None:
        for grant in grants:
            self._tuples.discard((grant.user, grant.relation, grant.object))

    async def check(self, user: str, relation: str, object: str) -> bool:
        relations = _COMPUTED_RELATIONS.get(relation, (relation,))
        for candidate in relations:
            if (user, candidate, object) in self._tuples:
                return True
            # Public viewer grants use the user:* wildcard.
            if candidate == RELATION_VIEWER and ("user:*", candidate, object) in self._tuples:
                return True
        return False


class OpenFgaAuthorizer:
    """Relationship checks against an OpenFGA-compatible HTTP API."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if not self._settings.fga_store_id:
            raise AuthorizerError("fga_store_id is required for OpenFGA checks")
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.fga_api_token:
            headers["Authorization"] = f"Bearer {self._settings.fga_api_token}"
        return headers

    def _url(self, path: str) -> str:
        base = self._settings.fga_api_url.rstrip("/")
        return f"{base}/stores/{self._settings.fga_store_id}/{path}"

    async def _post(self, path: str, payload: dict[str, Any], *, pin_model: bool = True) -> dict[str, Any]:
        if pin_model and self._settings.fga_model_id:
            payload = {**payload, "authorization_model_id": self._settings.fga_model_id}
        timeout = self._settings.ext_call_timeout_ms / 1000.0
        start = time.monotonic()

        async def _call() -> httpx.Response:
            if self._client is not None:
                return await self._client.post(self._url(path), json=payload, headers=self._headers())
            async with httpx.AsyncClient(timeout=timeout) as client:
                return await client.post(self._url(path), json=payload, headers=self._headers())

        try:
            response = await retry_async(_call, policy=default_retry_policy(self._settings))
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration="fga", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise AuthorizerError(f"fga {path} request failed") from exc
        success = response.status_code < 400
        record_external_call(
            integration="fga", latency_ms=(time.monotonic() - start) * 1000.0, success=success
        )
        if not success:
            raise AuthorizerError(f"fga {path} returned {response.status_code}")
        return response.json() if response.content else {}

    async def write(self, grants: Iterable[PermissionGrant]) -> None:
        keys = [grant.as_tuple_key() for grant in grants]
        if keys:
            await self._post("write", {"writes": {"tuple_keys": keys}})

    async def delete(self, grants: Iterable[PermissionGrant]) -> None:
        keys = [grant.as_tuple_key() for grant in grants]
        if keys:
            await self._post("write", {"deletes": {"tuple_keys": keys}})

    async def check(self, user: str, relation: str, object: str) -> bool:
        body = await self._post(
            "check",
            {"tuple_key": {"user": user, "relation": relation, "object": object}},
        )
        return bool(body.get("allowed"))

    async def write_authorization_model(self, model: dict[str, Any] | None = None) -> str:
        body = await self._post("authorization-models", model or AUTHORIZATION_MODEL, pin_model=False)
        return str(body.get("authorization_model_id") or "")


async def grant_owner(authorizer: RelationshipAuthorizer, email: str, document_id: str) -> None:
    # Uploading a document makes the uploader its owner.
    await authorizer.write([PermissionGrant(user_ref(email), RELATION_OWNER, doc_ref(document_id))])


async def share_document(
    authorizer: RelationshipAuthorizer,
    document_id: str,
    emails: Iterable[str],
) -> None:
    grants = [PermissionGrant(user_ref(email), RELATION_VIEWER, doc_ref(document_id)) for email in emails]
    await authorizer.write(grants)


async def revoke_document(
    authorizer: RelationshipAuthorizer,
    *,
    owner_email: str,
    document_id: str,
    shared_with: Iterable[str] = (),
) -> None:
    # Remove the owner tuple and every viewer tuple before the document row is deleted.
    grants = [PermissionGrant(user_ref(owner_email), RELATION_OWNER, doc_ref(document_id))]
    grants.extend(
        PermissionGrant(user_ref(email), RELATION_VIEWER, doc_ref(document_id)) for email in shared_with
    )
    await authorizer.delete(grants)
