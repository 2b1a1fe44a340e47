from __future__ import annotations

from typing import Any

from assistant0.core.errors import AuthorizerError, ConsentRequiredError, IdentityProviderError
from assistant0.services.auth.identity import (
    STATUS_APPROVED,
    STATUS_PENDING,
    AsyncAuthorizationRequest,
    AsyncAuthorizationStatus,
)
from assistant0.services.authz.fga import InMemoryAuthorizer
from assistant0.services.retrieval import RetrievalCandidate


class StubIdentityProvider:
    # Scriptable identity provider: every challenge resolves to self.decision.
    def __init__(
        self,
        *,
        decision: str = STATUS_PENDING,
        access_token: str | None = "google-access-token",
        expires_in: int = 300,
        ciba_access_token: str | None = "ciba-token",
    ) -> None:
        self.decision = decision
        self.access_token = access_token
        self.ciba_access_token = ciba_access_token
        self.expires_in = expires_in
        self.fail_polls = False
        self.fail_requests = False
        self.requests: list[dict[str, Any]] = []
        self.polls: list[str] = []
        self.token_exchanges: list[dict[str, Any]] = []

    async def request_async_authorization(
        self,
        *,
        user_id: str,
        binding_message: str,
        scopes: list[str],
        audience: str | None,
        requested_expiry_s: int,
    ) -> AsyncAuthorizationRequest:
        if self.fail_requests:
            raise IdentityProviderError("bc-authorize unavailable")
        self.requests.append(
            {
                "user_id": user_id,
                "binding_message": binding_message,
                "scopes": scopes,
                "audience": audience,
                "requested_expiry_s": requested_expiry_s,
            }
        )
        return AsyncAuthorizationRequest(
            auth_req_id=f"req-{len(self.requests)}",
            expires_in=self.expires_in,
            interval=0.01,
        )

    async def poll_async_authorization(self, auth_req_id: str) -> AsyncAuthorizationStatus:
        if self.fail_polls:
            raise IdentityProviderError("token endpoint unavailable")
        self.polls.append(auth_req_id)
        if self.decision == STATUS_APPROVED:
            return AsyncAuthorizationStatus(state=self.decision, access_token=self.ciba_access_token)
        return AsyncAuthorizationStatus(state=self.decision)

    async def get_access_token(self, *, connection: str, refresh_token: str, scopes: list[str]) -> str:
        self.token_exchanges.append({"connection": connection, "refresh_token": refresh_token})
        if not self.access_token:
            raise ConsentRequiredError(
                "Authorization required to access the Token Vault connection.",
                connection=connection,
                scopes=scopes,
            )
        return self.access_token


class FlakyAuthorizer(InMemoryAuthorizer):
    # Raises for selected documents to exercise fail-closed filtering.
    def __init__(self, *, failing_objects: set[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._failing_objects = failing_objects
        self.checks: list[tuple[str, str, str]] = []

    async def check(self, user: str, relation: str, object: str) -> bool:
        self.checks.append((user, relation, object))
        if object in self._failing_objects:
            raise AuthorizerError(f"check failed for {object}")
        return await super().check(user, relation, object)


class StaticCandidateSource:
    def __init__(self, candidates: list[RetrievalCandidate]) -> None:
        self._candidates = candidates
        self.queries: list[tuple[str, int]] = []

    async def find_relevant_content(self, query: str, limit: int) -> list[RetrievalCandidate]:
        self.queries.append((query, limit))
        return list(self._candidates[:limit])
