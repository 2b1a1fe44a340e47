from __future__ import annotations

import pytest

from assistant0.core.errors import RetrievalError
from assistant0.services.authz.fga import (
    RELATION_CAN_VIEW,
    InMemoryAuthorizer,
    PermissionGrant,
    doc_ref,
    grant_owner,
    revoke_document,
    share_document,
    user_ref,
)
from assistant0.services.retrieval import PermissionFilteredRetriever, PgVectorCandidateSource, RetrievalCandidate
from assistant0.tests.utils.stubs import FlakyAuthorizer


def _candidates(*document_ids: str) -> list[RetrievalCandidate]:
    return [
        RetrievalCandidate(content=f"chunk from {doc_id}", document_id=doc_id, similarity=0.9 - i * 0.1)
        for i, doc_id in enumerate(document_ids)
    ]


class DummySession:
    # Guard against unexpected DB access when we validate embedding invariants.
    async def execute(self, *_args, **_kwargs):
        raise AssertionError("execute should not be called for invalid embeddings")


class ShortEmbedder:
    async def embed(self, text: str) -> list[float]:
        return [0.0]


@pytest.mark.asyncio
async def test_filter_keeps_viewable_candidates_in_order() -> None:
    authorizer = InMemoryAuthorizer()
    await grant_owner(authorizer, "alice@example.com", "d3")
    await share_document(authorizer, "d1", ["alice@example.com"])
    retriever = PermissionFilteredRetriever(authorizer)

    visible = await retriever.filter(_candidates("d1", "d2", "d3"), "alice@example.com")

    assert [candidate.document_id for candidate in visible] == ["d1", "d3"]
    assert visible[0].as_dict() == {"content": "chunk from d1", "documentId": "d1", "similarity": 0.9}


@pytest.mark.asyncio
async def test_filter_without_caller_skips_checks() -> None:
    authorizer = FlakyAuthorizer(failing_objects=set())
    retriever = PermissionFilteredRetriever(authorizer)

    assert await retriever.filter(_candidates("d1"), None) == []
    assert await retriever.filter(_candidates("d1"), "") == []
    assert await retriever.filter([], "alice@example.com") == []
    assert authorizer.checks == []


@pytest.mark.asyncio
async def test_filter_fails_closed_per_candidate() -> None:
    # A failing check drops only its own candidate.
    authorizer = FlakyAuthorizer(
        failing_objects={doc_ref("d2")},
        grants=[
            PermissionGrant(user_ref("alice@example.com"), "owner", doc_ref("d1")),
            PermissionGrant(user_ref("alice@example.com"), "owner", doc_ref("d2")),
        ],
    )
    retriever = PermissionFilteredRetriever(authorizer)

    visible = await retriever.filter(_candidates("d1", "d2"), "alice@example.com")

    assert [candidate.document_id for candidate in visible] == ["d1"]
    assert sorted(authorizer.checks) == [
        ("user:alice@example.com", RELATION_CAN_VIEW, "doc:d1"),
        ("user:alice@example.com", RELATION_CAN_VIEW, "doc:d2"),
    ]


@pytest.mark.asyncio
async def test_can_view_is_owner_or_viewer_and_revocable() -> None:
    authorizer = InMemoryAuthorizer()
    await grant_owner(authorizer, "alice@example.com", "d1")
    await share_document(authorizer, "d1", ["bob@example.com"])

    assert await authorizer.check("user:alice@example.com", RELATION_CAN_VIEW, "doc:d1")
    assert await authorizer.check("user:bob@example.com", RELATION_CAN_VIEW, "doc:d1")
    assert not await authorizer.check("user:carol@example.com", RELATION_CAN_VIEW, "doc:d1")

    await revoke_document(
        authorizer,
        owner_email="alice@example.com",
        document_id="d1",
        shared_with=["bob@example.com"],
    )
    assert not await authorizer.check("user:alice@example.com", RELATION_CAN_VIEW, "doc:d1")
    assert not await authorizer.check("user:bob@example.com", RELATION_CAN_VIEW, "doc:d1")


@pytest.mark.asyncio
async def test_public_viewer_wildcard() -> None:
    authorizer = InMemoryAuthorizer([PermissionGrant("user:*", "viewer", "doc:handbook")])
    assert await authorizer.check("user:anyone@example.com", RELATION_CAN_VIEW, "doc:handbook")


@pytest.mark.asyncio
async def test_candidate_source_rejects_dimension_mismatch(settings) -> None:
    # An embedder with the wrong width must never reach the database.
    source = PgVectorCandidateSource(DummySession(), settings=settings, embedder=ShortEmbedder())
    with pytest.raises(RetrievalError):
        await source.find_relevant_content("quarterly plan")
