from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from assistant0.core.config import EMBED_DIM, Settings, get_settings
from assistant0.core.errors import RetrievalError
from assistant0.domain.models import Embedding
from assistant0.ingestion.embeddings import Embedder, get_embedder
from assistant0.services.authz.fga import RELATION_CAN_VIEW, RelationshipAuthorizer, doc_ref, user_ref


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalCandidate:
    content: str
    document_id: str
    similarity: float

    def as_dict(self) -> dict[str, object]:
        return {"content": self.content, "documentId": self.document_id, "similarity": self.similarity}


class CandidateSource(Protocol):
    async def find_relevant_content(self, query: str, limit: int) -> list[RetrievalCandidate]:
        ...


class PermissionFilteredRetriever:
    """Drops knowledge-base hits the caller cannot view.

    One ``can_view`` check per candidate, issued concurrently; a check that
    errors counts as a denial. Output order is the input order.
    """

    def __init__(self, authorizer: RelationshipAuthorizer) -> None:
        self._authorizer = authorizer

    async def _can_view(self, user: str, candidate: RetrievalCandidate) -> bool:
        try:
            return bool(await self._authorizer.check(user, RELATION_CAN_VIEW, doc_ref(candidate.document_id)))
        except Exception as exc:  # noqa: BLE001 - fail closed on any oracle failure
            logger.warning(
                "retrieval_permission_check_failed document_id=%s",
                candidate.document_id,
                exc_info=exc,
            )
            return False

    async def filter(
        self,
        candidates: list[RetrievalCandidate],
        caller_email: str | None,
    ) -> list[RetrievalCandidate]:
        # No session means no access; skip the oracle entirely.
        if not caller_email or not candidates:
            return []
        user = user_ref(caller_email)
        allowed = await asyncio.gather(*(self._can_view(user, candidate) for candidate in candidates))
        return [candidate for candidate, ok in zip(candidates, allowed) if ok]


class PgVectorCandidateSource:
    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: Settings | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._embedder = embedder or get_embedder(self._settings)

    async def find_relevant_content(self, query: str, limit: int | None = None) -> list[RetrievalCandidate]:
        query_embedding = await self._embedder.embed(query)
        if len(query_embedding) != EMBED_DIM:
            # Retrieval must fail fast if the embedding dimension doesn't match the schema.
            raise RetrievalError("query embedding dimension mismatch")

        limit = max(1, min(int(limit or self._settings.retrieval_max_candidates), 100))
        # Cosine distance from pgvector; similarity = 1 - distance.
        similarity = 1 - Embedding.embedding.cosine_distance(query_embedding)
        stmt = (
            select(Embedding.content, Embedding.document_id, similarity.label("similarity"))
            .where(similarity > self._settings.retrieval_min_similarity)
            # Secondary ordering keeps tie-breaking deterministic.
            .order_by(similarity.desc(), Embedding.id.asc())
            .limit(limit)
        )
        try:
            result = await self._session.execute(stmt)
            rows = result.all()
        except SQLAlchemyError as exc:
            raise RetrievalError("pgvector query failed") from exc

        return [
            RetrievalCandidate(
                content=content,
                document_id=document_id,
                similarity=max(0.0, min(1.0, float(score))),
            )
            for content, document_id, score in rows
        ]
