from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from assistant0.core.errors import ToolExecutionError
from assistant0.domain.tools import ToolDefinition
from assistant0.ingestion.embeddings import get_embedder
from assistant0.services.retrieval import (
    PermissionFilteredRetriever,
    PgVectorCandidateSource,
    RetrievalCandidate,
)
from assistant0.tools.base import ToolDependencies


NO_USER_MESSAGE = "There is no user logged in."


class ContextDocumentsInput(BaseModel):
    question: str = Field(description="the users question")


async def _candidates(deps: ToolDependencies, question: str) -> list[RetrievalCandidate]:
    limit = deps.settings.retrieval_max_candidates
    if deps.candidate_source is not None:
        return await deps.candidate_source.find_relevant_content(question, limit)
    if deps.database is None:
        raise ToolExecutionError("no knowledge base configured")
    async with deps.database.session() as session:
        source = PgVectorCandidateSource(
            session,
            settings=deps.settings,
            embedder=get_embedder(deps.settings, client=deps.http_client),
        )
        return await source.find_relevant_content(question, limit)


def build_context_documents_tool(deps: ToolDependencies) -> ToolDefinition:
    async def execute(arguments: dict[str, Any]) -> Any:
        params = ContextDocumentsInput.model_validate(arguments)
        email = deps.context.user_email
        if not email:
            return NO_USER_MESSAGE
        if deps.authorizer is None:
            raise ToolExecutionError("no relationship authorizer configured")

        candidates = await _candidates(deps, params.question)
        retriever = PermissionFilteredRetriever(deps.authorizer)
        visible = await retriever.filter(candidates, email)
        return [candidate.as_dict() for candidate in visible]

    return ToolDefinition(
        description=(
            "Use the tool when user asks for documents or projects or anything that is stored "
            "in the knowledge base."
        ),
        input_schema=ContextDocumentsInput,
        execute=execute,
    )
