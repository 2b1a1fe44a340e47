from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from assistant0.core.errors import ToolExecutionError
from assistant0.domain.tools import ToolDefinition
from assistant0.tools.base import ToolDependencies, send_request


SERPAPI_URL = "https://serpapi.com/search"
NO_RESULT = "No good search result found"


class SerpApiInput(BaseModel):
    q: str


def summarize_results(body: dict[str, Any]) -> str:
    # Prefer direct answers, then knowledge graph, then the top organic snippet.
    answer_box = body.get("answer_box")
    if isinstance(answer_box, list) and answer_box:
        answer_box = answer_box[0]
    if isinstance(answer_box, dict):
        for key in ("answer", "snippet"):
            if answer_box.get(key):
                return str(answer_box[key])
        highlighted = answer_box.get("snippet_highlighted_words")
        if highlighted:
            return str(highlighted[0])
    knowledge_graph = body.get("knowledge_graph")
    if isinstance(knowledge_graph, dict) and knowledge_graph.get("description"):
        return str(knowledge_graph["description"])
    for result in body.get("organic_results") or []:
        if result.get("snippet"):
            return str(result["snippet"])
    return NO_RESULT


def build_serpapi_tool(deps: ToolDependencies) -> ToolDefinition:
    async def execute(arguments: dict[str, Any]) -> str:
        params = SerpApiInput.model_validate(arguments)
        api_key = deps.settings.serpapi_api_key
        if not api_key:
            raise ToolExecutionError("serpapi_api_key is not configured")
        response = await send_request(
            deps,
            "GET",
            SERPAPI_URL,
            integration="serpapi",
            retry=True,
            params={"q": params.q, "engine": "google", "api_key": api_key},
        )
        if response.status_code >= 400:
            raise ToolExecutionError(f"serpapi returned {response.status_code}")
        return summarize_results(response.json())

    return ToolDefinition(
        description=(
            "A search engine. Useful for when you need to answer questions about current events. "
            "Input should be a search query."
        ),
        input_schema=SerpApiInput,
        execute=execute,
    )
