from __future__ import annotations

from typing import Callable

from assistant0.domain.tools import ToolDefinition
from assistant0.tools.base import ToolDependencies
from assistant0.tools.context_docs import build_context_documents_tool
from assistant0.tools.gmail import build_gmail_draft_tool, build_gmail_search_tool
from assistant0.tools.google_calendar import build_calendar_events_tool
from assistant0.tools.serpapi import build_serpapi_tool
from assistant0.tools.shop import build_shop_online_tool


ToolBuilder = Callable[[ToolDependencies], ToolDefinition]

# Tool names are the identifiers the agent loop selects by.
TOOL_BUILDERS: dict[str, ToolBuilder] = {
    "serpApiTool": build_serpapi_tool,
    "getContextDocumentsTool": build_context_documents_tool,
    "getCalendarEventsTool": build_calendar_events_tool,
    "gmailSearchTool": build_gmail_search_tool,
    "gmailDraftTool": build_gmail_draft_tool,
    "shopOnlineTool": build_shop_online_tool,
}


def build_tools(deps: ToolDependencies) -> dict[str, ToolDefinition]:
    return {name: builder(deps) for name, builder in TOOL_BUILDERS.items()}
