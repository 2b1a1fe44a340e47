from __future__ import annotations

import base64
from email.message import EmailMessage
from typing import Any, Literal

from pydantic import BaseModel, Field

from assistant0.domain.tools import ToolDefinition
from assistant0.tools.base import (
    ToolDependencies,
    delegated_access_token,
    raise_for_google_status,
    send_request,
)


GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
GMAIL_SEARCH_DESCRIPTION = (
    "A tool for searching Gmail messages or threads. The input must be a valid Gmail query. "
    "The output is a JSON list of the requested resource."
)
GMAIL_DRAFT_DESCRIPTION = (
    "A tool for creating draft emails in Gmail. The input must include the message body, "
    "the recipients and the subject."
)


class GmailSearchInput(BaseModel):
    query: str
    maxResults: int | None = None
    resource: Literal["messages", "threads"] | None = None


class GmailDraftInput(BaseModel):
    message: str
    to: list[str]
    subject: str
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)


def _headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _header_value(payload: dict[str, Any], name: str) -> str | None:
    for header in payload.get("headers") or []:
        if str(header.get("name", "")).lower() == name.lower():
            return header.get("value")
    return None


def build_draft_raw(params: GmailDraftInput) -> str:
    # Gmail expects an RFC 2822 message, base64url encoded.
    message = EmailMessage()
    message["To"] = ", ".join(params.to)
    if params.cc:
        message["Cc"] = ", ".join(params.cc)
    if params.bcc:
        message["Bcc"] = ", ".join(params.bcc)
    message["Subject"] = params.subject
    message.set_content(params.message)
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")


def build_gmail_search_tool(deps: ToolDependencies) -> ToolDefinition:
    async def execute(arguments: dict[str, Any]) -> list[dict[str, Any]]:
        params = GmailSearchInput.model_validate(arguments)
        resource = params.resource or "messages"
        token = await delegated_access_token(deps)
        response = await send_request(
            deps,
            "GET",
            f"{GMAIL_API_URL}/{resource}",
            integration="google.gmail",
            retry=True,
            params={"q": params.query, "maxResults": params.maxResults or 10},
            headers=_headers(token),
        )
        raise_for_google_status(deps, response, integration="google.gmail")
        items = response.json().get(resource) or []
        if resource == "threads":
            return [{"id": item.get("id"), "snippet": item.get("snippet")} for item in items]

        results: list[dict[str, Any]] = []
        for item in items:
            detail = await send_request(
                deps,
                "GET",
                f"{GMAIL_API_URL}/messages/{item['id']}",
                integration="google.gmail",
                retry=True,
                params={"format": "metadata", "metadataHeaders": ["Subject", "From", "To", "Date"]},
                headers=_headers(token),
            )
            raise_for_google_status(deps, detail, integration="google.gmail")
            body = detail.json()
            payload = body.get("payload") or {}
            results.append(
                {
                    "id": body.get("id"),
                    "threadId": body.get("threadId"),
                    "snippet": body.get("snippet"),
                    "subject": _header_value(payload, "Subject"),
                    "sender": _header_value(payload, "From"),
                    "date": _header_value(payload, "Date"),
                }
            )
        return results

    return ToolDefinition(
        description=GMAIL_SEARCH_DESCRIPTION,
        input_schema=GmailSearchInput,
        execute=execute,
    )


def build_gmail_draft_tool(deps: ToolDependencies) -> ToolDefinition:
    async def execute(arguments: dict[str, Any]) -> str:
        params = GmailDraftInput.model_validate(arguments)
        token = await delegated_access_token(deps)
        response = await send_request(
            deps,
            "POST",
            f"{GMAIL_API_URL}/drafts",
            integration="google.gmail",
            json={"message": {"raw": build_draft_raw(params)}},
            headers=_headers(token),
        )
        raise_for_google_status(deps, response, integration="google.gmail")
        return f"Draft created. Draft Id: {response.json().get('id')}"

    return ToolDefinition(
        description=GMAIL_DRAFT_DESCRIPTION,
        input_schema=GmailDraftInput,
        execute=execute,
    )
