from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union
from uuid import uuid4

from pydantic import BaseModel


ToolExecute = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]
BindingMessage = Callable[[dict[str, Any]], str]


@dataclass(frozen=True)
class ToolDefinition:
    # Closed tool contract shared by raw tools and gateway-wrapped tools.
    description: str
    input_schema: type[BaseModel]
    execute: ToolExecute
    # Optional step-up binding message; describes exactly what the user approves.
    binding_message: BindingMessage | None = None
    scopes: tuple[str, ...] = ()

    def with_execute(self, execute: ToolExecute) -> "ToolDefinition":
        return replace(self, execute=execute)


@dataclass(frozen=True)
class CallContext:
    # Verified caller identity bound to every invocation in one chat turn.
    user_id: str | None
    user_email: str | None
    thread_id: str | None = None
    workspace_id: str | None = None
    # Present only when the chat layer re-submits a call after out-of-band approval.
    challenge_id: str | None = None

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)

    def with_challenge(self, challenge_id: str | None) -> "CallContext":
        return replace(self, challenge_id=challenge_id)


@dataclass(frozen=True)
class ToolInvocation:
    tool_name: str
    user_id: str
    user_email: str
    thread_id: str | None
    workspace_id: str | None
    id: str = field(default_factory=lambda: uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, tool_name: str, context: CallContext) -> "ToolInvocation":
        return cls(
            tool_name=tool_name,
            user_id=context.user_id or "anonymous",
            user_email=context.user_email or "",
            thread_id=context.thread_id,
            workspace_id=context.workspace_id,
        )


@dataclass(frozen=True)
class ToolOk:
    value: Any


@dataclass(frozen=True)
class ToolErr:
    # kind is access_denied or authorization_timeout; tool exceptions are raised instead.
    kind: str
    detail: str
    challenge_id: str | None = None

    def as_result(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.kind, "message": self.detail}
        if self.challenge_id:
            payload["challengeId"] = self.challenge_id
        return payload


@dataclass(frozen=True)
class StepUpRequired:
    message: str
    risk_level: str
    challenge_id: str | None = None

    def as_result(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": "requires_step_up",
            "message": self.message,
            "riskLevel": self.risk_level,
        }
        if self.challenge_id:
            payload["challengeId"] = self.challenge_id
        return payload


ToolOutcome = Union[ToolOk, ToolErr, StepUpRequired]


def is_step_up_result(value: Any) -> bool:
    # Chat layers use this to avoid automatically re-invoking a gated tool.
    return isinstance(value, dict) and value.get("status") == "requires_step_up"
