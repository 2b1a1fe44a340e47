from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
import time
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from assistant0.core.errors import AuditWriteFailure
from assistant0.domain.models import AuditEvent
from assistant0.domain.tools import ToolInvocation
from assistant0.persistence.db import Database
from assistant0.persistence.repos import audit as audit_repo
from assistant0.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ACTION_TOOL_START = "tool_start"
ACTION_TOOL_SUCCESS = "tool_success"
ACTION_TOOL_ERROR = "tool_error"
ACTION_STEP_UP_REQUIRED = "step_up_required"
ACTION_STEP_UP_APPROVED = "step_up_approved"

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credentials and coerce values into JSON-safe structures.
    if isinstance(value, BaseModel):
        return sanitize_metadata(value.model_dump(mode="json"))
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple, set)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return repr(value)


class AuditTrail:
    """Records the lifecycle of a single tool invocation.

    Writes are best-effort: a failed insert is logged and counted but never
    raised, so audit outages degrade observability rather than tool behavior.
    """

    def __init__(self, database: Database, invocation: ToolInvocation) -> None:
        self._database = database
        self._invocation = invocation
        self._started = time.monotonic()
        self._log_id: int | None = None
        self._agent_role: str | None = None
        self._risk_level: str | None = None
        self._requires_approval = False
        self._terminal_recorded = False

    @property
    def invocation(self) -> ToolInvocation:
        return self._invocation

    @property
    def log_id(self) -> int | None:
        return self._log_id

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    async def record_start(
        self,
        *,
        agent_role: str | None,
        risk_level: str | None,
        requires_step_up: bool,
        inputs: Any = None,
    ) -> int | None:
        self._agent_role = agent_role
        self._risk_level = risk_level
        self._requires_approval = requires_step_up
        event = await self._append(
            action=ACTION_TOOL_START,
            status=STATUS_PENDING,
            inputs=sanitize_metadata(inputs),
        )
        self._log_id = event.id if event is not None else None
        return self._log_id

    async def record_success(self, outputs: Any) -> None:
        if self._mark_terminal():
            await self._append(
                action=ACTION_TOOL_SUCCESS,
                status=STATUS_SUCCESS,
                outputs=sanitize_metadata(outputs),
                duration_ms=self.elapsed_ms(),
            )

    async def record_failure(self, error: BaseException | str) -> None:
        if self._mark_terminal():
            await self._append(
                action=ACTION_TOOL_ERROR,
                status=STATUS_FAILURE,
                error_message=str(error) or error.__class__.__name__,
                duration_ms=self.elapsed_ms(),
            )

    async def record_control_event(
        self,
        action: str,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        # Control events (step-up gating, approvals) never count as terminal.
        metadata = metadata or {}
        await self._append(
            action=action,
            status=status,
            inputs=sanitize_metadata(metadata.get("inputs")),
            outputs=sanitize_metadata(metadata.get("outputs")),
            error_message=metadata.get("error_message"),
        )

    def _mark_terminal(self) -> bool:
        # At most one terminal row per invocation.
        if self._terminal_recorded:
            logger.warning(
                "audit_duplicate_terminal_event invocation_id=%s tool=%s",
                self._invocation.id,
                self._invocation.tool_name,
            )
            return False
        self._terminal_recorded = True
        return True

    async def _append(
        self,
        *,
        action: str,
        status: str,
        inputs: Any = None,
        outputs: Any = None,
        error_message: str | None = None,
        duration_ms: int | None = None,
    ) -> AuditEvent | None:
        invocation = self._invocation
        event = AuditEvent(
            invocation_id=invocation.id,
            action=action,
            tool_name=invocation.tool_name,
            agent_role=self._agent_role,
            status=status,
            inputs=inputs,
            outputs=outputs,
            error_message=error_message,
            workspace_id=invocation.workspace_id,
            thread_id=invocation.thread_id,
            risk_level=self._risk_level,
            requires_approval=self._requires_approval,
            duration_ms=duration_ms,
            user_id=invocation.user_id,
            user_email=invocation.user_email,
        )
        try:
            async with self._database.session() as session:
                try:
                    await audit_repo.append_event(session, event)
                    await session.commit()
                except SQLAlchemyError as exc:
                    await session.rollback()
                    raise AuditWriteFailure(f"could not persist {action}") from exc
        except (AuditWriteFailure, SQLAlchemyError, OSError) as exc:
            increment_counter("audit_write_failures_total")
            logger.warning(
                "audit_event_write_failed action=%s invocation_id=%s tool=%s",
                action,
                invocation.id,
                invocation.tool_name,
                exc_info=exc,
            )
            return None
        return event


@dataclass(frozen=True)
class AuditHistory:
    items: list[AuditEvent]
    counts: dict[str, int]


async def get_audit_history(
    database: Database,
    *,
    user_id: str,
    workspace_id: str | None = None,
    limit: int = 100,
) -> AuditHistory:
    # Newest-first projection plus status totals for mission-control style views.
    async with database.session() as session:
        items = await audit_repo.list_events(
            session,
            user_id=user_id,
            workspace_id=workspace_id,
            limit=limit,
        )
        by_status = await audit_repo.count_by_status(session, user_id=user_id, workspace_id=workspace_id)
    counts = {
        STATUS_SUCCESS: by_status.get(STATUS_SUCCESS, 0),
        STATUS_PENDING: by_status.get(STATUS_PENDING, 0),
        STATUS_FAILURE: by_status.get(STATUS_FAILURE, 0),
    }
    counts["total"] = sum(by_status.values())
    return AuditHistory(items=items, counts=counts)
