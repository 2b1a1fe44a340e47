from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from assistant0.apps.api.deps import Caller, get_caller, get_database
from assistant0.domain.models import AuditEvent
from assistant0.persistence.db import Database
from assistant0.services.audit import get_audit_history


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"])


class AuditLogResponse(BaseModel):
    id: int
    invocation_id: str | None
    action: str
    tool_name: str | None
    agent_role: str | None
    status: str
    inputs: Any | None
    outputs: Any | None
    error_message: str | None
    workspace_id: str | None
    thread_id: str | None
    risk_level: str | None
    requires_approval: bool
    duration_ms: int | None
    created_at: str


class AuditCounts(BaseModel):
    success: int
    pending: int
    failure: int
    total: int


class AuditLogsPage(BaseModel):
    items: list[AuditLogResponse]
    counts: AuditCounts


def _to_response(event: AuditEvent) -> AuditLogResponse:
    return AuditLogResponse(
        id=event.id,
        invocation_id=event.invocation_id,
        action=event.action,
        tool_name=event.tool_name,
        agent_role=event.agent_role,
        status=event.status,
        inputs=event.inputs,
        outputs=event.outputs,
        error_message=event.error_message,
        workspace_id=event.workspace_id,
        thread_id=event.thread_id,
        risk_level=event.risk_level,
        requires_approval=bool(event.requires_approval),
        duration_ms=event.duration_ms,
        created_at=event.created_at.isoformat(),
    )


@router.get("/logs", response_model=AuditLogsPage)
async def list_audit_logs(
    workspace_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    caller: Caller = Depends(get_caller),
    database: Database = Depends(get_database),
) -> AuditLogsPage:
    # Callers only ever see their own trail.
    try:
        history = await get_audit_history(
            database,
            user_id=caller.user_id,
            workspace_id=workspace_id,
            limit=limit,
        )
    except SQLAlchemyError as exc:
        logger.warning("audit_history_query_failed user_id=%s", caller.user_id, exc_info=exc)
        raise HTTPException(
            status_code=503,
            detail={"code": "AUDIT_UNAVAILABLE", "message": "Audit history is unavailable"},
        ) from exc
    return AuditLogsPage(
        items=[_to_response(event) for event in history.items],
        counts=AuditCounts(**history.counts),
    )
