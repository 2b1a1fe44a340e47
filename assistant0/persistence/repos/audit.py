from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from assistant0.domain.models import AuditEvent


async def append_event(session: AsyncSession, event: AuditEvent) -> AuditEvent:
    # Audit rows are insert-only; corrections are new rows, never edits.
    session.add(event)
    await session.flush()
    return event


async def list_events(
    session: AsyncSession,
    *,
    user_id: str,
    workspace_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    # Scope every query to the caller so histories never leak across users.
    stmt = select(AuditEvent).where(AuditEvent.user_id == user_id)
    if workspace_id:
        stmt = stmt.where(AuditEvent.workspace_id == workspace_id)
    if status:
        stmt = stmt.where(AuditEvent.status == status)
    # Concurrent invocations interleave writes; present by creation time, not write order.
    stmt = stmt.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_by_status(
    session: AsyncSession,
    *,
    user_id: str,
    workspace_id: str | None = None,
) -> dict[str, int]:
    stmt = (
        select(AuditEvent.status, func.count())
        .where(AuditEvent.user_id == user_id)
        .group_by(AuditEvent.status)
    )
    if workspace_id:
        stmt = stmt.where(AuditEvent.workspace_id == workspace_id)
    result = await session.execute(stmt)
    return {str(status): int(count) for status, count in result.all()}


async def list_invocation_events(session: AsyncSession, *, invocation_id: str) -> list[AuditEvent]:
    # Reconstruct one invocation's lifecycle in the order it happened.
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.invocation_id == invocation_id)
        .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
