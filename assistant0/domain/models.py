from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from assistant0.core.config import EMBED_DIM


# JSONB on Postgres, plain JSON elsewhere so tests can run on SQLite.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
SerialId = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class AuditEvent(Base):
    __tablename__ = "audit_logs"

    # Use a monotonic numeric id for stable tie-breaking within one timestamp.
    id: Mapped[int] = mapped_column(SerialId, primary_key=True, autoincrement=True)
    # Every lifecycle row of one tool call shares the invocation id.
    invocation_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    action: Mapped[str] = mapped_column(String(100))
    tool_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    agent_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(50))
    inputs: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    outputs: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    workspace_id: Mapped[str | None] = mapped_column(String(191), nullable=True)
    thread_id: Mapped[str | None] = mapped_column(String(191), nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(50), nullable=True)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Client-side timestamp keeps sub-second ordering across dialects.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )
    user_id: Mapped[str] = mapped_column(String(191), index=True)
    user_email: Mapped[str] = mapped_column(String(191))


class AuthorizationChallenge(Base):
    __tablename__ = "authorization_challenges"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(191), index=True)
    # Bind approvals to exactly one tool call so they cannot be replayed elsewhere.
    tool_name: Mapped[str] = mapped_column(String(100))
    arguments_fingerprint: Mapped[str] = mapped_column(String(64))
    binding_message: Mapped[str] = mapped_column(Text)
    scopes: Mapped[list[str]] = mapped_column(JsonType, default=list)
    audience: Mapped[str | None] = mapped_column(String(255), nullable=True)
    state: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    # Identity provider request handle used to poll for the user's decision.
    provider_request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    poll_interval_s: Mapped[float] = mapped_column(Float, default=5.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_polled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when an approved challenge authorizes its one bound execution.
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Delegated credential issued with the approval; cleared once the approval is consumed.
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)


class Embedding(Base):
    __tablename__ = "embeddings"

    id: Mapped[str] = mapped_column(String(191), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(191), index=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text)
    # Keep vector dimension aligned with embedding generation and retrieval.
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBED_DIM))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )


Index("ix_audit_logs_user_created_at", AuditEvent.user_id, AuditEvent.created_at.desc())
Index(
    "ix_audit_logs_user_workspace_created_at",
    AuditEvent.user_id,
    AuditEvent.workspace_id,
    AuditEvent.created_at.desc(),
)
