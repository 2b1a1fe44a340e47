"""init audit logs, authorization challenges and embeddings

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # Append-only tool lifecycle rows; the compliance system of record.
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("invocation_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("tool_name", sa.String(length=100), nullable=True),
        sa.Column("agent_role", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("inputs", postgresql.JSONB(), nullable=True),
        sa.Column("outputs", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("workspace_id", sa.String(length=191), nullable=True),
        sa.Column("thread_id", sa.String(length=191), nullable=True),
        sa.Column("risk_level", sa.String(length=50), nullable=True),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("user_id", sa.String(length=191), nullable=False),
        sa.Column("user_email", sa.String(length=191), nullable=False),
    )
    op.create_index("ix_audit_logs_invocation_id", "audit_logs", ["invocation_id"], unique=False)
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"], unique=False)
    op.create_index(
        "ix_audit_logs_user_created_at",
        "audit_logs",
        ["user_id", sa.text("created_at DESC")],
        unique=False,
    )
    op.create_index(
        "ix_audit_logs_user_workspace_created_at",
        "audit_logs",
        ["user_id", "workspace_id", sa.text("created_at DESC")],
        unique=False,
    )

    op.create_table(
        "authorization_challenges",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=191), nullable=False),
        sa.Column("tool_name", sa.String(length=100), nullable=False),
        sa.Column("arguments_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("binding_message", sa.Text(), nullable=False),
        sa.Column("scopes", postgresql.JSONB(), nullable=True),
        sa.Column("audience", sa.String(length=255), nullable=True),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("provider_request_id", sa.String(length=255), nullable=True),
        sa.Column("poll_interval_s", sa.Float(), nullable=False, server_default="5"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_authorization_challenges_user_id", "authorization_challenges", ["user_id"], unique=False
    )
    op.create_index(
        "ix_authorization_challenges_state", "authorization_challenges", ["state"], unique=False
    )

    op.create_table(
        "embeddings",
        sa.Column("id", sa.String(length=191), primary_key=True),
        sa.Column("document_id", sa.String(length=191), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("embedding", Vector(1536), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_embeddings_document_id", "embeddings", ["document_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_embeddings_document_id", table_name="embeddings")
    op.drop_table("embeddings")
    op.drop_index("ix_authorization_challenges_state", table_name="authorization_challenges")
    op.drop_index("ix_authorization_challenges_user_id", table_name="authorization_challenges")
    op.drop_table("authorization_challenges")
    op.drop_index("ix_audit_logs_user_workspace_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_user_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_user_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_invocation_id", table_name="audit_logs")
    op.drop_table("audit_logs")
