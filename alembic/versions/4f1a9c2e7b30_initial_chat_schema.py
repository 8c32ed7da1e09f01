"""initial chat schema

Revision ID: 4f1a9c2e7b30
Revises: 
Create Date: 2026-10-18 09:12:41.118203

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4f1a9c2e7b30'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_ACTIVE_TURN_WHERE = sa.text("status NOT IN ('completed', 'error')")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "teams",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False, server_default=""),
        sa.Column("locale", sa.String(20), nullable=False, server_default=""),
        sa.Column("business_context", sa.Text(), nullable=False, server_default=""),
        *_timestamps(),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("team_id", sa.Uuid(), sa.ForeignKey("teams.id"), nullable=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("currency", sa.String(10), nullable=False, server_default=""),
        sa.Column("locale", sa.String(20), nullable=False, server_default=""),
        sa.Column("business_context", sa.Text(), nullable=False, server_default=""),
        sa.Column("preferred_model", sa.String(200), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_team_id", "users", ["team_id"])
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "datasets",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("columns", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("storage_path", sa.String(1000), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_datasets_user_id", "datasets", ["user_id"])
    op.create_index("ix_datasets_team_id", "datasets", ["team_id"])

    op.create_table(
        "chat_sessions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("dataset_ids", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_chat_sessions_user_id", "chat_sessions", ["user_id"])
    op.create_index("ix_chat_sessions_team_id", "chat_sessions", ["team_id"])
    op.create_index("ix_chat_sessions_user_updated", "chat_sessions", ["user_id", "updated_at"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("session_id", sa.Uuid(), sa.ForeignKey("chat_sessions.id"), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("text", sa.Text(), nullable=False, server_default=""),
        sa.Column("payload", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("provider", sa.String(100), nullable=True),
        sa.Column("model", sa.String(200), nullable=True),
        sa.Column("dataset_ids", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("tool_invocations", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("idempotency_key", sa.String(200), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_messages_user_id", "messages", ["user_id"])
    op.create_index("ix_messages_session_created", "messages", ["session_id", "created_at"])
    op.create_index(
        "uq_messages_session_idempotency",
        "messages",
        ["session_id", "idempotency_key"],
        unique=True,
    )
    op.create_index(
        "uq_messages_session_active_turn",
        "messages",
        ["session_id"],
        unique=True,
        postgresql_where=_ACTIVE_TURN_WHERE,
        sqlite_where=_ACTIVE_TURN_WHERE,
    )


def downgrade() -> None:
    op.drop_index("uq_messages_session_active_turn", table_name="messages")
    op.drop_index("uq_messages_session_idempotency", table_name="messages")
    op.drop_index("ix_messages_session_created", table_name="messages")
    op.drop_index("ix_messages_user_id", table_name="messages")
    op.drop_table("messages")
    op.drop_table("chat_sessions")
    op.drop_table("datasets")
    op.drop_table("users")
    op.drop_table("teams")
