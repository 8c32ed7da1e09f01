"""Message model — a user prompt or an AI turn in a ChatSession."""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Index, String, Text, text
from sqlmodel import Column, Field, SQLModel

from analyst.models.base import TimestampMixin, load_json, new_uuid
from analyst.models.chat import ChatRead


class MessageStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    FETCHING_CONTEXT = "fetching_context"
    GENERATING = "generating"
    EXECUTING_TOOL = "executing_tool"
    COMPLETED = "completed"
    ERROR = "error"


class MessageKind(StrEnum):
    USER = "user"
    AI_ANSWER = "ai_answer"
    AI_ERROR = "ai_error"
    SYSTEM = "system"


TERMINAL_STATUSES = frozenset({MessageStatus.COMPLETED, MessageStatus.ERROR})
ACTIVE_STATUSES = frozenset(s for s in MessageStatus if s not in TERMINAL_STATUSES)

_ACTIVE_TURN_WHERE = text("status NOT IN ('completed', 'error')")


class Message(TimestampMixin, SQLModel, table=True):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_session_created", "session_id", "created_at"),
        Index(
            "uq_messages_session_idempotency",
            "session_id",
            "idempotency_key",
            unique=True,
        ),
        # At most one non-terminal message per session
        Index(
            "uq_messages_session_active_turn",
            "session_id",
            unique=True,
            postgresql_where=_ACTIVE_TURN_WHERE,
            sqlite_where=_ACTIVE_TURN_WHERE,
        ),
    )

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    session_id: uuid.UUID = Field(foreign_key="chat_sessions.id", nullable=False)
    user_id: uuid.UUID = Field(nullable=False, index=True)

    kind: str = Field(
        default=MessageKind.USER.value,
        sa_column=Column(String(20), nullable=False),
    )
    status: str = Field(
        default=MessageStatus.PENDING.value,
        sa_column=Column(String(20), nullable=False),
    )

    # User body; empty for AI messages
    text: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))

    # AI payload: {text, analysis_result, report_code, clarification, truncated}
    payload: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))

    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    duration_ms: int | None = Field(default=None)
    provider: str | None = Field(default=None, max_length=100)
    model: str | None = Field(default=None, max_length=200)

    dataset_ids: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))

    # Append-only list of {step, tool, arguments, result|error, error_code, latency_ms}
    tool_invocations: str = Field(
        default="[]", sa_column=Column(Text, nullable=False, server_default="[]")
    )

    idempotency_key: str | None = Field(default=None, max_length=200)

    @property
    def payload_dict(self) -> dict[str, Any]:
        return load_json(self.payload, {})

    @property
    def tool_invocation_list(self) -> list[dict[str, Any]]:
        return load_json(self.tool_invocations, [])

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ── Pydantic schemas ─────────────────────────────────────────

class MessageRead(SQLModel):
    id: uuid.UUID
    session_id: uuid.UUID
    kind: MessageKind
    status: MessageStatus
    text: str
    payload: dict[str, Any]
    error_message: str | None = None
    duration_ms: int | None = None
    provider: str | None = None
    model: str | None = None
    dataset_ids: list[str]
    tool_invocations: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, message: Message) -> "MessageRead":
        return cls(
            id=message.id,
            session_id=message.session_id,
            kind=MessageKind(message.kind),
            status=MessageStatus(message.status),
            text=message.text,
            payload=message.payload_dict,
            error_message=message.error_message,
            duration_ms=message.duration_ms,
            provider=message.provider,
            model=message.model,
            dataset_ids=load_json(message.dataset_ids, []),
            tool_invocations=message.tool_invocation_list,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )


class MessageCreate(SQLModel):
    text: str = Field(min_length=1, max_length=20000)
    dataset_ids: list[uuid.UUID] = Field(default_factory=list)
    idempotency_key: str | None = Field(default=None, max_length=200)


class SubmitResponse(SQLModel):
    user_message: MessageRead | None = None
    ai_message: MessageRead
    chat: ChatRead
