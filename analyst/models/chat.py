"""ChatSession model — a conversation owned by one user."""

import uuid
from datetime import datetime

from sqlalchemy import Index, Text
from sqlmodel import Column, Field, SQLModel

from analyst.models.base import TimestampMixin, load_json, new_uuid

DEFAULT_TITLE = "New Chat"


class ChatSession(TimestampMixin, SQLModel, table=True):
    __tablename__ = "chat_sessions"
    __table_args__ = (
        Index("ix_chat_sessions_user_updated", "user_id", "updated_at"),
    )

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    user_id: uuid.UUID = Field(nullable=False, index=True)
    team_id: uuid.UUID | None = Field(default=None, index=True)

    title: str = Field(default=DEFAULT_TITLE, max_length=500)

    # Dataset IDs locked in by the first message (JSON array of UUID strings)
    dataset_ids: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))

    # Tombstone: set before the cascade delete so in-flight turns can no
    # longer transition any of this session's messages.
    deleted_at: datetime | None = Field(default=None)

    @property
    def dataset_id_list(self) -> list[str]:
        return load_json(self.dataset_ids, [])


# ── Pydantic schemas ─────────────────────────────────────────

class ChatCreate(SQLModel):
    title: str | None = Field(default=None, max_length=500)
    team_id: uuid.UUID | None = None


class ChatUpdate(SQLModel):
    title: str = Field(min_length=1, max_length=500)


class ChatRead(SQLModel):
    id: uuid.UUID
    user_id: uuid.UUID
    team_id: uuid.UUID | None = None
    title: str
    dataset_ids: list[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, chat_session: ChatSession) -> "ChatRead":
        return cls(
            id=chat_session.id,
            user_id=chat_session.user_id,
            team_id=chat_session.team_id,
            title=chat_session.title,
            dataset_ids=chat_session.dataset_id_list,
            created_at=chat_session.created_at,
            updated_at=chat_session.updated_at,
        )
