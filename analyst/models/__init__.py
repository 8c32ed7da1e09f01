"""Import all models so SQLModel.metadata picks them up."""

from analyst.models.chat import ChatCreate, ChatRead, ChatSession, ChatUpdate
from analyst.models.dataset import Dataset
from analyst.models.message import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Message,
    MessageCreate,
    MessageKind,
    MessageRead,
    MessageStatus,
    SubmitResponse,
)
from analyst.models.user import Team, User

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "ChatCreate",
    "ChatRead",
    "ChatSession",
    "ChatUpdate",
    "Dataset",
    "Message",
    "MessageCreate",
    "MessageKind",
    "MessageRead",
    "MessageStatus",
    "SubmitResponse",
    "Team",
    "User",
]
