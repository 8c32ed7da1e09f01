"""Conversation store — sessions, messages and the conditional status transition.

Every mutation of an AI message after it is created goes through
``transition_message``: a single ``UPDATE ... WHERE status IN (...)`` whose
row count decides whether the caller still owns the turn. Together with the
partial unique index on ``messages`` this is the only coordination primitive
between concurrent requests and worker invocations.
"""

import logging
import uuid
from collections.abc import Collection
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from analyst.core.errors import (
    Forbidden,
    NotFound,
    PersistenceConflict,
    SessionBusy,
    ValidationError,
)
from analyst.models.base import dump_json, load_json, utcnow
from analyst.models.chat import DEFAULT_TITLE, ChatSession
from analyst.models.message import (
    ACTIVE_STATUSES,
    Message,
    MessageKind,
    MessageStatus,
)

logger = logging.getLogger(__name__)

TITLE_FROM_PROMPT_CHARS = 100
STALE_TURN_MESSAGE = "The response did not finish. Please try again."

_PATCHABLE_FIELDS = {
    "payload",
    "error_message",
    "duration_ms",
    "provider",
    "model",
    "tool_invocations",
    "kind",
}
_JSON_FIELDS = {"payload", "tool_invocations"}


# ── Sessions ──────────────────────────────────────────────────

async def create_session(
    session: AsyncSession,
    user_id: uuid.UUID,
    team_id: uuid.UUID | None = None,
    title: str | None = None,
) -> ChatSession:
    chat_session = ChatSession(user_id=user_id, team_id=team_id, title=title or DEFAULT_TITLE)
    session.add(chat_session)
    await session.commit()
    await session.refresh(chat_session)
    return chat_session


async def list_sessions(
    session: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> list[ChatSession]:
    stmt = (
        select(ChatSession)
        .where(ChatSession.user_id == user_id, col(ChatSession.deleted_at).is_(None))
        .order_by(col(ChatSession.updated_at).desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_session(
    session: AsyncSession,
    session_id: uuid.UUID,
    user_id: uuid.UUID,
) -> ChatSession:
    """Load a live session owned by ``user_id``."""
    stmt = (
        select(ChatSession)
        .where(ChatSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    chat_session = result.scalar_one_or_none()
    if chat_session is None or chat_session.deleted_at is not None:
        raise NotFound("Chat not found")
    if chat_session.user_id != user_id:
        raise Forbidden()
    return chat_session


async def rename_session(
    session: AsyncSession,
    session_id: uuid.UUID,
    user_id: uuid.UUID,
    title: str,
) -> ChatSession:
    chat_session = await get_session(session, session_id, user_id)
    chat_session.title = title[:500]
    chat_session.updated_at = utcnow()
    session.add(chat_session)
    await session.commit()
    await session.refresh(chat_session)
    return chat_session


async def delete_session(
    session: AsyncSession,
    session_id: uuid.UUID,
    user_id: uuid.UUID,
) -> None:
    """Tombstone the session, then remove it and its messages.

    The tombstone is committed on its own first: from that point on no
    conditional transition can match a message of this session, so a turn
    still running in a worker stops writing before the rows disappear.
    """
    chat_session = await get_session(session, session_id, user_id)
    chat_session.deleted_at = utcnow()
    session.add(chat_session)
    await session.commit()

    await session.execute(delete(Message).where(col(Message.session_id) == session_id))
    await session.execute(delete(ChatSession).where(col(ChatSession.id) == session_id))
    await session.commit()
    logger.info("Deleted chat session %s", session_id)


async def session_is_live(session: AsyncSession, session_id: uuid.UUID) -> bool:
    stmt = select(ChatSession.id).where(
        ChatSession.id == session_id, col(ChatSession.deleted_at).is_(None)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


# ── Ingestion ─────────────────────────────────────────────────

async def has_completed_turn(session: AsyncSession, session_id: uuid.UUID) -> bool:
    stmt = select(func.count()).select_from(Message).where(
        Message.session_id == session_id,
        Message.kind == MessageKind.AI_ANSWER.value,
        Message.status == MessageStatus.COMPLETED.value,
    )
    result = await session.execute(stmt)
    return result.scalar_one() > 0


async def append_user_message(
    session: AsyncSession,
    chat_session: ChatSession,
    user_id: uuid.UUID,
    text: str,
    dataset_ids: list[str],
) -> Message:
    """Record the user's prompt and lock the session's dataset selection.

    The first message must select at least one dataset. Once the session
    holds a completed AI answer its datasets can no longer change. Flushes
    but does not commit.
    """
    requested = [str(d) for d in dataset_ids]
    locked = chat_session.dataset_id_list

    if not locked:
        if not requested:
            raise ValidationError("Select at least one dataset to start the conversation.")
        chat_session.dataset_ids = dump_json(requested)
    elif requested and set(requested) != set(locked):
        if await has_completed_turn(session, chat_session.id):
            raise ValidationError(
                "Datasets cannot be changed once the conversation has started. "
                "Start a new chat to analyze different datasets."
            )
        chat_session.dataset_ids = dump_json(requested)

    if chat_session.title == DEFAULT_TITLE:
        chat_session.title = text[:TITLE_FROM_PROMPT_CHARS]
    chat_session.updated_at = utcnow()
    session.add(chat_session)

    user_message = Message(
        session_id=chat_session.id,
        user_id=user_id,
        kind=MessageKind.USER.value,
        status=MessageStatus.COMPLETED.value,
        text=text,
        dataset_ids=chat_session.dataset_ids,
    )
    session.add(user_message)
    await session.flush()
    return user_message


async def create_placeholder_ai_message(
    session: AsyncSession,
    chat_session: ChatSession,
    user_id: uuid.UUID,
    idempotency_key: str | None = None,
    after: datetime | None = None,
) -> Message:
    """Insert the ``pending`` AI message that the worker will claim.

    ``after`` is the creation time of the prompt this turn answers; the
    placeholder always sorts strictly after it.
    """
    created_at = utcnow()
    if after is not None and created_at <= after:
        created_at = after + timedelta(microseconds=1)

    message = Message(
        session_id=chat_session.id,
        user_id=user_id,
        kind=MessageKind.AI_ANSWER.value,
        status=MessageStatus.PENDING.value,
        dataset_ids=chat_session.dataset_ids,
        idempotency_key=idempotency_key,
        created_at=created_at,
        updated_at=created_at,
    )
    session.add(message)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise SessionBusy() from exc
    return message


# ── Conditional transition ────────────────────────────────────

def _encode_patch(patch: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in patch.items():
        if key not in _PATCHABLE_FIELDS:
            raise ValueError(f"Field {key!r} cannot be patched")
        if key in _JSON_FIELDS:
            values[key] = dump_json(value)
        elif key == "kind":
            values[key] = str(value)
        else:
            values[key] = value
    return values


async def transition_message(
    session: AsyncSession,
    message_id: uuid.UUID,
    from_status: MessageStatus | Collection[MessageStatus],
    to_status: MessageStatus,
    patch: dict[str, Any] | None = None,
    raise_on_conflict: bool = False,
) -> bool:
    """Move a message to ``to_status`` iff it is currently in ``from_status``.

    Returns True when this call performed the transition. A message whose
    session has been tombstoned never matches.
    """
    if isinstance(from_status, str):
        allowed = [str(from_status)]
    else:
        allowed = [str(s) for s in from_status]

    values = _encode_patch(patch or {})
    values["status"] = str(to_status)
    values["updated_at"] = utcnow()

    live_sessions = select(ChatSession.id).where(col(ChatSession.deleted_at).is_(None))
    stmt = (
        update(Message)
        .where(
            col(Message.id) == message_id,
            col(Message.status).in_(allowed),
            col(Message.session_id).in_(live_sessions),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()

    if result.rowcount == 1:
        return True

    exists = await session.execute(select(Message.id).where(Message.id == message_id))
    if exists.scalar_one_or_none() is None:
        raise NotFound("Message not found")

    logger.info(
        "Transition %s -> %s rejected for message %s", allowed, to_status, message_id
    )
    if raise_on_conflict:
        raise PersistenceConflict()
    return False


async def fail_stale_turns(
    session: AsyncSession,
    stale_before: datetime,
    session_id: uuid.UUID | None = None,
) -> int:
    """Fail in-flight AI messages that have not changed since ``stale_before``.

    A worker that died mid-turn leaves its message active, which would keep
    the session busy forever. Returns the number of messages failed.
    """
    stmt = update(Message).where(
        col(Message.status).in_([str(s) for s in ACTIVE_STATUSES]),
        col(Message.updated_at) < stale_before,
    )
    if session_id is not None:
        stmt = stmt.where(col(Message.session_id) == session_id)
    stmt = stmt.values(
        status=MessageStatus.ERROR.value,
        kind=MessageKind.AI_ERROR.value,
        error_message=STALE_TURN_MESSAGE,
        updated_at=utcnow(),
    ).execution_options(synchronize_session=False)

    result = await session.execute(stmt)
    await session.commit()
    if result.rowcount:
        logger.warning("Failed %d stale turn(s) not updated since %s", result.rowcount, stale_before)
    return result.rowcount


# ── Reads ─────────────────────────────────────────────────────

async def get_message(
    session: AsyncSession,
    message_id: uuid.UUID,
    session_id: uuid.UUID | None = None,
) -> Message:
    stmt = (
        select(Message)
        .where(Message.id == message_id)
        .execution_options(populate_existing=True)
    )
    if session_id is not None:
        stmt = stmt.where(Message.session_id == session_id)
    result = await session.execute(stmt)
    message = result.scalar_one_or_none()
    if message is None:
        raise NotFound("Message not found")
    return message


async def list_messages(
    session: AsyncSession,
    session_id: uuid.UUID,
    limit: int = 100,
    offset: int = 0,
) -> list[Message]:
    stmt = (
        select(Message)
        .where(Message.session_id == session_id)
        .order_by(col(Message.created_at).asc())
        .limit(limit)
        .offset(offset)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def find_turn_by_idempotency_key(
    session: AsyncSession,
    session_id: uuid.UUID,
    idempotency_key: str,
) -> Message | None:
    stmt = (
        select(Message)
        .where(Message.session_id == session_id, Message.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def prompt_for_turn(session: AsyncSession, ai_message: Message) -> Message | None:
    """The user message an AI turn answers (the latest one created before it)."""
    stmt = (
        select(Message)
        .where(
            Message.session_id == ai_message.session_id,
            Message.kind == MessageKind.USER.value,
            col(Message.created_at) < ai_message.created_at,
        )
        .order_by(col(Message.created_at).desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def latest_active_message(session: AsyncSession, session_id: uuid.UUID) -> Message | None:
    stmt = (
        select(Message)
        .where(
            Message.session_id == session_id,
            col(Message.status).in_([str(s) for s in ACTIVE_STATUSES]),
        )
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def latest_ai_message(session: AsyncSession, session_id: uuid.UUID) -> Message | None:
    stmt = (
        select(Message)
        .where(
            Message.session_id == session_id,
            col(Message.kind).in_([MessageKind.AI_ANSWER.value, MessageKind.AI_ERROR.value]),
        )
        .order_by(col(Message.created_at).desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def load_history(
    session: AsyncSession,
    session_id: uuid.UUID,
    exclude_message_id: uuid.UUID | None = None,
    limit: int = 50,
) -> list[dict[str, str]]:
    """Prior completed turns as ``{role, content}`` dicts, oldest first."""
    stmt = (
        select(Message)
        .where(
            Message.session_id == session_id,
            Message.status == MessageStatus.COMPLETED.value,
            col(Message.kind).in_(
                [MessageKind.USER.value, MessageKind.AI_ANSWER.value, MessageKind.SYSTEM.value]
            ),
        )
        .order_by(col(Message.created_at).desc())
        .limit(limit)
    )
    if exclude_message_id is not None:
        stmt = stmt.where(Message.id != exclude_message_id)
    result = await session.execute(stmt)
    messages = list(reversed(result.scalars().all()))

    history: list[dict[str, str]] = []
    for m in messages:
        if m.kind == MessageKind.USER.value:
            history.append({"role": "user", "content": m.text})
        elif m.kind == MessageKind.SYSTEM.value:
            history.append({"role": "system", "content": m.text})
        else:
            content = m.payload_dict.get("text") or ""
            if content:
                history.append({"role": "assistant", "content": content})
    return history


async def previous_artifacts(
    session: AsyncSession,
    session_id: uuid.UUID,
) -> tuple[Any | None, str | None]:
    """Most recent ``analysis_result`` and ``report_code`` of completed answers."""
    stmt = (
        select(Message.payload)
        .where(
            Message.session_id == session_id,
            Message.kind == MessageKind.AI_ANSWER.value,
            Message.status == MessageStatus.COMPLETED.value,
        )
        .order_by(col(Message.created_at).desc())
        .limit(20)
    )
    result = await session.execute(stmt)

    analysis_result = None
    report_code = None
    for raw in result.scalars().all():
        payload = load_json(raw, {})
        if analysis_result is None and payload.get("analysis_result") is not None:
            analysis_result = payload["analysis_result"]
        if report_code is None and payload.get("report_code"):
            report_code = payload["report_code"]
        if analysis_result is not None and report_code is not None:
            break
    return analysis_result, report_code
