"""Task dispatcher — records a turn and hands it to the worker substrate.

Two substrates:
  - "arq" (default): the job goes to the Redis queue and a worker process
    picks it up. The job id is derived from the message id, so a retried
    enqueue of the same turn is deduplicated by arq.
  - "inline": the turn runs as a task of the current process (development).

Every job carries an HMAC signature; the worker entry refuses unsigned jobs.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from arq.connections import ArqRedis, create_pool
from sqlalchemy.ext.asyncio import AsyncSession

from analyst.core.config import get_settings
from analyst.core.database import async_session_factory
from analyst.core.errors import DispatchError, SessionBusy
from analyst.core.security import sign_job
from analyst.models.base import utcnow
from analyst.models.chat import ChatSession
from analyst.models.message import Message, MessageKind, MessageStatus
from analyst.services.conversation_store import (
    append_user_message,
    create_placeholder_ai_message,
    fail_stale_turns,
    find_turn_by_idempotency_key,
    latest_active_message,
    list_messages,
    prompt_for_turn,
    transition_message,
)

logger = logging.getLogger(__name__)

JOB_NAME = "run_chat_turn"

# Strong references to inline turns so they are not garbage collected mid-run
_inline_tasks: set[asyncio.Task] = set()


@dataclass
class SubmittedTurn:
    user_message: Message | None
    ai_message: Message
    created: bool
    first_turn: bool = False


async def submit_turn(
    session: AsyncSession,
    chat_session: ChatSession,
    user_id: uuid.UUID,
    text: str,
    dataset_ids: list[str],
    idempotency_key: str | None = None,
) -> SubmittedTurn:
    """Record the prompt and its pending AI placeholder, or find the existing turn.

    A known ``idempotency_key`` returns the turn it created earlier with
    ``created=False``. Raises SessionBusy while another turn is in flight;
    a turn left active by a dead worker is failed first.
    """
    if idempotency_key:
        existing = await find_turn_by_idempotency_key(session, chat_session.id, idempotency_key)
        if existing is not None:
            prompt = await prompt_for_turn(session, existing)
            return SubmittedTurn(user_message=prompt, ai_message=existing, created=False)

    stale_before = utcnow() - timedelta(seconds=get_settings().stale_turn_seconds)
    await fail_stale_turns(session, stale_before, chat_session.id)
    if await latest_active_message(session, chat_session.id) is not None:
        raise SessionBusy()

    first_turn = not await list_messages(session, chat_session.id, limit=1)
    user_message = await append_user_message(session, chat_session, user_id, text, dataset_ids)
    ai_message = await create_placeholder_ai_message(
        session,
        chat_session,
        user_id,
        idempotency_key=idempotency_key,
        after=user_message.created_at,
    )
    await session.commit()
    logger.info("Submitted turn %s in session %s", ai_message.id, chat_session.id)
    return SubmittedTurn(
        user_message=user_message,
        ai_message=ai_message,
        created=True,
        first_turn=first_turn,
    )


def build_job_payload(session_id: uuid.UUID, message_id: uuid.UUID) -> dict[str, str]:
    return {
        "session_id": str(session_id),
        "message_id": str(message_id),
        "signature": sign_job(str(session_id), str(message_id)),
    }


async def _enqueue_arq(payload: dict[str, str]) -> None:
    from analyst.workers.main import _redis_settings

    redis: ArqRedis = await create_pool(_redis_settings())
    try:
        await redis.enqueue_job(JOB_NAME, payload, _job_id=f"turn:{payload['message_id']}")
    finally:
        await redis.aclose()


def _start_inline(payload: dict[str, str]) -> None:
    from analyst.workers.chat_turn import on_worker_invocation

    task = asyncio.create_task(on_worker_invocation(payload))
    _inline_tasks.add(task)
    task.add_done_callback(_inline_tasks.discard)


async def _mark_dispatch_failed(message_id: uuid.UUID) -> None:
    async with async_session_factory() as session:
        await transition_message(
            session,
            message_id,
            MessageStatus.PENDING,
            MessageStatus.ERROR,
            {"kind": MessageKind.AI_ERROR, "error_message": DispatchError.default_detail},
        )


async def enqueue(session_id: uuid.UUID, message_id: uuid.UUID) -> None:
    """Hand a pending turn to the configured substrate.

    Raises SessionBusy if a different turn of the session is still in
    flight, and DispatchError (after failing the placeholder) if the
    substrate rejects the job.
    """
    async with async_session_factory() as session:
        active = await latest_active_message(session, session_id)
    if active is not None and active.id != message_id:
        raise SessionBusy()

    payload = build_job_payload(session_id, message_id)
    settings = get_settings()
    try:
        if settings.dispatch_mode == "inline":
            _start_inline(payload)
        else:
            await _enqueue_arq(payload)
    except Exception as exc:
        logger.exception("Failed to enqueue turn %s", message_id)
        await _mark_dispatch_failed(message_id)
        raise DispatchError() from exc
    logger.info("Enqueued turn %s (%s)", message_id, settings.dispatch_mode)
