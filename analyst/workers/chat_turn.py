"""Worker entry — claims a signed chat-turn job and runs the agent loop."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from sqlmodel import select

from analyst.core.config import get_settings
from analyst.core.database import async_session_factory
from analyst.core.errors import NotFound, WorkerAuthError
from analyst.core.security import verify_job
from analyst.models.base import utcnow
from analyst.models.chat import ChatSession
from analyst.models.message import MessageKind, MessageStatus
from analyst.services.agent import AgentRunner
from analyst.services.conversation_store import (
    fail_stale_turns,
    get_message,
    prompt_for_turn,
    transition_message,
)
from analyst.services.events import get_event_bus

logger = logging.getLogger(__name__)


async def on_worker_invocation(payload: dict) -> dict:
    """Run one turn. Duplicate deliveries are acknowledged without side effects.

    Raises WorkerAuthError for an unsigned or tampered job. Turn failures
    are recorded on the message and reported in the return value, never raised.
    """
    session_id = payload.get("session_id") or ""
    message_id = payload.get("message_id") or ""
    if not verify_job(session_id, message_id, payload.get("signature")):
        logger.warning("Rejected chat-turn job with invalid signature for message %s", message_id)
        raise WorkerAuthError()

    sid = uuid.UUID(session_id)
    mid = uuid.UUID(message_id)

    async with async_session_factory() as session:
        try:
            claimed = await transition_message(
                session, mid, MessageStatus.PENDING, MessageStatus.PROCESSING
            )
        except NotFound:
            logger.info("Message %s no longer exists; skipping", mid)
            return {"status": "skipped", "message_id": message_id}
        if not claimed:
            logger.info("Message %s already claimed; skipping duplicate delivery", mid)
            return {"status": "skipped", "message_id": message_id}

        message = await get_message(session, mid, sid)
        result = await session.execute(select(ChatSession).where(ChatSession.id == sid))
        chat_session = result.scalar_one_or_none()
        user_message = await prompt_for_turn(session, message)
        if chat_session is None or user_message is None:
            logger.error("Turn %s has no session or prompt; failing it", mid)
            await transition_message(
                session,
                mid,
                MessageStatus.PROCESSING,
                MessageStatus.ERROR,
                {"kind": MessageKind.AI_ERROR, "error_message": "The prompt for this response was not found."},
            )
            return {"status": "error", "message_id": message_id}

        runner = AgentRunner(session, chat_session, message, user_message, get_event_bus())
        outcome = await runner.run()

    logger.info("Turn %s finished with %s", mid, outcome)
    return {"status": str(outcome), "message_id": message_id}


async def run_chat_turn(ctx: dict, payload: dict) -> dict:
    """ARQ task: run the chat turn described by a signed job payload."""
    return await on_worker_invocation(payload)


async def sweep_stale_turns(ctx: dict) -> int:
    """ARQ cron: fail turns whose worker died or was killed before finishing them."""
    stale_before = utcnow() - timedelta(seconds=get_settings().stale_turn_seconds)
    async with async_session_factory() as session:
        return await fail_stale_turns(session, stale_before)
