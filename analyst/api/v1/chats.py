"""Chat endpoints — sessions, message submission and the SSE event stream."""

import logging
import uuid
from functools import partial
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse

from analyst.api.deps import Auth, Session, StreamAuth
from analyst.core.database import async_session_factory
from analyst.models.chat import ChatCreate, ChatRead, ChatSession, ChatUpdate
from analyst.models.message import Message, MessageCreate, MessageRead, SubmitResponse
from analyst.services import conversation_store as store
from analyst.services.dispatcher import SubmittedTurn, enqueue, submit_turn
from analyst.services.events import EventType, RunEvent, get_event_bus
from analyst.services.gateway import relay_turn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["chats"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


# ── Sessions ──────────────────────────────────────────────────

@router.post("", response_model=ChatRead, status_code=status.HTTP_201_CREATED)
async def create_chat(body: ChatCreate, auth: Auth, session: Session) -> ChatRead:
    chat_session = await store.create_session(session, auth.user_id, body.team_id, body.title)
    return ChatRead.from_model(chat_session)


@router.get("", response_model=list[ChatRead])
async def list_chats(
    auth: Auth,
    session: Session,
    limit: int = 50,
    offset: int = 0,
) -> list[ChatRead]:
    """List the caller's chat sessions, most recently active first."""
    sessions = await store.list_sessions(session, auth.user_id, min(limit, 100), offset)
    return [ChatRead.from_model(c) for c in sessions]


@router.get("/{chat_id}", response_model=ChatRead)
async def get_chat(chat_id: uuid.UUID, auth: Auth, session: Session) -> ChatRead:
    return ChatRead.from_model(await store.get_session(session, chat_id, auth.user_id))


@router.patch("/{chat_id}", response_model=ChatRead)
async def rename_chat(chat_id: uuid.UUID, body: ChatUpdate, auth: Auth, session: Session) -> ChatRead:
    chat_session = await store.rename_session(session, chat_id, auth.user_id, body.title)
    return ChatRead.from_model(chat_session)


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chat(chat_id: uuid.UUID, auth: Auth, session: Session) -> Response:
    """Delete a chat and its messages. A response still being generated is abandoned."""
    await store.delete_session(session, chat_id, auth.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Messages ──────────────────────────────────────────────────

def _submit_response(turn: SubmittedTurn, chat_session: ChatSession) -> SubmitResponse:
    return SubmitResponse(
        user_message=MessageRead.from_model(turn.user_message) if turn.user_message else None,
        ai_message=MessageRead.from_model(turn.ai_message),
        chat=ChatRead.from_model(chat_session),
    )


@router.post(
    "/{chat_id}/messages",
    response_model=SubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_message(
    chat_id: uuid.UUID,
    body: MessageCreate,
    auth: Auth,
    session: Session,
) -> SubmitResponse:
    """Submit a prompt. The answer is produced asynchronously; follow it on /stream.

    Returns 409 while another response in this chat is still being generated.
    """
    chat_session = await store.get_session(session, chat_id, auth.user_id)
    turn = await submit_turn(
        session,
        chat_session,
        auth.user_id,
        body.text,
        [str(d) for d in body.dataset_ids],
        body.idempotency_key,
    )
    if turn.created:
        await enqueue(chat_session.id, turn.ai_message.id)
    return _submit_response(turn, chat_session)


@router.get("/{chat_id}/messages", response_model=list[MessageRead])
async def list_messages(
    chat_id: uuid.UUID,
    auth: Auth,
    session: Session,
    limit: int = 100,
    offset: int = 0,
) -> list[MessageRead]:
    """Messages of a chat in creation order."""
    await store.get_session(session, chat_id, auth.user_id)
    messages = await store.list_messages(session, chat_id, min(limit, 500), offset)
    return [MessageRead.from_model(m) for m in messages]


@router.get("/{chat_id}/messages/{message_id}", response_model=MessageRead)
async def get_message(
    chat_id: uuid.UUID,
    message_id: uuid.UUID,
    auth: Auth,
    session: Session,
) -> MessageRead:
    await store.get_session(session, chat_id, auth.user_id)
    return MessageRead.from_model(await store.get_message(session, message_id, chat_id))


# ── SSE stream ────────────────────────────────────────────────

def _split_ids(values: list[str]) -> list[str]:
    ids: list[str] = []
    for value in values:
        ids.extend(v.strip() for v in value.split(",") if v.strip())
    return ids


def _message_event(event_type: EventType, message: Message) -> RunEvent:
    return RunEvent(
        type=event_type,
        session_id=str(message.session_id),
        turn_id=str(message.id),
        payload={"message": MessageRead.from_model(message).model_dump(mode="json")},
    )


@router.get("/{chat_id}/stream")
async def stream_chat(
    chat_id: uuid.UUID,
    auth: StreamAuth,
    session: Session,
    prompt_text: Annotated[str | None, Query(alias="promptText", max_length=20000)] = None,
    selected_dataset_ids: Annotated[list[str], Query(alias="selectedDatasetIds")] = [],  # noqa: B006
    idempotency_key: Annotated[str | None, Query(alias="idempotencyKey", max_length=200)] = None,
) -> StreamingResponse:
    """Stream a turn's events as Server-Sent Events.

    With ``promptText`` a new turn is submitted (or, with a known
    ``idempotencyKey``, the earlier turn is re-attached). Without it the
    latest turn of the chat is observed. All validation happens before the
    stream opens, so errors surface as plain HTTP errors.
    """
    chat_session = await store.get_session(session, chat_id, auth.user_id)
    preamble: list[RunEvent] = []
    on_subscribed = None

    if prompt_text:
        turn = await submit_turn(
            session,
            chat_session,
            auth.user_id,
            prompt_text,
            _split_ids(selected_dataset_ids),
            idempotency_key,
        )
        ai_message = turn.ai_message
        if turn.created:
            if turn.first_turn:
                preamble.append(RunEvent(
                    type=EventType.SESSION_CREATED,
                    session_id=str(chat_session.id),
                    turn_id=str(ai_message.id),
                    payload={"chat": ChatRead.from_model(chat_session).model_dump(mode="json")},
                ))
            preamble.append(_message_event(EventType.USER_MESSAGE_CREATED, turn.user_message))
            on_subscribed = partial(enqueue, chat_session.id, ai_message.id)
    else:
        ai_message = await store.latest_ai_message(session, chat_session.id)
        if ai_message is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="This chat has no response to follow",
            )
    preamble.append(_message_event(EventType.AI_MESSAGE_CREATED, ai_message))

    return StreamingResponse(
        relay_turn(
            get_event_bus(),
            async_session_factory,
            chat_session.id,
            ai_message.id,
            preamble=preamble,
            on_subscribed=on_subscribed,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
