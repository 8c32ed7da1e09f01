"""Agent run loop — one AI turn from claimed placeholder to terminal message.

Flow:
  1. processing -> fetching_context: assemble context, load and condense history
  2. fetching_context -> generating: ask the provider what to do next
  3. text answer   -> stream tokens, finalize as completed
     tool call     -> generating -> executing_tool -> generating, loop to 2
  4. bounds (tool calls, wall clock, tool errors) end the loop early

The loop owns the AI message while it runs: every status change is a
conditional transition from the status it last wrote, so a duplicate worker,
a deleted session or a crashed-and-recovered attempt can never finalize the
same turn twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from analyst.core.config import Settings, get_settings
from analyst.core.errors import (
    ContextUnavailable,
    NotFound,
    PersistenceConflict,
    ProviderError,
    ToolError,
)
from analyst.models.chat import ChatSession
from analyst.models.message import (
    ACTIVE_STATUSES,
    Message,
    MessageKind,
    MessageRead,
    MessageStatus,
)
from analyst.services import provider
from analyst.services.context import assemble_context
from analyst.services.conversation_store import (
    get_message,
    load_history,
    session_is_live,
    transition_message,
)
from analyst.services.events import EventBus, EventType, RunEvent
from analyst.services.provider import TokenStream, ToolCallRequest
from analyst.services.tools import ToolContext, ToolRegistry, build_default_registry

logger = logging.getLogger(__name__)

PROVIDER_UNAVAILABLE = "The assistant is temporarily unavailable. Please try again."
UNEXPECTED_ERROR = "Something went wrong while generating the response. Please try again."
TOOL_ERROR_LIMIT = "The analysis failed after repeated tool errors. Please rephrase the request or check the dataset."
STEP_LIMIT_NOTICE = "The analysis was stopped because it reached the maximum number of steps."
TIME_LIMIT_NOTICE = "The analysis was stopped because it took too long."
TURN_INTERRUPTED = "The response was interrupted. Please try again."

# Tool output is truncated to this many characters in the transcript
MAX_TOOL_OUTPUT_CHARS = 8000
# Arguments never echoed to the client
HIDDEN_ARGUMENTS = {"code"}


class RunOutcome(StrEnum):
    COMPLETED = "completed"
    ERROR = "error"
    ABANDONED = "abandoned"


def _public_arguments(args: dict[str, Any] | str) -> dict[str, Any] | str:
    if isinstance(args, dict):
        return {k: v for k, v in args.items() if k not in HIDDEN_ARGUMENTS}
    return args


def _summarize_result(result: dict[str, Any]) -> str:
    text = json.dumps(result, default=str)
    return text if len(text) <= 500 else text[:500] + "..."


class AgentRunner:
    def __init__(
        self,
        session: AsyncSession,
        chat_session: ChatSession,
        message: Message,
        user_message: Message,
        bus: EventBus,
        registry: ToolRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.chat_session = chat_session
        self.message = message
        self.user_message = user_message
        self.bus = bus
        self.registry = registry or build_default_registry()
        self.settings = settings or get_settings()

        self.status = MessageStatus(message.status)
        self.invocations: list[dict[str, Any]] = list(message.tool_invocation_list)
        self.model = self.settings.default_llm_model
        self.tool_ctx: ToolContext | None = None

        self.answer_text = ""
        self.last_explanation = ""
        self.clarification = False
        self.truncated = False
        self.tool_calls = 0
        self.tool_errors = 0
        self._started = time.monotonic()

    # ── Public entry ──────────────────────────────────────────

    async def run(self) -> RunOutcome:
        try:
            return await self._run()
        except (PersistenceConflict, NotFound):
            logger.info("Message %s is no longer owned by this run; stopping", self.message.id)
            return RunOutcome.ABANDONED
        except ContextUnavailable as exc:
            logger.warning("Context unavailable for message %s: %s", self.message.id, exc.detail)
            return await self._fail(exc.detail, "CONTEXT_UNAVAILABLE")
        except ProviderError as exc:
            logger.warning("Provider failed for message %s: %s", self.message.id, exc.detail)
            return await self._fail(PROVIDER_UNAVAILABLE, "PROVIDER_UNAVAILABLE")
        except asyncio.CancelledError:
            logger.warning("Run for message %s was cancelled; failing the turn", self.message.id)
            await asyncio.shield(self._fail_interrupted())
            raise
        except Exception:
            logger.exception("Agent run failed for message %s", self.message.id)
            await self.session.rollback()
            return await self._fail(UNEXPECTED_ERROR, "INTERNAL_ERROR")

    # ── Loop ──────────────────────────────────────────────────

    async def _run(self) -> RunOutcome:
        session_id = self.chat_session.id

        await self._transition(MessageStatus.FETCHING_CONTEXT)
        turn = await assemble_context(
            self.session,
            self.message.user_id,
            self.chat_session.dataset_id_list,
            session_id,
        )
        if turn.preferred_model:
            self.model = turn.preferred_model

        history = await load_history(
            self.session,
            session_id,
            exclude_message_id=self.user_message.id,
            limit=self.settings.history_fetch_limit,
        )
        history = await self._condense_history(history)
        transcript: list[dict[str, Any]] = [
            {"role": "system", "content": turn.system_prompt()},
            *history,
            {"role": "user", "content": self.user_message.text},
        ]

        self.tool_ctx = ToolContext(
            turn=turn,
            user_id=self.message.user_id,
            session_id=session_id,
            message_id=self.message.id,
            model=self.model,
        )
        await self._transition(
            MessageStatus.GENERATING,
            {"provider": provider.provider_name(self.model), "model": self.model},
        )
        catalog = self.registry.catalog()

        while True:
            if not await session_is_live(self.session, session_id):
                logger.info("Session %s was deleted; abandoning message %s", session_id, self.message.id)
                return RunOutcome.ABANDONED

            if self.tool_calls >= self.settings.agent_max_tool_calls:
                return await self._finish_truncated(STEP_LIMIT_NOTICE)
            if self._remaining() <= 0:
                return await self._finish_truncated(TIME_LIMIT_NOTICE)

            reply = await self._call_provider(transcript, catalog)

            streamed = ""
            if isinstance(reply, TokenStream):
                streamed, finished_in_time = await self._relay_tokens(reply)
                if not finished_in_time:
                    self.answer_text = reply.text
                    return await self._finish_truncated(TIME_LIMIT_NOTICE)
                if reply.tool_call is None:
                    self.answer_text = reply.text
                    return await self._finish()
                call = reply.tool_call
            else:
                call = reply

            if call.preamble:
                self.last_explanation = call.preamble
                explanation: dict[str, Any] = {"explanation": call.preamble}
                if streamed:
                    # Clients swap the relayed tokens for this explanation
                    explanation["replacesTokens"] = True
                await self._emit(EventType.AGENT_EXPLANATION, explanation)

            transcript.append(call.assistant_message())
            if await self._execute_tool(call, transcript):
                return await self._finish()

            if self._remaining() <= 0:
                return await self._finish_truncated(TIME_LIMIT_NOTICE)
            if self.tool_errors >= self.settings.agent_max_tool_errors:
                return await self._fail(TOOL_ERROR_LIMIT, "TOOL_ERROR_LIMIT")

    async def _relay_tokens(self, reply: TokenStream) -> tuple[str, bool]:
        """Forward streamed tokens until the stream ends or the turn runs out of time.

        Returns the relayed text and whether the stream finished in time.
        """
        relayed = ""
        tokens = aiter(reply)
        try:
            while True:
                try:
                    token = await asyncio.wait_for(anext(tokens), max(self._remaining(), 0))
                except StopAsyncIteration:
                    return relayed, True
                except TimeoutError:
                    logger.warning("Message %s hit the turn time limit while streaming", self.message.id)
                    return relayed, False
                relayed += token
                await self._emit(EventType.TOKEN, {"content": token})
        finally:
            await tokens.aclose()

    async def _call_provider(
        self,
        transcript: list[dict[str, Any]],
        catalog: list[dict[str, Any]],
    ) -> TokenStream | ToolCallRequest:
        attempts = self.settings.provider_max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await provider.complete(
                    transcript, catalog, self.model, self.settings.provider_timeout_seconds
                )
            except ProviderError as exc:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "Provider call failed for message %s (attempt %d/%d): %s",
                    self.message.id, attempt, attempts, exc.detail,
                )
                await asyncio.sleep(self.settings.provider_retry_backoff_seconds)
        raise ProviderError()

    async def _execute_tool(
        self,
        call: ToolCallRequest,
        transcript: list[dict[str, Any]],
    ) -> bool:
        """Run one tool call. Returns True when the tool ends the turn."""
        args = call.parsed_arguments()
        record: dict[str, Any] = {
            "step": len(self.invocations),
            "tool": call.name,
            "arguments": _public_arguments(args),
        }
        self.invocations.append(record)
        self.tool_calls += 1

        await self._emit(
            EventType.AGENT_USING_TOOL,
            {"toolName": call.name, "args": _public_arguments(args)},
        )
        await self._transition(MessageStatus.EXECUTING_TOOL, {"tool_invocations": self.invocations})

        started = time.monotonic()
        result: dict[str, Any] | None = None
        error: str | None = None
        error_code: str | None = None
        timeout = min(self.settings.tool_timeout_seconds, max(self._remaining(), 0))
        try:
            result = await asyncio.wait_for(
                self.registry.invoke(call.name, args, self.tool_ctx),
                timeout,
            )
        except ToolError as exc:
            error, error_code = exc.detail, exc.error_code
        except TimeoutError:
            error = f"Tool {call.name} timed out after {timeout:g}s"
            error_code = "TOOL_TIMEOUT"
        except Exception as exc:
            logger.exception("Tool %s raised for message %s", call.name, self.message.id)
            error = f"Tool {call.name} failed: {exc}"
            error_code = "TOOL_EXECUTION_FAILED"
        record["latency_ms"] = int((time.monotonic() - started) * 1000)

        if error is not None:
            self.tool_errors += 1
            record["error"] = error
            record["error_code"] = error_code
            logger.info("Tool %s failed for message %s: %s", call.name, self.message.id, error_code)
            await self._emit(
                EventType.AGENT_TOOL_RESULT,
                {"toolName": call.name, "resultSummary": None, "error": error, "errorCode": error_code},
            )
            content = json.dumps({"error": error, "errorCode": error_code})
        else:
            record["result"] = result
            await self._emit(
                EventType.AGENT_TOOL_RESULT,
                {"toolName": call.name, "resultSummary": _summarize_result(result)},
            )
            content = json.dumps(result, default=str)[:MAX_TOOL_OUTPUT_CHARS]

        transcript.append({"role": "tool", "tool_call_id": call.id, "content": content})

        if error is None and self.registry.get(call.name).terminal:
            self.answer_text = result.get("question") or json.dumps(result, default=str)
            self.clarification = True
            return True

        await self._transition(MessageStatus.GENERATING, {"tool_invocations": self.invocations})
        return False

    async def _condense_history(self, history: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Replace older history with one summary once it exceeds the token limit."""
        keep = self.settings.history_messages_to_keep
        if len(history) <= keep:
            return history
        if provider.count_tokens(history, self.model) <= self.settings.history_token_limit:
            return history

        older, recent = history[:-keep], history[-keep:]
        try:
            summary = await provider.summarize(older, self.settings.summary_llm_model)
        except ProviderError as exc:
            logger.warning("History summary failed for message %s: %s", self.message.id, exc.detail)
            return recent
        logger.info("Condensed %d history messages for message %s", len(older), self.message.id)
        return [
            {"role": "system", "content": f"Summary of the earlier conversation:\n{summary}"},
            *recent,
        ]

    # ── Finalization ──────────────────────────────────────────

    async def _finish_truncated(self, notice: str) -> RunOutcome:
        self.truncated = True
        partial = self.answer_text or self.last_explanation
        self.answer_text = f"{partial}\n\n{notice}" if partial else notice
        return await self._finish()

    async def _finish(self) -> RunOutcome:
        analysis_result = self.tool_ctx.analysis_result if self.tool_ctx else None
        report_code = self.tool_ctx.report_code if self.tool_ctx else None
        payload = {
            "text": self.answer_text,
            "analysis_result": analysis_result,
            "report_code": report_code,
            "clarification": self.clarification,
            "truncated": self.truncated,
        }
        await self._transition(
            MessageStatus.COMPLETED,
            {
                "kind": MessageKind.AI_ANSWER,
                "payload": payload,
                "tool_invocations": self.invocations,
                "duration_ms": self._elapsed_ms(),
            },
        )
        await self._emit(
            EventType.AGENT_FINAL_ANSWER,
            {
                "text": self.answer_text,
                "analysisResult": analysis_result,
                "reportCode": report_code,
                "clarification": self.clarification,
                "truncated": self.truncated,
            },
        )
        await self._emit_end()
        logger.info(
            "Message %s completed in %dms after %d tool calls",
            self.message.id, self._elapsed_ms(), self.tool_calls,
        )
        return RunOutcome.COMPLETED

    async def _fail(self, user_message: str, error_code: str) -> RunOutcome:
        try:
            await transition_message(
                self.session,
                self.message.id,
                ACTIVE_STATUSES,
                MessageStatus.ERROR,
                {
                    "kind": MessageKind.AI_ERROR,
                    "error_message": user_message,
                    "tool_invocations": self.invocations,
                    "duration_ms": self._elapsed_ms(),
                },
                raise_on_conflict=True,
            )
        except (PersistenceConflict, NotFound):
            logger.info("Message %s was finalized elsewhere; not reporting error", self.message.id)
            return RunOutcome.ABANDONED
        self.status = MessageStatus.ERROR

        await self._emit(EventType.AGENT_ERROR, {"error": user_message, "errorCode": error_code})
        await self._emit_end()
        return RunOutcome.ERROR

    async def _fail_interrupted(self) -> None:
        try:
            await self.session.rollback()
            await self._fail(TURN_INTERRUPTED, "TURN_INTERRUPTED")
        except Exception:
            # The stale-turn sweep fails the message later
            logger.exception("Could not fail interrupted message %s", self.message.id)

    # ── Helpers ───────────────────────────────────────────────

    async def _transition(self, to_status: MessageStatus, patch: dict[str, Any] | None = None) -> None:
        await transition_message(
            self.session,
            self.message.id,
            self.status,
            to_status,
            patch,
            raise_on_conflict=True,
        )
        self.status = to_status

    async def _emit(self, event_type: EventType, payload: dict[str, Any] | None = None) -> None:
        await self.bus.publish(
            RunEvent(
                type=event_type,
                session_id=str(self.chat_session.id),
                turn_id=str(self.message.id),
                payload=payload or {},
            )
        )

    async def _emit_end(self) -> None:
        message = await get_message(self.session, self.message.id)
        await self._emit(
            EventType.END,
            {"message": MessageRead.from_model(message).model_dump(mode="json")},
        )

    def _elapsed(self) -> float:
        return time.monotonic() - self._started

    def _remaining(self) -> float:
        return self.settings.agent_max_turn_seconds - self._elapsed()

    def _elapsed_ms(self) -> int:
        return int(self._elapsed() * 1000)
