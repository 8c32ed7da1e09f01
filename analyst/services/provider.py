"""Reasoning provider adapter — LiteLLM streaming with tool calling.

``complete`` peeks at the start of the stream to decide what the provider
is doing:
  - tool-call deltas first  -> consume the rest and return a ToolCallRequest
    (any text that came with it becomes the preamble)
  - text deltas first       -> return a TokenStream the caller iterates to
    forward tokens as they arrive

A provider may still switch to a tool call after streaming some text. The
TokenStream records that in ``tool_call`` once it is exhausted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import litellm
from litellm import acompletion

from analyst.core.config import get_settings
from analyst.core.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class ToolCallRequest:
    """The provider asked for a tool to be run."""
    id: str
    name: str
    arguments: str
    preamble: str = ""

    def parsed_arguments(self) -> dict[str, Any] | str:
        """Decoded arguments, or the raw string when it is not a JSON object."""
        try:
            value = json.loads(self.arguments) if self.arguments.strip() else {}
        except json.JSONDecodeError:
            return self.arguments
        return value if isinstance(value, dict) else self.arguments

    def assistant_message(self) -> dict[str, Any]:
        """The transcript entry that records this call."""
        return {
            "role": "assistant",
            "content": self.preamble or None,
            "tool_calls": [{
                "id": self.id,
                "type": "function",
                "function": {"name": self.name, "arguments": self.arguments or "{}"},
            }],
        }


@dataclass
class _ToolCallBuilder:
    """Accumulates streamed tool-call fragments, keyed by their index."""
    parts: dict[int, dict[str, str]] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.parts

    def add(self, tool_call_deltas: list[Any]) -> None:
        for tc in tool_call_deltas:
            index = getattr(tc, "index", 0) or 0
            part = self.parts.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if getattr(tc, "id", None):
                part["id"] = tc.id
            fn = getattr(tc, "function", None)
            if fn is not None:
                if getattr(fn, "name", None):
                    part["name"] += fn.name
                if getattr(fn, "arguments", None):
                    part["arguments"] += fn.arguments

    def build(self, preamble: str) -> ToolCallRequest:
        first = self.parts[min(self.parts)]
        if len(self.parts) > 1:
            logger.warning("Provider requested %d tool calls; running the first only", len(self.parts))
        return ToolCallRequest(
            id=first["id"] or f"call_{uuid.uuid4().hex[:24]}",
            name=first["name"],
            arguments=first["arguments"],
            preamble=preamble,
        )


async def _next_chunk(iterator: AsyncIterator[Any], timeout: float) -> Any | None:
    try:
        return await asyncio.wait_for(anext(iterator), timeout)
    except StopAsyncIteration:
        return None


def _delta(chunk: Any) -> Any | None:
    return chunk.choices[0].delta if chunk.choices else None


class TokenStream:
    """A text answer being streamed by the provider."""

    def __init__(
        self,
        first_token: str,
        iterator: AsyncIterator[Any] | None,
        timeout: float,
    ) -> None:
        self._first = first_token
        self._iterator = iterator
        self._timeout = timeout
        self._builder = _ToolCallBuilder()
        self.text = ""
        self.tool_call: ToolCallRequest | None = None

    async def __aiter__(self) -> AsyncIterator[str]:
        if self._first:
            self.text += self._first
            yield self._first
        if self._iterator is None:
            return
        try:
            while (chunk := await _next_chunk(self._iterator, self._timeout)) is not None:
                delta = _delta(chunk)
                if delta is None:
                    continue
                if getattr(delta, "tool_calls", None):
                    self._builder.add(delta.tool_calls)
                if delta.content:
                    self.text += delta.content
                    if self._builder.empty:
                        yield delta.content
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"Provider stream failed: {exc}") from exc

        if not self._builder.empty:
            self.tool_call = self._builder.build(self.text)


async def complete(
    transcript: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None,
    model: str,
    timeout: float | None = None,
) -> TokenStream | ToolCallRequest:
    """Start a streaming completion and classify it as text or a tool call.

    Raises ProviderError for any failure or timeout before the first token.
    """
    settings = get_settings()
    timeout = timeout or settings.provider_timeout_seconds

    kwargs: dict = {
        "model": model,
        "messages": transcript,
        "temperature": settings.llm_temperature,
        "max_tokens": settings.llm_max_tokens,
        "stream": True,
    }
    if tools:
        kwargs["tools"] = tools
        kwargs["tool_choice"] = "auto"

    try:
        response = await asyncio.wait_for(acompletion(**kwargs), timeout)
        iterator = response.__aiter__()
        builder = _ToolCallBuilder()
        preamble = ""

        while (chunk := await _next_chunk(iterator, timeout)) is not None:
            delta = _delta(chunk)
            if delta is None:
                continue
            if getattr(delta, "tool_calls", None):
                builder.add(delta.tool_calls)
            if delta.content:
                if builder.empty:
                    return TokenStream(delta.content, iterator, timeout)
                preamble += delta.content
    except TimeoutError as exc:
        raise ProviderError(f"Provider timed out after {timeout}s") from exc
    except Exception as exc:
        raise ProviderError(f"Provider request failed: {exc}") from exc

    if not builder.empty:
        return builder.build(preamble)
    return TokenStream("", None, timeout)


async def summarize(history: list[dict[str, Any]], model: str) -> str:
    """Condense earlier conversation turns into a short summary."""
    settings = get_settings()
    transcript = "\n".join(f"{m['role']}: {m.get('content') or ''}" for m in history)
    try:
        response = await asyncio.wait_for(
            acompletion(
                model=model,
                messages=[
                    {
                        "role": "system",
                        "content": (
                            "Summarize this conversation between a user and a financial data "
                            "analyst. Keep the questions asked, the figures found and any "
                            "decisions made. Be concise."
                        ),
                    },
                    {"role": "user", "content": transcript},
                ],
                temperature=0,
                max_tokens=512,
            ),
            settings.provider_timeout_seconds,
        )
    except TimeoutError as exc:
        raise ProviderError("Summary request timed out") from exc
    except Exception as exc:
        raise ProviderError(f"Summary request failed: {exc}") from exc
    return response.choices[0].message.content or ""


def count_tokens(messages: list[dict[str, Any]], model: str) -> int:
    return litellm.token_counter(model=model, messages=messages)


def provider_name(model: str) -> str:
    """LiteLLM provider prefix of a model name ("openai" when unprefixed)."""
    return model.split("/", 1)[0] if "/" in model else "openai"
