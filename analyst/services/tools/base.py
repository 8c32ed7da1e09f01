"""Tool contract shared by every executor the agent can call."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import BaseModel

from analyst.services.context import TurnContext


@dataclass
class ToolContext:
    """Per-turn state handed to every tool invocation.

    Tools that produce artifacts record them here; the run loop copies them
    into the AI message payload when the turn is finalized.
    """
    turn: TurnContext
    user_id: uuid.UUID
    session_id: uuid.UUID
    message_id: uuid.UUID
    model: str
    analysis_result: Any | None = None
    report_code: str | None = None

    @property
    def latest_analysis_result(self) -> Any | None:
        if self.analysis_result is not None:
            return self.analysis_result
        return self.turn.previous_analysis_result


class Tool:
    name: ClassVar[str]
    description: ClassVar[str]
    args_model: ClassVar[type[BaseModel]]
    # A terminal tool ends the turn: its result is the answer
    terminal: ClassVar[bool] = False

    async def run(self, args: BaseModel, ctx: ToolContext) -> dict[str, Any]:
        raise NotImplementedError

    def definition(self) -> dict[str, Any]:
        """OpenAI-style function definition, as LiteLLM expects in ``tools=``."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }
