"""Tool registry — name lookup, provider catalog and validated invocation."""

import json
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from analyst.core.errors import InvalidArguments, ToolNotFound
from analyst.services.tools.base import Tool, ToolContext

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool {tool.name!r} is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(
                f"Unknown tool '{name}'. Available tools: {', '.join(sorted(self._tools))}"
            )
        return tool

    def catalog(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    async def invoke(
        self,
        name: str,
        raw_args: dict[str, Any] | str | None,
        ctx: ToolContext,
    ) -> dict[str, Any]:
        """Validate ``raw_args`` against the tool's model and run it once."""
        tool = self.get(name)

        if isinstance(raw_args, str):
            try:
                raw_args = json.loads(raw_args) if raw_args.strip() else {}
            except json.JSONDecodeError as exc:
                raise InvalidArguments(f"Arguments for {name} are not valid JSON: {exc}") from exc

        try:
            args = tool.args_model.model_validate(raw_args or {})
        except PydanticValidationError as exc:
            raise InvalidArguments(f"Invalid arguments for {name}: {exc}") from exc

        logger.info("Invoking tool %s for message %s", name, ctx.message_id)
        return await tool.run(args, ctx)
