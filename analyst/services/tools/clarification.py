"""ask_user_clarification — end the turn with a question for the user."""

from typing import Any

from pydantic import BaseModel, Field

from analyst.services.tools.base import Tool, ToolContext


class AskUserClarificationArgs(BaseModel):
    question: str = Field(min_length=1, description="The question to ask the user.")


class AskUserClarificationTool(Tool):
    name = "ask_user_clarification"
    description = (
        "Ask the user a clarifying question when the request is ambiguous. "
        "This ends the current turn; the question is shown to the user as the answer."
    )
    args_model = AskUserClarificationArgs
    terminal = True

    async def run(self, args: AskUserClarificationArgs, ctx: ToolContext) -> dict[str, Any]:
        return {"question": args.question}
