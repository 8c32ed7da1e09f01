"""execute_analysis_code — run model-written code over a dataset in the sandbox."""

import logging
from typing import Any

from pydantic import BaseModel, Field

from analyst.core.errors import ToolExecutionError
from analyst.services import sandbox
from analyst.services.tools.base import Tool, ToolContext

logger = logging.getLogger(__name__)


class ExecuteAnalysisCodeArgs(BaseModel):
    dataset_id: str = Field(description="ID of the dataset whose rows are passed in as `inputData`.")
    code: str = Field(
        min_length=1,
        description=(
            "JavaScript function body. The parsed rows are available as `inputData` "
            "(an array of objects); call `sendResult(value)` exactly once with the result."
        ),
    )


def _error_code(message: str) -> str:
    if "timed out" in message:
        return "CODE_EXECUTION_TIMEOUT"
    if "sendResult" in message or "failed to produce a result" in message:
        return "CODE_EXECUTION_NO_RESULT"
    return "CODE_EXECUTION_FAILED"


class ExecuteAnalysisCodeTool(Tool):
    name = "execute_analysis_code"
    description = (
        "Execute analysis code in a secure sandbox against the full rows of a dataset "
        "and return its result. Use this for aggregations and any computation over "
        "the whole dataset."
    )
    args_model = ExecuteAnalysisCodeArgs

    async def run(self, args: ExecuteAnalysisCodeArgs, ctx: ToolContext) -> dict[str, Any]:
        rows = await ctx.turn.load_content(args.dataset_id)
        logger.info("Executing analysis code over %d rows of dataset %s", len(rows), args.dataset_id)

        outcome = await sandbox.run_code(args.code, rows)
        if not outcome.ok:
            detail = outcome.error or "Code execution failed"
            if outcome.logs:
                detail += "\nLogs:\n" + "\n".join(str(line) for line in outcome.logs[-20:])
            raise ToolExecutionError(detail, error_code=_error_code(outcome.error or ""))

        ctx.analysis_result = outcome.result
        return {"result": outcome.result}
