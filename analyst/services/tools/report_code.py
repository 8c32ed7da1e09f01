"""generate_report_code — turn an analysis result into a React report component."""

import json
import logging
import re
from typing import Any, Literal

from litellm import acompletion
from pydantic import BaseModel, Field

from analyst.core.config import get_settings
from analyst.core.errors import ToolExecutionError
from analyst.services.tools.base import Tool, ToolContext

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\n(.*?)\n```\s*$", re.DOTALL)

REPORT_SYSTEM_PROMPT = """\
You write a single self-contained React functional component named ReportComponent \
that visualizes a financial analysis result with Recharts. The data is passed as the \
`reportData` prop. Use only React and Recharts from the provided globals; do not \
import anything. Return only the component source code."""

ChartType = Literal["LineChart", "BarChart", "PieChart", "ComposedChart", "AreaChart", "Table"]


class GenerateReportCodeArgs(BaseModel):
    analysis_summary: str = Field(
        min_length=5,
        description="Summary of the analysis goal and its key results, to guide the report.",
    )
    title: str | None = Field(default=None, description="Optional title for the report.")
    chart_type: ChartType | None = Field(default=None, description="Optional preferred chart type.")


def _strip_fences(text: str) -> str:
    match = _FENCE_RE.match(text.strip())
    return match.group(1) if match else text.strip()


class GenerateReportCodeTool(Tool):
    name = "generate_report_code"
    description = (
        "Generate React report code that visualizes the most recent analysis result. "
        "Requires an analysis result from this turn or the previous one."
    )
    args_model = GenerateReportCodeArgs

    async def run(self, args: GenerateReportCodeArgs, ctx: ToolContext) -> dict[str, Any]:
        analysis = ctx.latest_analysis_result
        if analysis is None:
            raise ToolExecutionError(
                "No analysis result is available. Run execute_analysis_code first.",
                error_code="MISSING_ANALYSIS_DATA",
            )

        settings = get_settings()
        request = [f"Analysis summary: {args.analysis_summary}"]
        if args.title:
            request.append(f"Report title: {args.title}")
        if args.chart_type:
            request.append(f"Preferred chart type: {args.chart_type}")
        request.append(f"Currency: {ctx.turn.currency}. Locale: {ctx.turn.locale}.")
        request.append("reportData:\n" + json.dumps(analysis, default=str)[:8000])

        try:
            response = await acompletion(
                model=ctx.model,
                messages=[
                    {"role": "system", "content": REPORT_SYSTEM_PROMPT},
                    {"role": "user", "content": "\n\n".join(request)},
                ],
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
            )
        except Exception as exc:
            logger.warning("Report generation failed for message %s: %s", ctx.message_id, exc)
            raise ToolExecutionError(
                f"Report generation failed: {exc}", error_code="REPORT_GENERATION_FAILED"
            ) from exc
        code = _strip_fences(response.choices[0].message.content or "")
        if not code:
            raise ToolExecutionError("Report generation returned no code", error_code="REPORT_GENERATION_FAILED")

        ctx.report_code = code
        if ctx.analysis_result is None:
            ctx.analysis_result = analysis
        logger.info("Generated report code (%d chars) for message %s", len(code), ctx.message_id)
        return {"report_code_generated": True, "length": len(code)}
