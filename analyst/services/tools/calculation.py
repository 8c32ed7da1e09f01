"""perform_calculation — standard financial ratios over dataset columns."""

from typing import Any, Literal

from pydantic import BaseModel, Field

from analyst.core.errors import InvalidArguments, ToolExecutionError
from analyst.services.tools.base import Tool, ToolContext

Ratio = Literal["gross_profit_margin", "net_profit_margin", "current_ratio", "debt_to_equity"]

# ratio -> (column arguments it needs, as (numerator..., denominator))
RATIO_COLUMNS: dict[str, tuple[str, ...]] = {
    "gross_profit_margin": ("revenue_column", "cogs_column"),
    "net_profit_margin": ("net_income_column", "revenue_column"),
    "current_ratio": ("current_assets_column", "current_liabilities_column"),
    "debt_to_equity": ("total_debt_column", "total_equity_column"),
}


class PerformCalculationArgs(BaseModel):
    dataset_id: str = Field(description="ID of the dataset to compute ratios over.")
    ratios: list[Ratio] = Field(min_length=1, description="Ratios to compute.")
    revenue_column: str | None = None
    cogs_column: str | None = Field(default=None, description="Cost of goods sold column.")
    net_income_column: str | None = None
    current_assets_column: str | None = None
    current_liabilities_column: str | None = None
    total_debt_column: str | None = None
    total_equity_column: str | None = None


def _column_total(rows: list[dict[str, Any]], column: str) -> float:
    if rows and column not in rows[0]:
        raise InvalidArguments(
            f"Column '{column}' does not exist. Available columns: {', '.join(rows[0].keys())}"
        )
    total = 0.0
    for row in rows:
        value = row.get(column)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (int, float)):
            total += value
    return total


def _divide(numerator: float, denominator: float, ratio: str) -> float:
    if denominator == 0:
        raise ToolExecutionError(
            f"Cannot compute {ratio}: denominator is zero", error_code="DIVISION_BY_ZERO"
        )
    return numerator / denominator


class PerformCalculationTool(Tool):
    name = "perform_calculation"
    description = (
        "Compute financial ratios (gross_profit_margin, net_profit_margin, current_ratio, "
        "debt_to_equity) by summing the named columns over all rows of a dataset. "
        "Margins are returned as percentages."
    )
    args_model = PerformCalculationArgs

    async def run(self, args: PerformCalculationArgs, ctx: ToolContext) -> dict[str, Any]:
        for ratio in args.ratios:
            missing = [c for c in RATIO_COLUMNS[ratio] if not getattr(args, c)]
            if missing:
                raise InvalidArguments(f"{ratio} requires: {', '.join(missing)}")

        rows = await ctx.turn.load_content(args.dataset_id)
        totals: dict[str, float] = {}

        def total(arg_name: str) -> float:
            column = getattr(args, arg_name)
            if column not in totals:
                totals[column] = _column_total(rows, column)
            return totals[column]

        results: dict[str, float] = {}
        for ratio in args.ratios:
            if ratio == "gross_profit_margin":
                revenue = total("revenue_column")
                value = _divide(revenue - total("cogs_column"), revenue, ratio) * 100
            elif ratio == "net_profit_margin":
                value = _divide(total("net_income_column"), total("revenue_column"), ratio) * 100
            elif ratio == "current_ratio":
                value = _divide(total("current_assets_column"), total("current_liabilities_column"), ratio)
            else:
                value = _divide(total("total_debt_column"), total("total_equity_column"), ratio)
            results[ratio] = round(value, 4)

        ctx.analysis_result = {"ratios": results, "column_totals": totals}
        return {"ratios": results, "column_totals": totals, "rows": len(rows)}
