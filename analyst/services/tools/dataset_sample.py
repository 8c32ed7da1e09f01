"""fetch_dataset_sample — a look at the shape and values of a dataset."""

from typing import Any

from pydantic import BaseModel, Field

from analyst.services.tools.base import Tool, ToolContext

DEFAULT_SAMPLE_ROWS = 20


class FetchDatasetSampleArgs(BaseModel):
    dataset_id: str = Field(description="ID of one of the datasets selected for this conversation.")
    rows: int = Field(
        default=DEFAULT_SAMPLE_ROWS,
        ge=1,
        le=200,
        description="Number of rows to return, taken from the end of the dataset.",
    )


class FetchDatasetSampleTool(Tool):
    name = "fetch_dataset_sample"
    description = (
        "Return the column names, the last N rows and the total row count of a dataset. "
        "Use this to understand the data before writing analysis code."
    )
    args_model = FetchDatasetSampleArgs

    async def run(self, args: FetchDatasetSampleArgs, ctx: ToolContext) -> dict[str, Any]:
        rows = await ctx.turn.load_content(args.dataset_id)
        columns = list(rows[0].keys()) if rows else []
        return {
            "dataset_id": args.dataset_id,
            "columns": columns,
            "rows": rows[-args.rows:],
            "total_rows": len(rows),
        }
