"""Context assembler — everything the agent needs to reason about one turn.

Two tiers:
  1. Schema tier (eager): preferences plus the schema of every selected
     dataset. Needed for every provider call, so it is loaded up front.
  2. Content tier (lazy): the parsed dataset rows. Loaded only when a tool
     names the dataset, then memoized for the rest of the turn.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from analyst.core import cache
from analyst.core.config import get_settings
from analyst.core.errors import (
    AnalystError,
    ContextUnavailable,
    InvalidArguments,
    ToolExecutionError,
)
from analyst.models.user import Team, User
from analyst.services import dataset_store
from analyst.services.conversation_store import previous_artifacts
from analyst.services.dataset_store import DatasetSchema

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
DEFAULT_LOCALE = "en-US"

_schema_cache = cache.register(get_settings().dataset_schema_cache_ttl)

SYSTEM_INSTRUCTIONS = """\
You are a financial data analyst assistant. You answer questions about the \
user's uploaded datasets.

Work step by step:
- Inspect a dataset with fetch_dataset_sample before writing code against it.
- Use execute_analysis_code to compute anything that needs the full dataset.
- Use perform_calculation for standard financial ratios.
- Use generate_report_code only after an analysis result exists.
- Ask the user with ask_user_clarification when the request is ambiguous.
Before calling a tool, briefly explain what you are about to do. When you \
have enough information, answer directly and concisely, formatting numbers \
in the user's currency and locale."""


@dataclass
class DatasetContext:
    """Schema tier entry for one selected dataset."""
    dataset_id: str
    schema: DatasetSchema | None = None
    error: str | None = None


@dataclass
class TurnContext:
    user_id: uuid.UUID
    session_id: uuid.UUID | None
    dataset_ids: list[str]
    datasets: list[DatasetContext] = field(default_factory=list)
    currency: str = DEFAULT_CURRENCY
    locale: str = DEFAULT_LOCALE
    business_context: str = ""
    preferred_model: str | None = None
    previous_analysis_result: Any | None = None
    previous_report_code: str | None = None
    _content: dict[str, list[dict[str, Any]]] = field(default_factory=dict, repr=False)

    def dataset(self, dataset_id: str) -> DatasetContext:
        dataset_id = str(dataset_id)
        for entry in self.datasets:
            if entry.dataset_id == dataset_id:
                return entry
        raise InvalidArguments(
            f"Dataset {dataset_id} is not part of this conversation. "
            f"Available datasets: {', '.join(self.dataset_ids)}"
        )

    async def load_content(self, dataset_id: str) -> list[dict[str, Any]]:
        """Parsed rows of a selected dataset, fetched at most once per turn."""
        entry = self.dataset(dataset_id)
        if entry.dataset_id in self._content:
            return self._content[entry.dataset_id]
        if entry.schema is None:
            raise ToolExecutionError(
                f"Dataset {entry.dataset_id} is unavailable: {entry.error}",
                error_code="DATASET_UNAVAILABLE",
            )

        try:
            raw = await dataset_store.get_dataset_content(entry.schema.storage_path)
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch content of dataset %s: %s", entry.dataset_id, exc)
            raise ToolExecutionError(
                f"Failed to load content of dataset {entry.schema.name}",
                error_code="DATASET_UNAVAILABLE",
            ) from exc

        rows = dataset_store.parse_rows(raw)
        self._content[entry.dataset_id] = rows
        return rows

    def system_prompt(self) -> str:
        parts = [SYSTEM_INSTRUCTIONS]

        prefs = [f"Currency: {self.currency}", f"Locale: {self.locale}"]
        if self.business_context:
            prefs.append(f"Business context: {self.business_context}")
        parts.append("## User preferences\n" + "\n".join(prefs))

        dataset_blocks = []
        for entry in self.datasets:
            if entry.schema is None:
                dataset_blocks.append(f"### Dataset {entry.dataset_id}\n(unavailable: {entry.error})")
                continue
            s = entry.schema
            columns = "\n".join(
                f"- {c.get('name')} ({c.get('type', 'unknown')})"
                + (f": {c['description']}" if c.get("description") else "")
                for c in s.columns
            ) or "- (no column metadata)"
            header = f"### {s.name} (id: {s.id}, {s.row_count} rows)"
            if s.description:
                header += f"\n{s.description}"
            dataset_blocks.append(f"{header}\nColumns:\n{columns}")
        parts.append("## Datasets\n" + "\n\n".join(dataset_blocks))

        if self.previous_analysis_result is not None:
            summary = json.dumps(self.previous_analysis_result, default=str)
            if len(summary) > 2000:
                summary = summary[:2000] + "... (truncated)"
            parts.append(
                "## Previous analysis result\n"
                "The previous turn produced this result; follow-up questions may refer to it.\n"
                + summary
            )
        if self.previous_report_code:
            parts.append("## Previous report\nA report component was generated in a previous turn.")

        return "\n\n".join(parts)


async def _load_preferences(session: AsyncSession, ctx: TurnContext) -> None:
    user = await session.get(User, ctx.user_id)
    if user is None:
        return
    team = await session.get(Team, user.team_id) if user.team_id else None

    ctx.currency = user.currency or (team.currency if team else "") or DEFAULT_CURRENCY
    ctx.locale = user.locale or (team.locale if team else "") or DEFAULT_LOCALE
    ctx.business_context = user.business_context or (team.business_context if team else "")
    ctx.preferred_model = user.preferred_model


async def _load_schema(
    session: AsyncSession,
    dataset_id: str,
    user_id: uuid.UUID,
) -> DatasetSchema:
    key = (str(user_id), dataset_id)
    cached = _schema_cache.get(key)
    if cached is not None:
        return cached
    schema = await dataset_store.get_dataset_schema(session, dataset_id, user_id)
    _schema_cache.put(key, schema)
    return schema


async def assemble_context(
    session: AsyncSession,
    user_id: uuid.UUID,
    dataset_ids: list[str],
    session_id: uuid.UUID | None = None,
) -> TurnContext:
    """Build the TurnContext for a turn.

    Raises ContextUnavailable when none of the selected datasets can be loaded.
    """
    ctx = TurnContext(user_id=user_id, session_id=session_id, dataset_ids=[str(d) for d in dataset_ids])
    await _load_preferences(session, ctx)

    for dataset_id in ctx.dataset_ids:
        try:
            schema = await _load_schema(session, dataset_id, user_id)
            ctx.datasets.append(DatasetContext(dataset_id=dataset_id, schema=schema))
        except AnalystError as exc:
            logger.warning("Dataset %s unavailable for user %s: %s", dataset_id, user_id, exc.detail)
            ctx.datasets.append(DatasetContext(dataset_id=dataset_id, error=exc.detail))

    if ctx.datasets and all(d.schema is None for d in ctx.datasets):
        failed = ", ".join(f"{d.dataset_id} ({d.error})" for d in ctx.datasets)
        raise ContextUnavailable(f"Failed to load required dataset content: {failed}")

    if session_id is not None:
        ctx.previous_analysis_result, ctx.previous_report_code = await previous_artifacts(
            session, session_id
        )

    return ctx
