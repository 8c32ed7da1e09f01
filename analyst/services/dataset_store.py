"""Dataset store client — schema metadata from the DB, content from object storage."""

import csv
import io
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from analyst.core.config import get_settings
from analyst.core.errors import Forbidden, NotFound
from analyst.models.dataset import Dataset
from analyst.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class DatasetSchema:
    id: str
    name: str
    description: str
    storage_path: str
    row_count: int
    columns: list[dict[str, Any]] = field(default_factory=list)


async def get_dataset_schema(
    session: AsyncSession,
    dataset_id: str | uuid.UUID,
    user_id: uuid.UUID,
) -> DatasetSchema:
    """Load dataset metadata, checking the user owns it or shares its team."""
    try:
        key = dataset_id if isinstance(dataset_id, uuid.UUID) else uuid.UUID(str(dataset_id))
    except ValueError as exc:
        raise NotFound(f"Dataset {dataset_id} not found") from exc

    dataset = await session.get(Dataset, key)
    if dataset is None:
        raise NotFound(f"Dataset {dataset_id} not found")

    if dataset.user_id != user_id:
        user = await session.get(User, user_id)
        if user is None or dataset.team_id is None or user.team_id != dataset.team_id:
            raise Forbidden(f"No access to dataset {dataset_id}")

    return DatasetSchema(
        id=str(dataset.id),
        name=dataset.name,
        description=dataset.description,
        storage_path=dataset.storage_path,
        row_count=dataset.row_count,
        columns=dataset.column_list,
    )


async def get_dataset_content(storage_path: str) -> str:
    """Download the raw CSV body of a dataset."""
    settings = get_settings()
    url = f"{settings.dataset_storage_url.rstrip('/')}/{storage_path.lstrip('/')}"
    async with httpx.AsyncClient(timeout=30, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
    logger.debug("Fetched dataset content from %s (%d bytes)", url, len(resp.content))
    return resp.text


def parse_rows(raw: str) -> list[dict[str, Any]]:
    """Parse CSV text into rows, converting numeric cells."""
    reader = csv.DictReader(io.StringIO(raw))
    return [{k: _coerce(v) for k, v in row.items() if k is not None} for row in reader]


def _coerce(value: str | None) -> Any:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value.replace(",", ""))
    except ValueError:
        return value
