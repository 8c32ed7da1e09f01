"""Dataset read model — metadata written by the upload service."""

import uuid
from typing import Any

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from analyst.models.base import TimestampMixin, load_json, new_uuid


class Dataset(TimestampMixin, SQLModel, table=True):
    __tablename__ = "datasets"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    user_id: uuid.UUID = Field(nullable=False, index=True)
    team_id: uuid.UUID | None = Field(default=None, index=True)

    name: str = Field(max_length=255, nullable=False)
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))

    # JSON list of {name, type, description}
    columns: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))

    # Object key relative to DATASET_STORAGE_URL
    storage_path: str = Field(max_length=1000, nullable=False)
    row_count: int = Field(default=0)

    @property
    def column_list(self) -> list[dict[str, Any]]:
        return load_json(self.columns, [])
