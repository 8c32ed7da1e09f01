"""User and Team read models — analysis preferences only."""

import uuid

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from analyst.models.base import TimestampMixin, new_uuid


class Team(TimestampMixin, SQLModel, table=True):
    __tablename__ = "teams"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=255, nullable=False)
    currency: str = Field(default="", max_length=10)
    locale: str = Field(default="", max_length=20)
    business_context: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))


class User(TimestampMixin, SQLModel, table=True):
    __tablename__ = "users"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    team_id: uuid.UUID | None = Field(default=None, foreign_key="teams.id", index=True)
    email: str = Field(max_length=320, nullable=False, index=True)
    display_name: str = Field(default="", max_length=255)

    currency: str = Field(default="", max_length=10)
    locale: str = Field(default="", max_length=20)
    business_context: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    preferred_model: str | None = Field(default=None, max_length=200)
