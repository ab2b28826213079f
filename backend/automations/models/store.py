"""Key/value rows backing the persistent store."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class StoredValue(SQLModel, table=True):
    key: str = Field(primary_key=True)  # "automations" | "runs:<automation id>"
    value: Any = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
