"""SQLModel models for the local persistent store."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


class StoredValue(SQLModel, table=True):
    """One JSON value in the browser-local style key/value store.

    Keys are already namespaced by user id (e.g. ``examResults_42``) by the
    time they reach this table.
    """

    key: str = Field(primary_key=True, max_length=255)
    value: str  # JSON document
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
