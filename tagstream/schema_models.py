from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TagRecord(BaseModel):
    """One flattened (table, tag) pair as written into the `tags` array."""

    model_config = ConfigDict(extra="forbid")

    writable: bool
    path: str
    group: str
    description: dict[str, str] = Field(default_factory=dict)
    type: str


def tag_record_json_schema() -> dict[str, Any]:
    """Expose JSON schema for tests and tooling."""

    return TagRecord.model_json_schema()
