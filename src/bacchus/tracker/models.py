"""Models for beads reported by the task tracker."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

STATUS_OPEN = "open"
STATUS_IN_PROGRESS = "in_progress"
STATUS_BLOCKED = "blocked"
STATUS_CLOSED = "closed"

VALID_STATUSES = frozenset({STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_BLOCKED, STATUS_CLOSED})


class Bead(BaseModel):
    """A unit of work as reported by ``bd``; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="Tracker identifier, used as the claim key.")
    title: str = Field(default="", description="Short summary of the work.")
    description: str | None = Field(default=None, description="Longer free-form description.")
    priority: int = Field(default=2, description="Tracker priority; lower values are more urgent.")
    status: str = Field(default=STATUS_OPEN, description="Tracker status of the bead.")

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Bead id must not be empty")
        return normalized

    @field_validator("description", mode="before")
    @classmethod
    def _blank_description(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def is_closed(self) -> bool:
        return self.status == STATUS_CLOSED


__all__ = [
    "Bead",
    "STATUS_BLOCKED",
    "STATUS_CLOSED",
    "STATUS_IN_PROGRESS",
    "STATUS_OPEN",
    "VALID_STATUSES",
]
