"""Structured results returned by lifecycle operations."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..storage.models import Claim


class ErrorKind(str, Enum):
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    VCS_FAILURE = "vcs_failure"
    MERGE_CONFLICT = "merge_conflict"
    UNRESOLVED_CONFLICTS = "unresolved_conflicts"
    WRONG_MERGE_TARGET = "wrong_merge_target"
    TRACKER_FAILURE = "tracker_failure"
    NO_READY_WORK = "no_ready_work"
    NOT_READY = "not_ready"
    BEAD_CLOSED = "bead_closed"
    NOT_IN_MERGE = "not_in_merge"
    INVALID_STATUS = "invalid_status"


class OperationResult(BaseModel):
    """Common shape of every lifecycle result."""

    success: bool
    message: str = ""
    error: ErrorKind | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ClaimResult(OperationResult):
    bead_id: str | None = None
    agent_id: str | None = None
    title: str | None = None
    description: str | None = None
    worktree_path: str | None = None
    branch: str | None = None
    owner: str | None = Field(default=None, description="Agent holding the bead when already claimed.")
    resumed: bool = Field(default=False, description="True when an existing worktree was adopted.")
    retryable: bool = False


class NextResult(ClaimResult):
    pass


class ReleaseResult(OperationResult):
    bead_id: str
    status: str
    merged: bool = False
    conflicts: list[str] = Field(default_factory=list)


class MergeResult(OperationResult):
    bead_id: str
    merged: bool = False
    conflicts: list[str] = Field(default_factory=list)


class ClaimSummary(BaseModel):
    bead_id: str
    agent_id: str
    worktree_path: str
    branch_name: str
    start_commit: str
    claimed_at: int
    age_minutes: int

    @classmethod
    def from_claim(cls, claim: Claim, now_ms: int) -> "ClaimSummary":
        return cls(**claim.as_dict(), age_minutes=claim.age_minutes(now_ms))


class StaleResult(OperationResult):
    stale_claims: list[ClaimSummary] = Field(default_factory=list)
    cleaned_up: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


class ListResult(OperationResult):
    claims: list[ClaimSummary] = Field(default_factory=list)
    total: int = 0


class WorktreeSummary(BaseModel):
    bead_id: str
    path: str
    branch: str
    head_commit: str
    claimed_by: str | None = None


class WorktreeListResult(OperationResult):
    worktrees: list[WorktreeSummary] = Field(default_factory=list)
    total: int = 0


class HistoryResult(OperationResult):
    bead_id: str | None = None
    events: list[dict[str, Any]] = Field(default_factory=list)


__all__ = [
    "ClaimResult",
    "ClaimSummary",
    "ErrorKind",
    "HistoryResult",
    "ListResult",
    "MergeResult",
    "NextResult",
    "OperationResult",
    "ReleaseResult",
    "StaleResult",
    "WorktreeListResult",
    "WorktreeSummary",
]
