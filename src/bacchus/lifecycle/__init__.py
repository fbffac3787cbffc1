"""Claim and worktree lifecycle."""

from .compensation import Compensation, CompensationStep
from .engine import LifecycleEngine, RELEASE_STATUSES
from .reaper import Reaper
from .results import (
    ClaimResult,
    ClaimSummary,
    ErrorKind,
    HistoryResult,
    ListResult,
    MergeResult,
    NextResult,
    OperationResult,
    ReleaseResult,
    StaleResult,
    WorktreeListResult,
    WorktreeSummary,
)

__all__ = [
    "ClaimResult",
    "ClaimSummary",
    "Compensation",
    "CompensationStep",
    "ErrorKind",
    "HistoryResult",
    "LifecycleEngine",
    "ListResult",
    "MergeResult",
    "NextResult",
    "OperationResult",
    "RELEASE_STATUSES",
    "Reaper",
    "ReleaseResult",
    "StaleResult",
    "WorktreeListResult",
    "WorktreeSummary",
]
