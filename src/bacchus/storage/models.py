"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any


def epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


@dataclass(slots=True, frozen=True)
class Claim:
    """One agent's ownership of one bead and the worktree it works in.

    Rows are never updated in place: a claim is inserted once and deleted when
    the bead is released, resolved or reaped.
    """

    bead_id: str
    agent_id: str
    worktree_path: str
    branch_name: str
    start_commit: str
    claimed_at: int

    def age_minutes(self, now_ms: int) -> int:
        return max(0, now_ms - self.claimed_at) // 60_000

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class WorktreeInfo:
    bead_id: str
    path: Path
    branch: str
    head_commit: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "bead_id": self.bead_id,
            "path": str(self.path),
            "branch": self.branch,
            "head_commit": self.head_commit,
        }


__all__ = ["Claim", "WorktreeInfo", "epoch_millis"]
