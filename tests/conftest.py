from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest

from bacchus.git import (
    MergeConflictError,
    UnresolvedConflictsError,
    WorktreeExistsError,
    WorktreeNotFoundError,
)
from bacchus.storage import WorktreeInfo
from bacchus.tracker import Bead, BeadNotFoundError, TrackerCommandError


def run_git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository on branch ``main`` with one commit containing ``README.md``."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init", "-q")
    run_git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(repo, "config", "user.email", "agent@example.com")
    run_git(repo, "config", "user.name", "Test Agent")
    run_git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    run_git(repo, "add", "README.md")
    run_git(repo, "commit", "-q", "-m", "initial")
    return repo


class StubTracker:
    """Dictionary-backed tracker; ``failures`` holds ``(bead_id, status)`` updates that fail."""

    def __init__(self, beads: list[Bead]) -> None:
        self.beads = {bead.id: bead for bead in beads}
        self.failures: set[tuple[str, str]] = set()
        self.updates: list[tuple[str, str]] = []

    def ready_items(self) -> list[Bead]:
        ready = [bead for bead in self.beads.values() if bead.status == "open"]
        return sorted(ready, key=lambda bead: (bead.priority, bead.id))

    def get_item(self, bead_id: str) -> Bead:
        if bead_id not in self.beads:
            raise BeadNotFoundError(bead_id)
        return self.beads[bead_id]

    def is_ready(self, bead_id: str) -> bool:
        return any(bead.id == bead_id for bead in self.ready_items())

    def set_status(self, bead_id: str, status: str) -> None:
        if (bead_id, status) in self.failures:
            raise TrackerCommandError(f"bd update {bead_id} failed")
        bead = self.get_item(bead_id)
        self.beads[bead_id] = bead.model_copy(update={"status": status})
        self.updates.append((bead_id, status))

    def status_of(self, bead_id: str) -> str:
        return self.beads[bead_id].status


class FakeVersionControl:
    """In-memory stand-in for git worktrees, branches and merge state."""

    def __init__(self) -> None:
        self.worktrees: dict[str, WorktreeInfo] = {}
        self.branches: set[str] = set()
        self.merge_branch: str | None = None
        self.unresolved: list[str] = []
        self.merged: list[str] = []
        self.conflict_on: set[str] = set()
        self.remove_failures: dict[str, Exception] = {}
        self.create_failure: Exception | None = None
        self.calls: list[tuple[Any, ...]] = []

    def branch_name(self, bead_id: str) -> str:
        return f"coord/{bead_id}"

    def worktree_path(self, root: Path, bead_id: str) -> Path:
        return root / "worktrees" / bead_id

    def create_worktree(self, root: Path, bead_id: str) -> WorktreeInfo:
        self.calls.append(("create", bead_id))
        if self.create_failure is not None:
            raise self.create_failure
        path = self.worktree_path(root, bead_id)
        if bead_id in self.worktrees:
            raise WorktreeExistsError(bead_id, path)
        info = WorktreeInfo(bead_id=bead_id, path=path, branch=self.branch_name(bead_id), head_commit="c0ffee")
        self.worktrees[bead_id] = info
        self.branches.add(info.branch)
        return info

    def remove_worktree(self, root: Path, bead_id: str, *, force: bool) -> None:
        self.calls.append(("remove", bead_id, force))
        if bead_id in self.remove_failures:
            raise self.remove_failures[bead_id]
        if bead_id not in self.worktrees:
            branch = self.branch_name(bead_id)
            if branch not in self.branches:
                raise WorktreeNotFoundError(bead_id, self.worktree_path(root, bead_id))
            self.branches.discard(branch)
            return
        info = self.worktrees.pop(bead_id)
        self.branches.discard(info.branch)

    def branch_exists(self, root: Path, bead_id: str) -> bool:
        return self.branch_name(bead_id) in self.branches

    def is_merged(self, root: Path, bead_id: str, target: str) -> bool:
        return bead_id in self.merged

    def find_worktree(self, root: Path, bead_id: str) -> WorktreeInfo | None:
        return self.worktrees.get(bead_id)

    def list_worktrees(self, root: Path) -> list[WorktreeInfo]:
        return list(self.worktrees.values())

    def merge_worktree(self, root: Path, bead_id: str, target: str) -> None:
        self.calls.append(("merge", bead_id, target))
        branch = self.branch_name(bead_id)
        if bead_id in self.conflict_on:
            self.merge_branch = branch
            self.unresolved = ["README.md"]
            raise MergeConflictError(branch, target, ["README.md"])
        self.merged.append(bead_id)

    def is_in_merge_conflict(self, root: Path) -> bool:
        return self.merge_branch is not None

    def get_merge_branch(self, root: Path) -> str | None:
        return self.merge_branch

    def has_unresolved_conflicts(self, root: Path) -> bool:
        return bool(self.unresolved)

    def abort_merge(self, root: Path) -> None:
        self.calls.append(("abort",))
        self.merge_branch = None
        self.unresolved = []

    def complete_merge(self, root: Path) -> None:
        if self.unresolved:
            raise UnresolvedConflictsError(self.unresolved)
        self.merged.append(self.merge_branch.removeprefix("coord/"))
        self.merge_branch = None
