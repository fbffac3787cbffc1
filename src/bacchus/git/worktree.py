"""Git worktree lifecycle for bead isolation.

Every bead gets ``<worktrees_dir>/<bead_id>`` checked out on its own branch
``<branch_prefix><bead_id>``. Merges happen in the main checkout, so the merge
state helpers below all operate on the workspace root.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol

from ..storage.models import WorktreeInfo
from .runner import GitExecutionResult, GitRunner

logger = logging.getLogger(__name__)

_MERGE_MSG_PATTERN = re.compile(r"^Merge branch '([^']+)'")


class WorktreeError(RuntimeError):
    """Base class for worktree lifecycle errors."""


class WorktreeExistsError(WorktreeError):
    """Raised when the bead's worktree path is already present on disk."""

    def __init__(self, bead_id: str, path: Path) -> None:
        super().__init__(f"Worktree already exists for {bead_id} at {path}")
        self.bead_id = bead_id
        self.path = path


class WorktreeNotFoundError(WorktreeError):
    """Raised when the bead has no worktree on disk."""

    def __init__(self, bead_id: str, path: Path) -> None:
        super().__init__(f"Worktree not found for {bead_id} at {path}")
        self.bead_id = bead_id
        self.path = path


class GitCommandError(WorktreeError):
    """Raised when a git command exits non-zero for a reason other than a conflict."""

    def __init__(self, action: str, result: GitExecutionResult) -> None:
        super().__init__(f"Failed to {action}: {result.detail or f'exit code {result.returncode}'}")
        self.action = action
        self.args_used = result.args
        self.returncode = result.returncode
        self.stderr = result.stderr


class MergeConflictError(WorktreeError):
    """Raised when merging a bead branch stops with conflicts."""

    def __init__(self, branch: str, target: str, paths: list[str]) -> None:
        listing = ", ".join(paths) if paths else "unknown paths"
        super().__init__(f"Merging {branch} into {target} conflicted in: {listing}")
        self.branch = branch
        self.target = target
        self.paths = paths


class UnresolvedConflictsError(WorktreeError):
    """Raised when a merge cannot be completed because paths are still unmerged."""

    def __init__(self, paths: list[str]) -> None:
        super().__init__(f"Unresolved conflicts remain in: {', '.join(paths)}")
        self.paths = paths


class VersionControlPort(Protocol):
    """The version-control operations the lifecycle engine relies on."""

    def branch_name(self, bead_id: str) -> str:
        ...

    def worktree_path(self, root: Path, bead_id: str) -> Path:
        ...

    def create_worktree(self, root: Path, bead_id: str) -> WorktreeInfo:
        ...

    def remove_worktree(self, root: Path, bead_id: str, *, force: bool) -> None:
        ...

    def branch_exists(self, root: Path, bead_id: str) -> bool:
        ...

    def is_merged(self, root: Path, bead_id: str, target: str) -> bool:
        ...

    def find_worktree(self, root: Path, bead_id: str) -> WorktreeInfo | None:
        ...

    def list_worktrees(self, root: Path) -> list[WorktreeInfo]:
        ...

    def merge_worktree(self, root: Path, bead_id: str, target: str) -> None:
        ...

    def is_in_merge_conflict(self, root: Path) -> bool:
        ...

    def get_merge_branch(self, root: Path) -> str | None:
        ...

    def has_unresolved_conflicts(self, root: Path) -> bool:
        ...

    def abort_merge(self, root: Path) -> None:
        ...

    def complete_merge(self, root: Path) -> None:
        ...


class GitWorktreeManager:
    """Manage bead worktrees and merges through the git CLI."""

    def __init__(
        self,
        runner: GitRunner,
        *,
        worktrees_dir: Path,
        branch_prefix: str = "coord/",
    ) -> None:
        self._runner = runner
        self._worktrees_dir = Path(worktrees_dir)
        self._branch_prefix = branch_prefix

    @property
    def branch_prefix(self) -> str:
        return self._branch_prefix

    def branch_name(self, bead_id: str) -> str:
        return f"{self._branch_prefix}{bead_id}"

    def _worktrees_root(self, root: Path) -> Path:
        if self._worktrees_dir.is_absolute():
            return self._worktrees_dir
        return root / self._worktrees_dir

    def worktree_path(self, root: Path, bead_id: str) -> Path:
        return self._worktrees_root(root) / bead_id

    def _git(self, cwd: Path, *args: str) -> GitExecutionResult:
        return self._runner.run(*args, cwd=cwd)

    def _git_checked(self, cwd: Path, action: str, *args: str) -> GitExecutionResult:
        result = self._git(cwd, *args)
        if not result.ok:
            raise GitCommandError(action, result)
        return result

    @staticmethod
    def _ignore_managed_dir(directory: Path) -> None:
        """Keep bead worktrees out of ``git status`` in the main checkout."""

        marker = directory / ".gitignore"
        if not marker.exists():
            marker.write_text("*\n", encoding="utf-8")

    def get_head_commit(self, path: Path) -> str:
        result = self._git_checked(path, "read HEAD commit", "rev-parse", "HEAD")
        return result.stdout.strip()

    def create_worktree(self, root: Path, bead_id: str) -> WorktreeInfo:
        path = self.worktree_path(root, bead_id)
        branch = self.branch_name(bead_id)
        if path.exists():
            raise WorktreeExistsError(bead_id, path)

        path.parent.mkdir(parents=True, exist_ok=True)
        self._ignore_managed_dir(path.parent)
        self._git_checked(
            root,
            f"create worktree for {bead_id}",
            "worktree", "add", "-b", branch, str(path),
        )
        head = self.get_head_commit(path)
        logger.info(
            "Created worktree",
            extra={"bead_id": bead_id, "path": str(path), "branch": branch, "head": head},
        )
        return WorktreeInfo(bead_id=bead_id, path=path, branch=branch, head_commit=head)

    def branch_exists(self, root: Path, bead_id: str) -> bool:
        branch = self.branch_name(bead_id)
        return self._git(root, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}").ok

    def is_merged(self, root: Path, bead_id: str, target: str) -> bool:
        """True when the bead branch tip is already reachable from ``target``."""

        branch = self.branch_name(bead_id)
        result = self._git(root, "merge-base", "--is-ancestor", branch, target)
        if result.returncode not in (0, 1):
            raise GitCommandError(f"compare {branch} with {target}", result)
        return result.returncode == 0

    def remove_worktree(self, root: Path, bead_id: str, *, force: bool) -> None:
        path = self.worktree_path(root, bead_id)
        branch = self.branch_name(bead_id)
        delete_flag = "-D" if force else "-d"
        if not path.exists():
            if not self.branch_exists(root, bead_id):
                raise WorktreeNotFoundError(bead_id, path)
            # Directory deleted out from under git: drop the stale registration, keep the cleanup going.
            self._git_checked(root, "prune worktrees", "worktree", "prune")
            self._git_checked(root, f"delete branch {branch}", "branch", delete_flag, branch)
            logger.info(
                "Deleted branch of missing worktree",
                extra={"bead_id": bead_id, "path": str(path), "branch": branch, "force": force},
            )
            return

        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        self._git_checked(root, f"remove worktree for {bead_id}", *args)
        self._git_checked(root, f"delete branch {branch}", "branch", delete_flag, branch)
        logger.info(
            "Removed worktree",
            extra={"bead_id": bead_id, "path": str(path), "branch": branch, "force": force},
        )

    def list_worktrees(self, root: Path) -> list[WorktreeInfo]:
        result = self._git_checked(root, "list worktrees", "worktree", "list", "--porcelain")
        managed_root = self._worktrees_root(root).resolve()

        worktrees: list[WorktreeInfo] = []
        for block in result.stdout.split("\n\n"):
            fields: dict[str, str] = {}
            for line in block.splitlines():
                key, _, value = line.partition(" ")
                fields[key] = value
            path_value = fields.get("worktree")
            branch_ref = fields.get("branch")
            if not path_value or not branch_ref:
                continue
            path = Path(path_value)
            if path.resolve().parent != managed_root:
                continue
            worktrees.append(
                WorktreeInfo(
                    bead_id=path.name,
                    path=path,
                    branch=branch_ref.removeprefix("refs/heads/"),
                    head_commit=fields.get("HEAD", ""),
                )
            )
        return worktrees

    def find_worktree(self, root: Path, bead_id: str) -> WorktreeInfo | None:
        branch = self.branch_name(bead_id)
        for info in self.list_worktrees(root):
            if info.bead_id == bead_id and info.branch == branch:
                return info
        return None

    def merge_worktree(self, root: Path, bead_id: str, target: str) -> None:
        branch = self.branch_name(bead_id)
        self._git_checked(root, f"checkout {target}", "checkout", target)

        result = self._git(root, "merge", "--no-edit", branch)
        if result.ok:
            logger.info("Merged bead branch", extra={"bead_id": bead_id, "target": target})
            return
        if self.is_in_merge_conflict(root):
            raise MergeConflictError(branch, target, self.unmerged_paths(root))
        raise GitCommandError(f"merge {branch} into {target}", result)

    def _git_path(self, root: Path, name: str) -> Path:
        result = self._git_checked(root, f"locate {name}", "rev-parse", "--git-path", name)
        path = Path(result.stdout.strip())
        return path if path.is_absolute() else root / path

    def is_in_merge_conflict(self, root: Path) -> bool:
        return self._git_path(root, "MERGE_HEAD").exists()

    def get_merge_branch(self, root: Path) -> str | None:
        merge_head = self._git_path(root, "MERGE_HEAD")
        if not merge_head.exists():
            return None

        commit = merge_head.read_text(encoding="utf-8").split()[0]
        result = self._git(
            root,
            "for-each-ref", "--points-at", commit, "--format=%(refname:short)", "refs/heads/",
        )
        branches = [line.strip() for line in result.stdout.splitlines() if line.strip()] if result.ok else []
        managed = [branch for branch in branches if branch.startswith(self._branch_prefix)]
        if len(managed) == 1:
            return managed[0]
        if len(branches) == 1:
            return branches[0]

        merge_msg = self._git_path(root, "MERGE_MSG")
        if merge_msg.exists():
            first_line = merge_msg.read_text(encoding="utf-8").splitlines()[:1]
            match = _MERGE_MSG_PATTERN.match(first_line[0]) if first_line else None
            if match:
                return match.group(1)
        return None

    def unmerged_paths(self, root: Path) -> list[str]:
        result = self._git_checked(
            root, "list unmerged paths", "diff", "--name-only", "--diff-filter=U",
        )
        return sorted({line.strip() for line in result.stdout.splitlines() if line.strip()})

    def has_unresolved_conflicts(self, root: Path) -> bool:
        return bool(self.unmerged_paths(root))

    def abort_merge(self, root: Path) -> None:
        self._git_checked(root, "abort merge", "merge", "--abort")
        logger.info("Aborted merge", extra={"root": str(root)})

    def complete_merge(self, root: Path) -> None:
        unresolved = self.unmerged_paths(root)
        if unresolved:
            raise UnresolvedConflictsError(unresolved)
        # Tracked paths only: the coordination directory is untracked in the main checkout.
        self._git_checked(root, "stage resolved paths", "add", "-u")
        self._git_checked(root, "commit merge", "commit", "--no-edit")
        logger.info("Completed merge", extra={"root": str(root)})


__all__ = [
    "GitCommandError",
    "GitWorktreeManager",
    "MergeConflictError",
    "UnresolvedConflictsError",
    "VersionControlPort",
    "WorktreeError",
    "WorktreeExistsError",
    "WorktreeNotFoundError",
]
