"""Git orchestration utilities."""

from .runner import GitExecutionResult, GitNotFoundError, GitRunner, GitRunnerError
from .worktree import (
    GitCommandError,
    GitWorktreeManager,
    MergeConflictError,
    UnresolvedConflictsError,
    VersionControlPort,
    WorktreeError,
    WorktreeExistsError,
    WorktreeNotFoundError,
)

__all__ = [
    "GitCommandError",
    "GitExecutionResult",
    "GitNotFoundError",
    "GitRunner",
    "GitRunnerError",
    "GitWorktreeManager",
    "MergeConflictError",
    "UnresolvedConflictsError",
    "VersionControlPort",
    "WorktreeError",
    "WorktreeExistsError",
    "WorktreeNotFoundError",
]
