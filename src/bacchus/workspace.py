"""Assemble the lifecycle engine and its collaborators from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import BacchusSettings, get_settings
from .git.runner import GitRunner
from .git.worktree import GitWorktreeManager, VersionControlPort
from .lifecycle.engine import LifecycleEngine
from .lifecycle.reaper import Reaper
from .session import SessionManager
from .storage.chroma import ClaimJournal
from .storage.claims import ClaimStore
from .tracker.beads import BeadsTracker, TaskTrackerPort

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Workspace:
    settings: BacchusSettings
    root: Path
    store: ClaimStore
    vcs: VersionControlPort
    tracker: TaskTrackerPort
    journal: ClaimJournal | None
    engine: LifecycleEngine
    reaper: Reaper
    sessions: SessionManager

    def close(self) -> None:
        self.store.close()


def open_workspace(
    settings: BacchusSettings | None = None,
    *,
    store: ClaimStore | None = None,
    vcs: VersionControlPort | None = None,
    tracker: TaskTrackerPort | None = None,
    journal: ClaimJournal | None = None,
) -> Workspace:
    """Build a :class:`Workspace`; explicit collaborators override the configured ones."""

    settings = settings or get_settings()
    root = settings.root

    if store is None:
        store = ClaimStore(settings.resolved_db_path)
    if vcs is None:
        vcs = GitWorktreeManager(
            GitRunner(settings.git_path),
            worktrees_dir=settings.resolved_worktrees_dir,
            branch_prefix=settings.branch_prefix,
        )
    if tracker is None:
        tracker = BeadsTracker(settings.bd_path, db_path=settings.beads_db_path)
    if journal is None and settings.journal_enabled:
        journal = ClaimJournal(settings.resolved_journal_path)

    engine = LifecycleEngine(
        root,
        store=store,
        vcs=vcs,
        tracker=tracker,
        journal=journal,
        target_branch=settings.target_branch,
    )
    logger.debug(
        "Opened workspace",
        extra={"root": str(root), "db_path": str(settings.resolved_db_path), "journal": journal is not None},
    )
    return Workspace(
        settings=settings,
        root=root,
        store=store,
        vcs=vcs,
        tracker=tracker,
        journal=journal,
        engine=engine,
        reaper=Reaper(engine, threshold_minutes=settings.stale_minutes),
        sessions=SessionManager(
            settings.coordination_dir,
            tracker=tracker,
            store=store,
            default_max_concurrent=settings.max_concurrent,
        ),
    )


__all__ = ["Workspace", "open_workspace"]
