from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from bacchus.git import GitCommandError, GitExecutionResult, WorktreeExistsError
from bacchus.lifecycle import ErrorKind, LifecycleEngine
from bacchus.storage import Claim, ClaimConflictError, ClaimStore
from bacchus.tracker import Bead, TrackerCommandError

from conftest import FakeVersionControl, StubTracker


class RecordingJournal:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def record(self, **kwargs: Any) -> None:
        self.events.append(kwargs)

    def history(self, bead_id=None, *, event_type=None, limit=None):
        return []

    def types_for(self, bead_id: str) -> list[str]:
        return [event["event_type"] for event in self.events if event["bead_id"] == bead_id]


class FailingJournal:
    def record(self, **kwargs: Any) -> None:
        raise RuntimeError("chroma offline")


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)

    def __call__(self) -> datetime:
        return self.now


def _git_failure(action: str) -> GitCommandError:
    return GitCommandError(action, GitExecutionResult(args=("git",), returncode=1, stdout="", stderr="fatal: locked"))


@pytest.fixture
def vcs() -> FakeVersionControl:
    return FakeVersionControl()


@pytest.fixture
def tracker() -> StubTracker:
    return StubTracker(
        [
            Bead(id="BEAD-1", title="First", priority=1),
            Bead(id="BEAD-2", title="Second", priority=1),
            Bead(id="BEAD-3", title="Urgent", priority=0),
            Bead(id="BEAD-9", title="Finished", priority=0, status="closed"),
            Bead(id="BEAD-7", title="Waiting", priority=1, status="blocked"),
        ]
    )


@pytest.fixture
def store() -> ClaimStore:
    with ClaimStore() as claims:
        yield claims


@pytest.fixture
def journal() -> RecordingJournal:
    return RecordingJournal()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(tmp_path, store, vcs, tracker, journal, clock) -> LifecycleEngine:
    return LifecycleEngine(tmp_path, store=store, vcs=vcs, tracker=tracker, journal=journal, clock=clock)


# Claiming -----------------------------------------------------------------


def test_claim_creates_worktree_claim_and_marks_in_progress(engine, store, vcs, tracker, journal, tmp_path) -> None:
    result = engine.claim("BEAD-1", "agent-a")

    assert result.success
    assert result.worktree_path == str(tmp_path / "worktrees" / "BEAD-1")
    assert result.branch == "coord/BEAD-1"
    assert not result.resumed
    assert "coord/BEAD-1" in vcs.branches
    assert tracker.status_of("BEAD-1") == "in_progress"
    claim = store.get("BEAD-1")
    assert claim.agent_id == "agent-a"
    assert claim.start_commit == "c0ffee"
    assert claim.claimed_at == engine.now_ms()
    assert journal.types_for("BEAD-1") == ["claimed"]


def test_second_claim_reports_owner(engine, vcs) -> None:
    assert engine.claim("BEAD-2", "agent-a").success

    result = engine.claim("BEAD-2", "agent-b", force=True)

    assert not result.success
    assert result.error is ErrorKind.ALREADY_CLAIMED
    assert result.owner == "agent-a"
    assert list(vcs.worktrees) == ["BEAD-2"]


def test_claim_guards(engine, vcs) -> None:
    missing = engine.claim("BEAD-404", "agent-a")
    assert missing.error is ErrorKind.NOT_FOUND

    closed = engine.claim("BEAD-9", "agent-a")
    assert closed.error is ErrorKind.BEAD_CLOSED

    not_ready = engine.claim("BEAD-7", "agent-a")
    assert not_ready.error is ErrorKind.NOT_READY
    assert "--force" in not_ready.message
    assert vcs.calls == []

    forced = engine.claim("BEAD-7", "agent-a", force=True)
    assert forced.success


def test_tracker_failure_rolls_back_everything(engine, store, vcs, tracker, journal) -> None:
    tracker.failures.add(("BEAD-1", "in_progress"))

    with pytest.raises(TrackerCommandError):
        engine.claim("BEAD-1", "agent-a")

    assert not store.exists("BEAD-1")
    assert vcs.worktrees == {}
    assert vcs.branches == set()
    assert ("remove", "BEAD-1", True) in vcs.calls
    assert tracker.status_of("BEAD-1") == "open"
    assert journal.types_for("BEAD-1") == ["claim_rolled_back"]


class ConflictingStore(ClaimStore):
    """Loses the insert race to ``agent-b``."""

    def __init__(self, *, winner_takes_path: bool) -> None:
        super().__init__()
        self._winner_takes_path = winner_takes_path

    def insert(self, claim: Claim) -> None:
        if self._winner_takes_path:
            super().insert(replace(claim, agent_id="agent-b"))
        raise ClaimConflictError(claim.bead_id, "agent-b")


def test_insert_conflict_removes_fresh_worktree(tmp_path, vcs, tracker) -> None:
    store = ConflictingStore(winner_takes_path=False)
    engine = LifecycleEngine(tmp_path, store=store, vcs=vcs, tracker=tracker)

    result = engine.claim("BEAD-2", "agent-a")

    assert result.error is ErrorKind.ALREADY_CLAIMED
    assert result.owner == "agent-b"
    assert vcs.worktrees == {}
    assert tracker.status_of("BEAD-2") == "open"


def test_insert_conflict_keeps_worktree_owned_by_winner(tmp_path, vcs, tracker) -> None:
    store = ConflictingStore(winner_takes_path=True)
    engine = LifecycleEngine(tmp_path, store=store, vcs=vcs, tracker=tracker)

    result = engine.claim("BEAD-2", "agent-a")

    assert result.error is ErrorKind.ALREADY_CLAIMED
    assert list(vcs.worktrees) == ["BEAD-2"]
    assert store.get("BEAD-2").agent_id == "agent-b"


def test_git_race_maps_to_retryable_conflict(engine, vcs, tmp_path) -> None:
    (tmp_path / "worktrees" / "BEAD-1").mkdir(parents=True)
    vcs.create_failure = _git_failure("create worktree for BEAD-1")

    result = engine.claim("BEAD-1", "agent-a")

    assert not result.success
    assert result.error is ErrorKind.ALREADY_EXISTS
    assert result.retryable


def test_git_failure_without_race_propagates(engine, vcs) -> None:
    vcs.create_failure = _git_failure("create worktree for BEAD-1")

    with pytest.raises(GitCommandError):
        engine.claim("BEAD-1", "agent-a")


def test_git_failure_with_lingering_branch_is_retryable(engine, vcs) -> None:
    vcs.branches.add("coord/BEAD-1")
    vcs.create_failure = _git_failure("create worktree for BEAD-1")

    result = engine.claim("BEAD-1", "agent-a")

    assert result.error is ErrorKind.ALREADY_EXISTS
    assert result.retryable
    assert "git branch -D coord/BEAD-1" in result.message


def test_stray_path_with_lingering_branch_is_retryable(engine, vcs, tmp_path) -> None:
    vcs.branches.add("coord/BEAD-1")
    vcs.create_failure = WorktreeExistsError("BEAD-1", tmp_path / "worktrees" / "BEAD-1")

    result = engine.claim("BEAD-1", "agent-a")

    assert result.error is ErrorKind.ALREADY_EXISTS
    assert result.retryable


def test_stray_path_without_registered_worktree(engine, vcs, tmp_path) -> None:
    vcs.create_failure = WorktreeExistsError("BEAD-1", tmp_path / "worktrees" / "BEAD-1")

    result = engine.claim("BEAD-1", "agent-a")

    assert result.error is ErrorKind.ALREADY_EXISTS
    assert not result.retryable


def test_next_picks_highest_priority_unclaimed(engine, store) -> None:
    store.insert(
        Claim(
            bead_id="BEAD-3",
            agent_id="agent-z",
            worktree_path="/elsewhere/BEAD-3",
            branch_name="coord/BEAD-3",
            start_commit="abc",
            claimed_at=0,
        )
    )

    result = engine.next("agent-a")

    assert result.success
    assert result.bead_id == "BEAD-1"
    assert result.title == "First"


def test_next_without_ready_work(engine, tracker) -> None:
    for bead_id in ("BEAD-1", "BEAD-2", "BEAD-3"):
        tracker.beads[bead_id] = tracker.beads[bead_id].model_copy(update={"status": "closed"})

    result = engine.next("agent-a")

    assert not result.success
    assert result.error is ErrorKind.NO_READY_WORK
    assert result.message == "No ready beads available"


# Releasing ----------------------------------------------------------------


def test_release_failed_discards_work_and_reopens(engine, store, vcs, tracker, journal) -> None:
    engine.claim("BEAD-1", "agent-a")

    result = engine.release("BEAD-1", "failed")

    assert result.success
    assert not result.merged
    assert ("remove", "BEAD-1", True) in vcs.calls
    assert vcs.worktrees == {}
    assert "coord/BEAD-1" not in vcs.branches
    assert tracker.status_of("BEAD-1") == "open"
    assert not store.exists("BEAD-1")
    assert journal.types_for("BEAD-1") == ["claimed", "released"]


def test_release_failed_tolerates_missing_worktree(engine, store, vcs, tracker) -> None:
    engine.claim("BEAD-1", "agent-a")
    vcs.worktrees.clear()

    result = engine.release("BEAD-1", "failed")

    assert result.success
    assert not store.exists("BEAD-1")
    assert tracker.status_of("BEAD-1") == "open"


def test_release_failed_deletes_branch_of_missing_worktree(engine, store, vcs) -> None:
    engine.claim("BEAD-1", "agent-a")
    del vcs.worktrees["BEAD-1"]

    result = engine.release("BEAD-1", "failed")

    assert result.success
    assert "coord/BEAD-1" not in vcs.branches
    assert engine.claim("BEAD-1", "agent-b").success
    assert store.get("BEAD-1").agent_id == "agent-b"


def test_release_blocked_preserves_worktree_for_resume(engine, store, vcs, tracker, journal) -> None:
    engine.claim("BEAD-1", "agent-a")

    blocked = engine.release("BEAD-1", "blocked")

    assert blocked.success
    assert "BEAD-1" in vcs.worktrees
    assert tracker.status_of("BEAD-1") == "blocked"
    assert not store.exists("BEAD-1")

    resumed = engine.claim("BEAD-1", "agent-b", force=True)

    assert resumed.success
    assert resumed.resumed
    assert resumed.worktree_path == str(vcs.worktrees["BEAD-1"].path)
    assert tracker.status_of("BEAD-1") == "in_progress"
    assert store.get("BEAD-1").agent_id == "agent-b"
    assert journal.types_for("BEAD-1") == ["claimed", "released", "resumed"]


def test_resume_rollback_never_removes_preserved_work(engine, store, vcs, tracker) -> None:
    engine.claim("BEAD-1", "agent-a")
    engine.release("BEAD-1", "blocked")
    tracker.failures.add(("BEAD-1", "in_progress"))

    with pytest.raises(TrackerCommandError):
        engine.claim("BEAD-1", "agent-b", force=True)

    assert "BEAD-1" in vcs.worktrees
    assert not store.exists("BEAD-1")


def test_release_done_merges_and_closes(engine, store, vcs, tracker, journal) -> None:
    engine.claim("BEAD-1", "agent-a")

    result = engine.release("BEAD-1", "done")

    assert result.success
    assert result.merged
    assert ("merge", "BEAD-1", "main") in vcs.calls
    assert ("remove", "BEAD-1", False) in vcs.calls
    assert tracker.status_of("BEAD-1") == "closed"
    assert not store.exists("BEAD-1")
    assert journal.types_for("BEAD-1")[-1] == "released"


def test_release_done_conflict_keeps_claim(engine, store, vcs, journal) -> None:
    engine.claim("BEAD-1", "agent-a")
    vcs.conflict_on.add("BEAD-1")

    result = engine.release("BEAD-1", "done")

    assert not result.success
    assert result.error is ErrorKind.MERGE_CONFLICT
    assert result.conflicts == ["README.md"]
    assert "bacchus resolve BEAD-1" in result.message
    assert "bacchus abort BEAD-1" in result.message
    assert store.exists("BEAD-1")
    assert vcs.is_in_merge_conflict(Path("."))
    assert "BEAD-1" in vcs.worktrees
    assert journal.types_for("BEAD-1")[-1] == "merge_conflict"


def test_release_done_removal_failure_is_retryable(engine, store, vcs, tracker) -> None:
    engine.claim("BEAD-1", "agent-a")
    vcs.remove_failures["BEAD-1"] = _git_failure("remove worktree for BEAD-1")

    first = engine.release("BEAD-1", "done")

    assert not first.success
    assert first.merged
    assert first.error is ErrorKind.VCS_FAILURE
    assert store.exists("BEAD-1")
    assert tracker.status_of("BEAD-1") == "in_progress"

    del vcs.remove_failures["BEAD-1"]
    second = engine.release("BEAD-1", "done")

    assert second.success
    assert not store.exists("BEAD-1")
    assert tracker.status_of("BEAD-1") == "closed"
    assert [call for call in vcs.calls if call[0] == "merge"] == [("merge", "BEAD-1", "main")]


def test_release_done_retry_after_tracker_failure(engine, store, vcs, tracker) -> None:
    engine.claim("BEAD-1", "agent-a")
    tracker.failures.add(("BEAD-1", "closed"))

    with pytest.raises(TrackerCommandError):
        engine.release("BEAD-1", "done")

    assert store.exists("BEAD-1")
    assert "coord/BEAD-1" not in vcs.branches

    tracker.failures.clear()
    retried = engine.release("BEAD-1", "done")

    assert retried.success
    assert retried.merged
    assert tracker.status_of("BEAD-1") == "closed"
    assert not store.exists("BEAD-1")
    assert [call for call in vcs.calls if call[0] == "merge"] == [("merge", "BEAD-1", "main")]


def test_release_guards(engine) -> None:
    assert engine.release("BEAD-1", "done").error is ErrorKind.NOT_FOUND
    engine.claim("BEAD-1", "agent-a")
    invalid = engine.release("BEAD-1", "finished")
    assert invalid.error is ErrorKind.INVALID_STATUS


# Merge conflict sub-protocol ----------------------------------------------


def _conflicted(engine, vcs, bead_id: str = "BEAD-1") -> None:
    engine.claim(bead_id, "agent-a", force=True)
    vcs.conflict_on.add(bead_id)
    engine.release(bead_id, "done")


def test_abort_restores_claimed_state(engine, store, vcs, journal) -> None:
    _conflicted(engine, vcs)

    result = engine.abort("BEAD-1")

    assert result.success
    assert not vcs.is_in_merge_conflict(Path("."))
    assert store.exists("BEAD-1")
    assert "BEAD-1" in vcs.worktrees
    assert journal.types_for("BEAD-1")[-1] == "merge_aborted"


def test_abort_guards(engine, vcs) -> None:
    assert engine.abort("BEAD-1").error is ErrorKind.NOT_FOUND

    engine.claim("BEAD-1", "agent-a")
    not_in_merge = engine.abort("BEAD-1")
    assert not_in_merge.error is ErrorKind.NOT_IN_MERGE
    assert "Nothing to abort" in not_in_merge.message

    _conflicted(engine, vcs, "BEAD-2")
    wrong = engine.abort("BEAD-1")
    assert wrong.error is ErrorKind.WRONG_MERGE_TARGET
    assert "coord/BEAD-2" in wrong.message
    assert vcs.is_in_merge_conflict(Path("."))


def test_abort_refuses_unattributed_merge(engine, vcs) -> None:
    engine.claim("BEAD-1", "agent-a")
    vcs.merge_branch = "feature/other"

    result = engine.abort("BEAD-1")

    assert result.error is ErrorKind.WRONG_MERGE_TARGET
    assert ("abort",) not in vcs.calls


def test_resolve_requires_clean_staging(engine, store, vcs) -> None:
    _conflicted(engine, vcs)

    result = engine.resolve("BEAD-1")

    assert not result.success
    assert result.error is ErrorKind.UNRESOLVED_CONFLICTS
    assert store.exists("BEAD-1")
    assert "BEAD-1" in vcs.worktrees


def test_resolve_completes_merge_and_closes(engine, store, vcs, tracker, journal) -> None:
    _conflicted(engine, vcs)
    vcs.unresolved = []

    result = engine.resolve("BEAD-1")

    assert result.success
    assert result.merged
    assert vcs.merged == ["BEAD-1"]
    assert not vcs.is_in_merge_conflict(Path("."))
    assert "BEAD-1" not in vcs.worktrees
    assert tracker.status_of("BEAD-1") == "closed"
    assert not store.exists("BEAD-1")
    assert journal.types_for("BEAD-1")[-1] == "merge_resolved"


def test_resolve_without_merge(engine) -> None:
    engine.claim("BEAD-1", "agent-a")
    result = engine.resolve("BEAD-1")
    assert result.error is ErrorKind.NOT_IN_MERGE
    assert "release --status done" in result.message


# Stale claims -------------------------------------------------------------


def test_stale_boundary(engine, clock) -> None:
    engine.claim("BEAD-1", "agent-a")

    clock.advance(minutes=15)
    assert engine.stale(15).stale_claims == []

    clock.advance(milliseconds=1)
    stale = engine.stale(15)
    assert [claim.bead_id for claim in stale.stale_claims] == ["BEAD-1"]
    assert stale.stale_claims[0].age_minutes == 15
    assert stale.cleaned_up == []
    assert "use --cleanup" in stale.message


def test_stale_cleanup_reclaims_and_reports_failures(engine, store, vcs, tracker, clock, journal) -> None:
    engine.claim("BEAD-1", "agent-a")
    engine.claim("BEAD-2", "agent-b")
    clock.advance(minutes=10)
    engine.claim("BEAD-3", "agent-c")
    clock.advance(minutes=25)
    vcs.remove_failures["BEAD-2"] = _git_failure("remove worktree for BEAD-2")

    result = engine.stale(30, cleanup=True)

    assert sorted(claim.bead_id for claim in result.stale_claims) == ["BEAD-1", "BEAD-2"]
    assert result.cleaned_up == ["BEAD-1"]
    assert list(result.failed) == ["BEAD-2"]
    assert not result.success
    assert not store.exists("BEAD-1")
    assert store.exists("BEAD-2")
    assert store.exists("BEAD-3")
    assert tracker.status_of("BEAD-1") == "open"
    assert tracker.status_of("BEAD-2") == "in_progress"
    assert journal.types_for("BEAD-1")[-1] == "reaped"


def test_stale_cleanup_aborts_own_merge(engine, store, vcs, clock) -> None:
    _conflicted(engine, vcs)
    clock.advance(hours=2)

    result = engine.stale(60, cleanup=True)

    assert result.cleaned_up == ["BEAD-1"]
    assert ("abort",) in vcs.calls
    assert not vcs.is_in_merge_conflict(Path("."))
    assert not store.exists("BEAD-1")


def test_stale_cleanup_tolerates_deleted_bead(engine, store, tracker, clock) -> None:
    engine.claim("BEAD-1", "agent-a")
    del tracker.beads["BEAD-1"]
    clock.advance(minutes=20)

    result = engine.stale(15, cleanup=True)

    assert result.cleaned_up == ["BEAD-1"]
    assert not store.exists("BEAD-1")


def test_stale_rejects_negative_threshold(engine) -> None:
    with pytest.raises(ValueError):
        engine.stale(-1)


# Reporting ----------------------------------------------------------------


def test_list_claims_reports_age(engine, clock) -> None:
    engine.claim("BEAD-1", "agent-a")
    clock.advance(minutes=3)
    engine.claim("BEAD-2", "agent-b")
    clock.advance(minutes=2)

    listing = engine.list_claims()

    assert listing.total == 2
    assert [(claim.bead_id, claim.age_minutes) for claim in listing.claims] == [("BEAD-2", 2), ("BEAD-1", 5)]


def test_worktrees_show_owner(engine, vcs) -> None:
    engine.claim("BEAD-1", "agent-a")
    engine.release("BEAD-1", "blocked")
    engine.claim("BEAD-2", "agent-b")

    owners = {entry.bead_id: entry.claimed_by for entry in engine.worktrees().worktrees}

    assert owners == {"BEAD-1": None, "BEAD-2": "agent-b"}


def test_journal_failures_do_not_change_outcome(tmp_path, store, vcs, tracker) -> None:
    engine = LifecycleEngine(tmp_path, store=store, vcs=vcs, tracker=tracker, journal=FailingJournal())

    assert engine.claim("BEAD-1", "agent-a").success
    assert engine.release("BEAD-1", "failed").success


def test_history_requires_journal(tmp_path, store, vcs, tracker) -> None:
    engine = LifecycleEngine(tmp_path, store=store, vcs=vcs, tracker=tracker)

    result = engine.history("BEAD-1")

    assert not result.success
    assert "disabled" in result.message


def test_status_snapshot(engine, vcs) -> None:
    _conflicted(engine, vcs)

    status = engine.status()

    assert status["active_claims"] == 1
    assert status["in_merge_conflict"]
    assert status["merge_branch"] == "coord/BEAD-1"
    assert status["target_branch"] == "main"
