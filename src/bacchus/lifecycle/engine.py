"""Claim lifecycle: next, claim, release, abort, resolve and stale cleanup.

Each operation spans three resources that fail independently: git worktrees,
the local claim store and the external tracker. The ordering is fixed:

* claim: worktree, then claim row, then tracker ``in_progress``; a failing
  step undoes the earlier ones newest first.
* release, resolve and reaping: git effects, then the tracker update, then the
  claim row is deleted last, so an interrupted process leaves a claim that
  stale cleanup can reconcile rather than a tracker-only ghost.

Guard failures come back as results with ``success=False``; infrastructure
failures propagate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ..git.worktree import (
    GitCommandError,
    MergeConflictError,
    UnresolvedConflictsError,
    VersionControlPort,
    WorktreeError,
    WorktreeExistsError,
    WorktreeNotFoundError,
)
from ..storage.chroma import ClaimJournal
from ..storage.claims import ClaimConflictError, ClaimStore
from ..storage.models import Claim, WorktreeInfo, epoch_millis
from ..tracker.beads import BeadNotFoundError, TaskTrackerPort, TrackerError
from ..tracker.models import (
    Bead,
    STATUS_BLOCKED,
    STATUS_CLOSED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
)
from .compensation import Compensation
from .results import (
    ClaimResult,
    ClaimSummary,
    ErrorKind,
    HistoryResult,
    ListResult,
    MergeResult,
    NextResult,
    ReleaseResult,
    StaleResult,
    WorktreeListResult,
    WorktreeSummary,
)

logger = logging.getLogger(__name__)

RELEASE_DONE = "done"
RELEASE_BLOCKED = "blocked"
RELEASE_FAILED = "failed"
RELEASE_STATUSES = (RELEASE_DONE, RELEASE_BLOCKED, RELEASE_FAILED)


class LifecycleEngine:
    """Compose version control, the claim store and the tracker into bead transitions."""

    def __init__(
        self,
        root: Path,
        *,
        store: ClaimStore,
        vcs: VersionControlPort,
        tracker: TaskTrackerPort,
        journal: ClaimJournal | None = None,
        target_branch: str = "main",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._root = Path(root)
        self._store = store
        self._vcs = vcs
        self._tracker = tracker
        self._journal = journal
        self._target_branch = target_branch
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def root(self) -> Path:
        return self._root

    @property
    def store(self) -> ClaimStore:
        return self._store

    @property
    def tracker(self) -> TaskTrackerPort:
        return self._tracker

    @property
    def target_branch(self) -> str:
        return self._target_branch

    def now_ms(self) -> int:
        return epoch_millis(self._clock())

    def _record(self, bead_id: str, event_type: str, **fields: Any) -> None:
        if self._journal is None:
            return
        agent_id = fields.pop("agent_id", None)
        status = fields.pop("status", None)
        try:
            self._journal.record(
                bead_id=bead_id,
                event_type=event_type,
                agent_id=agent_id,
                status=status,
                details=fields or None,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Failed to journal lifecycle event",
                extra={"bead_id": bead_id, "event_type": event_type, "error": str(exc)},
            )

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------
    def next(self, agent_id: str) -> NextResult:
        """Claim the highest-priority ready bead nobody holds yet."""

        ready = sorted(self._tracker.ready_items(), key=lambda bead: (bead.priority, bead.id))
        if not ready:
            return NextResult(
                success=False,
                error=ErrorKind.NO_READY_WORK,
                agent_id=agent_id,
                message="No ready beads available",
            )

        claimed = {claim.bead_id for claim in self._store.list_all()}
        candidates = [bead for bead in ready if bead.id not in claimed]
        if not candidates:
            return NextResult(
                success=False,
                error=ErrorKind.NO_READY_WORK,
                agent_id=agent_id,
                message=f"All {len(ready)} ready bead(s) are already claimed",
            )

        result = self._claim_bead(candidates[0], agent_id)
        return NextResult(**result.model_dump())

    def claim(self, bead_id: str, agent_id: str, *, force: bool = False) -> ClaimResult:
        """Claim a specific bead; ``force`` skips the readiness check."""

        try:
            bead = self._tracker.get_item(bead_id)
        except BeadNotFoundError:
            return ClaimResult(
                success=False,
                error=ErrorKind.NOT_FOUND,
                bead_id=bead_id,
                agent_id=agent_id,
                message=f"Bead {bead_id} does not exist in the tracker",
            )

        if bead.is_closed:
            return self._claim_refused(bead, agent_id, ErrorKind.BEAD_CLOSED, f"Bead {bead_id} is already closed")

        holder = self._store.get(bead_id)
        if holder is not None:
            return self._claim_refused(
                bead,
                agent_id,
                ErrorKind.ALREADY_CLAIMED,
                f"Bead {bead_id} is already claimed by {holder.agent_id}",
                owner=holder.agent_id,
            )

        if not force and not self._tracker.is_ready(bead_id):
            return self._claim_refused(
                bead,
                agent_id,
                ErrorKind.NOT_READY,
                f"Bead {bead_id} is not ready (status: {bead.status}, may be blocked by "
                "dependencies). Use --force to override.",
            )

        return self._claim_bead(bead, agent_id)

    def _claim_refused(
        self,
        bead: Bead,
        agent_id: str,
        error: ErrorKind,
        message: str,
        *,
        owner: str | None = None,
        retryable: bool = False,
    ) -> ClaimResult:
        return ClaimResult(
            success=False,
            error=error,
            bead_id=bead.id,
            agent_id=agent_id,
            title=bead.title,
            description=bead.description,
            owner=owner,
            retryable=retryable,
            message=message,
        )

    def _claim_bead(self, bead: Bead, agent_id: str) -> ClaimResult:
        bead_id = bead.id
        with Compensation(f"claim {bead_id}") as saga:
            try:
                info = self._vcs.create_worktree(self._root, bead_id)
            except WorktreeExistsError:
                info = self._vcs.find_worktree(self._root, bead_id)
                holder = self._store.get(bead_id)
                if holder is not None:
                    return self._claim_refused(
                        bead,
                        agent_id,
                        ErrorKind.ALREADY_CLAIMED,
                        f"Bead {bead_id} is already claimed by {holder.agent_id}",
                        owner=holder.agent_id,
                    )
                if info is None:
                    path = self._vcs.worktree_path(self._root, bead_id)
                    return self._claim_refused(
                        bead,
                        agent_id,
                        ErrorKind.ALREADY_EXISTS,
                        f"{path} exists but is not a worktree on "
                        f"{self._vcs.branch_name(bead_id)}; remove it before claiming {bead_id}",
                        retryable=self._vcs.branch_exists(self._root, bead_id),
                    )
                resumed = True
                saga.push("adopt worktree")
            except GitCommandError as exc:
                holder = self._store.get(bead_id)
                if holder is not None:
                    return self._claim_refused(
                        bead,
                        agent_id,
                        ErrorKind.ALREADY_CLAIMED,
                        f"Bead {bead_id} is already claimed by {holder.agent_id}",
                        owner=holder.agent_id,
                    )
                path_exists = self._vcs.worktree_path(self._root, bead_id).exists()
                if not path_exists and not self._vcs.branch_exists(self._root, bead_id):
                    raise
                logger.warning(
                    "Worktree creation raced with another process",
                    extra={"bead_id": bead_id, "path_exists": path_exists, "error": str(exc)},
                )
                branch = self._vcs.branch_name(bead_id)
                return self._claim_refused(
                    bead,
                    agent_id,
                    ErrorKind.ALREADY_EXISTS,
                    f"Branch {branch} or its worktree already exists for {bead_id}. If another "
                    "process is claiming it, retry shortly; if the branch is left over, "
                    f"delete it (git branch -D {branch}) before claiming again",
                    retryable=True,
                )
            else:
                resumed = False
                saga.push("create worktree", lambda: self._rollback_worktree(info))

            claim = Claim(
                bead_id=bead_id,
                agent_id=agent_id,
                worktree_path=str(info.path),
                branch_name=info.branch,
                start_commit=info.head_commit,
                claimed_at=self.now_ms(),
            )
            try:
                self._store.insert(claim)
            except ClaimConflictError as exc:
                return self._claim_refused(
                    bead,
                    agent_id,
                    ErrorKind.ALREADY_CLAIMED,
                    str(exc),
                    owner=exc.owner,
                )
            saga.push("insert claim", lambda: self._store.delete(bead_id))

            try:
                self._tracker.set_status(bead_id, STATUS_IN_PROGRESS)
            except TrackerError as exc:
                saga.unwind()
                self._record(bead_id, "claim_rolled_back", agent_id=agent_id, error=str(exc))
                raise
            saga.commit()

        self._record(
            bead_id,
            "resumed" if resumed else "claimed",
            agent_id=agent_id,
            status=STATUS_IN_PROGRESS,
            worktree_path=claim.worktree_path,
            branch=claim.branch_name,
        )
        logger.info(
            "Claimed bead",
            extra={"bead_id": bead_id, "agent_id": agent_id, "resumed": resumed},
        )
        verb = "Resumed" if resumed else "Claimed"
        return ClaimResult(
            success=True,
            bead_id=bead_id,
            agent_id=agent_id,
            title=bead.title,
            description=bead.description,
            worktree_path=claim.worktree_path,
            branch=claim.branch_name,
            resumed=resumed,
            message=f"{verb} {bead_id} - work in {claim.worktree_path}",
        )

    def _rollback_worktree(self, info: WorktreeInfo) -> None:
        owner = self._store.find_by_path(str(info.path))
        if owner is not None:
            logger.warning(
                "Keeping worktree referenced by another claim",
                extra={"bead_id": info.bead_id, "agent_id": owner.agent_id},
            )
            return
        self._vcs.remove_worktree(self._root, info.bead_id, force=True)

    # ------------------------------------------------------------------
    # Releasing
    # ------------------------------------------------------------------
    def release(self, bead_id: str, status: str) -> ReleaseResult:
        """Finish a claim as ``done`` (merge), ``blocked`` (keep work) or ``failed`` (discard)."""

        if status not in RELEASE_STATUSES:
            return ReleaseResult(
                success=False,
                error=ErrorKind.INVALID_STATUS,
                bead_id=bead_id,
                status=status,
                message=f"Invalid status: {status}. Use done, blocked, or failed",
            )

        claim = self._store.get(bead_id)
        if claim is None:
            return ReleaseResult(
                success=False,
                error=ErrorKind.NOT_FOUND,
                bead_id=bead_id,
                status=status,
                message=f"No claim found for {bead_id}",
            )

        if status == RELEASE_DONE:
            return self._release_done(claim)
        if status == RELEASE_BLOCKED:
            return self._release_blocked(claim)
        return self._release_failed(claim)

    def _release_done(self, claim: Claim) -> ReleaseResult:
        bead_id = claim.bead_id
        try:
            self._merge_unless_merged(claim)
        except MergeConflictError as exc:
            self._record(
                bead_id,
                "merge_conflict",
                agent_id=claim.agent_id,
                target=self._target_branch,
                paths=exc.paths,
            )
            return ReleaseResult(
                success=False,
                error=ErrorKind.MERGE_CONFLICT,
                bead_id=bead_id,
                status=RELEASE_DONE,
                conflicts=exc.paths,
                message=(
                    "Merge conflict detected. Options:\n"
                    f"1. Resolve conflicts manually, then: bacchus resolve {bead_id}\n"
                    f"2. Abort merge, keep working: bacchus abort {bead_id}\n"
                    f"3. Discard all work: bacchus release {bead_id} --status failed"
                ),
            )
        except GitCommandError as exc:
            return ReleaseResult(
                success=False,
                error=ErrorKind.VCS_FAILURE,
                bead_id=bead_id,
                status=RELEASE_DONE,
                message=f"Failed to merge: {exc}",
            )

        failure = self._finish_merged(claim)
        if failure is not None:
            return ReleaseResult(
                success=False,
                error=ErrorKind.VCS_FAILURE,
                bead_id=bead_id,
                status=RELEASE_DONE,
                merged=True,
                message=(
                    f"Merged {bead_id} into {self._target_branch} but could not remove its "
                    f"worktree: {failure}. Clean the worktree, then re-run: "
                    f"bacchus release {bead_id} --status done"
                ),
            )

        self._record(bead_id, "released", agent_id=claim.agent_id, status=STATUS_CLOSED, outcome=RELEASE_DONE)
        return ReleaseResult(
            success=True,
            bead_id=bead_id,
            status=RELEASE_DONE,
            merged=True,
            message=f"Released {bead_id} with status done",
        )

    def _merge_unless_merged(self, claim: Claim) -> None:
        # A retried done release finds the branch merged, or already deleted.
        if not self._vcs.branch_exists(self._root, claim.bead_id) or self._vcs.is_merged(
            self._root, claim.bead_id, self._target_branch
        ):
            logger.info(
                "Bead branch already merged",
                extra={"bead_id": claim.bead_id, "target": self._target_branch},
            )
            return
        self._vcs.merge_worktree(self._root, claim.bead_id, self._target_branch)

    def _finish_merged(self, claim: Claim) -> WorktreeError | None:
        """Remove the merged worktree, close the bead and drop the claim.

        Returns the removal error, leaving the claim in place, when the
        worktree could not be removed.
        """

        try:
            self._vcs.remove_worktree(self._root, claim.bead_id, force=False)
        except WorktreeNotFoundError:
            logger.info("Worktree already removed", extra={"bead_id": claim.bead_id})
        except WorktreeError as exc:
            logger.warning(
                "Failed to remove merged worktree",
                extra={"bead_id": claim.bead_id, "error": str(exc)},
            )
            return exc

        self._tracker.set_status(claim.bead_id, STATUS_CLOSED)
        self._store.delete(claim.bead_id)
        logger.info("Closed bead", extra={"bead_id": claim.bead_id, "agent_id": claim.agent_id})
        return None

    def _release_blocked(self, claim: Claim) -> ReleaseResult:
        self._tracker.set_status(claim.bead_id, STATUS_BLOCKED)
        self._store.delete(claim.bead_id)
        self._record(
            claim.bead_id,
            "released",
            agent_id=claim.agent_id,
            status=STATUS_BLOCKED,
            outcome=RELEASE_BLOCKED,
            worktree_path=claim.worktree_path,
        )
        logger.info("Released blocked bead", extra={"bead_id": claim.bead_id})
        return ReleaseResult(
            success=True,
            bead_id=claim.bead_id,
            status=RELEASE_BLOCKED,
            message=(
                f"Released {claim.bead_id} with status blocked; work preserved at "
                f"{claim.worktree_path} on {claim.branch_name}"
            ),
        )

    def _release_failed(self, claim: Claim) -> ReleaseResult:
        self._discard_work(claim)
        self._tracker.set_status(claim.bead_id, STATUS_OPEN)
        self._store.delete(claim.bead_id)
        self._record(claim.bead_id, "released", agent_id=claim.agent_id, status=STATUS_OPEN, outcome=RELEASE_FAILED)
        logger.info("Discarded failed bead", extra={"bead_id": claim.bead_id})
        return ReleaseResult(
            success=True,
            bead_id=claim.bead_id,
            status=RELEASE_FAILED,
            message=f"Released {claim.bead_id} with status failed",
        )

    def _discard_work(self, claim: Claim) -> None:
        """Abort this bead's pending merge, then force-remove its worktree and branch."""

        if (
            self._vcs.is_in_merge_conflict(self._root)
            and self._vcs.get_merge_branch(self._root) == claim.branch_name
        ):
            self._vcs.abort_merge(self._root)
            self._record(claim.bead_id, "merge_aborted", agent_id=claim.agent_id, reason="discard")
        try:
            self._vcs.remove_worktree(self._root, claim.bead_id, force=True)
        except WorktreeNotFoundError:
            logger.info("Worktree already removed", extra={"bead_id": claim.bead_id})

    # ------------------------------------------------------------------
    # Merge conflict sub-protocol
    # ------------------------------------------------------------------
    def _merge_guard(self, bead_id: str, action: str) -> tuple[Claim | None, MergeResult | None]:
        claim = self._store.get(bead_id)
        if claim is None:
            return None, MergeResult(
                success=False,
                error=ErrorKind.NOT_FOUND,
                bead_id=bead_id,
                message=f"No claim found for {bead_id}",
            )
        if not self._vcs.is_in_merge_conflict(self._root):
            hint = (
                "Nothing to abort."
                if action == "abort"
                else "Use 'bacchus release --status done' instead."
            )
            return claim, MergeResult(
                success=False,
                error=ErrorKind.NOT_IN_MERGE,
                bead_id=bead_id,
                message=f"Not in a merge conflict state. {hint}",
            )
        branch = self._vcs.get_merge_branch(self._root)
        if branch != claim.branch_name:
            return claim, MergeResult(
                success=False,
                error=ErrorKind.WRONG_MERGE_TARGET,
                bead_id=bead_id,
                message=(
                    f"Current merge conflict is for '{branch or 'an unknown branch'}', "
                    f"not '{claim.branch_name}'. {action.capitalize()} the correct bead."
                ),
            )
        return claim, None

    def abort(self, bead_id: str) -> MergeResult:
        """Abandon this bead's conflicted merge, keeping the claim and its worktree."""

        claim, refusal = self._merge_guard(bead_id, "abort")
        if refusal is not None:
            return refusal

        self._vcs.abort_merge(self._root)
        self._record(bead_id, "merge_aborted", agent_id=claim.agent_id)
        return MergeResult(
            success=True,
            bead_id=bead_id,
            merged=False,
            message=(
                f"Aborted merge for {bead_id}. Worktree preserved at {claim.worktree_path}. "
                "Continue working or release with --status failed."
            ),
        )

    def resolve(self, bead_id: str) -> MergeResult:
        """Commit a manually resolved merge, then close the bead."""

        claim, refusal = self._merge_guard(bead_id, "resolve")
        if refusal is not None:
            return refusal

        unresolved_message = (
            "Unresolved conflicts remain. Fix all conflicts and stage changes with 'git add'."
        )
        if self._vcs.has_unresolved_conflicts(self._root):
            return MergeResult(
                success=False,
                error=ErrorKind.UNRESOLVED_CONFLICTS,
                bead_id=bead_id,
                message=unresolved_message,
            )
        try:
            self._vcs.complete_merge(self._root)
        except UnresolvedConflictsError as exc:
            return MergeResult(
                success=False,
                error=ErrorKind.UNRESOLVED_CONFLICTS,
                bead_id=bead_id,
                conflicts=exc.paths,
                message=unresolved_message,
            )

        failure = self._finish_merged(claim)
        if failure is not None:
            return MergeResult(
                success=False,
                error=ErrorKind.VCS_FAILURE,
                bead_id=bead_id,
                merged=True,
                message=(
                    f"Merge committed for {bead_id} but its worktree could not be removed: "
                    f"{failure}. Clean the worktree, then run: bacchus release {bead_id} --status done"
                ),
            )

        self._record(bead_id, "merge_resolved", agent_id=claim.agent_id, status=STATUS_CLOSED)
        return MergeResult(
            success=True,
            bead_id=bead_id,
            merged=True,
            message=f"Merge completed for {bead_id}. Worktree removed, bead closed.",
        )

    # ------------------------------------------------------------------
    # Stale claims and reporting
    # ------------------------------------------------------------------
    def stale(self, minutes: int, *, cleanup: bool = False) -> StaleResult:
        """List claims older than ``minutes``; with ``cleanup`` discard them like a failed release."""

        if minutes < 0:
            raise ValueError("minutes must be >= 0")

        now = self.now_ms()
        stale_claims = self._store.list_older_than(now - minutes * 60_000)
        summaries = [ClaimSummary.from_claim(claim, now) for claim in stale_claims]
        if not cleanup:
            return StaleResult(
                success=True,
                stale_claims=summaries,
                message=f"Found {len(summaries)} stale claims (use --cleanup to remove)",
            )

        cleaned_up: list[str] = []
        failed: dict[str, str] = {}
        for claim in stale_claims:
            try:
                self._reap(claim)
            except (WorktreeError, TrackerError) as exc:
                logger.warning(
                    "Failed to clean up stale claim",
                    extra={"bead_id": claim.bead_id, "agent_id": claim.agent_id, "error": str(exc)},
                )
                failed[claim.bead_id] = str(exc)
                continue
            cleaned_up.append(claim.bead_id)

        message = f"Found {len(summaries)} stale claims, cleaned up {len(cleaned_up)}"
        if failed:
            message += f", {len(failed)} failed"
        return StaleResult(
            success=not failed,
            stale_claims=summaries,
            cleaned_up=cleaned_up,
            failed=failed,
            message=message,
        )

    def _reap(self, claim: Claim) -> None:
        self._discard_work(claim)
        try:
            self._tracker.set_status(claim.bead_id, STATUS_OPEN)
        except BeadNotFoundError:
            logger.warning("Stale bead no longer exists in the tracker", extra={"bead_id": claim.bead_id})
        self._store.delete(claim.bead_id)
        self._record(claim.bead_id, "reaped", agent_id=claim.agent_id, status=STATUS_OPEN)
        logger.info("Reaped stale claim", extra={"bead_id": claim.bead_id, "agent_id": claim.agent_id})

    def list_claims(self) -> ListResult:
        now = self.now_ms()
        claims = [ClaimSummary.from_claim(claim, now) for claim in self._store.list_all()]
        return ListResult(success=True, claims=claims, total=len(claims))

    def worktrees(self) -> WorktreeListResult:
        owners = {claim.bead_id: claim.agent_id for claim in self._store.list_all()}
        worktrees = [
            WorktreeSummary(**info.as_dict(), claimed_by=owners.get(info.bead_id))
            for info in self._vcs.list_worktrees(self._root)
        ]
        return WorktreeListResult(success=True, worktrees=worktrees, total=len(worktrees))

    def history(self, bead_id: str | None = None, *, limit: int | None = None) -> HistoryResult:
        if self._journal is None:
            return HistoryResult(
                success=False,
                bead_id=bead_id,
                message="Lifecycle journal is disabled (set BACCHUS_JOURNAL=true to enable)",
            )
        events = [event.as_dict() for event in self._journal.history(bead_id, limit=limit)]
        return HistoryResult(
            success=True,
            bead_id=bead_id,
            events=events,
            message=f"{len(events)} lifecycle event(s)",
        )

    def status(self) -> dict[str, Any]:
        """Snapshot of the workspace for dashboards and the MCP status resource."""

        in_merge = self._vcs.is_in_merge_conflict(self._root)
        return {
            "workspace": str(self._root),
            "target_branch": self._target_branch,
            "active_claims": self._store.count(),
            "in_merge_conflict": in_merge,
            "merge_branch": self._vcs.get_merge_branch(self._root) if in_merge else None,
            "journal_enabled": self._journal is not None,
        }


__all__ = ["LifecycleEngine", "RELEASE_STATUSES"]
