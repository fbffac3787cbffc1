"""Agent and orchestrator sessions backing the stop hook.

A session file tells the stop hook whether the running agent may exit: an
agent stays until its bead is closed, an orchestrator until no ready work or
active claims remain.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from .storage.claims import ClaimStore
from .tracker.beads import TaskTrackerPort, TrackerError

logger = logging.getLogger(__name__)

SESSION_FILENAME = "session.json"

APPROVE = "approve"
BLOCK = "block"


class SessionError(RuntimeError):
    """Raised when a session cannot be started."""


class Session(BaseModel):
    mode: Literal["agent", "orchestrator"]
    bead_id: str | None = None
    max_concurrent: int | None = Field(default=None, ge=1)
    started_at: str


class HookDecision(BaseModel):
    decision: Literal["approve", "block"]
    reason: str

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump()


class SessionManager:
    """Read and write ``.bacchus/session.json`` and answer stop-hook checks."""

    def __init__(
        self,
        coordination_dir: Path,
        *,
        tracker: TaskTrackerPort,
        store: ClaimStore,
        default_max_concurrent: int = 3,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._dir = Path(coordination_dir)
        self._tracker = tracker
        self._store = store
        self._default_max_concurrent = default_max_concurrent
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def path(self) -> Path:
        return self._dir / SESSION_FILENAME

    def start(
        self,
        mode: str,
        *,
        bead_id: str | None = None,
        max_concurrent: int | None = None,
    ) -> dict[str, Any]:
        if mode == "agent":
            if not bead_id:
                raise SessionError("bead_id required for agent mode")
            session = Session(mode="agent", bead_id=bead_id, started_at=self._clock().isoformat())
        elif mode == "orchestrator":
            session = Session(
                mode="orchestrator",
                max_concurrent=max_concurrent or self._default_max_concurrent,
                started_at=self._clock().isoformat(),
            )
        else:
            raise SessionError(f"Unknown mode: {mode}. Use 'agent' or 'orchestrator'")

        self._dir.mkdir(parents=True, exist_ok=True)
        self.path.write_text(session.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        logger.info("Started session", extra={"mode": mode, "bead_id": bead_id})
        return {"success": True, "message": f"Started {mode} session", "session": session.model_dump(exclude_none=True)}

    def stop(self) -> dict[str, Any]:
        if self.path.exists():
            self.path.unlink()
            logger.info("Stopped session")
            return {"success": True, "message": "Session stopped"}
        return {"success": True, "message": "No active session"}

    def _load(self) -> Session | None:
        if not self.path.exists():
            return None
        return Session.model_validate_json(self.path.read_text(encoding="utf-8"))

    def status(self) -> dict[str, Any]:
        try:
            session = self._load()
        except (OSError, ValidationError) as exc:
            return {"success": False, "active": False, "session": None, "message": f"Invalid session file: {exc}"}
        if session is None:
            return {"success": True, "active": False, "session": None}
        return {
            "success": True,
            "active": True,
            "session": session.model_dump(exclude_none=True),
            "path": str(self.path),
        }

    def check(self) -> HookDecision:
        try:
            session = self._load()
        except OSError:
            return HookDecision(decision=APPROVE, reason="Cannot read session file")
        except (ValidationError, json.JSONDecodeError):
            return HookDecision(decision=APPROVE, reason="Invalid session file")
        if session is None:
            return HookDecision(decision=APPROVE, reason="No bacchus session active")

        if session.mode == "agent":
            return self._check_agent(session)
        return self._check_orchestrator(session)

    def _check_agent(self, session: Session) -> HookDecision:
        bead_id = session.bead_id
        if not bead_id:
            return HookDecision(decision=APPROVE, reason="No bead ID in session")
        try:
            bead = self._tracker.get_item(bead_id)
        except TrackerError as exc:
            return HookDecision(decision=APPROVE, reason=f"Cannot check bead status: {exc}")

        if bead.is_closed:
            self.stop()
            return HookDecision(decision=APPROVE, reason=f"Bead {bead_id} is closed. Session cleared.")
        return HookDecision(
            decision=BLOCK,
            reason=(
                f"Bead {bead_id} status is '{bead.status}'. Continue working until complete, "
                f"then run 'bacchus release {bead_id} --status done'."
            ),
        )

    def _check_orchestrator(self, session: Session) -> HookDecision:
        max_concurrent = session.max_concurrent or self._default_max_concurrent
        try:
            ready = self._tracker.ready_items()
        except TrackerError as exc:
            logger.warning("Cannot list ready beads for session check", extra={"error": str(exc)})
            ready = []
        claimed = {claim.bead_id for claim in self._store.list_all()}
        ready = [bead for bead in ready if bead.id not in claimed]
        active = len(claimed)

        if ready and active < max_concurrent:
            to_spawn = ready[: max_concurrent - active]
            ids = ", ".join(bead.id for bead in to_spawn)
            return HookDecision(
                decision=BLOCK,
                reason=(
                    f"Ready to spawn {len(to_spawn)} agent(s) for: {ids}. "
                    f"Active: {active}/{max_concurrent}. "
                    "Use 'bacchus claim <bead_id> <agent_id>' to claim."
                ),
            )
        if active:
            return HookDecision(
                decision=BLOCK,
                reason=f"Waiting for {active} active agent(s) to complete. Check with 'bacchus list'.",
            )
        self.stop()
        return HookDecision(decision=APPROVE, reason="All work complete or blocked. Session cleared.")


__all__ = ["HookDecision", "Session", "SessionError", "SessionManager"]
