"""Task tracker access through the ``bd`` command line client."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from .models import Bead, VALID_STATUSES

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("not found", "no issue")


class TrackerError(RuntimeError):
    """Base class for task tracker failures."""


class TrackerUnavailableError(TrackerError):
    """Raised when the ``bd`` executable cannot be launched."""


class BeadNotFoundError(TrackerError):
    """Raised when the tracker has no bead with the requested id."""

    def __init__(self, bead_id: str) -> None:
        super().__init__(f"Bead not found: {bead_id}")
        self.bead_id = bead_id


class InvalidStatusError(TrackerError):
    """Raised for a status outside open, in_progress, blocked and closed."""

    def __init__(self, status: str) -> None:
        allowed = ", ".join(sorted(VALID_STATUSES))
        super().__init__(f"Invalid bead status '{status}'; expected one of {allowed}")
        self.status = status


class TrackerCommandError(TrackerError):
    """Raised when ``bd`` exits non-zero or prints output that cannot be parsed."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class TaskTrackerPort(Protocol):
    """Readiness queries and status transitions the lifecycle engine consumes."""

    def ready_items(self) -> list[Bead]:
        ...

    def get_item(self, bead_id: str) -> Bead:
        ...

    def is_ready(self, bead_id: str) -> bool:
        ...

    def set_status(self, bead_id: str, status: str) -> None:
        ...


class BeadsTracker:
    """``TaskTrackerPort`` backed by the beads CLI."""

    def __init__(self, executable: str | None = None, *, db_path: Path | None = None) -> None:
        self._executable = executable or "bd"
        self._db_path = db_path

    @property
    def executable(self) -> str:
        return self._executable

    def _command(self, *args: str) -> list[str]:
        command = [self._executable]
        if self._db_path is not None:
            command.extend(["--db", str(self._db_path)])
        command.extend(args)
        return command

    def _run(self, *args: str, bead_id: str | None = None) -> str:
        command = self._command(*args)
        logger.debug("Running bd", extra={"command": command})
        try:
            completed = subprocess.run(command, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise TrackerUnavailableError(
                f"bd executable '{self._executable}' not found - is beads installed?"
            ) from exc
        except OSError as exc:
            raise TrackerUnavailableError(f"Failed to launch bd: {exc}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            lowered = stderr.lower()
            if bead_id is not None and any(marker in lowered for marker in _NOT_FOUND_MARKERS):
                raise BeadNotFoundError(bead_id)
            raise TrackerCommandError(
                f"bd {args[0]} failed: {stderr or f'exit code {completed.returncode}'}",
                stderr=stderr,
            )
        return completed.stdout or ""

    def _parse(self, output: str, command: str) -> Any:
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise TrackerCommandError(f"Failed to parse bd {command} output: {exc}") from exc

    def _to_bead(self, payload: Any, command: str) -> Bead:
        try:
            return Bead.model_validate(payload)
        except ValidationError as exc:
            raise TrackerCommandError(f"Unexpected bd {command} output: {exc}") from exc

    def ready_items(self) -> list[Bead]:
        """Return ready beads ordered by priority, then id."""

        payload = self._parse(self._run("ready", "--json", "--quiet"), "ready")
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise TrackerCommandError("bd ready returned a non-list payload")
        beads = [self._to_bead(item, "ready") for item in payload]
        return sorted(beads, key=lambda bead: (bead.priority, bead.id))

    def get_item(self, bead_id: str) -> Bead:
        payload = self._parse(self._run("show", bead_id, "--json", "--quiet", bead_id=bead_id), "show")
        # Newer bd releases wrap the issue in a single-element list.
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if payload is None:
            raise BeadNotFoundError(bead_id)
        return self._to_bead(payload, "show")

    def is_ready(self, bead_id: str) -> bool:
        return any(bead.id == bead_id for bead in self.ready_items())

    def set_status(self, bead_id: str, status: str) -> None:
        if status not in VALID_STATUSES:
            raise InvalidStatusError(status)
        self._run("update", bead_id, "--status", status, "--quiet", bead_id=bead_id)
        logger.info("Updated bead status", extra={"bead_id": bead_id, "status": status})


__all__ = [
    "BeadNotFoundError",
    "BeadsTracker",
    "InvalidStatusError",
    "TaskTrackerPort",
    "TrackerCommandError",
    "TrackerError",
    "TrackerUnavailableError",
]
