"""Synchronous runner for the git CLI."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .utils import sanitize_environment

logger = logging.getLogger(__name__)


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


@dataclass(slots=True)
class GitExecutionResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def detail(self) -> str:
        return (self.stderr or self.stdout).strip()


class GitRunner:
    """Execute git commands against a working directory."""

    def __init__(self, executable: Path | str | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | str | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            resolved = shutil.which(str(explicit))
            if resolved is not None:
                return Path(resolved)
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def version(self) -> GitExecutionResult:
        return self.run("--version", cwd=Path.cwd())

    def run(self, *args: str, cwd: Path) -> GitExecutionResult:
        cmd = [str(self._executable_path), *args]
        logger.debug("git %s", " ".join(args), extra={"cwd": str(cwd)})
        try:
            completed = subprocess.run(
                cmd,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                env=sanitize_environment(),
            )
        except FileNotFoundError as exc:
            raise GitNotFoundError(f"Cannot run git in {cwd}: {exc}") from exc
        return GitExecutionResult(
            args=tuple(cmd),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


__all__ = ["GitExecutionResult", "GitNotFoundError", "GitRunner", "GitRunnerError"]
