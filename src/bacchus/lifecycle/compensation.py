"""Ordered undo log for operations spanning git, the claim store and the tracker."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CompensationStep:
    name: str
    undo: Callable[[], None] | None


@dataclass(slots=True)
class Compensation:
    """Record completed steps with their inverses and undo them newest first.

    Used as a context manager: leaving the block without calling
    :meth:`commit` (by exception or by an early return) unwinds every recorded
    step. Failures of individual inverses are logged and never replace the
    error that triggered the unwind.
    """

    label: str
    steps: list[CompensationStep] = field(default_factory=list)
    committed: bool = False
    failures: list[tuple[str, Exception]] = field(default_factory=list)

    def push(self, name: str, undo: Callable[[], None] | None = None) -> None:
        """Record a completed step; ``undo`` is ``None`` for steps with no inverse."""

        self.steps.append(CompensationStep(name=name, undo=undo))

    def commit(self) -> None:
        self.committed = True
        self.steps.clear()

    def unwind(self) -> list[tuple[str, Exception]]:
        """Run the recorded inverses in reverse order and return any that failed."""

        while self.steps:
            step = self.steps.pop()
            if step.undo is None:
                continue
            try:
                step.undo()
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Compensation step failed",
                    extra={"operation": self.label, "step": step.name, "error": str(exc)},
                )
                self.failures.append((step.name, exc))
            else:
                logger.warning(
                    "Compensated step",
                    extra={"operation": self.label, "step": step.name},
                )
        return list(self.failures)

    def __enter__(self) -> "Compensation":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self.committed:
            self.unwind()
        return False


__all__ = ["Compensation", "CompensationStep"]
