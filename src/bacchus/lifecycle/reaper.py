"""Stale-claim reaper."""

from __future__ import annotations

import logging

from .engine import LifecycleEngine
from .results import StaleResult

logger = logging.getLogger(__name__)


class Reaper:
    """Find claims older than a threshold and return their beads to the ready pool."""

    def __init__(self, engine: LifecycleEngine, *, threshold_minutes: int = 15) -> None:
        if threshold_minutes < 1:
            raise ValueError("threshold_minutes must be >= 1")
        self._engine = engine
        self._threshold_minutes = threshold_minutes

    @property
    def threshold_minutes(self) -> int:
        return self._threshold_minutes

    def _threshold(self, minutes: int | None) -> int:
        return self._threshold_minutes if minutes is None else minutes

    def scan(self, minutes: int | None = None) -> StaleResult:
        return self._engine.stale(self._threshold(minutes), cleanup=False)

    def reap(self, minutes: int | None = None) -> StaleResult:
        threshold = self._threshold(minutes)
        result = self._engine.stale(threshold, cleanup=True)
        if result.stale_claims:
            logger.info(
                "Reaper pass finished",
                extra={
                    "threshold_minutes": threshold,
                    "cleaned_up": result.cleaned_up,
                    "failed": sorted(result.failed),
                },
            )
        return result


__all__ = ["Reaper"]
