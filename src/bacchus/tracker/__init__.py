"""Task tracker integration."""

from .beads import (
    BeadNotFoundError,
    BeadsTracker,
    InvalidStatusError,
    TaskTrackerPort,
    TrackerCommandError,
    TrackerError,
    TrackerUnavailableError,
)
from .models import (
    Bead,
    STATUS_BLOCKED,
    STATUS_CLOSED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
    VALID_STATUSES,
)

__all__ = [
    "Bead",
    "BeadNotFoundError",
    "BeadsTracker",
    "InvalidStatusError",
    "STATUS_BLOCKED",
    "STATUS_CLOSED",
    "STATUS_IN_PROGRESS",
    "STATUS_OPEN",
    "TaskTrackerPort",
    "TrackerCommandError",
    "TrackerError",
    "TrackerUnavailableError",
    "VALID_STATUSES",
]
