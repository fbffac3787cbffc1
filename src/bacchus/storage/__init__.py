"""Storage abstractions for Bacchus."""

from .chroma import ChromaUnavailableError, ClaimJournal, JournalEvent
from .claims import (
    ClaimConflictError,
    ClaimStore,
    ClaimStoreError,
    ClaimStoreUnavailableError,
)
from .models import Claim, WorktreeInfo, epoch_millis

__all__ = [
    "ChromaUnavailableError",
    "Claim",
    "ClaimConflictError",
    "ClaimJournal",
    "ClaimStore",
    "ClaimStoreError",
    "ClaimStoreUnavailableError",
    "JournalEvent",
    "WorktreeInfo",
    "epoch_millis",
]
