"""Chroma-based lifecycle journal."""

from __future__ import annotations

import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import epoch_millis

logger = logging.getLogger(__name__)

# Events carry no semantic content worth embedding; a constant vector keeps
# Chroma from loading its default embedding model.
_PLACEHOLDER_EMBEDDING = [1.0]

EVENT_TYPES = frozenset(
    {
        "claimed",
        "resumed",
        "claim_rolled_back",
        "merge_conflict",
        "released",
        "merge_aborted",
        "merge_resolved",
        "reaped",
    }
)


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Bacchus."""

    def add(
        self,
        *,
        ids: Iterable[str],
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        embeddings: Iterable[list[float]],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Bacchus."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class JournalEvent:
    """A single lifecycle transition as stored in the journal."""

    id: str
    bead_id: str
    event_type: str
    agent_id: str | None
    status: str | None
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    def as_dict(self) -> dict[str, Any]:
        try:
            details = json.loads(self.document)
        except json.JSONDecodeError:
            details = {"document": self.document}
        return {
            "id": self.id,
            "bead_id": self.bead_id,
            "event_type": self.event_type,
            "agent_id": self.agent_id,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "details": details,
        }


def _where_clause(filters: dict[str, Any]) -> dict[str, Any] | None:
    clauses = [{key: value} for key, value in filters.items() if value is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ClaimJournal:
    """Append-only history of claim lifecycle events persisted in ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "bacchus_lifecycle",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; disable the journal with BACCHUS_JOURNAL=false"
            ) from exc

        self._path.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record(
        self,
        *,
        bead_id: str,
        event_type: str,
        agent_id: str | None = None,
        status: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> JournalEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown lifecycle event type: {event_type}")

        collection = self._ensure_collection()
        sequence = self._counters[bead_id] = self._counters[bead_id] + 1
        event_id = f"{bead_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = json.dumps(details or {}, sort_keys=True, default=str)
        metadata: dict[str, Any] = {
            "bead_id": bead_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "recorded_at": epoch_millis(timestamp),
            "sequence": sequence,
        }
        if agent_id is not None:
            metadata["agent_id"] = agent_id
        if status is not None:
            metadata["status"] = status

        collection.add(
            ids=[event_id],
            documents=[document],
            metadatas=[metadata],
            embeddings=[_PLACEHOLDER_EMBEDDING],
        )
        logger.debug("Journaled lifecycle event", extra={"bead_id": bead_id, "event_type": event_type})

        return JournalEvent(
            id=event_id,
            bead_id=bead_id,
            event_type=event_type,
            agent_id=agent_id,
            status=status,
            document=document,
            metadata=metadata,
            timestamp=timestamp,
        )

    def _convert_result(self, result: dict[str, list[Any]]) -> list[JournalEvent]:
        events: list[JournalEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = metadata or {}
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                JournalEvent(
                    id=event_id,
                    bead_id=metadata.get("bead_id", ""),
                    event_type=metadata.get("event_type", ""),
                    agent_id=metadata.get("agent_id"),
                    status=metadata.get("status"),
                    document=document or "",
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.metadata.get("recorded_at", 0), event.metadata.get("sequence", 0)))
        return events

    def history(
        self,
        bead_id: str | None = None,
        *,
        event_type: str | None = None,
        limit: int | None = None,
    ) -> list[JournalEvent]:
        """Return journaled events oldest first, keeping the newest ``limit``."""

        collection = self._ensure_collection()
        result = collection.get(where=_where_clause({"bead_id": bead_id, "event_type": event_type}))
        events = self._convert_result(result)
        if limit:
            events = events[-limit:]
        return events


__all__ = ["ChromaUnavailableError", "ClaimJournal", "EVENT_TYPES", "JournalEvent"]
