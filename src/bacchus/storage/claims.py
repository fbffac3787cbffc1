"""SQLite-backed store of active claims.

The primary key on ``bead_id`` is the only mutual-exclusion mechanism shared
by agent processes: whoever inserts the row owns the bead.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterator

from .models import Claim

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

# (version, name, statements)
MIGRATIONS: tuple[tuple[int, str, tuple[str, ...]], ...] = (
    (
        1,
        "create_claims",
        (
            """
            CREATE TABLE IF NOT EXISTS claims (
              bead_id       TEXT PRIMARY KEY,
              agent_id      TEXT NOT NULL,
              worktree_path TEXT NOT NULL UNIQUE,
              branch_name   TEXT NOT NULL,
              start_commit  TEXT NOT NULL,
              claimed_at    INTEGER NOT NULL
            )
            """,
        ),
    ),
    (
        2,
        "index_claimed_at",
        ("CREATE INDEX IF NOT EXISTS idx_claims_claimed_at ON claims(claimed_at)",),
    ),
)

_COLUMNS = "bead_id, agent_id, worktree_path, branch_name, start_commit, claimed_at"


class ClaimStoreError(RuntimeError):
    """Base class for claim store errors."""


class ClaimStoreUnavailableError(ClaimStoreError):
    """Raised when the claims database cannot be opened or queried."""


class ClaimConflictError(ClaimStoreError):
    """Raised when a claim for the bead (or its worktree path) already exists."""

    def __init__(self, bead_id: str, owner: str | None) -> None:
        holder = owner or "another agent"
        super().__init__(f"Bead {bead_id} is already claimed by {holder}")
        self.bead_id = bead_id
        self.owner = owner


def _row_to_claim(row: sqlite3.Row) -> Claim:
    return Claim(
        bead_id=row["bead_id"],
        agent_id=row["agent_id"],
        worktree_path=row["worktree_path"],
        branch_name=row["branch_name"],
        start_commit=row["start_commit"],
        claimed_at=int(row["claimed_at"]),
    )


class ClaimStore:
    """Durable table of active claims with CRUD and age queries."""

    def __init__(self, path: Path | str = MEMORY, *, busy_timeout: float = 10.0) -> None:
        self._path = path if path == MEMORY else Path(path)
        self._lock = threading.Lock()
        self._conn = self._connect(busy_timeout)
        self.apply_migrations()

    @property
    def path(self) -> Path | str:
        return self._path

    def _connect(self, busy_timeout: float) -> sqlite3.Connection:
        target = self._path
        if isinstance(target, Path):
            target.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                str(target),
                timeout=busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            if isinstance(target, Path):
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(busy_timeout * 1000)}")
        except sqlite3.Error as exc:
            raise ClaimStoreUnavailableError(f"Cannot open claims database {target}: {exc}") from exc
        return conn

    @contextlib.contextmanager
    def _locked(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection lock for a statement and every fetch on its cursor."""

        with self._lock:
            try:
                yield self._conn
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                raise ClaimStoreUnavailableError(f"Claims database error: {exc}") from exc

    def _execute(self, sql: str, params: tuple = ()) -> None:
        with self._locked() as conn:
            conn.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._locked() as conn:
            return conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._locked() as conn:
            return conn.execute(sql, params).fetchall()

    def current_version(self) -> int:
        row = self._fetchone("SELECT COALESCE(MAX(version), 0) AS version FROM schema_version")
        return int(row["version"])

    def apply_migrations(self) -> int:
        """Bring the schema up to date and return the resulting version."""

        self._execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
              version    INTEGER PRIMARY KEY,
              name       TEXT NOT NULL,
              applied_at INTEGER NOT NULL
            )
            """
        )
        with self._transaction() as conn:
            row = conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version").fetchone()
            current = int(row[0])
            for version, name, statements in MIGRATIONS:
                if version <= current:
                    continue
                for statement in statements:
                    conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_version (version, name, applied_at) VALUES (?, ?, ?)",
                    (version, name, int(time.time() * 1000)),
                )
                logger.debug("Applied claims migration", extra={"version": version, "migration": name})
        return self.current_version()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise ClaimStoreUnavailableError(f"Cannot lock claims database: {exc}") from exc
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def exists(self, bead_id: str) -> bool:
        row = self._fetchone("SELECT 1 FROM claims WHERE bead_id = ?", (bead_id,))
        return row is not None

    def get(self, bead_id: str) -> Claim | None:
        row = self._fetchone(f"SELECT {_COLUMNS} FROM claims WHERE bead_id = ?", (bead_id,))
        return _row_to_claim(row) if row else None

    def find_by_path(self, worktree_path: str) -> Claim | None:
        row = self._fetchone(f"SELECT {_COLUMNS} FROM claims WHERE worktree_path = ?", (worktree_path,))
        return _row_to_claim(row) if row else None

    def insert(self, claim: Claim) -> None:
        try:
            self._execute(
                f"INSERT INTO claims ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    claim.bead_id,
                    claim.agent_id,
                    claim.worktree_path,
                    claim.branch_name,
                    claim.start_commit,
                    claim.claimed_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            holder = self.get(claim.bead_id) or self.find_by_path(claim.worktree_path)
            raise ClaimConflictError(claim.bead_id, holder.agent_id if holder else None) from exc

    def delete(self, bead_id: str) -> None:
        self._execute("DELETE FROM claims WHERE bead_id = ?", (bead_id,))

    def list_all(self) -> list[Claim]:
        rows = self._fetchall(f"SELECT {_COLUMNS} FROM claims ORDER BY claimed_at DESC, bead_id")
        return [_row_to_claim(row) for row in rows]

    def list_older_than(self, cutoff_ms: int) -> list[Claim]:
        rows = self._fetchall(
            f"SELECT {_COLUMNS} FROM claims WHERE claimed_at < ? ORDER BY claimed_at, bead_id",
            (cutoff_ms,),
        )
        return [_row_to_claim(row) for row in rows]

    def count(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS total FROM claims")
        return int(row["total"])

    def __iter__(self) -> Iterator[Claim]:
        return iter(self.list_all())

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "ClaimStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = [
    "ClaimConflictError",
    "ClaimStore",
    "ClaimStoreError",
    "ClaimStoreUnavailableError",
    "MIGRATIONS",
]
