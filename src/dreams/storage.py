"""Core storage layer for the dreams system.

Manages a SQLite database holding memories, their activation history, the
directed connection graph and the dream (consolidation run) log.  The
sqlite-vec extension supplies cosine distance over embedding blobs.  All
public methods are async-friendly, wrapping synchronous sqlite3 calls via
:func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections: each thread pool worker keeps one
      long-lived connection open, eliminating per-call open/close overhead.
    - WAL mode enables concurrent readers alongside a single writer.

Usage::

    from dreams.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    row_id = await store.execute_write("INSERT INTO memories ...", (...))
"""

from __future__ import annotations

import logging
import sqlite3
import struct
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

import anyio
import sqlite_vec

from dreams.config import get_config

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Embedding serialisation helpers
# ---------------------------------------------------------------------------


def serialize_embedding(vec: list[float]) -> bytes:
    """Pack a float vector into a compact binary representation.

    Parameters
    ----------
    vec:
        A list of floats.

    Returns
    -------
    bytes
        Little-endian packed float32 values suitable for sqlite-vec.
    """
    return struct.pack(f"<{len(vec)}f", *vec)


def deserialize_embedding(data: bytes) -> list[float]:
    """Unpack binary embedding data back into a list of floats."""
    count = len(data) // struct.calcsize("f")
    return list(struct.unpack(f"<{count}f", data))


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(value: datetime) -> str:
    """Render *value* in SQLite's ``datetime('now')`` format (UTC)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Memory records (owned by the ingestion side; read-only for dreaming)
CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    embedding BLOB,
    source_agent TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Joint activations; memory_ids is a sorted JSON array
CREATE TABLE IF NOT EXISTS activation_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    query TEXT,
    agent TEXT,
    memory_ids TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Directed, weighted edges between memories and concepts
CREATE TABLE IF NOT EXISTS connections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL,
    source_type TEXT NOT NULL CHECK(source_type IN ('memory','concept')),
    target_id INTEGER NOT NULL,
    target_type TEXT NOT NULL CHECK(target_type IN ('memory','concept')),
    connection_type TEXT NOT NULL CHECK(connection_type IN (
        'semantic','temporal','causal','procedural','hierarchical'
    )),
    strength REAL NOT NULL DEFAULT 0.1 CHECK(strength >= 0.0 AND strength <= 1.0),
    usage_count INTEGER NOT NULL DEFAULT 0,
    last_used_at TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(source_id, source_type, target_id, target_type)
);

-- Consolidation run history
CREATE TABLE IF NOT EXISTS dream_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL DEFAULT (datetime('now')),
    completed_at TEXT,
    connections_created INTEGER NOT NULL DEFAULT 0,
    connections_strengthened INTEGER NOT NULL DEFAULT 0,
    connections_pruned INTEGER NOT NULL DEFAULT 0,
    concepts_created INTEGER NOT NULL DEFAULT 0,
    notes TEXT
);

-- Advisory locks for cross-process mutual exclusion
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_memories_created_at ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_memories_source_agent ON memories(source_agent);
CREATE INDEX IF NOT EXISTS idx_activation_log_created ON activation_log(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_activation_log_members ON activation_log(memory_ids);
CREATE INDEX IF NOT EXISTS idx_connections_source ON connections(source_id, source_type);
CREATE INDEX IF NOT EXISTS idx_connections_target ON connections(target_id, target_type);
CREATE INDEX IF NOT EXISTS idx_connections_type ON connections(connection_type);
CREATE INDEX IF NOT EXISTS idx_connections_strength ON connections(strength DESC);
CREATE INDEX IF NOT EXISTS idx_dream_log_started ON dream_log(started_at DESC);
"""


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend for the dreams system.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path: Path = db_path or get_config().db_path
        self._write_lock = threading.Lock()
        self._local = threading.local()  # thread-local persistent connections
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()  # guards _all_connections
        self._initialized = False
        self._vec_available = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def vec_available(self) -> bool:
        """Whether the sqlite-vec extension loaded successfully."""
        return self._vec_available

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        This method is idempotent and safe to call multiple times.  It:

        1. Creates the database directory.
        2. Probes for sqlite-vec support.
        3. Creates all tables and indexes.
        """
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info(
            "Storage initialised at %s (vec=%s)",
            self._db_path,
            self._vec_available,
        )

    def _initialize_sync(self) -> None:
        """Synchronous initialisation run inside a worker thread."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._vec_available = self._probe_vec_support()

        # Dedicated one-time connection for schema setup (not thread-local).
        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.executescript(_INDEX_SQL)
            conn.commit()
        finally:
            conn.close()

    def _probe_vec_support(self) -> bool:
        """Check whether sqlite-vec can be loaded in this environment.

        Returns ``True`` if the extension loaded, ``False`` otherwise.  The
        result is cached for the lifetime of the :class:`Storage` instance.
        """
        conn = sqlite3.connect(str(self._db_path))
        try:
            if not hasattr(conn, "enable_load_extension"):
                log.warning(
                    "sqlite3 module compiled without extension loading support; "
                    "semantic discovery will be unavailable"
                )
                return False

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            log.debug("sqlite-vec extension loaded successfully")
            return True
        except (AttributeError, OSError, sqlite3.OperationalError) as exc:
            log.warning(
                "sqlite-vec extension could not be loaded (%s); "
                "semantic discovery will be unavailable",
                exc,
            )
            return False
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection is configured with WAL journal mode, sqlite-vec
        (when available) and :class:`sqlite3.Row` as the row factory.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        if self._vec_available:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")

        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows.

        Parameters
        ----------
        sql:
            SQL SELECT statement.
        params:
            Bind parameters (positional tuple or named dict).

        Returns
        -------
        list[sqlite3.Row]
            Result rows with dict-like column access.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

        Returns
        -------
        int
            The ``lastrowid`` of the executed statement.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_sync(sql, params),
        )

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.lastrowid or 0
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration and the callback
        receives a raw :class:`sqlite3.Connection` already inside the
        transaction.  Commit on success, rollback on exception.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Advisory locks
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lock(
        conn: sqlite3.Connection,
        name: str,
        holder: str,
        stale_minutes: int = 60,
    ) -> bool:
        """Attempt to take the advisory lock *name* for *holder*.

        Must run inside a transaction (see :meth:`execute_transaction`).
        A lock whose ``acquired_at`` is older than *stale_minutes* belongs
        to a crashed run and is reclaimed first.

        Returns
        -------
        bool
            ``True`` if *holder* now owns the lock, ``False`` if someone
            else does.
        """
        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < datetime('now', ?)",
            (name, f"-{int(stale_minutes)} minutes"),
        )

        try:
            conn.execute(
                "INSERT INTO locks (name, holder) VALUES (?, ?)",
                (name, holder),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    @staticmethod
    def refresh_lock(conn: sqlite3.Connection, name: str, holder: str) -> bool:
        """Reset ``acquired_at`` so a long-running holder is not reclaimed.

        Returns ``False`` when *holder* no longer owns the lock.
        """
        cursor = conn.execute(
            "UPDATE locks SET acquired_at = datetime('now') WHERE name = ? AND holder = ?",
            (name, holder),
        )
        return cursor.rowcount > 0

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str) -> None:
        """Drop the lock *name* if *holder* still owns it."""
        conn.execute(
            "DELETE FROM locks WHERE name = ? AND holder = ?",
            (name, holder),
        )

    # ------------------------------------------------------------------
    # Database metadata
    # ------------------------------------------------------------------

    async def get_db_size_mb(self) -> float:
        """Return the database file size (plus WAL) in megabytes."""
        return await anyio.to_thread.run_sync(self._get_db_size_mb_sync)

    def _get_db_size_mb_sync(self) -> float:
        if not self._db_path.exists():
            return 0.0
        size_bytes = self._db_path.stat().st_size
        wal_path = self._db_path.with_suffix(".db-wal")
        if wal_path.exists():
            size_bytes += wal_path.stat().st_size
        return round(size_bytes / (1024 * 1024), 2)

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for all core tables in one round-trip."""
        rows = await self.execute(
            """
            SELECT 'memories'        AS tbl, COUNT(*) AS cnt FROM memories
            UNION ALL
            SELECT 'activation_log',          COUNT(*)        FROM activation_log
            UNION ALL
            SELECT 'connections',             COUNT(*)        FROM connections
            UNION ALL
            SELECT 'dream_log',               COUNT(*)        FROM dream_log
            """
        )
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except Exception as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
