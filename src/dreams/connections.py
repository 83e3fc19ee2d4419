"""Connection CRUD, reinforcement, and pruning for the dreams system.

A **connection** is a directed, typed, weighted edge between two graph
nodes (memories or concepts).  Its ``strength`` lives in ``[0, 1]`` and
changes only through :meth:`ConnectionManager.reinforce`, which creates the
edge on first use and otherwise adds a signed delta and clamps.  Every
reinforcement bumps ``usage_count`` and refreshes ``last_used_at``.

The graph is *not* implicitly symmetric.  Callers that want an undirected
association write both directions, ideally through
:meth:`ConnectionManager.reinforce_pair` so both land in one transaction.

Connection types:

- **semantic** -- similar content (also used for co-activation).
- **temporal** -- created close together in time.
- **causal**, **procedural**, **hierarchical** -- written by other
  subsystems; consolidation never creates them.

Usage::

    mgr = ConnectionManager(storage)
    conn = await mgr.reinforce(1, "memory", 2, "memory", 0.27, "semantic")
    print(conn.to_dict())
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from dreams.storage import Storage

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONNECTION_TYPES: tuple[str, ...] = (
    "semantic",
    "temporal",
    "causal",
    "procedural",
    "hierarchical",
)
"""Allowed values for the ``connections.connection_type`` column."""

NODE_TYPES: tuple[str, ...] = ("memory", "concept")
"""Allowed values for ``source_type`` / ``target_type``."""

STRONG_CONNECTION_THRESHOLD: float = 0.7
WEAK_CONNECTION_THRESHOLD: float = 0.1


# ---------------------------------------------------------------------------
# Connection dataclass
# ---------------------------------------------------------------------------


@dataclass
class Connection:
    """In-memory representation of a single ``connections`` row.

    Parameters
    ----------
    id:
        Auto-incremented primary key.
    source_id, source_type:
        The node the edge leaves from.
    target_id, target_type:
        The node the edge points to.
    connection_type:
        One of :data:`CONNECTION_TYPES`.
    strength:
        Edge weight in ``[0, 1]``.
    usage_count:
        Number of reinforcements applied, including the creating one.
    last_used_at:
        Timestamp of the most recent reinforcement, or ``None``.
    created_at:
        Timestamp when the edge was first written.
    """

    id: int
    source_id: int
    source_type: str
    target_id: int
    target_type: str
    connection_type: str
    strength: float
    usage_count: int
    last_used_at: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: Any) -> Connection:
        """Create a :class:`Connection` from a :class:`sqlite3.Row` or mapping."""
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            source_type=row["source_type"],
            target_id=row["target_id"],
            target_type=row["target_type"],
            connection_type=row["connection_type"],
            strength=row["strength"],
            usage_count=row["usage_count"],
            last_used_at=row["last_used_at"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise the connection to a plain dict for tool responses."""
        return {
            "id": self.id,
            "source_id": self.source_id,
            "source_type": self.source_type,
            "target_id": self.target_id,
            "target_type": self.target_type,
            "connection_type": self.connection_type,
            "strength": self.strength,
            "usage_count": self.usage_count,
            "last_used_at": self.last_used_at,
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# Validation helpers (module-private)
# ---------------------------------------------------------------------------


def _validate_connection_type(connection_type: str) -> None:
    if connection_type not in CONNECTION_TYPES:
        raise ValueError(
            f"Invalid connection type {connection_type!r}. "
            f"Must be one of: {', '.join(CONNECTION_TYPES)}"
        )


def _validate_node_type(node_type: str) -> None:
    if node_type not in NODE_TYPES:
        raise ValueError(
            f"Invalid node type {node_type!r}. "
            f"Must be one of: {', '.join(NODE_TYPES)}"
        )


def _validate_delta(delta: float) -> None:
    """Raise :class:`ValueError` if *delta* is outside ``[-1, 1]``."""
    if not -1.0 <= delta <= 1.0:
        raise ValueError(f"Delta must be between -1.0 and 1.0, got {delta}")


def _validate_endpoints(
    source_id: int,
    source_type: str,
    target_id: int,
    target_type: str,
) -> None:
    _validate_node_type(source_type)
    _validate_node_type(target_type)
    if source_id == target_id and source_type == target_type:
        raise ValueError(
            f"Cannot create a self-referencing connection ({source_type}={source_id})"
        )


def _upsert(
    conn: sqlite3.Connection,
    source_id: int,
    source_type: str,
    target_id: int,
    target_type: str,
    delta: float,
    connection_type: str,
) -> dict[str, Any]:
    """Create-or-reinforce one directed edge on an open transaction.

    New edges start at ``clamp(delta)``; existing edges move by *delta* and
    are clamped to ``[0, 1]``.  The stored connection type is only set on
    creation.
    """
    conn.execute(
        """
        INSERT INTO connections
            (source_id, source_type, target_id, target_type, connection_type,
             strength, usage_count, last_used_at)
        VALUES (?, ?, ?, ?, ?, MAX(0.0, MIN(1.0, ?)), 1, datetime('now'))
        ON CONFLICT(source_id, source_type, target_id, target_type) DO UPDATE SET
            strength = MAX(0.0, MIN(1.0, connections.strength + ?)),
            usage_count = connections.usage_count + 1,
            last_used_at = datetime('now')
        """,
        (source_id, source_type, target_id, target_type, connection_type, delta, delta),
    )
    row = conn.execute(
        """
        SELECT * FROM connections
        WHERE source_id = ? AND source_type = ? AND target_id = ? AND target_type = ?
        """,
        (source_id, source_type, target_id, target_type),
    ).fetchone()
    return dict(row)


# ---------------------------------------------------------------------------
# Connection manager
# ---------------------------------------------------------------------------


class ConnectionManager:
    """Async manager for the connection graph.

    All strength mutation goes through :meth:`reinforce` /
    :meth:`reinforce_pair`, and all deletion through :meth:`prune_weak`, so
    the clamping and use-tracking invariants live in one place.

    Parameters
    ----------
    storage:
        An initialised :class:`~dreams.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    # ------------------------------------------------------------------
    # Reinforcement
    # ------------------------------------------------------------------

    async def reinforce(
        self,
        source_id: int,
        source_type: str,
        target_id: int,
        target_type: str,
        delta: float,
        connection_type: str = "semantic",
    ) -> Connection:
        """Create a directed connection, or move an existing one by *delta*.

        Parameters
        ----------
        source_id, source_type:
            Source node; *source_type* is one of :data:`NODE_TYPES`.
        target_id, target_type:
            Target node.
        delta:
            Signed strength change in ``[-1, 1]``.  For a new edge this is
            the initial strength (clamped at 0).
        connection_type:
            One of :data:`CONNECTION_TYPES`; only applied on creation.

        Returns
        -------
        Connection
            The connection after the update.

        Raises
        ------
        ValueError
            If a node type, the connection type or *delta* is invalid, or
            the edge would point at its own source.
        """
        _validate_endpoints(source_id, source_type, target_id, target_type)
        _validate_connection_type(connection_type)
        _validate_delta(delta)

        def _do_upsert(conn: sqlite3.Connection) -> dict[str, Any]:
            return _upsert(
                conn, source_id, source_type, target_id, target_type,
                delta, connection_type,
            )

        connection = Connection.from_row(
            await self._storage.execute_transaction(_do_upsert)
        )
        log.debug(
            "Reinforced connection %d: %s %d -[%s]-> %s %d by %+.3f (strength=%.3f)",
            connection.id,
            source_type,
            source_id,
            connection.connection_type,
            target_type,
            target_id,
            delta,
            connection.strength,
        )
        return connection

    async def reinforce_pair(
        self,
        memory_a: int,
        memory_b: int,
        delta: float,
        connection_type: str = "semantic",
    ) -> tuple[Connection, Connection]:
        """Reinforce ``a -> b`` and ``b -> a`` inside one transaction.

        Either both directions are written or neither is.

        Returns
        -------
        tuple[Connection, Connection]
            The ``a -> b`` and ``b -> a`` connections.
        """
        _validate_endpoints(memory_a, "memory", memory_b, "memory")
        _validate_connection_type(connection_type)
        _validate_delta(delta)

        def _do_pair(conn: sqlite3.Connection) -> tuple[dict[str, Any], dict[str, Any]]:
            forward = _upsert(conn, memory_a, "memory", memory_b, "memory", delta, connection_type)
            backward = _upsert(conn, memory_b, "memory", memory_a, "memory", delta, connection_type)
            return forward, backward

        forward, backward = await self._storage.execute_transaction(_do_pair)
        log.debug(
            "Reinforced %s pair %d <-> %d by %+.3f",
            connection_type,
            memory_a,
            memory_b,
            delta,
        )
        return Connection.from_row(forward), Connection.from_row(backward)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(
        self,
        source_id: int,
        target_id: int,
        source_type: str = "memory",
        target_type: str = "memory",
    ) -> Connection | None:
        """Return the directed connection ``source -> target``, or ``None``."""
        rows = await self._storage.execute(
            """
            SELECT * FROM connections
            WHERE source_id = ? AND source_type = ? AND target_id = ? AND target_type = ?
            """,
            (source_id, source_type, target_id, target_type),
        )
        if not rows:
            return None
        return Connection.from_row(rows[0])

    async def get_connections_from(
        self,
        node_id: int,
        node_type: str = "memory",
    ) -> list[Connection]:
        """Return every outgoing connection of a node, strongest first."""
        _validate_node_type(node_type)
        rows = await self._storage.execute(
            """
            SELECT * FROM connections
            WHERE source_id = ? AND source_type = ?
            ORDER BY strength DESC
            """,
            (node_id, node_type),
        )
        return [Connection.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Pruning
    # ------------------------------------------------------------------

    async def prune_weak(self, min_strength: float, days_unused: float) -> int:
        """Delete connections that are both weak and long unused.

        An edge is removed only when ``strength < min_strength`` **and** it
        was last used more than *days_unused* days ago (or never).  A strong
        but ancient edge, or a weak but fresh one, survives.

        Returns
        -------
        int
            Number of connections deleted.
        """
        if not 0.0 <= min_strength <= 1.0:
            raise ValueError(
                f"min_strength must be between 0.0 and 1.0, got {min_strength}"
            )
        if days_unused < 0:
            raise ValueError(f"days_unused must be non-negative, got {days_unused}")

        def _do_prune(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                DELETE FROM connections
                WHERE strength < ?
                  AND (
                      last_used_at IS NULL
                      OR julianday(last_used_at) < julianday('now') - ?
                  )
                """,
                (min_strength, days_unused),
            )
            return cursor.rowcount

        count = await self._storage.execute_transaction(_do_prune)

        if count > 0:
            log.info(
                "Pruned %d weak connections (strength < %.4f, unused > %s days)",
                count,
                min_strength,
                days_unused,
            )

        return count

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        """Aggregate statistics about the connection population.

        Returns
        -------
        dict[str, Any]
            ``total``, ``avg_strength``, ``by_type`` (count per connection
            type), ``strong`` (strength >= 0.7) and ``weak`` (< 0.1).
        """
        agg_rows = await self._storage.execute(
            """
            SELECT
                COUNT(*)                                    AS total,
                AVG(strength)                               AS avg_str,
                SUM(CASE WHEN strength >= ? THEN 1 ELSE 0 END) AS strong,
                SUM(CASE WHEN strength < ? THEN 1 ELSE 0 END)  AS weak
            FROM connections
            """,
            (STRONG_CONNECTION_THRESHOLD, WEAK_CONNECTION_THRESHOLD),
        )
        agg = agg_rows[0]

        type_rows = await self._storage.execute(
            """
            SELECT connection_type, COUNT(*) AS cnt
            FROM connections
            GROUP BY connection_type
            """
        )

        return {
            "total": agg["total"],
            "avg_strength": round(float(agg["avg_str"] or 0.0), 4),
            "by_type": {row["connection_type"]: row["cnt"] for row in type_rows},
            "strong": agg["strong"] or 0,
            "weak": agg["weak"] or 0,
        }
