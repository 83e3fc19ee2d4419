"""Graph queries consumed by the consolidation phases.

:class:`GraphStore` is the narrow surface the dreaming phases talk to.  It
answers three discovery questions (similar unconnected pairs, temporally
close unconnected pairs, frequently co-activated groups) and forwards edge
writes and pruning to :class:`~dreams.connections.ConnectionManager`.

"Unconnected" always means no memory-to-memory connection exists in
*either* direction, so a pair linked once is never rediscovered.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from dreams.connections import Connection, ConnectionManager
from dreams.storage import Storage

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemoryPair:
    """Two distinct memories, ``memory_a < memory_b``."""

    memory_a: int
    memory_b: int


@dataclass(frozen=True)
class SimilarPair:
    """A memory pair together with the cosine similarity of its embeddings."""

    memory_a: int
    memory_b: int
    similarity: float


@dataclass(frozen=True)
class CoactivationGroup:
    """A member set and the number of times it was activated together."""

    memory_ids: list[int]
    coactivation_count: int


# Neither direction of the (m1, m2) memory edge exists yet.
_UNCONNECTED_SQL = """
    NOT EXISTS (
        SELECT 1 FROM connections c
        WHERE c.source_type = 'memory' AND c.target_type = 'memory'
          AND (
              (c.source_id = m1.id AND c.target_id = m2.id)
              OR (c.source_id = m2.id AND c.target_id = m1.id)
          )
    )
"""


class GraphStore:
    """Async query/mutation surface over the persisted connection graph.

    Parameters
    ----------
    storage:
        An initialised :class:`~dreams.storage.Storage` instance.
    connections:
        Optional :class:`ConnectionManager`; one is created over *storage*
        when omitted.
    """

    def __init__(
        self,
        storage: Storage,
        connections: ConnectionManager | None = None,
    ) -> None:
        self._storage = storage
        self._connections = connections or ConnectionManager(storage)

    # ------------------------------------------------------------------
    # Discovery queries
    # ------------------------------------------------------------------

    async def find_similar_unconnected_pairs(
        self,
        threshold: float,
        limit: int,
    ) -> list[SimilarPair]:
        """Return up to *limit* unconnected pairs with similarity >= *threshold*.

        Only memories that both carry an embedding of the same dimension are
        compared.  Results are ordered by similarity, highest first.  When
        the sqlite-vec extension is unavailable no pairs are returned.
        """
        if not self._storage.vec_available:
            log.warning(
                "Vector search unavailable (sqlite-vec not loaded); "
                "skipping semantic pair discovery"
            )
            return []

        rows = await self._storage.execute(
            f"""
            WITH scored AS (
                SELECT
                    m1.id AS memory_a,
                    m2.id AS memory_b,
                    CASE
                        WHEN vec_length(m1.embedding) = vec_length(m2.embedding)
                        THEN 1.0 - vec_distance_cosine(m1.embedding, m2.embedding)
                    END AS similarity
                FROM memories m1
                JOIN memories m2 ON m1.id < m2.id
                WHERE m1.embedding IS NOT NULL
                  AND m2.embedding IS NOT NULL
                  AND {_UNCONNECTED_SQL}
            )
            SELECT memory_a, memory_b, similarity
            FROM scored
            WHERE similarity IS NOT NULL AND similarity >= ?
            ORDER BY similarity DESC, memory_a, memory_b
            LIMIT ?
            """,
            (threshold, limit),
        )
        return [
            SimilarPair(r["memory_a"], r["memory_b"], float(r["similarity"]))
            for r in rows
        ]

    async def find_temporally_unconnected_pairs(
        self,
        window_hours: float,
        limit: int,
    ) -> list[MemoryPair]:
        """Return up to *limit* unconnected pairs created less than *window_hours* apart.

        Pairs are ordered by creation-time gap, closest first.
        """
        rows = await self._storage.execute(
            f"""
            SELECT m1.id AS memory_a, m2.id AS memory_b
            FROM memories m1
            JOIN memories m2 ON m1.id < m2.id
            WHERE ABS(julianday(m1.created_at) - julianday(m2.created_at)) * 24.0 < ?
              AND {_UNCONNECTED_SQL}
            ORDER BY ABS(julianday(m1.created_at) - julianday(m2.created_at)),
                     m1.id, m2.id
            LIMIT ?
            """,
            (window_hours, limit),
        )
        return [MemoryPair(r["memory_a"], r["memory_b"]) for r in rows]

    async def find_coactivation_groups(
        self,
        min_count: int,
        limit: int = 50,
    ) -> list[CoactivationGroup]:
        """Return member sets activated together at least *min_count* times.

        Single-member activations are ignored.  Groups are ordered by count,
        most frequent first.
        """
        rows = await self._storage.execute(
            """
            SELECT memory_ids, COUNT(*) AS cnt
            FROM activation_log
            WHERE json_array_length(memory_ids) > 1
            GROUP BY memory_ids
            HAVING COUNT(*) >= ?
            ORDER BY cnt DESC, memory_ids
            LIMIT ?
            """,
            (min_count, limit),
        )
        return [
            CoactivationGroup(
                memory_ids=[int(m) for m in json.loads(r["memory_ids"])],
                coactivation_count=r["cnt"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def prune_edges(self, min_strength: float, days_unused: float) -> int:
        return await self._connections.prune_weak(min_strength, days_unused)

    async def reinforce_edge(
        self,
        source_id: int,
        source_type: str,
        target_id: int,
        target_type: str,
        delta: float,
        kind: str,
    ) -> Connection:
        return await self._connections.reinforce(
            source_id, source_type, target_id, target_type, delta, kind
        )

    async def reinforce_pair(
        self,
        memory_a: int,
        memory_b: int,
        delta: float,
        kind: str,
    ) -> tuple[Connection, Connection]:
        return await self._connections.reinforce_pair(memory_a, memory_b, delta, kind)
