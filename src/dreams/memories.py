"""Memory records and activation history for the dreams system.

A **memory** is an opaque record carrying a vector embedding and a creation
timestamp.  Consolidation never mutates memories; it only reads their
embeddings and timestamps to discover new connections.  An **activation**
is an event in which several memories were surfaced together (for example
by one recall query).  Repeated activations of the same member set form a
co-activation group that dreaming reinforces.

This module provides:

* :class:`Memory` -- a dataclass mapping 1:1 to a row of ``memories``.
* :class:`MemoryManager` -- async insert/read of memories and recording of
  activation events.

Usage::

    mgr = MemoryManager(storage)
    first = await mgr.add("Redis SCAN is O(N)", embedding=vec_a)
    second = await mgr.add("Use cursors for large keyspaces", embedding=vec_b)
    await mgr.record_activation([first.id, second.id], query="redis scan")
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from dreams.storage import (
    Storage,
    deserialize_embedding,
    format_timestamp,
    serialize_embedding,
)

log = logging.getLogger(__name__)


@dataclass
class Memory:
    """In-memory representation of a single ``memories`` row."""

    id: int
    content: str
    embedding: list[float] | None
    source_agent: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: Any) -> Memory:
        """Create a :class:`Memory` from a :class:`sqlite3.Row`."""
        blob = row["embedding"]
        return cls(
            id=row["id"],
            content=row["content"],
            embedding=deserialize_embedding(blob) if blob is not None else None,
            source_agent=row["source_agent"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise without the embedding (too large for tool responses)."""
        return {
            "id": self.id,
            "content": self.content,
            "has_embedding": self.embedding is not None,
            "source_agent": self.source_agent,
            "created_at": self.created_at,
        }


def canonical_member_ids(memory_ids: list[int]) -> list[int]:
    """Return *memory_ids* sorted and de-duplicated.

    Activations with the same members in a different order must land in the
    same co-activation group.
    """
    return sorted({int(m) for m in memory_ids})


class MemoryManager:
    """Async access to memory records and activation events.

    Parameters
    ----------
    storage:
        An initialised :class:`~dreams.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def add(
        self,
        content: str,
        embedding: list[float] | None = None,
        source_agent: str | None = None,
        created_at: datetime | None = None,
    ) -> Memory:
        """Insert a new memory.

        Parameters
        ----------
        content:
            The memory payload (must not be empty).
        embedding:
            Optional embedding vector.  Memories without one never take part
            in semantic discovery.
        source_agent:
            Optional identifier of the agent that produced the memory.
        created_at:
            Explicit creation time (defaults to now).

        Raises
        ------
        ValueError
            If *content* is empty or *embedding* is an empty vector.
        """
        if not content or not content.strip():
            raise ValueError("Memory content must not be empty")
        if embedding is not None and len(embedding) == 0:
            raise ValueError("Embedding must not be an empty vector")

        blob = serialize_embedding(embedding) if embedding is not None else None

        if created_at is None:
            memory_id = await self._storage.execute_write(
                "INSERT INTO memories (content, embedding, source_agent) VALUES (?, ?, ?)",
                (content, blob, source_agent),
            )
        else:
            memory_id = await self._storage.execute_write(
                "INSERT INTO memories (content, embedding, source_agent, created_at) "
                "VALUES (?, ?, ?, ?)",
                (content, blob, source_agent, format_timestamp(created_at)),
            )

        log.debug("Stored memory %d (embedding=%s)", memory_id, blob is not None)
        memory = await self.get(memory_id)
        if memory is None:
            raise RuntimeError(f"Memory {memory_id} not found after insert")
        return memory

    async def get(self, memory_id: int) -> Memory | None:
        """Return the memory with *memory_id*, or ``None``."""
        rows = await self._storage.execute(
            "SELECT * FROM memories WHERE id = ?",
            (memory_id,),
        )
        if not rows:
            return None
        return Memory.from_row(rows[0])

    async def count(self) -> int:
        rows = await self._storage.execute("SELECT COUNT(*) AS cnt FROM memories")
        return rows[0]["cnt"]

    async def record_activation(
        self,
        memory_ids: list[int],
        query: str | None = None,
        agent: str | None = None,
    ) -> int:
        """Log that *memory_ids* were activated together.

        Returns
        -------
        int
            The id of the new ``activation_log`` row.

        Raises
        ------
        ValueError
            If *memory_ids* is empty.
        """
        members = canonical_member_ids(memory_ids)
        if not members:
            raise ValueError("An activation must include at least one memory")

        activation_id = await self._storage.execute_write(
            "INSERT INTO activation_log (query, agent, memory_ids) VALUES (?, ?, ?)",
            (query, agent, json.dumps(members)),
        )
        log.debug("Recorded activation %d over %d memories", activation_id, len(members))
        return activation_id
