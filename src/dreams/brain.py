"""High-level facade over the dreams subsystems.

The :class:`Brain` wires storage, memories, connections and the dream
engine together behind one API that the MCP server and the CLI call.  All
public methods return plain dicts because their output is JSON-serialised
for tool responses.

Usage::

    from dreams.brain import Brain

    brain = Brain()
    await brain.initialize()

    first = await brain.add_memory("Redis SCAN is O(N)", embedding=vec_a)
    await brain.record_activation([first["id"], 7])
    summary = await brain.dream(semantic_threshold=0.8)
    await brain.shutdown()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from dreams import capabilities
from dreams.config import get_config
from dreams.connections import ConnectionManager
from dreams.dreaming import DreamEngine, DreamOptions
from dreams.graph import GraphStore
from dreams.memories import MemoryManager, canonical_member_ids
from dreams.storage import Storage

logger = logging.getLogger(__name__)

_STATS_RECENT_RUNS = 3


class Brain:
    """The dreams orchestrator.  One brain per process.

    Components are created in :meth:`initialize` and released in
    :meth:`shutdown`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._config = get_config()
        self._db_path_override = db_path
        self._storage: Storage | None = None
        self._memories: MemoryManager | None = None
        self._connections: ConnectionManager | None = None
        self._engine: DreamEngine | None = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open storage and build the managers.  Idempotent."""
        if self._initialized:
            return

        self._storage = Storage(self._db_path_override or Path(self._config.db_path))
        await self._storage.initialize()

        self._memories = MemoryManager(self._storage)
        self._connections = ConnectionManager(self._storage)
        self._engine = DreamEngine(
            self._storage,
            GraphStore(self._storage, self._connections),
            self._config.dream,
        )

        self._initialized = True
        logger.info("Brain initialized. DB: %s", self._storage.db_path)

    def _ensure_initialized(self) -> None:
        """Guard that raises if the brain has not been initialised yet."""
        if not self._initialized:
            raise RuntimeError(
                "Brain not initialized. Call await brain.initialize() first."
            )

    # ==================================================================
    # Memories and activations
    # ==================================================================

    async def add_memory(
        self,
        content: str,
        embedding: list[float] | None = None,
        source_agent: str | None = None,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._memories is not None
        memory = await self._memories.add(content, embedding, source_agent)
        return memory.to_dict()

    async def record_activation(
        self,
        memory_ids: list[int],
        query: str | None = None,
        agent: str | None = None,
    ) -> dict[str, Any]:
        """Log that *memory_ids* were surfaced together."""
        self._ensure_initialized()
        assert self._memories is not None
        activation_id = await self._memories.record_activation(memory_ids, query, agent)
        return {"activation_id": activation_id, "memory_ids": canonical_member_ids(memory_ids)}

    # ==================================================================
    # Dreaming
    # ==================================================================

    async def dream(self, **overrides: Any) -> dict[str, Any]:
        """Run one consolidation pass.

        Keyword arguments override individual :class:`DreamOptions` fields;
        ``None`` values fall back to the configured default.

        Returns
        -------
        dict
            The completed run (see :meth:`DreamLog.to_dict`).
        """
        self._ensure_initialized()
        assert self._engine is not None
        options = DreamOptions.resolve(self._config.dream, **overrides)
        dream = await self._engine.run_consolidation(options)
        return dream.to_dict()

    async def dream_history(self, limit: int = 10) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._engine is not None
        runs = await self._engine.list_recent_runs(limit)
        return {"dreams": [run.to_dict() for run in runs], "count": len(runs)}

    async def dream_stats(self) -> dict[str, Any]:
        """Connection statistics plus the three most recent runs."""
        self._ensure_initialized()
        assert self._engine is not None
        assert self._connections is not None
        stats = await self._connections.get_stats()
        runs = await self._engine.list_recent_runs(_STATS_RECENT_RUNS)
        return {
            "connections": stats,
            "recent_dreams": [run.to_dict() for run in runs],
        }

    # ==================================================================
    # Connections
    # ==================================================================

    async def strengthen_pathway(
        self,
        source_id: int,
        target_id: int,
        delta: float,
        connection_type: str = "semantic",
        source_type: str = "memory",
        target_type: str = "memory",
    ) -> dict[str, Any]:
        """Reinforce (or create) a single directed connection."""
        self._ensure_initialized()
        assert self._connections is not None
        connection = await self._connections.reinforce(
            source_id, source_type, target_id, target_type, delta, connection_type
        )
        return connection.to_dict()

    # ==================================================================
    # Declared graph capabilities
    # ==================================================================

    async def build_semantic_graph(self, **kwargs: Any) -> dict[str, Any]:
        self._ensure_initialized()
        return capabilities.build_semantic_graph(
            capabilities.SemanticGraphRequest(**kwargs)
        )

    async def build_temporal_graph(self, **kwargs: Any) -> dict[str, Any]:
        self._ensure_initialized()
        return capabilities.build_temporal_graph(
            capabilities.TemporalGraphRequest(**kwargs)
        )

    async def analyze_entity_graph(self, **kwargs: Any) -> dict[str, Any]:
        self._ensure_initialized()
        return capabilities.analyze_entity_graph(
            capabilities.EntityGraphRequest(**kwargs)
        )

    # ==================================================================
    # Health
    # ==================================================================

    async def health(self) -> dict[str, Any]:
        """Storage health: table counts, database size, vector support."""
        self._ensure_initialized()
        assert self._storage is not None
        counts = await self._storage.table_counts()
        return {
            "db_path": str(self._storage.db_path),
            "db_size_mb": await self._storage.get_db_size_mb(),
            "vec_available": self._storage.vec_available,
            "counts": counts,
        }

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Close storage.  Safe to call even if never initialised."""
        if self._storage:
            await self._storage.close()

        self._initialized = False
        logger.info("Brain shut down")
