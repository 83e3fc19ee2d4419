"""MCP server exposing the dreams system as tools via stdio transport.

Each tool maps onto one :class:`~dreams.brain.Brain` method.  The ``mcp``
object is imported by :mod:`dreams.__main__` and launched with
``mcp.run()`` over stdio.

Architecture notes
------------------
* A single global :pydata:`_brain` instance is lazily initialised on the first
  tool call via :func:`_ensure_brain`.
* Empty-string parameters from MCP are normalised to ``None`` before
  forwarding to the Brain; numeric options default to ``None`` so the
  configured default applies.
* All tools catch exceptions and return structured error dicts so the MCP
  server never crashes on a bad request.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from mcp.server.fastmcp import FastMCP

from dreams.brain import Brain

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server and Brain instances
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "dreams",
    instructions="Offline consolidation of a memory association graph",
)

_brain = Brain()


async def _ensure_brain() -> None:
    """Lazily initialise the brain on the first tool call."""
    if not _brain._initialized:
        await _brain.initialize()


def _error_response(err: Exception) -> dict[str, Any]:
    """Create a structured error dict for MCP tool responses."""
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


# ===================================================================
# Dreaming
# ===================================================================


@mcp.tool()
async def trigger_dream(
    semantic_threshold: float | None = None,
    temporal_window_hours: float | None = None,
    coactivation_min_count: int | None = None,
    prune_min_strength: float | None = None,
    prune_days_unused: int | None = None,
) -> dict[str, Any]:
    """Run a consolidation pass over the memory graph -- like sleep.

    Discovers semantic and temporal connections between memories that are
    not yet linked, strengthens pathways between memories that are often
    recalled together, and prunes weak connections nobody has used in a
    long time.  Takes no new input; only reorganises what is stored.

    Args:
        semantic_threshold: Minimum cosine similarity for a new semantic
            connection (default 0.85).
        temporal_window_hours: Memories created less than this many hours
            apart get a temporal connection (default 4).
        coactivation_min_count: Minimum joint activations before a group is
            strengthened (default 3).
        prune_min_strength: Connections weaker than this may be pruned
            (default 0.05).
        prune_days_unused: ...if also unused for this many days (default 30).

    Returns:
        A dict with keys:
        - id: Dream run id
        - duration: Wall-clock time such as "1.2s"
        - connections_created, connections_strengthened, connections_pruned,
          concepts_created: Counters for the run
        - notes: One line per phase
    """
    try:
        await _ensure_brain()
        return await _brain.dream(
            semantic_threshold=semantic_threshold,
            temporal_window_hours=temporal_window_hours,
            coactivation_min_count=coactivation_min_count,
            prune_min_strength=prune_min_strength,
            prune_days_unused=prune_days_unused,
        )
    except Exception as exc:
        logger.exception("trigger_dream failed")
        return _error_response(exc)


@mcp.tool()
async def dream_history(limit: int = 10) -> dict[str, Any]:
    """List recent dream runs, newest first.

    Runs without a completion time failed or are still in progress; their
    duration is reported as "incomplete".

    Args:
        limit: Maximum number of runs to return (default 10).
    """
    try:
        await _ensure_brain()
        return await _brain.dream_history(limit=limit)
    except Exception as exc:
        logger.exception("dream_history failed")
        return _error_response(exc)


@mcp.tool()
async def dream_stats() -> dict[str, Any]:
    """Connection statistics and the three most recent dream runs.

    Returns:
        A dict with keys:
        - connections: total, by_type, avg_strength, strong (>= 0.7),
          weak (< 0.1)
        - recent_dreams: The last three runs
    """
    try:
        await _ensure_brain()
        return await _brain.dream_stats()
    except Exception as exc:
        logger.exception("dream_stats failed")
        return _error_response(exc)


# ===================================================================
# Connections and activations
# ===================================================================


@mcp.tool()
async def strengthen_pathway(
    source_id: int,
    target_id: int,
    delta: float = 0.1,
    connection_type: str = "semantic",
    source_type: str = "memory",
    target_type: str = "memory",
) -> dict[str, Any]:
    """Strengthen (or create) a directed connection between two nodes.

    Args:
        source_id: Id of the source node.
        target_id: Id of the target node.
        delta: Strength change in [-1, 1]; the result is clamped to [0, 1].
        connection_type: One of "semantic", "temporal", "causal",
            "procedural", "hierarchical".  Only applied when the connection
            is created.
        source_type: "memory" or "concept".
        target_type: "memory" or "concept".
    """
    try:
        await _ensure_brain()
        return await _brain.strengthen_pathway(
            source_id=source_id,
            target_id=target_id,
            delta=delta,
            connection_type=connection_type,
            source_type=source_type,
            target_type=target_type,
        )
    except Exception as exc:
        logger.exception("strengthen_pathway failed")
        return _error_response(exc)


@mcp.tool()
async def record_activation(
    memory_ids: list[int],
    query: str = "",
    agent: str = "",
) -> dict[str, Any]:
    """Record that several memories were recalled together.

    Groups recalled together often enough are strengthened during the next
    dream run.

    Args:
        memory_ids: The memories surfaced together.
        query: The query that surfaced them (optional).
        agent: The agent that ran the query (optional).
    """
    try:
        await _ensure_brain()
        return await _brain.record_activation(
            memory_ids=memory_ids,
            query=query or None,
            agent=agent or None,
        )
    except Exception as exc:
        logger.exception("record_activation failed")
        return _error_response(exc)


# ===================================================================
# Graph analysis
# ===================================================================


@mcp.tool()
async def build_semantic_graph(
    source_agent: str = "",
    similarity_threshold: float = 0.75,
    limit: int = 100,
) -> dict[str, Any]:
    """Build a semantic similarity graph from memory embeddings.

    Returns clusters, central memories and knowledge gaps.

    Args:
        source_agent: Only consider memories from this agent (optional).
        similarity_threshold: Minimum cosine similarity (default 0.75).
        limit: Maximum number of memories (default 100).
    """
    try:
        await _ensure_brain()
        return await _brain.build_semantic_graph(
            source_agent=source_agent or None,
            similarity_threshold=similarity_threshold,
            limit=limit,
        )
    except Exception as exc:
        logger.exception("build_semantic_graph failed")
        return _error_response(exc)


@mcp.tool()
async def build_temporal_graph(
    query: str,
    time_window: float = 168.0,
    similarity_threshold: float = 0.7,
) -> dict[str, Any]:
    """Trace how knowledge of a topic evolved over time and detect contradictions.

    Args:
        query: Topic to trace.
        time_window: Hours within which memories count as related
            (default 168, one week).
        similarity_threshold: Minimum similarity (default 0.7).
    """
    try:
        await _ensure_brain()
        return await _brain.build_temporal_graph(
            query=query,
            time_window=time_window,
            similarity_threshold=similarity_threshold,
        )
    except Exception as exc:
        logger.exception("build_temporal_graph failed")
        return _error_response(exc)


@mcp.tool()
async def analyze_entity_graph(
    entity_text: str = "",
    analysis_type: str = "full_graph",
    as_of_time: str = "",
    include_superseded: bool = False,
    include_invalid: bool = False,
) -> dict[str, Any]:
    """Analyze the entity relationship graph.

    Args:
        entity_text: Entity to analyze (optional).
        analysis_type: One of "solution_paths", "knowledge_domains",
            "related_concepts", "full_graph", "relation_history".
        as_of_time: ISO-8601 timestamp to view relations at a point in time,
            e.g. "2025-12-15T00:00:00Z" (default: now).
        include_superseded: Include superseded relations.
        include_invalid: Include invalid relations.
    """
    try:
        await _ensure_brain()
        return await _brain.analyze_entity_graph(
            entity_text=entity_text or None,
            analysis_type=analysis_type,
            as_of_time=as_of_time or None,
            include_superseded=include_superseded,
            include_invalid=include_invalid,
        )
    except Exception as exc:
        logger.exception("analyze_entity_graph failed")
        return _error_response(exc)
