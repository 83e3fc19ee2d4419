"""Offline consolidation ("dreaming") of the memory association graph.

A dream run takes no new input.  It walks the existing graph in four
phases, always in this order:

1. **Semantic discovery** -- link unconnected memories whose embeddings are
   at least ``semantic_threshold`` similar.  New edges start weak
   (``similarity * 0.3``) in both directions.
2. **Temporal discovery** -- link unconnected memories created less than
   ``temporal_window_hours`` apart, at a flat strength of 0.2 in both
   directions.
3. **Co-activation reinforcement** -- member sets that were activated
   together at least ``coactivation_min_count`` times get every pair
   strengthened by ``min(0.15, count * 0.02)``.
4. **Decay pruning** -- edges that are weak *and* long unused are deleted.

Each run is recorded in ``dream_log``: a row is inserted with
``started_at`` before the first phase and stamped with ``completed_at``,
the counters and one note per phase on success.  A failing phase leaves
``completed_at`` empty, persists the counters gathered so far plus an
``Error: ...`` note, and the phase error propagates.

Only one run may be in progress at a time; the ``dream`` advisory lock in
the ``locks`` table enforces this across processes.  The running pass
refreshes the lock after every phase; a lock left unrefreshed for
``lock_stale_minutes`` is taken to belong to a crashed run and reclaimed.

Usage::

    from dreams.dreaming import DreamEngine, DreamOptions

    engine = DreamEngine(storage)
    dream = await engine.run_consolidation(DreamOptions.resolve(semantic_threshold=0.8))
    print(dream.to_dict())
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from dreams.config import DreamConfig, get_config
from dreams.graph import GraphStore
from dreams.storage import Storage, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

_LOCK_NAME = "dream"

# Defaults mirrored from DreamConfig for callers using the phases directly.
SEMANTIC_STRENGTH_FACTOR: float = 0.3
TEMPORAL_INITIAL_STRENGTH: float = 0.2
COACTIVATION_BONUS_PER_COUNT: float = 0.02
COACTIVATION_BONUS_CAP: float = 0.15


class DreamInProgressError(RuntimeError):
    """Raised when another consolidation run already holds the dream lock.

    The lock is refreshed between phases, so a live run is only overtaken
    if one of its phases alone outlasts ``lock_stale_minutes``.
    """


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DreamOptions:
    """Per-run thresholds.  Every field can be overridden independently."""

    semantic_threshold: float = 0.85
    temporal_window_hours: float = 4.0
    coactivation_min_count: int = 3
    prune_min_strength: float = 0.05
    prune_days_unused: int = 30

    def __post_init__(self) -> None:
        if not 0.0 <= self.semantic_threshold <= 1.0:
            raise ValueError(
                f"semantic_threshold must be between 0.0 and 1.0, got {self.semantic_threshold}"
            )
        if self.temporal_window_hours <= 0:
            raise ValueError(
                f"temporal_window_hours must be positive, got {self.temporal_window_hours}"
            )
        if self.coactivation_min_count < 1:
            raise ValueError(
                f"coactivation_min_count must be at least 1, got {self.coactivation_min_count}"
            )
        if not 0.0 <= self.prune_min_strength <= 1.0:
            raise ValueError(
                f"prune_min_strength must be between 0.0 and 1.0, got {self.prune_min_strength}"
            )
        if self.prune_days_unused < 0:
            raise ValueError(
                f"prune_days_unused must be non-negative, got {self.prune_days_unused}"
            )

    @classmethod
    def from_config(cls, cfg: DreamConfig | None = None) -> DreamOptions:
        """Build options from the configured defaults."""
        cfg = cfg or get_config().dream
        return cls(
            semantic_threshold=cfg.semantic_threshold,
            temporal_window_hours=cfg.temporal_window_hours,
            coactivation_min_count=cfg.coactivation_min_count,
            prune_min_strength=cfg.prune_min_strength,
            prune_days_unused=cfg.prune_days_unused,
        )

    @classmethod
    def resolve(cls, cfg: DreamConfig | None = None, **overrides: Any) -> DreamOptions:
        """Configured defaults with every non-``None`` override applied.

        Raises
        ------
        ValueError
            If an override names an unknown option or is out of range.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown dream option(s): {', '.join(sorted(unknown))}")

        base = cls.from_config(cfg)
        values = {name: getattr(base, name) for name in known}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ---------------------------------------------------------------------------
# Run record
# ---------------------------------------------------------------------------


@dataclass
class DreamLog:
    """One consolidation run, 1:1 with a ``dream_log`` row.

    Attributes
    ----------
    id:
        Row id of the run.
    started_at:
        When the run began.
    completed_at:
        When the run finished, or ``None`` if it failed or is still running.
    connections_created:
        Edges written by the two discovery phases (two per pair).
    connections_strengthened:
        Reinforcements applied by co-activation.
    connections_pruned:
        Edges removed by decay pruning.
    concepts_created:
        Always 0; concept formation is not performed.
    notes:
        One human-readable line per phase, plus ``Error: ...`` on failure.
    """

    id: int
    started_at: str
    completed_at: str | None = None
    connections_created: int = 0
    connections_strengthened: int = 0
    connections_pruned: int = 0
    concepts_created: int = 0
    notes: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Any) -> DreamLog:
        raw_notes = row["notes"]
        return cls(
            id=row["id"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            connections_created=row["connections_created"],
            connections_strengthened=row["connections_strengthened"],
            connections_pruned=row["connections_pruned"],
            concepts_created=row["concepts_created"],
            notes=json.loads(raw_notes) if raw_notes else [],
        )

    @property
    def completed(self) -> bool:
        return self.completed_at is not None

    @property
    def duration_seconds(self) -> float | None:
        """Wall-clock run time, or ``None`` for an incomplete run."""
        started = parse_timestamp(self.started_at)
        completed = parse_timestamp(self.completed_at)
        if started is None or completed is None:
            return None
        return (completed - started).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Serialise the run for tool responses."""
        duration = self.duration_seconds
        return {
            "id": self.id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration": f"{duration:.1f}s" if duration is not None else "incomplete",
            "connections_created": self.connections_created,
            "connections_strengthened": self.connections_strengthened,
            "connections_pruned": self.connections_pruned,
            "concepts_created": self.concepts_created,
            "notes": list(self.notes),
        }


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


def coactivation_bonus(
    count: int,
    per_count: float = COACTIVATION_BONUS_PER_COUNT,
    cap: float = COACTIVATION_BONUS_CAP,
) -> float:
    """Reinforcement applied to each pair of a group activated *count* times."""
    return min(cap, count * per_count)


async def discover_semantic(
    store: GraphStore,
    threshold: float,
    limit: int = 100,
    strength_factor: float = SEMANTIC_STRENGTH_FACTOR,
) -> int:
    """Link similar, unconnected memory pairs in both directions.

    Returns the number of directional edges written (two per pair).
    """
    pairs = await store.find_similar_unconnected_pairs(threshold, limit)
    for pair in pairs:
        await store.reinforce_pair(
            pair.memory_a,
            pair.memory_b,
            pair.similarity * strength_factor,
            "semantic",
        )
    logger.debug("Semantic discovery linked %d pairs (threshold=%.3f)", len(pairs), threshold)
    return len(pairs) * 2


async def discover_temporal(
    store: GraphStore,
    window_hours: float,
    limit: int = 100,
    strength: float = TEMPORAL_INITIAL_STRENGTH,
) -> int:
    """Link memories created within *window_hours* of each other.

    Returns the number of directional edges written (two per pair).
    """
    pairs = await store.find_temporally_unconnected_pairs(window_hours, limit)
    for pair in pairs:
        await store.reinforce_pair(pair.memory_a, pair.memory_b, strength, "temporal")
    logger.debug("Temporal discovery linked %d pairs (window=%sh)", len(pairs), window_hours)
    return len(pairs) * 2


async def reinforce_coactivated(
    store: GraphStore,
    min_count: int,
    limit: int = 50,
    per_count: float = COACTIVATION_BONUS_PER_COUNT,
    cap: float = COACTIVATION_BONUS_CAP,
) -> int:
    """Strengthen every pair inside frequently co-activated groups.

    Pairs are reinforced in one direction only, from the lower-positioned
    member to the higher.  Returns the number of reinforcements applied.
    """
    groups = await store.find_coactivation_groups(min_count, limit)
    strengthened = 0
    for group in groups:
        ids = group.memory_ids
        if len(ids) < 2:
            continue
        bonus = coactivation_bonus(group.coactivation_count, per_count, cap)
        for i in range(len(ids)):
            for j in range(i + 1, len(ids)):
                await store.reinforce_edge(ids[i], "memory", ids[j], "memory", bonus, "semantic")
                strengthened += 1
    return strengthened


async def prune_weak(store: GraphStore, min_strength: float, days_unused: float) -> int:
    """Delete edges that are both weaker than *min_strength* and unused for *days_unused*."""
    return await store.prune_edges(min_strength, days_unused)


@dataclass(frozen=True)
class _Phase:
    name: str
    counter: str
    note: str
    run: Callable[[GraphStore, DreamOptions, DreamConfig], Awaitable[int]]


# Ordered phase table; the engine runs these strictly in sequence.
_PHASES: tuple[_Phase, ...] = (
    _Phase(
        "semantic",
        "connections_created",
        "Created {} semantic connections",
        lambda store, opts, cfg: discover_semantic(
            store, opts.semantic_threshold, cfg.pair_batch_limit, cfg.semantic_strength_factor
        ),
    ),
    _Phase(
        "temporal",
        "connections_created",
        "Created {} temporal connections",
        lambda store, opts, cfg: discover_temporal(
            store, opts.temporal_window_hours, cfg.pair_batch_limit, cfg.temporal_initial_strength
        ),
    ),
    _Phase(
        "coactivation",
        "connections_strengthened",
        "Strengthened {} co-activation patterns",
        lambda store, opts, cfg: reinforce_coactivated(
            store,
            opts.coactivation_min_count,
            cfg.coactivation_group_limit,
            cfg.coactivation_bonus_per_count,
            cfg.coactivation_bonus_cap,
        ),
    ),
    _Phase(
        "prune",
        "connections_pruned",
        "Pruned {} weak unused connections",
        lambda store, opts, cfg: prune_weak(
            store, opts.prune_min_strength, opts.prune_days_unused
        ),
    ),
)


# ---------------------------------------------------------------------------
# DreamEngine
# ---------------------------------------------------------------------------


def _now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


class DreamEngine:
    """Runs consolidation passes and reads their history.

    Parameters
    ----------
    storage:
        An initialised :class:`~dreams.storage.Storage` instance.
    graph:
        The :class:`~dreams.graph.GraphStore` the phases operate on.
        Defaults to one built over *storage*.
    config:
        Dream tunables; defaults to ``get_config().dream``.
    """

    def __init__(
        self,
        storage: Storage,
        graph: GraphStore | None = None,
        config: DreamConfig | None = None,
    ) -> None:
        self._storage = storage
        self._graph = graph or GraphStore(storage)
        self._cfg = config or get_config().dream

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_consolidation(self, options: DreamOptions | None = None) -> DreamLog:
        """Run one full consolidation pass.

        Parameters
        ----------
        options:
            Per-run thresholds; configured defaults when omitted.

        Returns
        -------
        DreamLog
            The completed run record.

        Raises
        ------
        DreamInProgressError
            If another run holds the dream lock.  Nothing is written.
        Exception
            Whatever a phase raised.  The run record is left without
            ``completed_at`` and holds the counters of the phases that
            finished.
        """
        options = options or DreamOptions.from_config(self._cfg)
        holder = uuid.uuid4().hex
        stale_minutes = self._cfg.lock_stale_minutes

        def _try_lock(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, _LOCK_NAME, holder, stale_minutes)

        acquired = await self._storage.execute_transaction(_try_lock)
        if not acquired:
            logger.warning("Dream run already in progress; refusing to start another")
            raise DreamInProgressError("A dream run is already in progress")

        try:
            return await self._run_locked(options, holder)
        finally:
            def _release(conn: sqlite3.Connection) -> None:
                Storage.release_lock(conn, _LOCK_NAME, holder)

            try:
                await self._storage.execute_transaction(_release)
            except Exception:
                logger.exception("Could not release dream lock held by %s", holder)

    async def list_recent_runs(self, limit: int = 10) -> list[DreamLog]:
        """Return at most *limit* runs, most recently started first.

        Raises
        ------
        ValueError
            If *limit* is less than 1.
        """
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        rows = await self._storage.execute(
            """
            SELECT * FROM dream_log
            ORDER BY started_at DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [DreamLog.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_locked(self, options: DreamOptions, holder: str) -> DreamLog:
        started_at = _now()
        run_id = await self._storage.execute_write(
            "INSERT INTO dream_log (started_at) VALUES (?)",
            (started_at,),
        )
        dream = DreamLog(id=run_id, started_at=started_at)
        logger.info("Dream run %d started (%s)", run_id, options.to_dict())

        try:
            for phase in _PHASES:
                count = await phase.run(self._graph, options, self._cfg)
                setattr(dream, phase.counter, getattr(dream, phase.counter) + count)
                dream.notes.append(phase.note.format(count))
                logger.info("Dream run %d: %s", run_id, dream.notes[-1])
                await self._refresh_lock(holder)
        except Exception as exc:
            dream.notes.append(f"Error: {exc}")
            logger.error("Dream run %d failed during consolidation: %s", run_id, exc)
            await self._save_partial(dream)
            raise

        dream.completed_at = _now()
        await self._save(dream)
        logger.info(
            "Dream run %d complete: created=%d strengthened=%d pruned=%d",
            run_id,
            dream.connections_created,
            dream.connections_strengthened,
            dream.connections_pruned,
        )
        return dream

    async def _refresh_lock(self, holder: str) -> None:
        def _refresh(conn: sqlite3.Connection) -> bool:
            return Storage.refresh_lock(conn, _LOCK_NAME, holder)

        if not await self._storage.execute_transaction(_refresh):
            logger.warning("Dream lock held by %s was reclaimed by another run", holder)

    async def _save(self, dream: DreamLog) -> None:
        await self._storage.execute_write(
            """
            UPDATE dream_log SET
                completed_at = ?,
                connections_created = ?,
                connections_strengthened = ?,
                connections_pruned = ?,
                concepts_created = ?,
                notes = ?
            WHERE id = ?
            """,
            (
                dream.completed_at,
                dream.connections_created,
                dream.connections_strengthened,
                dream.connections_pruned,
                dream.concepts_created,
                json.dumps(dream.notes),
                dream.id,
            ),
        )

    async def _save_partial(self, dream: DreamLog) -> None:
        """Record progress of a failed run; ``completed_at`` stays NULL.

        A failure here is logged and does not mask the phase error.
        """
        try:
            await self._save(dream)
        except Exception:
            logger.exception("Could not record partial progress of dream run %d", dream.id)
