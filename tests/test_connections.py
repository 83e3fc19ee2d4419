"""Tests for the connections module.

Covers the Connection dataclass, validation helpers, reinforcement
(creation, clamping, kind preservation), paired reinforcement, pruning and
statistics.
"""

from __future__ import annotations

import pytest

from dreams.connections import (
    CONNECTION_TYPES,
    Connection,
    ConnectionManager,
    _validate_connection_type,
    _validate_delta,
    _validate_endpoints,
)
from dreams.storage import Storage

from tests.conftest import count_connections, insert_connection, insert_memory


# -----------------------------------------------------------------------
# 1. Dataclass and validation
# -----------------------------------------------------------------------


class TestConnectionDataclass:
    def test_from_row_round_trips_to_dict(self) -> None:
        row = {
            "id": 7,
            "source_id": 1,
            "source_type": "memory",
            "target_id": 2,
            "target_type": "concept",
            "connection_type": "causal",
            "strength": 0.4,
            "usage_count": 3,
            "last_used_at": "2025-01-01 00:00:00",
            "created_at": "2024-12-01 00:00:00",
        }
        assert Connection.from_row(row).to_dict() == row


class TestValidation:
    def test_all_declared_types_accepted(self) -> None:
        for kind in CONNECTION_TYPES:
            _validate_connection_type(kind)

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid connection type"):
            _validate_connection_type("friendship")

    @pytest.mark.parametrize("delta", [-1.5, 1.01])
    def test_delta_out_of_range(self, delta: float) -> None:
        with pytest.raises(ValueError, match="Delta"):
            _validate_delta(delta)

    def test_self_reference_rejected(self) -> None:
        with pytest.raises(ValueError, match="self-referencing"):
            _validate_endpoints(1, "memory", 1, "memory")

    def test_same_id_different_node_type_allowed(self) -> None:
        _validate_endpoints(1, "memory", 1, "concept")

    def test_unknown_node_type_rejected(self) -> None:
        with pytest.raises(ValueError, match="node type"):
            _validate_endpoints(1, "memory", 2, "entity")


# -----------------------------------------------------------------------
# 2. reinforce
# -----------------------------------------------------------------------


class TestReinforce:
    async def test_creates_with_initial_strength(self, storage: Storage) -> None:
        a = await insert_memory(storage)
        b = await insert_memory(storage)
        conn = await ConnectionManager(storage).reinforce(a, "memory", b, "memory", 0.27)
        assert conn.strength == pytest.approx(0.27)
        assert conn.usage_count == 1
        assert conn.connection_type == "semantic"
        assert conn.last_used_at is not None

    async def test_directed(self, storage: Storage) -> None:
        """Reinforcing a -> b does not create b -> a."""
        mgr = ConnectionManager(storage)
        await mgr.reinforce(1, "memory", 2, "memory", 0.2)
        assert await mgr.get(1, 2) is not None
        assert await mgr.get(2, 1) is None

    async def test_existing_edge_adds_delta(self, storage: Storage) -> None:
        mgr = ConnectionManager(storage)
        await mgr.reinforce(1, "memory", 2, "memory", 0.2)
        conn = await mgr.reinforce(1, "memory", 2, "memory", 0.1)
        assert conn.strength == pytest.approx(0.3)
        assert conn.usage_count == 2
        assert await count_connections(storage) == 1

    async def test_clamped_at_one(self, storage: Storage) -> None:
        mgr = ConnectionManager(storage)
        await mgr.reinforce(1, "memory", 2, "memory", 0.9)
        conn = await mgr.reinforce(1, "memory", 2, "memory", 0.5)
        assert conn.strength == 1.0

    async def test_clamped_at_zero(self, storage: Storage) -> None:
        mgr = ConnectionManager(storage)
        await mgr.reinforce(1, "memory", 2, "memory", 0.1)
        conn = await mgr.reinforce(1, "memory", 2, "memory", -0.5)
        assert conn.strength == 0.0

    async def test_negative_delta_creates_at_zero(self, storage: Storage) -> None:
        conn = await ConnectionManager(storage).reinforce(1, "memory", 2, "memory", -0.3)
        assert conn.strength == 0.0

    async def test_strength_stays_in_unit_interval(self, storage: Storage) -> None:
        mgr = ConnectionManager(storage)
        for delta in (0.8, 0.8, -1.0, -1.0, 0.3, 1.0):
            conn = await mgr.reinforce(1, "memory", 2, "memory", delta)
            assert 0.0 <= conn.strength <= 1.0

    async def test_kind_kept_on_later_reinforcement(self, storage: Storage) -> None:
        """The stored connection type is only set when the edge is created."""
        mgr = ConnectionManager(storage)
        await mgr.reinforce(1, "memory", 2, "memory", 0.2, "temporal")
        conn = await mgr.reinforce(1, "memory", 2, "memory", 0.1, "semantic")
        assert conn.connection_type == "temporal"

    async def test_refreshes_last_used(self, storage: Storage) -> None:
        await insert_connection(storage, 1, 2, strength=0.2, last_used_days_ago=40)
        conn = await ConnectionManager(storage).reinforce(1, "memory", 2, "memory", 0.0)
        rows = await storage.execute(
            "SELECT julianday('now') - julianday(last_used_at) AS age FROM connections WHERE id = ?",
            (conn.id,),
        )
        assert rows[0]["age"] < 1

    async def test_concept_endpoints(self, storage: Storage) -> None:
        conn = await ConnectionManager(storage).reinforce(
            1, "memory", 1, "concept", 0.4, "hierarchical"
        )
        assert conn.target_type == "concept"

    async def test_invalid_delta_writes_nothing(self, storage: Storage) -> None:
        with pytest.raises(ValueError):
            await ConnectionManager(storage).reinforce(1, "memory", 2, "memory", 2.0)
        assert await count_connections(storage) == 0


class TestReinforcePair:
    async def test_writes_both_directions(self, storage: Storage) -> None:
        mgr = ConnectionManager(storage)
        forward, backward = await mgr.reinforce_pair(1, 2, 0.2, "temporal")
        assert (forward.source_id, forward.target_id) == (1, 2)
        assert (backward.source_id, backward.target_id) == (2, 1)
        assert forward.strength == backward.strength == pytest.approx(0.2)
        assert await count_connections(storage, connection_type="temporal") == 2

    async def test_self_pair_rejected(self, storage: Storage) -> None:
        with pytest.raises(ValueError):
            await ConnectionManager(storage).reinforce_pair(3, 3, 0.2)


# -----------------------------------------------------------------------
# 3. prune_weak
# -----------------------------------------------------------------------


class TestPruneWeak:
    async def test_weak_and_stale_is_pruned(self, storage: Storage) -> None:
        await insert_connection(storage, 1, 2, strength=0.03, last_used_days_ago=40)
        assert await ConnectionManager(storage).prune_weak(0.05, 30) == 1
        assert await count_connections(storage) == 0

    async def test_weak_but_recent_is_kept(self, storage: Storage) -> None:
        await insert_connection(storage, 1, 2, strength=0.03, last_used_days_ago=5)
        assert await ConnectionManager(storage).prune_weak(0.05, 30) == 0
        assert await count_connections(storage) == 1

    async def test_strong_but_ancient_is_kept(self, storage: Storage) -> None:
        await insert_connection(storage, 1, 2, strength=0.5, last_used_days_ago=400)
        assert await ConnectionManager(storage).prune_weak(0.05, 30) == 0

    async def test_never_used_counts_as_unused(self, storage: Storage) -> None:
        await insert_connection(storage, 1, 2, strength=0.01, last_used_days_ago=None)
        assert await ConnectionManager(storage).prune_weak(0.05, 30) == 1

    async def test_threshold_is_strict(self, storage: Storage) -> None:
        await insert_connection(storage, 1, 2, strength=0.05, last_used_days_ago=40)
        assert await ConnectionManager(storage).prune_weak(0.05, 30) == 0

    async def test_invalid_arguments(self, storage: Storage) -> None:
        mgr = ConnectionManager(storage)
        with pytest.raises(ValueError):
            await mgr.prune_weak(1.5, 30)
        with pytest.raises(ValueError):
            await mgr.prune_weak(0.05, -1)


# -----------------------------------------------------------------------
# 4. Reads and statistics
# -----------------------------------------------------------------------


class TestReads:
    async def test_get_connections_from_orders_by_strength(self, storage: Storage) -> None:
        await insert_connection(storage, 1, 2, strength=0.2)
        await insert_connection(storage, 1, 3, strength=0.9)
        await insert_connection(storage, 2, 1, strength=0.5)
        outgoing = await ConnectionManager(storage).get_connections_from(1)
        assert [c.target_id for c in outgoing] == [3, 2]

    async def test_get_stats(self, storage: Storage) -> None:
        await insert_connection(storage, 1, 2, strength=0.8, connection_type="semantic")
        await insert_connection(storage, 2, 1, strength=0.05, connection_type="semantic")
        await insert_connection(storage, 1, 3, strength=0.5, connection_type="temporal")
        stats = await ConnectionManager(storage).get_stats()
        assert stats["total"] == 3
        assert stats["by_type"] == {"semantic": 2, "temporal": 1}
        assert stats["strong"] == 1
        assert stats["weak"] == 1
        assert stats["avg_strength"] == pytest.approx(0.45, abs=1e-4)

    async def test_get_stats_empty(self, storage: Storage) -> None:
        stats = await ConnectionManager(storage).get_stats()
        assert stats == {
            "total": 0,
            "avg_strength": 0.0,
            "by_type": {},
            "strong": 0,
            "weak": 0,
        }
