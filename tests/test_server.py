"""Tests for the dreams.server MCP tool layer.

Tests cover:
- Parameter normalization (empty strings -> None)
- _error_response structured error formatting
- Every tool delegating to Brain correctly
- Error handling in every tool (returns error dict, never raises)
- Lazy brain initialization via _ensure_brain
"""

from __future__ import annotations

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from dreams.brain import Brain
from dreams.dreaming import DreamInProgressError
import dreams.server as server_module
from dreams.server import (
    analyze_entity_graph,
    build_semantic_graph,
    build_temporal_graph,
    dream_history,
    dream_stats,
    record_activation,
    strengthen_pathway,
    trigger_dream,
    _ensure_brain,
    _error_response,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_brain():
    brain = MagicMock(spec=Brain)
    brain._initialized = True
    brain.initialize = AsyncMock()
    brain.dream = AsyncMock(
        return_value={
            "id": 1,
            "duration": "0.0s",
            "connections_created": 0,
            "connections_strengthened": 0,
            "connections_pruned": 0,
            "concepts_created": 0,
            "notes": [],
        }
    )
    brain.dream_history = AsyncMock(return_value={"dreams": [], "count": 0})
    brain.dream_stats = AsyncMock(
        return_value={"connections": {"total": 0}, "recent_dreams": []}
    )
    brain.strengthen_pathway = AsyncMock(return_value={"id": 1, "strength": 0.1})
    brain.record_activation = AsyncMock(return_value={"activation_id": 1, "memory_ids": [1, 2]})
    brain.build_semantic_graph = AsyncMock(side_effect=NotImplementedError("nope"))
    brain.build_temporal_graph = AsyncMock(side_effect=NotImplementedError("nope"))
    brain.analyze_entity_graph = AsyncMock(side_effect=NotImplementedError("nope"))
    return brain


@pytest.fixture(autouse=True)
def patch_brain(mock_brain):
    with patch.object(server_module, "_brain", mock_brain):
        yield mock_brain


# ===================================================================
# Parameter normalization
# ===================================================================


class TestParameterNormalization:
    """Unset options reach the Brain as None so configured defaults apply."""

    async def test_trigger_dream_unset_options_are_none(self, mock_brain):
        await trigger_dream()
        _, kwargs = mock_brain.dream.call_args
        assert kwargs == {
            "semantic_threshold": None,
            "temporal_window_hours": None,
            "coactivation_min_count": None,
            "prune_min_strength": None,
            "prune_days_unused": None,
        }

    async def test_trigger_dream_passes_overrides(self, mock_brain):
        await trigger_dream(semantic_threshold=0.8, prune_days_unused=14)
        _, kwargs = mock_brain.dream.call_args
        assert kwargs["semantic_threshold"] == 0.8
        assert kwargs["prune_days_unused"] == 14

    async def test_record_activation_empty_strings_become_none(self, mock_brain):
        await record_activation(memory_ids=[1, 2], query="", agent="")
        _, kwargs = mock_brain.record_activation.call_args
        assert kwargs["query"] is None
        assert kwargs["agent"] is None

    async def test_analyze_entity_graph_empty_strings_become_none(self, mock_brain):
        await analyze_entity_graph(entity_text="", as_of_time="")
        _, kwargs = mock_brain.analyze_entity_graph.call_args
        assert kwargs["entity_text"] is None
        assert kwargs["as_of_time"] is None


# ===================================================================
# _error_response
# ===================================================================


class TestErrorResponse:
    def test_error_response_keys(self):
        assert set(_error_response(ValueError("x"))) == {"error", "detail", "traceback"}

    def test_error_response_uses_class_name(self):
        assert _error_response(DreamInProgressError("busy"))["error"] == "DreamInProgressError"

    def test_error_response_detail_is_message(self):
        assert _error_response(ValueError("bad limit"))["detail"] == "bad limit"


# ===================================================================
# Tool endpoints
# ===================================================================


class TestToolEndpoints:
    async def test_trigger_dream_delegates(self, mock_brain):
        result = await trigger_dream()
        assert result["id"] == 1
        mock_brain.dream.assert_awaited_once()

    async def test_trigger_dream_in_progress_is_reported(self, mock_brain):
        mock_brain.dream.side_effect = DreamInProgressError("A dream run is already in progress")
        result = await trigger_dream()
        assert result["error"] == "DreamInProgressError"

    async def test_dream_history_delegates(self, mock_brain):
        await dream_history(limit=3)
        mock_brain.dream_history.assert_awaited_once_with(limit=3)

    async def test_dream_history_error(self, mock_brain):
        mock_brain.dream_history.side_effect = ValueError("limit must be at least 1, got 0")
        result = await dream_history(limit=0)
        assert result["error"] == "ValueError"

    async def test_dream_stats_delegates(self, mock_brain):
        result = await dream_stats()
        assert "connections" in result
        assert "recent_dreams" in result

    async def test_dream_stats_error(self, mock_brain):
        mock_brain.dream_stats.side_effect = RuntimeError("db gone")
        assert (await dream_stats())["error"] == "RuntimeError"

    async def test_strengthen_pathway_delegates(self, mock_brain):
        await strengthen_pathway(source_id=1, target_id=2, delta=0.3, connection_type="causal")
        mock_brain.strengthen_pathway.assert_awaited_once_with(
            source_id=1,
            target_id=2,
            delta=0.3,
            connection_type="causal",
            source_type="memory",
            target_type="memory",
        )

    async def test_strengthen_pathway_error(self, mock_brain):
        mock_brain.strengthen_pathway.side_effect = ValueError("Delta must be between")
        assert (await strengthen_pathway(source_id=1, target_id=2, delta=5))["error"] == "ValueError"

    async def test_record_activation_delegates(self, mock_brain):
        result = await record_activation(memory_ids=[2, 1])
        assert result["activation_id"] == 1

    @pytest.mark.parametrize(
        "tool, kwargs",
        [
            (build_semantic_graph, {}),
            (build_temporal_graph, {"query": "redis"}),
            (analyze_entity_graph, {}),
        ],
    )
    async def test_graph_tools_report_not_implemented(self, tool, kwargs):
        result = await tool(**kwargs)
        assert result["error"] == "NotImplementedError"


# ===================================================================
# Lazy initialization
# ===================================================================


class TestEnsureBrain:
    async def test_ensure_brain_initializes_when_not_ready(self, mock_brain):
        mock_brain._initialized = False
        await _ensure_brain()
        mock_brain.initialize.assert_awaited_once()

    async def test_ensure_brain_noop_when_already_initialized(self, mock_brain):
        await _ensure_brain()
        mock_brain.initialize.assert_not_awaited()


# ---------------------------------------------------------------------------
# Tool registration
# ---------------------------------------------------------------------------


class TestRegistration:
    async def test_all_tools_registered(self):
        tools = await server_module.mcp.list_tools()
        assert {t.name for t in tools} == {
            "trigger_dream",
            "dream_history",
            "dream_stats",
            "strengthen_pathway",
            "record_activation",
            "build_semantic_graph",
            "build_temporal_graph",
            "analyze_entity_graph",
        }
