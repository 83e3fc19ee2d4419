"""Graph-analysis capabilities that are declared but not yet implemented.

Three analyses are part of the public tool surface so that clients can
discover them and have their arguments validated:

* :func:`build_semantic_graph` -- similarity clusters, central memories
  and knowledge gaps.
* :func:`build_temporal_graph` -- how understanding of a topic evolved
  over sequential memories.
* :func:`analyze_entity_graph` -- solution paths, knowledge domains and
  related concepts over entity relations.

Each function validates its request and then raises
:class:`NotImplementedError`; the MCP layer turns that into a structured
error response.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

ANALYSIS_TYPES: tuple[str, ...] = (
    "solution_paths",
    "knowledge_domains",
    "related_concepts",
    "full_graph",
    "relation_history",
)


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0.0 and 1.0, got {value}")


@dataclass(frozen=True)
class SemanticGraphRequest:
    source_agent: str | None = None
    similarity_threshold: float = 0.75
    limit: int = 100

    def __post_init__(self) -> None:
        _check_unit_interval("similarity_threshold", self.similarity_threshold)
        if self.limit < 1:
            raise ValueError(f"limit must be at least 1, got {self.limit}")


@dataclass(frozen=True)
class TemporalGraphRequest:
    query: str = ""
    time_window: float = 168.0
    """Hours within which sequential memories count as related (one week)."""
    similarity_threshold: float = 0.7

    def __post_init__(self) -> None:
        if not self.query or not self.query.strip():
            raise ValueError("query is required")
        if self.time_window <= 0:
            raise ValueError(f"time_window must be positive, got {self.time_window}")
        _check_unit_interval("similarity_threshold", self.similarity_threshold)


@dataclass(frozen=True)
class EntityGraphRequest:
    entity_text: str | None = None
    analysis_type: str = "full_graph"
    as_of_time: str | None = None
    """ISO-8601 timestamp, e.g. ``2025-12-15T00:00:00Z``; ``None`` means now."""
    include_superseded: bool = False
    include_invalid: bool = False

    def __post_init__(self) -> None:
        if self.analysis_type not in ANALYSIS_TYPES:
            raise ValueError(
                f"Invalid analysis type {self.analysis_type!r}. "
                f"Must be one of: {', '.join(ANALYSIS_TYPES)}"
            )
        if self.as_of_time is not None:
            try:
                datetime.fromisoformat(self.as_of_time.replace("Z", "+00:00"))
            except ValueError as exc:
                raise ValueError(
                    f"as_of_time must be an ISO-8601 timestamp, got {self.as_of_time!r}"
                ) from exc


def _not_implemented(name: str) -> NotImplementedError:
    return NotImplementedError(f"{name} is declared but not implemented yet")


def build_semantic_graph(request: SemanticGraphRequest) -> dict[str, Any]:
    raise _not_implemented("build_semantic_graph")


def build_temporal_graph(request: TemporalGraphRequest) -> dict[str, Any]:
    raise _not_implemented("build_temporal_graph")


def analyze_entity_graph(request: EntityGraphRequest) -> dict[str, Any]:
    raise _not_implemented("analyze_entity_graph")
