"""Central configuration for the dreams system.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``DREAMS_`` (nested keys use
double underscores, e.g. ``DREAMS_DREAM__SEMANTIC_THRESHOLD=0.8``).

Usage::

    from dreams.config import get_config

    cfg = get_config()
    print(cfg.db_path)
    print(cfg.dream.temporal_window_hours)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DreamConfig:
    """Parameters for the offline consolidation ("dreaming") pass."""

    semantic_threshold: float = 0.85
    """Minimum cosine similarity for a new semantic connection.

    Meaningful similarity sits in the 0.70-0.85 range; the default is the
    conservative end so that dreaming only links clearly related memories."""

    temporal_window_hours: float = 4.0
    """Maximum creation-time gap for a new temporal connection.

    Episodic binding happens over roughly 3-6 hours; 4 is the middle."""

    coactivation_min_count: int = 3
    """Minimum number of joint activations before a group is reinforced."""

    prune_min_strength: float = 0.05
    """Connections weaker than this are eligible for pruning."""

    prune_days_unused: int = 30
    """Connections unused for longer than this are eligible for pruning.

    Long enough that a connection survives several consolidation cycles
    before it can be removed."""

    pair_batch_limit: int = 100
    """Maximum number of pairs each discovery phase handles per run."""

    coactivation_group_limit: int = 50
    """Maximum number of co-activation groups reinforced per run."""

    semantic_strength_factor: float = 0.3
    """Initial semantic strength is ``similarity * semantic_strength_factor``.

    Discovered links start weak and only grow through use."""

    temporal_initial_strength: float = 0.2
    """Uniform initial strength of a temporal connection."""

    coactivation_bonus_per_count: float = 0.02
    coactivation_bonus_cap: float = 0.15
    """Upper bound on a single co-activation reinforcement."""

    lock_stale_minutes: int = 60
    """Age after which a ``dream`` lock not refreshed by its run is reclaimed.

    A running pass refreshes the lock after every phase, so only a single
    phase longer than this can be overtaken by a second run."""


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DreamsConfig:
    """Root configuration object for the dreams system.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.dreams/dreams.db"))
    log_level: str = "WARNING"

    dream: DreamConfig = field(default_factory=DreamConfig)

    def __post_init__(self) -> None:
        # Expand ~ in path fields.  We use object.__setattr__ because the
        # dataclass is frozen.
        object.__setattr__(self, "db_path", self.db_path.expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "DREAMS_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: DreamsConfig | None = None


def get_config(*, reload: bool = False) -> DreamsConfig:
    """Return the current :class:`DreamsConfig`.

    On the first call the config is built by merging defaults with any
    ``DREAMS_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Parameters
    ----------
    reload:
        Force re-reading environment variables and rebuilding the config.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(DreamsConfig, _ENV_PREFIX)
    return _cached_config
