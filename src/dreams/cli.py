"""CLI entry points for dream runs, history, statistics and health checks.

``dream`` is meant to be run nightly from cron; it exits with status 1 when
the run fails so the scheduler can report it.

Usage::

    python -m dreams dream
    python -m dreams dream --semantic-threshold 0.8 --prune-days-unused 14
    python -m dreams history --limit 5
    python -m dreams stats
    python -m dreams health
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from dreams.brain import Brain

log = logging.getLogger(__name__)

COMMANDS: tuple[str, ...] = ("dream", "history", "stats", "health")


async def _get_brain() -> Brain:
    brain = Brain()
    await brain.initialize()
    return brain


def _format_run_line(run: dict[str, Any]) -> str:
    return (
        f"  {run['started_at']}: +{run['connections_created']} created, "
        f"{run['connections_strengthened']} strengthened, "
        f"{run['connections_pruned']} pruned ({run['duration']})"
    )


# ------------------------------------------------------------------
# dream
# ------------------------------------------------------------------


def _parse_dream_args(args: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m dreams dream",
        description="Run one offline consolidation pass over the memory graph",
    )
    parser.add_argument(
        "--semantic-threshold",
        type=float,
        default=None,
        help="Minimum cosine similarity for new semantic connections (default: 0.85)",
    )
    parser.add_argument(
        "--temporal-window-hours",
        type=float,
        default=None,
        help="Creation-time window for temporal connections (default: 4)",
    )
    parser.add_argument(
        "--coactivation-min-count",
        type=int,
        default=None,
        help="Minimum joint activations before reinforcement (default: 3)",
    )
    parser.add_argument(
        "--prune-min-strength",
        type=float,
        default=None,
        help="Prune connections weaker than this (default: 0.05)",
    )
    parser.add_argument(
        "--prune-days-unused",
        type=int,
        default=None,
        help="...when also unused for this many days (default: 30)",
    )
    return parser.parse_args(args)


async def _dream(parsed: argparse.Namespace) -> str:
    """Run a dream and return the formatted report.  Errors propagate."""
    brain = await _get_brain()
    try:
        dream = await brain.dream(
            semantic_threshold=parsed.semantic_threshold,
            temporal_window_hours=parsed.temporal_window_hours,
            coactivation_min_count=parsed.coactivation_min_count,
            prune_min_strength=parsed.prune_min_strength,
            prune_days_unused=parsed.prune_days_unused,
        )
        recent = await brain.dream_history(limit=3)
    finally:
        await brain.shutdown()

    lines = [
        f"Dream {dream['id']} complete ({dream['duration']}):",
        f"  connections created: {dream['connections_created']}",
        f"  connections strengthened: {dream['connections_strengthened']}",
        f"  connections pruned: {dream['connections_pruned']}",
        "  notes:",
    ]
    lines.extend(f"    - {note}" for note in dream["notes"])
    lines.append("")
    lines.append("Recent dreams:")
    lines.extend(_format_run_line(run) for run in recent["dreams"])
    return "\n".join(lines)


def run_dream(args: list[str]) -> None:
    """Run the dream command; exits with status 1 on failure."""
    parsed = _parse_dream_args(args)
    try:
        print(asyncio.run(_dream(parsed)))
    except Exception as exc:
        log.exception("Dream consolidation failed")
        print(f"Dream consolidation failed: {exc}", file=sys.stderr)
        sys.exit(1)


# ------------------------------------------------------------------
# history
# ------------------------------------------------------------------


async def _history(limit: int) -> str:
    brain = await _get_brain()
    try:
        result = await brain.dream_history(limit=limit)
    finally:
        await brain.shutdown()

    if not result["dreams"]:
        return "No dreams recorded yet."
    lines = [f"Last {result['count']} dream(s):"]
    for run in result["dreams"]:
        lines.append(_format_run_line(run))
        lines.extend(f"    - {note}" for note in run["notes"])
    return "\n".join(lines)


def run_history(args: list[str]) -> None:
    parser = argparse.ArgumentParser(
        prog="python -m dreams history",
        description="Show recent dream runs, newest first",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Maximum number of runs to show (default: 10)",
    )
    parsed = parser.parse_args(args)
    print(asyncio.run(_history(parsed.limit)))


# ------------------------------------------------------------------
# stats / health
# ------------------------------------------------------------------


async def _stats() -> str:
    brain = await _get_brain()
    try:
        stats = await brain.dream_stats()
    finally:
        await brain.shutdown()

    conns = stats["connections"]
    lines = [
        "dreams stats:",
        f"  connections: {conns['total']}",
        f"  avg strength: {conns['avg_strength']:.3f}",
        f"  strong (>= 0.7): {conns['strong']}",
        f"  weak (< 0.1): {conns['weak']}",
    ]
    for conn_type, count in sorted(conns["by_type"].items()):
        lines.append(f"    {conn_type}: {count}")
    lines.append("  recent dreams:")
    lines.extend(_format_run_line(run) for run in stats["recent_dreams"])
    return "\n".join(lines)


def run_stats() -> None:
    print(asyncio.run(_stats()))


async def _health() -> str:
    """Run health check and return formatted status."""
    try:
        brain = await _get_brain()
        status = await brain.health()
        await brain.shutdown()

        counts = status["counts"]
        lines = [
            "dreams health check:",
            f"  db: {status['db_path']}",
            f"  db_size: {status['db_size_mb']:.2f} MB",
            f"  sqlite-vec: {'available' if status['vec_available'] else 'unavailable'}",
            f"  memories: {counts.get('memories', 0)}",
            f"  activations: {counts.get('activation_log', 0)}",
            f"  connections: {counts.get('connections', 0)}",
            f"  dreams: {counts.get('dream_log', 0)}",
        ]
        return "\n".join(lines)
    except Exception as exc:
        log.exception("Health check failed")
        return f"Health check failed: {exc}"


def run_health() -> None:
    """Run health check command."""
    print(asyncio.run(_health()))


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m dreams``,
        e.g. ``["dream", "--semantic-threshold", "0.8"]``.
    """
    if not args:
        return  # Fall through to MCP server.

    command = args[0]

    if command == "dream":
        run_dream(args[1:])
        sys.exit(0)

    elif command == "history":
        run_history(args[1:])
        sys.exit(0)

    elif command == "stats":
        run_stats()
        sys.exit(0)

    elif command == "health":
        run_health()
        sys.exit(0)

    # Unknown command -- don't exit, fall through to MCP server.
