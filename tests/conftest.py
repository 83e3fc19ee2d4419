"""Shared fixtures and helpers for the dreams test suite."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from dreams.brain import Brain
from dreams.config import get_config
from dreams.storage import Storage


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point the default database at ``tmp_path``.

    Tests never touch the user's production database at
    ``~/.dreams/dreams.db``.
    """
    monkeypatch.setenv("DREAMS_DB_PATH", str(tmp_path / "default.db"))
    yield get_config(reload=True)
    monkeypatch.undo()
    get_config(reload=True)


@pytest.fixture
async def brain(tmp_path: Path) -> Brain:
    """Provide an initialized Brain instance backed by a temp database."""
    b = Brain(db_path=tmp_path / "brain.db")
    await b.initialize()
    yield b  # type: ignore[misc]
    await b.shutdown()


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory."""
    db_path = tmp_path / "test.db"
    s = Storage(db_path)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


def requires_vec(storage: Storage) -> None:
    """Skip the calling test when sqlite-vec could not be loaded."""
    if not storage.vec_available:
        pytest.skip("sqlite-vec extension not available")


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing managers
# ---------------------------------------------------------------------------


async def insert_memory(
    storage: Storage,
    content: str = "memory",
    embedding: list[float] | None = None,
    created_at: str | None = None,
    source_agent: str | None = None,
) -> int:
    """Insert a memory directly via SQL.  Returns the new memory ID.

    *created_at* uses SQLite's ``YYYY-MM-DD HH:MM:SS`` format.
    """
    from dreams.storage import serialize_embedding

    blob = serialize_embedding(embedding) if embedding is not None else None
    memory_id = await storage.execute_write(
        "INSERT INTO memories (content, embedding, source_agent) VALUES (?, ?, ?)",
        (content, blob, source_agent),
    )
    if created_at is not None:
        await storage.execute_write(
            "UPDATE memories SET created_at = ? WHERE id = ?",
            (created_at, memory_id),
        )
    return memory_id


async def insert_connection(
    storage: Storage,
    source_id: int,
    target_id: int,
    strength: float = 0.5,
    connection_type: str = "semantic",
    last_used_days_ago: float | None = 0,
    source_type: str = "memory",
    target_type: str = "memory",
) -> int:
    """Insert a connection directly via SQL.

    *last_used_days_ago* of ``None`` leaves ``last_used_at`` NULL.
    """
    if last_used_days_ago is None:
        last_used_sql = "NULL"
        params: tuple[Any, ...] = ()
    else:
        last_used_sql = "datetime('now', ?)"
        params = (f"-{last_used_days_ago} days",)

    return await storage.execute_write(
        f"""
        INSERT INTO connections
            (source_id, source_type, target_id, target_type, connection_type,
             strength, usage_count, last_used_at)
        VALUES (?, ?, ?, ?, ?, ?, 1, {last_used_sql})
        """,
        (source_id, source_type, target_id, target_type, connection_type, strength, *params),
    )


async def insert_activation(storage: Storage, memory_ids: list[int], times: int = 1) -> None:
    """Record *times* activations of the same member set via SQL."""
    members = json.dumps(sorted(set(memory_ids)))
    for _ in range(times):
        await storage.execute_write(
            "INSERT INTO activation_log (memory_ids) VALUES (?)",
            (members,),
        )


async def count_connections(
    storage: Storage,
    source_id: int | None = None,
    target_id: int | None = None,
    connection_type: str | None = None,
) -> int:
    """Count connections matching the given filters."""
    clauses: list[str] = []
    params: list[Any] = []

    if source_id is not None:
        clauses.append("source_id = ?")
        params.append(source_id)
    if target_id is not None:
        clauses.append("target_id = ?")
        params.append(target_id)
    if connection_type is not None:
        clauses.append("connection_type = ?")
        params.append(connection_type)

    where = " AND ".join(clauses) if clauses else "1=1"
    rows = await storage.execute(
        f"SELECT COUNT(*) AS cnt FROM connections WHERE {where}",
        tuple(params),
    )
    return rows[0]["cnt"]
