from __future__ import annotations

import sqlite3
from collections.abc import Generator
from pathlib import Path

import pytest

here = Path(__file__).parent
root_path = here.parent

ITEM_COUNT = 25


def seed_items(connection: sqlite3.Connection, count: int = ITEM_COUNT) -> None:
    connection.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT NOT NULL UNIQUE)")
    connection.execute("CREATE TABLE tags (item_id INTEGER NOT NULL, tag TEXT NOT NULL)")
    connection.executemany("INSERT INTO items (id, name) VALUES (?, ?)", [(i, f"item-{i}") for i in range(1, count + 1)])
    connection.executemany(
        "INSERT INTO tags (item_id, tag) VALUES (?, ?)",
        [(i, tag) for i in range(1, count + 1) for tag in (f"t{i}a", f"t{i}b")],
    )
    connection.commit()


@pytest.fixture
def sqlite_connection() -> Generator[sqlite3.Connection, None, None]:
    """In-memory database with ``items`` and ``tags`` tables, shareable across threads."""
    connection = sqlite3.connect(":memory:", check_same_thread=False)
    seed_items(connection)
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def sqlite_database(tmp_path: Path) -> Path:
    """File database seeded with ``items`` and ``tags``, for tests that open several connections."""
    path = tmp_path / "items.db"
    connection = sqlite3.connect(path)
    try:
        seed_items(connection)
    finally:
        connection.close()
    return path
