"""Unit tests for SequentialCursor, Row and large-object detection.

Tests cover:
- Lazy execution on first pull
- Row mapping with 1-based row numbers
- Connection release on exhaustion, early close and errors
- Multiple result sets and max_rows
- Row access by label, position and case-insensitive label
"""

import sqlite3
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from sqlstream.core.cursor import Row, RowLayout, SequentialCursor, default_mapper, has_large_objects
from sqlstream.core.statement import Statement, StatementConfig
from sqlstream.exceptions import DatabaseError


class _MultiResultCursor:
    """Cursor double returning several result sets through ``nextset``."""

    def __init__(self, result_sets: "list[tuple[Optional[tuple], list[tuple]]]") -> None:
        self._result_sets = list(result_sets)
        self.description: Any = None
        self._rows: list[tuple] = []
        self.arraysize = 1
        self.closed = False
        self.fetch_sizes: list[int] = []

    def _load(self) -> None:
        self.description, rows = self._result_sets.pop(0)
        self._rows = list(rows)

    def execute(self, sql: str, parameters: Any = None) -> None:
        self._load()

    def fetchmany(self, size: int = 1) -> "list[tuple]":
        self.fetch_sizes.append(size)
        chunk, self._rows = self._rows[:size], self._rows[size:]
        return chunk

    def nextset(self) -> Optional[bool]:
        if not self._result_sets:
            return None
        self._load()
        return True

    def close(self) -> None:
        self.closed = True


def _connection_for(cursor: Any) -> MagicMock:
    connection = MagicMock()
    connection.cursor.return_value = cursor
    return connection


# Execution Tests


def test_execution_is_lazy(sqlite_connection: sqlite3.Connection) -> None:
    provider = MagicMock(return_value=sqlite_connection)
    cursor = SequentialCursor(Statement("SELECT id FROM items ORDER BY id"), provider)

    provider.assert_not_called()
    assert next(cursor) == {"id": 1}
    provider.assert_called_once_with()


def test_rows_are_mapped_with_row_numbers(sqlite_connection: sqlite3.Connection) -> None:
    seen: list[tuple[int, int]] = []

    def mapper(row: Row, row_number: int) -> int:
        seen.append((row["id"], row_number))
        return row["id"]

    statement = Statement("SELECT id FROM items WHERE id <= :limit ORDER BY id", {"limit": 20})
    cursor = SequentialCursor(statement, lambda: sqlite_connection, mapper=mapper)

    assert list(cursor) == list(range(1, 21))
    assert seen == [(i, i) for i in range(1, 21)]
    assert cursor.row_number == 20


def test_fetch_size_drives_arraysize_and_fetchmany() -> None:
    fake = _MultiResultCursor([((("id",),), [(i,) for i in range(7)])])
    config = StatementConfig(fetch_size=3)
    cursor = SequentialCursor(Statement("SELECT id FROM t", statement_config=config), lambda: _connection_for(fake))

    assert len(list(cursor)) == 7
    assert fake.arraysize == 3
    assert set(fake.fetch_sizes) == {3}


def test_statement_without_result_set_ends_immediately(sqlite_connection: sqlite3.Connection) -> None:
    releaser = MagicMock()
    cursor = SequentialCursor(Statement("UPDATE items SET name = name"), lambda: sqlite_connection, releaser)

    assert list(cursor) == []
    releaser.assert_called_once_with(sqlite_connection)
    assert cursor.is_closed


# Release Tests


def test_connection_released_once_on_exhaustion(sqlite_connection: sqlite3.Connection) -> None:
    releaser = MagicMock()
    cursor = SequentialCursor(Statement("SELECT id FROM items"), lambda: sqlite_connection, releaser)

    assert len(list(cursor)) == 25
    cursor.close()
    with pytest.raises(StopIteration):
        next(cursor)
    releaser.assert_called_once_with(sqlite_connection)


def test_early_close_releases_connection(sqlite_connection: sqlite3.Connection) -> None:
    releaser = MagicMock()
    cursor = SequentialCursor(Statement("SELECT id FROM items"), lambda: sqlite_connection, releaser)

    next(cursor)
    cursor.close()
    cursor.close()

    releaser.assert_called_once_with(sqlite_connection)


def test_close_before_start_never_requests_connection() -> None:
    provider = MagicMock()
    cursor = SequentialCursor(Statement("SELECT 1"), provider)
    cursor.close()

    assert list(cursor) == []
    provider.assert_not_called()


def test_driver_error_is_wrapped_after_release(sqlite_connection: sqlite3.Connection) -> None:
    releaser = MagicMock()
    cursor = SequentialCursor(Statement("SELECT * FROM missing_table"), lambda: sqlite_connection, releaser)

    with pytest.raises(DatabaseError) as exc_info:
        next(cursor)

    assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
    releaser.assert_called_once_with(sqlite_connection)


def test_mapper_error_is_wrapped_after_release(sqlite_connection: sqlite3.Connection) -> None:
    releaser = MagicMock()

    def mapper(row: Row, row_number: int) -> Any:
        if row_number == 3:
            raise ValueError("bad row")
        return row_number

    cursor = SequentialCursor(Statement("SELECT id FROM items"), lambda: sqlite_connection, releaser, mapper)

    assert next(cursor) == 1
    assert next(cursor) == 2
    with pytest.raises(DatabaseError, match="bad row"):
        next(cursor)
    releaser.assert_called_once()


# Result Set Tests


def test_multiple_result_sets_are_chained() -> None:
    fake = _MultiResultCursor(
        [
            ((("a",),), [(1,), (2,)]),
            (None, []),
            ((("b",),), [(3,)]),
        ]
    )
    cursor = SequentialCursor(Statement("call p()"), lambda: _connection_for(fake), mapper=lambda row, n: (row[0], n))

    assert list(cursor) == [(1, 1), (2, 2), (3, 3)]
    assert fake.closed


def test_max_rows_caps_output(sqlite_connection: sqlite3.Connection) -> None:
    config = StatementConfig(max_rows=4)
    releaser = MagicMock()
    cursor = SequentialCursor(
        Statement("SELECT id FROM items", statement_config=config), lambda: sqlite_connection, releaser
    )

    assert len(list(cursor)) == 4
    releaser.assert_called_once()


# Row Tests


def test_row_access_by_label_position_and_case() -> None:
    row = Row(RowLayout([("Id",), ("Name",)]), (7, "seven"))

    assert row["Id"] == 7
    assert row["name"] == "seven"
    assert row[1] == "seven"
    assert list(row) == ["Id", "Name"]
    assert len(row) == 2
    assert dict(row) == {"Id": 7, "Name": "seven"}
    assert row.as_tuple() == (7, "seven")


def test_row_missing_label_raises_key_error() -> None:
    row = Row(RowLayout([("id",)]), (1,))
    with pytest.raises(KeyError):
        row["other"]
    assert "other" not in row


def test_row_duplicate_labels_resolve_to_first_column() -> None:
    row = Row(RowLayout([("id",), ("id",)]), (1, 2))
    assert row["id"] == 1
    assert default_mapper(row, 1) == {"id": 2}


# Large Object Detection Tests


@pytest.mark.parametrize(
    ("description", "expected"),
    [
        ((("data", "BLOB", None, None, None, None, None),), True),
        ((("data", "clob"),), True),
        ((("id", "INTEGER"), ("doc", "LONGVARCHAR")), True),
        ((("id", "INTEGER"),), False),
        ((("id", None),), False),
        (None, False),
    ],
)
def test_has_large_objects(description: Any, expected: bool) -> None:
    assert has_large_objects(description, StatementConfig().large_object_types) is expected


def test_has_large_objects_matches_type_objects() -> None:
    class BLOB:
        pass

    assert has_large_objects((("data", BLOB),), frozenset({"BLOB"}))
