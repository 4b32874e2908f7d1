"""Forward-only iteration over the rows of one executed statement."""

import logging
from collections import deque
from collections.abc import Iterator, Mapping, Sequence
from contextlib import suppress
from typing import TYPE_CHECKING, Any, Generic, NoReturn, Optional

from mypy_extensions import mypyc_attr

from sqlstream.exceptions import DatabaseError, ImproperConfigurationError, SQLStreamError
from sqlstream.typing import RowT
from sqlstream.utils.logging import CURSOR_LOGGER_NAME, get_logger, log_with_context
from sqlstream.utils.type_guards import supports_nextset

if TYPE_CHECKING:
    from sqlstream.core.statement import Statement
    from sqlstream.typing import ConnectionProvider, ConnectionReleaser, DictRow, RowMapper

__all__ = ("Row", "RowLayout", "SequentialCursor", "default_mapper", "has_large_objects")

logger = get_logger(CURSOR_LOGGER_NAME)


@mypyc_attr(allow_interpreted_subclasses=False)
class RowLayout:
    """Column labels of one result set, resolved once and shared by all its rows."""

    __slots__ = ("_folded", "_positions", "labels")

    def __init__(self, description: "Sequence[Sequence[Any]]") -> None:
        self.labels: tuple[str, ...] = tuple(str(column[0]) for column in description)
        self._positions: dict[str, int] = {}
        self._folded: dict[str, int] = {}
        for position, label in enumerate(self.labels):
            self._positions.setdefault(label, position)
            self._folded.setdefault(label.casefold(), position)

    def position(self, label: str) -> int:
        """Index of a column label, falling back to a case-insensitive match."""
        try:
            return self._positions[label]
        except KeyError:
            return self._folded[label.casefold()]

    def __len__(self) -> int:
        return len(self.labels)


class Row(Mapping[str, Any]):
    """Read-only view of one fetched row.

    Values are reachable by column label (case-insensitive fallback) or by
    0-based position. When labels repeat, the first column wins.
    """

    __slots__ = ("_layout", "_values")

    def __init__(self, layout: RowLayout, values: "Sequence[Any]") -> None:
        self._layout = layout
        self._values = values

    def __getitem__(self, key: "str | int") -> Any:
        if isinstance(key, int):
            return self._values[key]
        return self._values[self._layout.position(key)]

    def __iter__(self) -> "Iterator[str]":
        return iter(self._layout.labels)

    def __len__(self) -> int:
        return len(self._layout)

    @property
    def labels(self) -> tuple[str, ...]:
        return self._layout.labels

    def as_tuple(self) -> tuple[Any, ...]:
        """Row values in column order."""
        return tuple(self._values)

    def __repr__(self) -> str:
        return f"Row({dict(zip(self._layout.labels, self._values))!r})"


def default_mapper(row: Row, row_number: int) -> "DictRow":
    """Map a row to a dict of column label to value."""
    return dict(zip(row.labels, row.as_tuple()))


def has_large_objects(description: "Optional[Sequence[Sequence[Any]]]", large_object_types: "frozenset[str]") -> bool:
    """Check if a result set carries columns of a large-object type.

    The DB-API ``type_code`` is driver specific; it is matched by name, so
    both type objects (``str()`` of which names the type) and plain type
    name strings are recognised.
    """
    if not description:
        return False
    for column in description:
        type_code = column[1] if len(column) > 1 else None
        if type_code is None:
            continue
        name = getattr(type_code, "__name__", None) or str(type_code)
        if name.upper() in large_object_types:
            return True
    return False


class SequentialCursor(Generic[RowT]):
    """Iterator that executes a statement on first pull and yields mapped rows.

    The connection comes from ``connection_provider`` and goes back to
    ``connection_releaser`` exactly once, when rows are exhausted, when an
    error occurs or when :meth:`close` is called.

    Args:
        statement: Prepared statement to execute
        connection_provider: Callable returning the connection to execute on
        connection_releaser: Callable receiving the connection once iteration ends
        mapper: ``mapper(row, row_number)``; ``row_number`` is 1-based across all result sets
    """

    __slots__ = (
        "_buffer",
        "_closed",
        "_connection",
        "_cursor",
        "_layout",
        "_mapper",
        "_provider",
        "_releaser",
        "_row_number",
        "_started",
        "statement",
    )

    def __init__(
        self,
        statement: "Statement",
        connection_provider: "ConnectionProvider",
        connection_releaser: "Optional[ConnectionReleaser]" = None,
        mapper: "Optional[RowMapper]" = None,
    ) -> None:
        if mapper is not None and not callable(mapper):
            msg = "mapper must be callable"
            raise ImproperConfigurationError(msg)
        self.statement = statement
        self._provider = connection_provider
        self._releaser = connection_releaser
        self._mapper = mapper or default_mapper
        self._connection: Any = None
        self._cursor: Any = None
        self._layout: Optional[RowLayout] = None
        self._buffer: deque[Any] = deque()
        self._row_number = 0
        self._started = False
        self._closed = False

    @property
    def description(self) -> Any:
        """DB-API description of the current result set, ``None`` before execution or without one."""
        return None if self._cursor is None else self._cursor.description

    @property
    def row_number(self) -> int:
        """Number of rows yielded so far."""
        return self._row_number

    def open(self) -> bool:
        """Execute the statement if that has not happened yet.

        Returns:
            True if the statement produced a result set to iterate
        """
        if self._closed:
            return False
        if self._started:
            return self._layout is not None
        self._started = True
        try:
            self._connection = self._provider()
            self._cursor = self._connection.cursor()
            with suppress(AttributeError, TypeError):
                self._cursor.arraysize = self.statement.statement_config.fetch_size
            log_with_context(logger, logging.DEBUG, "cursor.execute", sql=self.statement.as_sql())
            self.statement.execute(self._cursor)
        except Exception as exc:
            self._fail(exc, "Failed to execute statement")
        if self._cursor.description is None:
            self.close()
            return False
        self._layout = RowLayout(self._cursor.description)
        return True

    def _fail(self, exc: Exception, message: str) -> NoReturn:
        self.close()
        if isinstance(exc, SQLStreamError):
            raise exc
        msg = f"{message}: {exc}"
        raise DatabaseError(msg) from exc

    def _next_result_set(self) -> bool:
        while supports_nextset(self._cursor):
            try:
                more = self._cursor.nextset()
            except Exception as exc:
                if type(exc).__name__ == "NotSupportedError":
                    return False
                raise
            if not more:
                return False
            if self._cursor.description is not None:
                self._layout = RowLayout(self._cursor.description)
                return True
        return False

    def _fill(self) -> bool:
        while not self._buffer:
            rows = self._cursor.fetchmany(self.statement.statement_config.fetch_size)
            if rows:
                self._buffer.extend(rows)
                return True
            if not self._next_result_set():
                return False
        return True

    def __iter__(self) -> "SequentialCursor[RowT]":
        return self

    def __next__(self) -> RowT:
        if self._closed or not self.open():
            raise StopIteration
        max_rows = self.statement.statement_config.max_rows
        if max_rows is not None and self._row_number >= max_rows:
            self.close()
            raise StopIteration
        try:
            has_rows = self._fill()
        except Exception as exc:
            self._fail(exc, "Failed to fetch rows")
        if not has_rows:
            self.close()
            raise StopIteration
        values = self._buffer.popleft()
        self._row_number += 1
        try:
            return self._mapper(Row(self._layout, values), self._row_number)  # type: ignore[arg-type]
        except Exception as exc:
            self._fail(exc, f"Failed to map row {self._row_number}")

    def close(self) -> None:
        """Close the DB-API cursor and hand the connection back. Repeated calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        cursor, self._cursor = self._cursor, None
        connection, self._connection = self._connection, None
        try:
            if cursor is not None:
                try:
                    cursor.close()
                except Exception as exc:  # noqa: BLE001
                    log_with_context(logger, logging.DEBUG, "cursor.close.error", error=str(exc))
        finally:
            if connection is not None and self._releaser is not None:
                self._releaser(connection)

    @property
    def is_closed(self) -> bool:
        return self._closed
