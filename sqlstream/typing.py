from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Callable, Union

from typing_extensions import TypeAlias, TypeVar

if TYPE_CHECKING:
    from sqlstream.core.cursor import Row
    from sqlstream.driver.session import Session

__all__ = (
    "BatchProcessor",
    "ConnectionFactory",
    "ConnectionProvider",
    "ConnectionReleaser",
    "ConnectionT",
    "DictRow",
    "RowMapper",
    "RowT",
    "StatementParameters",
)

ConnectionT = TypeVar("ConnectionT")
"""Type variable for a DB-API connection."""

RowT = TypeVar("RowT", default=dict[str, Any])
"""Type variable for the value a row mapper produces."""

DictRow: TypeAlias = "dict[str, Any]"
"""Row produced by the default mapper: column label to value."""

StatementParameters: TypeAlias = "Union[Mapping[str, Any], Sequence[Any], Iterable[Any], None]"
"""Named parameters (mapping) or positional parameters (sequence)."""

ConnectionFactory: TypeAlias = "Callable[[], ConnectionT]"
"""Zero-argument callable returning a live DB-API connection."""

ConnectionProvider: TypeAlias = "Callable[[], Any]"
"""Callable handing out the connection a statement runs on."""

ConnectionReleaser: TypeAlias = "Callable[[Any], None]"
"""Callable taking a connection back once a statement is finished with it."""

RowMapper: TypeAlias = "Callable[[Row, int], Any]"
"""``mapper(row, row_number)``; ``row_number`` is 1-based."""

BatchProcessor: TypeAlias = "Callable[[list[Any], Session, int], None]"
"""``processor(batch, session, batch_index)``; may issue nested statements through ``session``."""
