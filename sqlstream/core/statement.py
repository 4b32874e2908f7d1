"""Prepared statements and per-statement configuration."""

from collections.abc import Iterable
from typing import Any, Final, Optional

from sqlstream.core.preprocessing import (
    ensure_single_statement,
    expand_named_parameters,
    find_named_parameters,
    render_sql,
    strip_comments,
)
from sqlstream.exceptions import ImproperConfigurationError, MissingParameterError, ParameterStyleMismatchError
from sqlstream.typing import StatementParameters
from sqlstream.utils.type_guards import is_named_parameters

__all__ = (
    "DEFAULT_FETCH_SIZE",
    "DEFAULT_LARGE_OBJECT_TYPES",
    "Statement",
    "StatementConfig",
)

DEFAULT_FETCH_SIZE: Final = 15
DEFAULT_LARGE_OBJECT_TYPES: Final = frozenset({"BLOB", "CLOB", "NCLOB", "LONGVARBINARY", "LONGVARCHAR", "LONGNVARCHAR"})
_SUPPORTED_PLACEHOLDERS: Final = frozenset({"?", "%s"})


class StatementConfig:
    """Execution settings shared by every statement a session issues.

    Args:
        fetch_size: Rows requested per ``fetchmany`` call; also the default batch size
        max_rows: Upper bound on rows yielded by one statement, ``None`` for no limit
        placeholder: Positional placeholder understood by the driver (``?`` or ``%s``)
        large_object_types: Upper-cased type names that force single-row batches
    """

    __slots__ = ("fetch_size", "large_object_types", "max_rows", "placeholder")

    def __init__(
        self,
        fetch_size: int = DEFAULT_FETCH_SIZE,
        max_rows: Optional[int] = None,
        placeholder: str = "?",
        large_object_types: "Iterable[str]" = DEFAULT_LARGE_OBJECT_TYPES,
    ) -> None:
        if fetch_size < 1:
            msg = f"fetch_size must be at least 1, got {fetch_size}"
            raise ImproperConfigurationError(msg)
        if max_rows is not None and max_rows < 1:
            msg = f"max_rows must be at least 1, got {max_rows}"
            raise ImproperConfigurationError(msg)
        if placeholder not in _SUPPORTED_PLACEHOLDERS:
            msg = f"Unsupported placeholder {placeholder!r}; expected one of {sorted(_SUPPORTED_PLACEHOLDERS)}"
            raise ImproperConfigurationError(msg)
        self.fetch_size = fetch_size
        self.max_rows = max_rows
        self.placeholder = placeholder
        self.large_object_types = frozenset(name.upper() for name in large_object_types)

    def replace(self, **kwargs: Any) -> "StatementConfig":
        """Return a copy with the given settings changed."""
        current = {name: getattr(self, name) for name in self.__slots__}
        unknown = kwargs.keys() - current.keys()
        if unknown:
            msg = f"Unknown statement settings: {', '.join(sorted(unknown))}"
            raise ImproperConfigurationError(msg)
        current.update(kwargs)
        return StatementConfig(**current)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StatementConfig):
            return NotImplemented
        return all(getattr(self, name) == getattr(other, name) for name in self.__slots__)

    def __hash__(self) -> int:
        return hash(tuple(getattr(self, name) for name in self.__slots__))

    def __repr__(self) -> str:
        return (
            f"StatementConfig(fetch_size={self.fetch_size}, max_rows={self.max_rows}, "
            f"placeholder={self.placeholder!r})"
        )


class Statement:
    """SQL text ready to execute: comments removed, one statement, positional values.

    Named parameters are supplied as a mapping and expanded into positional
    placeholders. Positional parameters are passed through unchanged.

    Raises:
        PreprocessingError: If the text is malformed or its parameters do not match
    """

    __slots__ = ("parameters", "raw_sql", "sql", "statement_config")

    def __init__(
        self,
        sql: str,
        parameters: "StatementParameters" = None,
        statement_config: "Optional[StatementConfig]" = None,
    ) -> None:
        self.raw_sql = sql
        self.statement_config = statement_config or StatementConfig()
        text = ensure_single_statement(strip_comments(sql))

        if is_named_parameters(parameters):
            self.sql, self.parameters = expand_named_parameters(text, parameters, self.statement_config.placeholder)
            return

        values = tuple(parameters) if parameters is not None else ()
        names = find_named_parameters(text)
        if names and values:
            raise ParameterStyleMismatchError(sql=text)
        if names:
            msg = f"No value supplied for parameter ':{names[0]}'"
            raise MissingParameterError(msg, text)
        self.sql = text
        self.parameters = values

    def execute(self, cursor: Any) -> None:
        """Run the statement on a DB-API cursor."""
        if self.parameters:
            cursor.execute(self.sql, self.parameters)
        else:
            cursor.execute(self.sql)

    def as_sql(self) -> str:
        """Statement text with its values inlined, for log output only."""
        if self.statement_config.placeholder != "?":
            return f"{self.sql} {list(self.parameters)!r}"
        return render_sql(self.sql, self.parameters)

    def __repr__(self) -> str:
        return f"Statement({self.sql!r}, parameters={self.parameters!r})"
