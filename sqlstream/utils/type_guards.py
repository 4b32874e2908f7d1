"""Type guard functions for runtime type checking in SQLStream."""

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from sqlstream.protocols import MultiResultCursorProtocol

if TYPE_CHECKING:
    from typing_extensions import TypeGuard

__all__ = ("is_expandable_parameter", "is_named_parameters", "supports_nextset")


def is_expandable_parameter(value: Any) -> "TypeGuard[Iterable[Any]]":
    """Check if a bound value fans out into one placeholder per element.

    Strings, bytes and mappings are bound as single values.

    Args:
        value: The value bound to a named parameter

    Returns:
        True if the value is a non-string, non-mapping iterable
    """
    return isinstance(value, Iterable) and not isinstance(value, (str, bytes, bytearray, memoryview, Mapping))


def is_named_parameters(params: Any) -> "TypeGuard[Mapping[str, Any]]":
    """Check if statement parameters are supplied by name.

    Args:
        params: The parameters to check

    Returns:
        True if the parameters are a mapping
    """
    return isinstance(params, Mapping)


def supports_nextset(cursor: Any) -> "TypeGuard[MultiResultCursorProtocol]":
    """Check if a cursor implements the optional DB-API ``nextset`` extension.

    Args:
        cursor: The cursor to check

    Returns:
        True if ``cursor.nextset`` is callable
    """
    return callable(getattr(cursor, "nextset", None))
