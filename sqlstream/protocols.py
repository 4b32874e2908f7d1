"""Runtime-checkable protocols describing the DB-API objects SQLStream drives.

Any PEP 249 driver satisfies these structurally; nothing here imports a driver.
"""

from typing import Any, Optional, Protocol, runtime_checkable

__all__ = (
    "ConnectionProtocol",
    "CursorProtocol",
    "MultiResultCursorProtocol",
)


@runtime_checkable
class CursorProtocol(Protocol):
    """The subset of a DB-API cursor used by the sequential cursor and the pipeline."""

    description: Any
    rowcount: int
    arraysize: int

    def execute(self, operation: Any, parameters: Any = ...) -> Any:
        """Execute one statement."""
        ...

    def fetchmany(self, size: int = ...) -> Any:
        """Fetch the next rows of a result set."""
        ...

    def close(self) -> Any:
        """Close the cursor."""
        ...


@runtime_checkable
class MultiResultCursorProtocol(CursorProtocol, Protocol):
    """Cursor whose driver implements the optional ``nextset`` extension."""

    def nextset(self) -> Optional[bool]:
        """Skip to the next available result set."""
        ...


@runtime_checkable
class ConnectionProtocol(Protocol):
    """The subset of a DB-API connection used by the pool."""

    def cursor(self) -> Any:
        """Open a new cursor."""
        ...

    def commit(self) -> Any:
        """Commit the current transaction."""
        ...

    def rollback(self) -> Any:
        """Roll back the current transaction."""
        ...

    def close(self) -> Any:
        """Close the connection."""
        ...
