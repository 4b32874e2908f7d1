from collections.abc import Generator
from contextlib import contextmanager
from typing import Any, Optional

__all__ = (
    "DatabaseConnectionError",
    "DatabaseError",
    "DuplicateParameterError",
    "ImproperConfigurationError",
    "MissingParameterError",
    "MultipleResultsFoundError",
    "NotFoundError",
    "ParameterError",
    "ParameterStyleMismatchError",
    "PoolClosedError",
    "PoolError",
    "PoolExhaustedError",
    "PreprocessingError",
    "SQLStreamError",
    "UnsupportedOperationError",
    "wrap_database_errors",
)


class SQLStreamError(Exception):
    """Base exception class from which all SQLStream exceptions inherit."""

    detail: str

    def __init__(self, *args: Any, detail: str = "") -> None:
        """Initialize ``SQLStreamError``.

        Args:
            *args: args are converted to :class:`str` before passing to :class:`Exception`
            detail: detail of the exception.
        """
        str_args = [str(arg) for arg in args if arg]
        if not detail:
            if str_args:
                detail, *str_args = str_args
            elif hasattr(self, "detail"):
                detail = self.detail
        self.detail = detail
        super().__init__(*str_args)

    def __repr__(self) -> str:
        if self.detail:
            return f"{self.__class__.__name__} - {self.detail}"
        return self.__class__.__name__

    def __str__(self) -> str:
        return " ".join((*self.args, self.detail)).strip()


class ImproperConfigurationError(SQLStreamError):
    """Improper Configuration error.

    Raised when a pool, statement or pipeline is constructed with invalid arguments.
    """


class UnsupportedOperationError(SQLStreamError, TypeError):
    """Raised when an operation is not supported by a lazily evaluated result sequence."""


class NotFoundError(SQLStreamError):
    """A single result was required but the sequence was empty."""


class MultipleResultsFoundError(SQLStreamError):
    """A single result was required but more than one were found."""


# -- Database Errors --
class DatabaseError(SQLStreamError):
    """Wraps any failure raised by the connection, cursor or statement layers.

    The original exception is always available as ``__cause__``.
    """


class DatabaseConnectionError(DatabaseError):
    """A physical connection could not be created."""


# -- Pool Errors --
class PoolError(DatabaseError):
    """Base class for connection pool errors, including waits broken by shutdown."""

    errors: "list[BaseException]"

    def __init__(self, *args: Any, detail: str = "", errors: "Optional[list[BaseException]]" = None) -> None:
        super().__init__(*args, detail=detail)
        self.errors = list(errors) if errors else []


class PoolClosedError(PoolError):
    """Pool has been shut down and cannot accept new operations."""

    def __init__(self, message: Optional[str] = None) -> None:
        if message is None:
            message = "Connection pool is shutting down"
        super().__init__(message)


class PoolExhaustedError(PoolError):
    """No connection became available within the requested timeout."""


# -- SQL Preprocessing Errors --
class PreprocessingError(SQLStreamError):
    """SQL text is malformed and cannot be prepared for execution."""

    sql: Optional[str]

    def __init__(self, message: str, sql: Optional[str] = None) -> None:
        """Initialize with optional SQL context."""
        detail_message = message
        if sql:
            detail_message = f"{message}\nSQL: {sql}"
        super().__init__(detail=detail_message)
        self.sql = sql


class ParameterError(PreprocessingError):
    """Base class for parameter-related errors."""


class MissingParameterError(ParameterError):
    """Raised when a named placeholder has no supplied value."""


class DuplicateParameterError(ParameterError):
    """Raised when the same parameter name is supplied more than once."""


class ParameterStyleMismatchError(ParameterError):
    """Error when named and positional placeholders are combined in one statement."""

    def __init__(self, message: Optional[str] = None, sql: Optional[str] = None) -> None:
        if message is None:
            message = "Cannot combine named parameters with positional '?' placeholders."
        super().__init__(message, sql)


@contextmanager
def wrap_database_errors(message: str = "An error occurred during the database operation.") -> Generator[None, None, None]:
    """Convert foreign exceptions raised inside the block into :class:`DatabaseError`.

    Exceptions that already belong to this package pass through untouched.
    """
    try:
        yield
    except SQLStreamError:
        raise
    except Exception as exc:
        raise DatabaseError(f"{message} {exc}".strip()) from exc
