import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Generic, Optional, Union

from typing_extensions import NotRequired, TypedDict

from sqlstream.core.pool import DEFAULT_SHUTDOWN_GRACE_PERIOD, ConnectionPool
from sqlstream.core.statement import StatementConfig
from sqlstream.driver.session import Session
from sqlstream.exceptions import ImproperConfigurationError, wrap_database_errors
from sqlstream.typing import ConnectionT
from sqlstream.utils.logging import get_logger, log_with_context

if TYPE_CHECKING:
    from sqlstream.typing import ConnectionFactory

__all__ = ("DatabaseConfig", "PoolParams")

logger = get_logger("config")


class PoolParams(TypedDict, total=False):
    """Connection pool settings."""

    max_connections: NotRequired[int]
    """Upper bound on physical connections. Defaults to the number of processors."""
    shutdown_grace_period: NotRequired[float]
    """Seconds ``close_pool`` waits for checked-out connections. Defaults to 5."""


class DatabaseConfig(Generic[ConnectionT]):
    """Entry point owning a connection factory, its pool and statement settings.

    The pool is created on first use. Sessions from :meth:`provide_session`
    acquire a pooled connection per statement and release it when the
    statement's sequence is exhausted or closed.

    Example:
        config = DatabaseConfig(connection_factory=lambda: sqlite3.connect("app.db", check_same_thread=False))
        with config.provide_session() as session:
            rows = session.select("SELECT * FROM users WHERE id IN (:ids)", {"ids": [1, 2]}).all()
    """

    __slots__ = ("_pool_lock", "connection_factory", "pool_config", "pool_instance", "statement_config")

    def __init__(
        self,
        *,
        connection_factory: "ConnectionFactory[ConnectionT]",
        pool_config: "Optional[Union[PoolParams, dict[str, Any]]]" = None,
        pool_instance: "Optional[ConnectionPool[ConnectionT]]" = None,
        statement_config: Optional[StatementConfig] = None,
    ) -> None:
        if not callable(connection_factory):
            msg = "connection_factory must be a zero-argument callable"
            raise ImproperConfigurationError(msg)
        pool_config = dict(pool_config) if pool_config else {}
        unknown = pool_config.keys() - PoolParams.__annotations__.keys()
        if unknown:
            msg = f"Unknown pool settings: {', '.join(sorted(unknown))}"
            raise ImproperConfigurationError(msg)
        self.connection_factory = connection_factory
        self.pool_config: PoolParams = pool_config  # type: ignore[assignment]
        self.pool_instance = pool_instance
        self.statement_config = statement_config or StatementConfig()
        self._pool_lock = threading.RLock()

    def _create_pool(self) -> "ConnectionPool[ConnectionT]":
        return ConnectionPool(
            self.connection_factory,
            max_connections=self.pool_config.get("max_connections"),
            shutdown_grace_period=self.pool_config.get("shutdown_grace_period", DEFAULT_SHUTDOWN_GRACE_PERIOD),
        )

    def create_pool(self) -> "ConnectionPool[ConnectionT]":
        """Create the connection pool, or return the existing one."""
        with self._pool_lock:
            if self.pool_instance is not None:
                return self.pool_instance
            self.pool_instance = self._create_pool()
        log_with_context(
            logger, logging.DEBUG, "config.pool.create", max_connections=self.pool_instance.max_connections
        )
        return self.pool_instance

    def provide_pool(self, *args: Any, **kwargs: Any) -> "ConnectionPool[ConnectionT]":
        """Provide pool instance."""
        pool = self.pool_instance
        if pool is None:
            pool = self.create_pool()
        return pool

    def close_pool(self) -> None:
        """Shut down the pool. A later ``create_pool`` builds a fresh one."""
        with self._pool_lock:
            pool, self.pool_instance = self.pool_instance, None
        if pool is not None:
            pool.shutdown()

    def create_connection(self) -> ConnectionT:
        """Create a connection outside the pool. The caller owns and closes it."""
        with wrap_database_errors("Could not create database connection:"):
            return self.connection_factory()  # type: ignore[no-any-return]

    @contextmanager
    def provide_connection(self, *args: Any, **kwargs: Any) -> "Generator[ConnectionT, None, None]":
        """Provide a pooled connection for the duration of a ``with`` block."""
        with self.provide_pool().connection() as connection:
            yield connection

    @contextmanager
    def provide_session(
        self, *args: Any, statement_config: Optional[StatementConfig] = None, **kwargs: Any
    ) -> "Generator[Session, None, None]":
        """Provide a session drawing one pooled connection per statement."""
        pool = self.provide_pool()
        yield Session(pool.acquire, pool.release, statement_config or self.statement_config)
