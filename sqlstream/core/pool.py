"""Bounded pool of blocking DB-API connections."""

import logging
import os
import threading
import time
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from queue import Empty as QueueEmpty
from queue import Full, Queue
from typing import TYPE_CHECKING, Any, Generic, Optional

from sqlstream.exceptions import (
    DatabaseConnectionError,
    ImproperConfigurationError,
    PoolClosedError,
    PoolError,
    PoolExhaustedError,
)
from sqlstream.typing import ConnectionT
from sqlstream.utils.logging import POOL_LOGGER_NAME, get_logger, log_with_context

if TYPE_CHECKING:
    from types import TracebackType

    from sqlstream.typing import ConnectionFactory

__all__ = ("DEFAULT_SHUTDOWN_GRACE_PERIOD", "ConnectionPool", "default_max_connections", "set_autocommit")

logger = get_logger(POOL_LOGGER_NAME)

DEFAULT_SHUTDOWN_GRACE_PERIOD = 5.0
_WAIT_INTERVAL = 0.05


def default_max_connections() -> int:
    """Number of processors available to the interpreter, at least 1."""
    return os.cpu_count() or 1


def set_autocommit(connection: Any, enabled: bool) -> None:
    """Toggle auto-commit on a DB-API connection.

    Supports the ``autocommit`` attribute (sqlite3, psycopg, pyodbc, oracledb)
    and the ``autocommit(flag)`` method (PyMySQL). Connections exposing
    neither are left untouched.
    """
    current = getattr(connection, "autocommit", None)
    if current is None:
        return
    if callable(current):
        current(enabled)
        return
    if current is not enabled:
        connection.autocommit = enabled


class ConnectionPool(Generic[ConnectionT]):
    """Thread-safe pool that lazily creates up to ``max_connections`` connections.

    Every live connection is either in the free queue or checked out. Once
    :meth:`shutdown` has been called no connection is created and
    :meth:`acquire` fails immediately.
    """

    __slots__ = (
        "_checked_out",
        "_condition",
        "_connections",
        "_factory",
        "_free",
        "_max_connections",
        "_pending",
        "_pool_id",
        "_shutdown_grace_period",
        "_shutting_down",
    )

    def __init__(
        self,
        connection_factory: "ConnectionFactory[ConnectionT]",
        max_connections: Optional[int] = None,
        shutdown_grace_period: float = DEFAULT_SHUTDOWN_GRACE_PERIOD,
    ) -> None:
        if not callable(connection_factory):
            msg = "connection_factory must be a zero-argument callable"
            raise ImproperConfigurationError(msg)
        if max_connections is None:
            max_connections = default_max_connections()
        if max_connections < 1:
            msg = f"max_connections must be at least 1, got {max_connections}"
            raise ImproperConfigurationError(msg)
        if shutdown_grace_period < 0:
            msg = f"shutdown_grace_period must not be negative, got {shutdown_grace_period}"
            raise ImproperConfigurationError(msg)

        self._factory = connection_factory
        self._max_connections = max_connections
        self._shutdown_grace_period = shutdown_grace_period
        self._free: "Queue[ConnectionT]" = Queue(maxsize=max_connections)
        self._condition = threading.Condition(threading.RLock())
        self._connections: "dict[int, ConnectionT]" = {}
        self._checked_out: "set[int]" = set()
        self._pending = 0
        self._shutting_down = threading.Event()
        self._pool_id = uuid.uuid4().hex

    @property
    def max_connections(self) -> int:
        return self._max_connections

    @property
    def is_closed(self) -> bool:
        """True once :meth:`shutdown` has been requested."""
        return self._shutting_down.is_set()

    def size(self) -> int:
        """Number of physical connections currently tracked."""
        with self._condition:
            return len(self._connections)

    def checked_out(self) -> int:
        """Number of connections currently handed out."""
        with self._condition:
            return len(self._checked_out)

    def _reserve_slot(self) -> bool:
        with self._condition:
            if self._shutting_down.is_set():
                raise PoolClosedError
            if len(self._connections) + self._pending >= self._max_connections:
                return False
            self._pending += 1
            return True

    def _create_connection(self) -> "Optional[ConnectionT]":
        """Create a connection in a reserved slot.

        Returns:
            The new connection, or None when the factory handed back a connection that is already tracked.
        """
        try:
            connection = self._factory()
        except Exception as exc:
            with self._condition:
                self._pending -= 1
            log_with_context(
                logger,
                logging.WARNING,
                "pool.connection.create.error",
                pool_id=self._pool_id,
                error=str(exc),
            )
            msg = f"Could not create database connection: {exc}"
            raise DatabaseConnectionError(msg) from exc

        with self._condition:
            self._pending -= 1
            if connection is None:
                msg = "connection_factory returned None"
                raise ImproperConfigurationError(msg)
            closed_meanwhile = self._shutting_down.is_set()
            if not closed_meanwhile:
                if id(connection) in self._connections:
                    log_with_context(logger, logging.DEBUG, "pool.connection.shared", pool_id=self._pool_id)
                    return None
                self._connections[id(connection)] = connection
                self._checked_out.add(id(connection))
                size = len(self._connections)

        if closed_meanwhile:
            # shutdown already ran and never saw this connection
            self._discard(connection)
            raise PoolClosedError

        log_with_context(
            logger,
            logging.DEBUG,
            "pool.connection.create",
            pool_id=self._pool_id,
            pool_size=size,
            max_size=self._max_connections,
        )
        return connection

    def _discard(self, connection: ConnectionT) -> None:
        try:
            connection.close()  # type: ignore[attr-defined]
        except Exception as exc:  # noqa: BLE001
            log_with_context(
                logger, logging.DEBUG, "pool.connection.close.error", pool_id=self._pool_id, error=str(exc)
            )
        log_with_context(logger, logging.DEBUG, "pool.connection.discard", pool_id=self._pool_id)

    def _wait_for_free(self, timeout: Optional[float]) -> ConnectionT:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._shutting_down.is_set():
                raise PoolClosedError
            interval = _WAIT_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    msg = f"Connection pool limit of {self._max_connections} reached, timeout {timeout}"
                    raise PoolExhaustedError(msg)
                interval = min(interval, remaining)
            try:
                connection = self._free.get(timeout=interval)
            except QueueEmpty:
                continue
            with self._condition:
                if self._shutting_down.is_set() or id(connection) not in self._connections:
                    # shutdown closes queued connections itself
                    raise PoolClosedError
                self._checked_out.add(id(connection))
            return connection

    def acquire(self, timeout: Optional[float] = None) -> ConnectionT:
        """Take a connection from the pool, creating one while below capacity.

        Auto-commit is disabled on the returned connection.

        Args:
            timeout: Seconds to wait for a free connection. ``None`` waits until one is released or the pool shuts down.

        Raises:
            PoolClosedError: If the pool is shutting down, or shuts down while waiting or creating a connection
            PoolExhaustedError: If no connection was released within ``timeout``
            DatabaseConnectionError: If the connection factory fails

        Returns:
            A checked-out connection that must be handed back with :meth:`release`
        """
        if self._shutting_down.is_set():
            raise PoolClosedError

        connection: "Optional[ConnectionT]" = None
        try:
            connection = self._free.get_nowait()
        except QueueEmpty:
            if self._reserve_slot():
                connection = self._create_connection()
        else:
            with self._condition:
                if self._shutting_down.is_set() or id(connection) not in self._connections:
                    raise PoolClosedError
                self._checked_out.add(id(connection))

        if connection is None:
            connection = self._wait_for_free(timeout)

        try:
            set_autocommit(connection, False)
        except Exception as exc:
            self.release(connection)
            msg = f"Could not disable auto-commit: {exc}"
            raise DatabaseConnectionError(msg) from exc
        return connection

    def release(self, connection: "Optional[ConnectionT]") -> None:
        """Hand a connection back to the pool.

        Auto-commit is restored before the connection becomes available again.

        Args:
            connection: Connection obtained from :meth:`acquire`. ``None`` is ignored.

        Raises:
            PoolError: If the connection is not checked out from this pool or the free queue is full
        """
        if connection is None:
            return
        conn_id = id(connection)
        with self._condition:
            if self._shutting_down.is_set():
                # connections are closed by shutdown itself
                self._checked_out.discard(conn_id)
                self._condition.notify_all()
                return
            if conn_id not in self._checked_out:
                msg = "Connection is not checked out from this pool"
                raise PoolError(msg)
            self._checked_out.discard(conn_id)

        try:
            set_autocommit(connection, True)
        except Exception as exc:  # noqa: BLE001
            log_with_context(
                logger, logging.DEBUG, "pool.connection.autocommit.error", pool_id=self._pool_id, error=str(exc)
            )
        try:
            self._free.put_nowait(connection)
        except Full:
            msg = "Connection pool is full"
            raise PoolError(msg) from None

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> "Generator[ConnectionT, None, None]":
        """Acquire a connection for the duration of a ``with`` block."""
        connection = self.acquire(timeout)
        try:
            yield connection
        finally:
            self.release(connection)

    def shutdown(self) -> None:
        """Close every connection tracked by the pool.

        Waits up to the grace period for checked-out connections to be
        released first. Repeated calls are no-ops.

        Raises:
            PoolError: If one or more connections failed to close. ``errors`` lists every failure.
        """
        with self._condition:
            if self._shutting_down.is_set():
                return
            self._shutting_down.set()
            busy = len(self._checked_out)

        log_with_context(logger, logging.INFO, "pool.shutdown", pool_id=self._pool_id, checked_out=busy)
        if busy:
            with self._condition:
                self._condition.wait_for(lambda: not self._checked_out, timeout=self._shutdown_grace_period)
                if self._checked_out:
                    log_with_context(
                        logger,
                        logging.WARNING,
                        "pool.shutdown.timeout",
                        pool_id=self._pool_id,
                        checked_out=len(self._checked_out),
                        grace_period_seconds=self._shutdown_grace_period,
                    )

        with self._condition:
            connections = list(self._connections.values())
            self._connections.clear()
            self._checked_out.clear()
        while True:
            try:
                self._free.get_nowait()
            except QueueEmpty:
                break

        errors: "list[BaseException]" = []
        for connection in connections:
            try:
                connection.close()  # type: ignore[attr-defined]
            except Exception as exc:  # noqa: BLE001
                log_with_context(
                    logger, logging.DEBUG, "pool.connection.close.error", pool_id=self._pool_id, error=str(exc)
                )
                errors.append(exc)

        log_with_context(
            logger, logging.INFO, "pool.shutdown.complete", pool_id=self._pool_id, closed=len(connections)
        )
        if errors:
            msg = f"Failed to close {len(errors)} of {len(connections)} connections"
            raise PoolError(msg, errors=errors) from errors[0]

    def __enter__(self) -> "ConnectionPool[ConnectionT]":
        return self

    def __exit__(
        self,
        exc_type: "Optional[type[BaseException]]",
        exc_val: "Optional[BaseException]",
        exc_tb: "Optional[TracebackType]",
    ) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        return (
            f"ConnectionPool(max_connections={self._max_connections}, size={self.size()}, "
            f"checked_out={self.checked_out()}, closed={self.is_closed})"
        )
