"""Concurrent batch processing over a single forward-only cursor.

One producer task is the only code that advances the cursor. It slices the
mapped rows into batches and hands each batch to a worker, which runs the
caller's processor with a session bound to the same connection. Processed
batches travel back over a result channel to the consumer, which yields
their rows.

Dispatched-but-undelivered batches are bounded by a semaphore of
``max_batches_in_flight`` permits. The result channel never holds more than
that many batches plus two control messages, so workers never block on it.
"""

import contextvars
import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ThreadPoolExecutor, wait
from enum import Enum
from queue import Empty as QueueEmpty
from queue import Queue
from typing import TYPE_CHECKING, Any, Callable, Final, Generic, NoReturn, Optional

from mypy_extensions import mypyc_attr

from sqlstream.core.cursor import SequentialCursor, has_large_objects
from sqlstream.exceptions import DatabaseError, ImproperConfigurationError, SQLStreamError
from sqlstream.typing import RowT
from sqlstream.utils.logging import PIPELINE_LOGGER_NAME, get_logger, log_with_context

if TYPE_CHECKING:
    from sqlstream.core.statement import Statement
    from sqlstream.driver.session import Session
    from sqlstream.typing import BatchProcessor, ConnectionProvider, ConnectionReleaser, RowMapper

__all__ = ("DEFAULT_MAX_BATCHES_IN_FLIGHT", "BatchPipeline", "FirstErrorCell", "PipelineState", "RowBatch")

logger = get_logger(PIPELINE_LOGGER_NAME)

DEFAULT_MAX_BATCHES_IN_FLIGHT: Final = 4
_POLL_INTERVAL: Final = 0.05


class PipelineState(Enum):
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    FAILED = "failed"
    CLOSED = "closed"


@mypyc_attr(allow_interpreted_subclasses=False)
class RowBatch:
    """Consecutive mapped rows sealed by the producer with a 1-based index."""

    __slots__ = ("index", "rows")

    def __init__(self, index: int, rows: "list[Any]") -> None:
        self.index = index
        self.rows = rows

    def __len__(self) -> int:
        return len(self.rows)

    def __repr__(self) -> str:
        return f"RowBatch(index={self.index}, rows={len(self.rows)})"


class FirstErrorCell:
    """Write-once holder for the first failure of a pipeline."""

    __slots__ = ("_error", "_lock")

    def __init__(self) -> None:
        self._error: Optional[BaseException] = None
        self._lock = threading.Lock()

    def set(self, error: BaseException) -> bool:
        """Store ``error`` unless one is stored already.

        Returns:
            True if this call stored the error
        """
        with self._lock:
            if self._error is not None:
                return False
            self._error = error
            return True

    @property
    def error(self) -> Optional[BaseException]:
        return self._error


class _Message(Enum):
    BATCH = "batch"
    PRODUCER_DONE = "producer_done"
    FAILED = "failed"


class BatchPipeline(Generic[RowT]):
    """Iterator that yields rows after they went through a batch processor.

    The statement executes on the first pull. Rows are yielded in batch
    completion order, or in batch index order with ``preserve_order=True``.
    The first error raised by the producer or any processor cancels further
    dispatch; batches that already completed are still yielded, then the
    error is raised once.

    The executor runs the producer and the workers, so a caller-supplied
    executor needs at least two threads.

    Args:
        statement: Prepared statement to execute
        connection_provider: Callable returning the connection shared by the cursor and every worker session
        connection_releaser: Callable receiving the connection once the pipeline closes
        processor: ``processor(rows, session, batch_index)``, may modify ``rows`` in place
        session_factory: Callable building a session bound to one connection
        mapper: ``mapper(row, row_number)`` applied by the producer
        batch_size: Rows per batch, defaults to the statement fetch size
        executor: Executor for the producer and workers; a private thread pool is created when omitted
        preserve_order: Yield batches in index order instead of completion order
        max_batches_in_flight: Upper bound on dispatched batches not yet handed to the consumer
    """

    def __init__(
        self,
        statement: "Statement",
        connection_provider: "ConnectionProvider",
        connection_releaser: "Optional[ConnectionReleaser]",
        *,
        processor: "BatchProcessor",
        session_factory: "Callable[[Any], Session]",
        mapper: "Optional[RowMapper]" = None,
        batch_size: Optional[int] = None,
        executor: Optional[Executor] = None,
        preserve_order: bool = False,
        max_batches_in_flight: Optional[int] = None,
    ) -> None:
        if not callable(processor):
            msg = "processor must be callable"
            raise ImproperConfigurationError(msg)
        if batch_size is None:
            batch_size = statement.statement_config.fetch_size
        if batch_size < 1:
            msg = f"batch_size must be at least 1, got {batch_size}"
            raise ImproperConfigurationError(msg)
        if max_batches_in_flight is None:
            max_batches_in_flight = DEFAULT_MAX_BATCHES_IN_FLIGHT
        if max_batches_in_flight < 1:
            msg = f"max_batches_in_flight must be at least 1, got {max_batches_in_flight}"
            raise ImproperConfigurationError(msg)

        self.statement = statement
        self._provider = connection_provider
        self._releaser = connection_releaser
        self._processor = processor
        self._session_factory = session_factory
        self._mapper = mapper
        self._batch_size = batch_size
        self._executor = executor
        self._owns_executor = executor is None
        self._preserve_order = preserve_order
        self._max_in_flight = max_batches_in_flight

        self._state = PipelineState.UNINITIALIZED
        self._connection: Any = None
        self._cursor: Optional[SequentialCursor[RowT]] = None
        self._session: Optional[Session] = None
        self._cancelled = threading.Event()
        self._first_error = FirstErrorCell()
        self._error_reported = False
        self._permits = threading.BoundedSemaphore(max_batches_in_flight)
        self._results: "Queue[tuple[_Message, Any]]" = Queue(maxsize=max_batches_in_flight + 2)
        self._lock = threading.Lock()
        self._producer: "Optional[Future[None]]" = None
        self._futures: "list[Future[None]]" = []
        self._dispatched = 0

        self._rows: deque[RowT] = deque()
        self._reorder: "dict[int, RowBatch]" = {}
        self._next_index = 1
        self._delivered = 0
        self._total: Optional[int] = None
        self._failure_seen = False

    @property
    def state(self) -> PipelineState:
        if self._state is PipelineState.RUNNING and self._first_error.error is not None:
            return PipelineState.FAILED
        return self._state

    @property
    def batch_size(self) -> int:
        """Effective batch size; 1 once large-object columns were detected."""
        return self._batch_size

    @property
    def dispatched_batches(self) -> int:
        return self._dispatched

    # Consumer

    def __iter__(self) -> "BatchPipeline[RowT]":
        return self

    def __next__(self) -> RowT:
        if self._state is PipelineState.CLOSED:
            raise StopIteration
        if self._state is PipelineState.UNINITIALIZED and not self._start():
            raise StopIteration
        while not self._rows:
            batch = self._next_batch()
            if batch is None:
                self.close()
                raise StopIteration
            self._rows.extend(batch.rows)
        return self._rows.popleft()

    def _start(self) -> bool:
        self._state = PipelineState.RUNNING
        try:
            self._connection = self._provider()
        except Exception as exc:
            self._state = PipelineState.CLOSED
            if isinstance(exc, SQLStreamError):
                raise
            msg = f"Could not obtain a connection: {exc}"
            raise DatabaseError(msg) from exc

        connection = self._connection
        self._cursor = SequentialCursor(self.statement, lambda: connection, None, self._mapper)
        try:
            if not self._cursor.open():
                self.close()
                return False

            if has_large_objects(self._cursor.description, self.statement.statement_config.large_object_types):
                log_with_context(
                    logger, logging.DEBUG, "pipeline.large_objects", requested_batch_size=self._batch_size
                )
                self._batch_size = 1

            self._session = self._session_factory(connection)
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_in_flight + 1, thread_name_prefix="sqlstream-batch"
                )
            log_with_context(
                logger,
                logging.DEBUG,
                "pipeline.start",
                batch_size=self._batch_size,
                max_batches_in_flight=self._max_in_flight,
                preserve_order=self._preserve_order,
            )
            self._producer = self._executor.submit(contextvars.copy_context().run, self._produce)
        except BaseException as exc:
            # cursor and connection are released before the error propagates
            self.close()
            if isinstance(exc, Exception) and not isinstance(exc, SQLStreamError):
                msg = f"Could not start batch pipeline: {exc}"
                raise DatabaseError(msg) from exc
            raise
        return True

    def _next_batch(self) -> Optional[RowBatch]:
        while True:
            batch = self._ready_batch()
            if batch is not None:
                self._delivered += 1
                self._permits.release()
                return batch
            if self._failure_seen:
                self._raise_failure()
            if self._total is not None and self._delivered >= self._total:
                return None

            kind, payload = self._results.get()
            if kind is _Message.BATCH:
                self._reorder[payload.index] = payload
            elif kind is _Message.PRODUCER_DONE:
                self._total = payload
            else:
                self._failure_seen = True
                self._collect_posted()

    def _ready_batch(self) -> Optional[RowBatch]:
        if not self._reorder:
            return None
        if self._preserve_order and not self._failure_seen:
            batch = self._reorder.pop(self._next_index, None)
            if batch is not None:
                self._next_index += 1
            return batch
        return self._reorder.pop(min(self._reorder))

    def _collect_posted(self) -> None:
        while True:
            try:
                kind, payload = self._results.get_nowait()
            except QueueEmpty:
                return
            if kind is _Message.BATCH:
                self._reorder[payload.index] = payload

    def _raise_failure(self) -> NoReturn:
        error = self._first_error.error
        self._error_reported = True
        try:
            self.close()
        finally:
            raise _as_database_error(error)  # noqa: B012

    # Producer

    def _produce(self) -> None:
        batch: list[Any] = []
        try:
            for row in self._cursor:  # type: ignore[union-attr]
                if self._cancelled.is_set():
                    return
                batch.append(row)
                if len(batch) >= self._batch_size:
                    if not self._dispatch(batch):
                        return
                    batch = []
            if batch and not self._dispatch(batch):
                return
        except BaseException as exc:  # noqa: BLE001
            self._fail(exc)
            return
        log_with_context(logger, logging.DEBUG, "pipeline.producer.done", total_batches=self._dispatched)
        self._results.put((_Message.PRODUCER_DONE, self._dispatched))

    def _dispatch(self, rows: "list[Any]") -> bool:
        while not self._cancelled.is_set():
            if self._permits.acquire(timeout=_POLL_INTERVAL):
                break
        else:
            return False
        if self._cancelled.is_set():
            self._permits.release()
            return False

        batch = RowBatch(self._dispatched + 1, rows)
        try:
            future = self._executor.submit(  # type: ignore[union-attr]
                contextvars.copy_context().run, self._process, batch
            )
        except BaseException:
            self._permits.release()
            raise
        with self._lock:
            self._futures.append(future)
        self._dispatched = batch.index
        log_with_context(logger, logging.DEBUG, "pipeline.batch.dispatch", batch_index=batch.index, rows=len(rows))
        return True

    # Workers

    def _process(self, batch: RowBatch) -> None:
        if self._cancelled.is_set():
            self._permits.release()
            log_with_context(logger, logging.DEBUG, "pipeline.batch.skip", batch_index=batch.index)
            return
        try:
            self._processor(batch.rows, self._session, batch.index)  # type: ignore[arg-type]
        except BaseException as exc:  # noqa: BLE001
            self._fail(exc, batch.index)
            self._permits.release()
            return
        log_with_context(logger, logging.DEBUG, "pipeline.batch.complete", batch_index=batch.index)
        self._results.put((_Message.BATCH, batch))

    def _fail(self, exc: BaseException, batch_index: Optional[int] = None) -> None:
        if not self._first_error.set(exc):
            log_with_context(
                logger, logging.DEBUG, "pipeline.failure.suppressed", batch_index=batch_index, error=str(exc)
            )
            return
        self._cancelled.set()
        log_with_context(
            logger,
            logging.WARNING,
            "pipeline.failure",
            batch_index=batch_index,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        self._results.put((_Message.FAILED, None))

    # Shutdown

    def _drain(self) -> None:
        while True:
            try:
                kind, _ = self._results.get_nowait()
            except QueueEmpty:
                return
            if kind is _Message.BATCH:
                self._permits.release()

    def _wait_for_tasks(self) -> None:
        while True:
            self._drain()
            with self._lock:
                pending = [future for future in self._futures if not future.done()]
            if self._producer is not None and not self._producer.done():
                pending.append(self._producer)
            if not pending:
                break
            wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
        self._drain()

    def close(self) -> None:
        """Stop dispatching, wait for submitted tasks and release the connection.

        Raises the captured failure if the consumer has not seen it yet.
        Repeated calls are no-ops.
        """
        if self._state is PipelineState.CLOSED:
            return
        self._state = PipelineState.CLOSED
        self._cancelled.set()
        self._rows.clear()
        self._reorder.clear()
        try:
            self._wait_for_tasks()
            if self._cursor is not None:
                self._cursor.close()
        finally:
            connection, self._connection = self._connection, None
            try:
                if connection is not None and self._releaser is not None:
                    self._releaser(connection)
            finally:
                if self._owns_executor and self._executor is not None:
                    self._executor.shutdown(wait=True)
                log_with_context(
                    logger,
                    logging.DEBUG,
                    "pipeline.close",
                    dispatched_batches=self._dispatched,
                    delivered_batches=self._delivered,
                )

        error = self._first_error.error
        if error is not None and not self._error_reported:
            self._error_reported = True
            raise _as_database_error(error)


def _as_database_error(error: Optional[BaseException]) -> BaseException:
    if error is None or isinstance(error, SQLStreamError):
        return error or DatabaseError("Batch pipeline failed")
    if not isinstance(error, Exception):
        return error
    wrapped = DatabaseError(f"Batch processing failed: {error}")
    wrapped.__cause__ = error
    return wrapped
