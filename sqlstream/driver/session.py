"""Statement execution surface bound to a connection provider."""

import logging
import re
from collections.abc import Generator
from concurrent.futures import Executor
from typing import TYPE_CHECKING, Any, Final, Optional

from sqlstream.core.cursor import SequentialCursor
from sqlstream.core.pipeline import BatchPipeline
from sqlstream.core.preprocessing import is_procedure_call
from sqlstream.core.sequence import ResultSequence
from sqlstream.core.statement import Statement, StatementConfig
from sqlstream.exceptions import (
    ImproperConfigurationError,
    UnsupportedOperationError,
    wrap_database_errors,
)
from sqlstream.utils.logging import get_logger, log_with_context

if TYPE_CHECKING:
    from sqlstream.typing import (
        BatchProcessor,
        ConnectionProvider,
        ConnectionReleaser,
        RowMapper,
        StatementParameters,
    )

__all__ = ("Session",)

logger = get_logger("driver.session")

_CALL_ESCAPE: Final = re.compile(r"^\s*\{\s*(?P<body>.*?)\s*\}\s*$", re.DOTALL)
_CALL_WITH_RESULT: Final = re.compile(r"^\s*\?\s*=", re.DOTALL)


class Session:
    """Issues SELECT, UPDATE and CALL statements on connections from a provider.

    Every statement obtains its connection lazily, on the first pull of the
    sequence it returns, and hands it back to ``connection_releaser`` when that
    sequence is exhausted or closed. A session handed to a batch processor is
    bound to the pipeline's connection and never releases it.

    Args:
        connection_provider: Callable returning the connection a statement runs on
        connection_releaser: Callable receiving the connection afterwards, ``None`` to keep it
        statement_config: Settings applied to every statement of this session
    """

    __slots__ = ("_provider", "_releaser", "statement_config")

    def __init__(
        self,
        connection_provider: "ConnectionProvider",
        connection_releaser: "Optional[ConnectionReleaser]" = None,
        statement_config: Optional[StatementConfig] = None,
    ) -> None:
        if not callable(connection_provider):
            msg = "connection_provider must be callable"
            raise ImproperConfigurationError(msg)
        self._provider = connection_provider
        self._releaser = connection_releaser
        self.statement_config = statement_config or StatementConfig()

    @classmethod
    def bound(cls, connection: Any, statement_config: Optional[StatementConfig] = None) -> "Session":
        """Session whose statements all run on ``connection`` without releasing it."""
        return cls(lambda: connection, None, statement_config)

    def _prepare(self, sql: str, parameters: "StatementParameters") -> Statement:
        return Statement(sql, parameters, self.statement_config)

    def select(
        self, sql: str, parameters: "StatementParameters" = None, *, mapper: "Optional[RowMapper]" = None
    ) -> "ResultSequence[Any]":
        """Run a query and stream its rows one at a time.

        Args:
            sql: Query text with ``?`` or ``:name`` placeholders
            parameters: Positional values or a mapping of named values
            mapper: ``mapper(row, row_number)``; rows become dicts when omitted

        Returns:
            Lazy sequence of mapped rows
        """
        statement = self._prepare(sql, parameters)
        cursor: SequentialCursor[Any] = SequentialCursor(statement, self._provider, self._releaser, mapper)
        return ResultSequence(cursor, cursor.close)

    def select_batches(
        self,
        sql: str,
        parameters: "StatementParameters" = None,
        *,
        processor: "BatchProcessor",
        mapper: "Optional[RowMapper]" = None,
        batch_size: Optional[int] = None,
        executor: Optional[Executor] = None,
        preserve_order: bool = False,
        max_batches_in_flight: Optional[int] = None,
    ) -> "ResultSequence[Any]":
        """Run a query and pass its rows through ``processor`` in concurrent batches.

        ``processor(rows, session, batch_index)`` runs on a worker thread with
        a session bound to the same connection, so it can issue further
        statements. Rows come out in batch completion order unless
        ``preserve_order`` is set.

        Returns:
            Lazy sequence of processed rows
        """
        statement = self._prepare(sql, parameters)
        config = self.statement_config
        pipeline: BatchPipeline[Any] = BatchPipeline(
            statement,
            self._provider,
            self._releaser,
            processor=processor,
            session_factory=lambda connection: Session.bound(connection, config),
            mapper=mapper,
            batch_size=batch_size,
            executor=executor,
            preserve_order=preserve_order,
            max_batches_in_flight=max_batches_in_flight,
        )
        return ResultSequence(pipeline, pipeline.close)

    def update(self, sql: str, *parameter_sets: "StatementParameters") -> "ResultSequence[int]":
        """Run a data-changing statement once per parameter set.

        Statements run lazily as the returned sequence is consumed; each
        element is the driver-reported row count of one execution. The
        transaction is committed as soon as the last set has run, before its
        count is yielded, and rolled back when an execution fails or the
        sequence is closed before the last set runs.

        Args:
            sql: Statement text with ``?`` or ``:name`` placeholders
            *parameter_sets: One set of values per execution; none runs the statement once without values

        Returns:
            Lazy sequence of row counts
        """
        statements = [self._prepare(sql, parameters) for parameters in (parameter_sets or (None,))]
        executions = self._execute_updates(statements)
        return ResultSequence(executions, executions.close)

    def _execute_updates(self, statements: "list[Statement]") -> "Generator[int, None, None]":
        with wrap_database_errors("Failed to obtain a connection:"):
            connection = self._provider()
        completed = False
        try:
            with wrap_database_errors("Failed to open cursor:"):
                cursor = connection.cursor()
            try:
                last = len(statements) - 1
                for position, statement in enumerate(statements):
                    log_with_context(logger, logging.DEBUG, "session.update", sql=statement.as_sql())
                    with wrap_database_errors("Failed to execute update:"):
                        statement.execute(cursor)
                    count = cursor.rowcount
                    if position == last:
                        # the last count is only handed out once it is durable
                        with wrap_database_errors("Failed to commit update:"):
                            connection.commit()
                        completed = True
                    yield count
            finally:
                cursor.close()
        finally:
            try:
                if not completed:
                    self._rollback(connection)
            finally:
                if self._releaser is not None:
                    self._releaser(connection)

    @staticmethod
    def _rollback(connection: Any) -> None:
        try:
            connection.rollback()
        except Exception as exc:  # noqa: BLE001
            log_with_context(logger, logging.WARNING, "session.rollback.error", error=str(exc))

    def call(
        self, sql: str, parameters: "StatementParameters" = None, *, mapper: "Optional[RowMapper]" = None
    ) -> "ResultSequence[Any]":
        """Call a stored procedure and stream the rows of every result set it returns.

        Accepts ``call name(...)`` and the escape form ``{call name(...)}``.

        Raises:
            ImproperConfigurationError: If ``sql`` is not a procedure call
            UnsupportedOperationError: If the call binds a return value (``? = call ...``)

        Returns:
            Lazy sequence of mapped rows across all result sets
        """
        if not is_procedure_call(sql):
            msg = f"Not a stored procedure call: {sql}"
            raise ImproperConfigurationError(msg)
        escaped = _CALL_ESCAPE.match(sql)
        body = escaped.group("body") if escaped else sql
        if _CALL_WITH_RESULT.match(body):
            msg = "Procedure return values cannot be bound through a DB-API cursor"
            raise UnsupportedOperationError(msg)
        return self.select(body, parameters, mapper=mapper)

    def __repr__(self) -> str:
        return f"Session(statement_config={self.statement_config!r})"
