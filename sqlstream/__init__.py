"""SQLStream: lazy, pooled and batch-concurrent SQL execution over DB-API drivers."""

from sqlstream import core, driver, exceptions, typing, utils
from sqlstream.__metadata__ import __version__
from sqlstream.config import DatabaseConfig, PoolParams
from sqlstream.core.cursor import Row
from sqlstream.core.pipeline import BatchPipeline
from sqlstream.core.pool import ConnectionPool
from sqlstream.core.preprocessing import expand_named_parameters, strip_comments
from sqlstream.core.sequence import ResultSequence
from sqlstream.core.statement import Statement, StatementConfig
from sqlstream.driver import Session
from sqlstream.exceptions import (
    DatabaseError,
    PoolClosedError,
    PoolError,
    PreprocessingError,
    SQLStreamError,
    UnsupportedOperationError,
)

__all__ = (
    "BatchPipeline",
    "ConnectionPool",
    "DatabaseConfig",
    "DatabaseError",
    "PoolClosedError",
    "PoolError",
    "PoolParams",
    "PreprocessingError",
    "ResultSequence",
    "Row",
    "SQLStreamError",
    "Session",
    "Statement",
    "StatementConfig",
    "UnsupportedOperationError",
    "__version__",
    "core",
    "driver",
    "exceptions",
    "expand_named_parameters",
    "strip_comments",
    "typing",
    "utils",
)
