from sqlstream.core import cursor, pipeline, pool, preprocessing, sequence, statement
from sqlstream.core.cursor import Row, SequentialCursor, default_mapper
from sqlstream.core.pipeline import BatchPipeline, PipelineState, RowBatch
from sqlstream.core.pool import ConnectionPool
from sqlstream.core.preprocessing import expand_named_parameters, strip_comments
from sqlstream.core.sequence import ResultSequence
from sqlstream.core.statement import Statement, StatementConfig

__all__ = (
    "BatchPipeline",
    "ConnectionPool",
    "PipelineState",
    "ResultSequence",
    "Row",
    "RowBatch",
    "SequentialCursor",
    "Statement",
    "StatementConfig",
    "cursor",
    "default_mapper",
    "expand_named_parameters",
    "pipeline",
    "pool",
    "preprocessing",
    "sequence",
    "statement",
    "strip_comments",
)
