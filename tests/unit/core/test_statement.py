"""Unit tests for Statement and StatementConfig."""

from unittest.mock import MagicMock

import pytest

from sqlstream.core.statement import DEFAULT_FETCH_SIZE, Statement, StatementConfig
from sqlstream.exceptions import (
    ImproperConfigurationError,
    MissingParameterError,
    ParameterStyleMismatchError,
    PreprocessingError,
)

# StatementConfig Tests


def test_statement_config_defaults() -> None:
    config = StatementConfig()
    assert config.fetch_size == DEFAULT_FETCH_SIZE == 15
    assert config.max_rows is None
    assert config.placeholder == "?"
    assert "BLOB" in config.large_object_types


def test_statement_config_normalizes_large_object_names() -> None:
    config = StatementConfig(large_object_types=["blob", "Text"])
    assert config.large_object_types == frozenset({"BLOB", "TEXT"})


@pytest.mark.parametrize(
    "kwargs", [{"fetch_size": 0}, {"max_rows": 0}, {"placeholder": ":1"}], ids=["fetch", "rows", "placeholder"]
)
def test_statement_config_rejects_invalid_values(kwargs: dict) -> None:
    with pytest.raises(ImproperConfigurationError):
        StatementConfig(**kwargs)


def test_statement_config_replace() -> None:
    config = StatementConfig(fetch_size=50)
    updated = config.replace(max_rows=10)

    assert updated is not config
    assert updated.fetch_size == 50
    assert updated.max_rows == 10
    assert config.max_rows is None
    assert config.replace() == config


def test_statement_config_replace_unknown_setting() -> None:
    with pytest.raises(ImproperConfigurationError, match="batch"):
        StatementConfig().replace(batch=1)


# Statement Preparation Tests


def test_statement_strips_comments_and_semicolon() -> None:
    statement = Statement("SELECT id -- the key\nFROM t;")
    assert statement.sql == "SELECT id FROM t"
    assert statement.parameters == ()
    assert statement.raw_sql == "SELECT id -- the key\nFROM t;"


def test_statement_expands_named_parameters() -> None:
    statement = Statement("SELECT * FROM t WHERE id IN (:ids) AND name = :name", {"ids": [1, 2], "name": "x"})
    assert statement.sql == "SELECT * FROM t WHERE id IN (?,?) AND name = ?"
    assert statement.parameters == (1, 2, "x")


def test_statement_uses_configured_placeholder() -> None:
    statement = Statement("SELECT * FROM t WHERE id = :id", {"id": 1}, StatementConfig(placeholder="%s"))
    assert statement.sql == "SELECT * FROM t WHERE id = %s"


def test_statement_keeps_positional_parameters() -> None:
    statement = Statement("SELECT * FROM t WHERE a = ? AND b = ?", [1, 2])
    assert statement.sql == "SELECT * FROM t WHERE a = ? AND b = ?"
    assert statement.parameters == (1, 2)


def test_statement_positional_values_with_named_tokens_fail() -> None:
    with pytest.raises(ParameterStyleMismatchError):
        Statement("SELECT * FROM t WHERE id = :id", [1])


def test_statement_named_tokens_without_values_fail() -> None:
    with pytest.raises(MissingParameterError, match=":id"):
        Statement("SELECT * FROM t WHERE id = :id")


def test_statement_rejects_multiple_statements() -> None:
    with pytest.raises(PreprocessingError):
        Statement("DELETE FROM t; DROP TABLE t")


# Execution Tests


def test_execute_passes_parameters() -> None:
    cursor = MagicMock()
    Statement("SELECT ?", (1,)).execute(cursor)
    cursor.execute.assert_called_once_with("SELECT ?", (1,))


def test_execute_without_parameters() -> None:
    cursor = MagicMock()
    Statement("SELECT 1").execute(cursor)
    cursor.execute.assert_called_once_with("SELECT 1")


def test_as_sql_renders_values() -> None:
    statement = Statement("SELECT * FROM t WHERE name = :name", {"name": "o'neil"})
    assert statement.as_sql() == "SELECT * FROM t WHERE name = 'o''neil'"
