"""SQL text preprocessing: comment stripping and named parameter expansion.

Every function here is pure. They run before any I/O so malformed text fails
with :class:`~sqlstream.exceptions.PreprocessingError` without touching a
connection.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any, Final, Optional, Union

from sqlglot.errors import TokenError
from sqlglot.tokens import Tokenizer, TokenType

from sqlstream.exceptions import (
    DuplicateParameterError,
    MissingParameterError,
    ParameterStyleMismatchError,
    PreprocessingError,
)
from sqlstream.utils.logging import get_logger, log_with_context
from sqlstream.utils.type_guards import is_expandable_parameter

__all__ = (
    "NamedParameters",
    "ensure_single_statement",
    "expand_named_parameters",
    "find_named_parameters",
    "is_procedure_call",
    "render_sql",
    "strip_comments",
)

logger = get_logger("core.preprocessing")

NamedParameters = Union[Mapping[str, Any], Iterable["tuple[str, Any]"]]

# Literals and comments are matched first so placeholders inside them are skipped.
_PLACEHOLDER_REGEX: Final = re.compile(
    r"""
    (?P<squote>'(?:[^']|'')*') |
    (?P<dquote>"(?:[^"]|"")*") |
    (?P<line_comment>--[^\r\n]*) |
    (?P<block_comment>/\*[\s\S]*?\*/) |
    (?P<pg_cast>::\w+) |
    (?P<named_colon>:(?P<colon_name>\w+)) |
    (?P<qmark>\?)
    """,
    re.VERBOSE,
)

_LITERAL_OR_WHITESPACE_RUN: Final = re.compile(r"""('(?:[^']|'')*'|"(?:[^"]|"")*")|\s{2,}|[\r\n]""")

_CALL_BODY: Final = r"(?:\?\s*=\s*)?call\s+\w+(?:\.\w+){0,2}\s*(?:\((?:[^()]|\([^()]*\))*\))?"
_PROCEDURE_CALL_REGEX: Final = re.compile(rf"^\s*(?:\{{\s*{_CALL_BODY}\s*\}}|{_CALL_BODY})\s*;?\s*$", re.IGNORECASE)

_tokenizer = Tokenizer()


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments from SQL text.

    Characters inside single or double quoted literals are never altered.
    Comment spans are blanked with whitespace of equal length, then line
    breaks and runs of whitespace outside literals are collapsed to a single
    space and the result is trimmed.

    Args:
        sql: SQL text, possibly multi-line

    Raises:
        PreprocessingError: If multi-line comment open and close markers are unbalanced

    Returns:
        SQL text without comments
    """
    single_line_spans: list[tuple[int, int]] = []
    starts: list[int] = []
    ends: list[int] = []
    inside_quotes = False
    inside_comment = False
    outer_quote: Optional[str] = None

    offset = 0
    for raw_line in sql.splitlines(keepends=True):
        line = raw_line.rstrip("\r\n")
        length = len(line)
        index = 0
        while index < length:
            current = line[index]
            following = line[index + 1] if index + 1 < length else ""
            position = offset + index
            if inside_quotes:
                if current == outer_quote:
                    inside_quotes = False
                    outer_quote = None
                index += 1
                continue
            if inside_comment:
                if current == "*" and following == "/":
                    ends.append(position + 2)
                    inside_comment = False
                    index += 2
                    continue
                index += 1
                continue
            if current == "-" and following == "-":
                single_line_spans.append((position, offset + length))
                break
            if current == "/" and following == "*":
                starts.append(position)
                inside_comment = True
                index += 2
                continue
            if current == "*" and following == "/":
                ends.append(position + 2)
                index += 2
                continue
            if current in {"'", '"'}:
                inside_quotes = True
                outer_quote = current
            index += 1
        offset += len(raw_line)

    if len(starts) != len(ends):
        msg = f"Multiline comments open/close tags count mismatch ({len(starts)}/{len(ends)})"
        raise PreprocessingError(msg, sql)
    for start, end in zip(starts, ends):
        if end < start:
            msg = f"Unmatched end of multiline comment at {end - 2}"
            raise PreprocessingError(msg, sql)

    if not starts and not single_line_spans:
        return _collapse_whitespace(sql)

    chars = list(sql)
    for start, end in (*single_line_spans, *zip(starts, ends)):
        chars[start:end] = " " * (end - start)
    return _collapse_whitespace("".join(chars))


def _collapse_whitespace(sql: str) -> str:
    return _LITERAL_OR_WHITESPACE_RUN.sub(lambda m: m.group(1) or " ", sql).strip()


def find_named_parameters(sql: str) -> list[str]:
    """List the ``:name`` tokens of SQL text in order of occurrence.

    Tokens inside literals and comments and ``::type`` casts are ignored.

    Args:
        sql: SQL text to scan

    Returns:
        Parameter names without the leading colon, repeated as they occur
    """
    return [m.group("colon_name") for m in _PLACEHOLDER_REGEX.finditer(sql) if m.group("named_colon")]


def _normalize_named_parameters(sql: str, params: "Optional[NamedParameters]") -> dict[str, Any]:
    items = params.items() if isinstance(params, Mapping) else (params or ())
    normalized: dict[str, Any] = {}
    for raw_name, value in items:
        name = raw_name[1:] if raw_name.startswith(":") else raw_name
        if name in normalized:
            msg = f"Parameter ':{name}' is supplied more than once"
            raise DuplicateParameterError(msg, sql)
        normalized[name] = value
    return normalized


def expand_named_parameters(
    sql: str, params: "Optional[NamedParameters]", placeholder: str = "?"
) -> "tuple[str, tuple[Any, ...]]":
    """Rewrite ``:name`` tokens into positional placeholders.

    Every occurrence of a token is replaced by one placeholder per element of
    its bound value: scalars give one, lists, tuples, sets and other
    non-string iterables fan out in iteration order. Values are collected in
    the same left-to-right scan, so their order always matches placeholder
    order.

    Args:
        sql: SQL text with ``:name`` tokens
        params: Mapping of names to values, or ``(name, value)`` pairs. Names may keep their leading colon.
        placeholder: Positional placeholder to emit (``?`` or ``%s``)

    Raises:
        DuplicateParameterError: If the same name is supplied twice
        MissingParameterError: If a token has no supplied value
        ParameterStyleMismatchError: If the text also contains ``?`` placeholders

    Returns:
        Tuple of (positional SQL, ordered values). Text without tokens is returned unchanged with no values.
    """
    values = _normalize_named_parameters(sql, params)
    matches = [m for m in _PLACEHOLDER_REGEX.finditer(sql) if m.group("named_colon") or m.group("qmark")]
    if not any(m.group("named_colon") for m in matches):
        return sql, ()
    if any(m.group("qmark") for m in matches):
        raise ParameterStyleMismatchError(sql=sql)

    expanded: dict[str, list[Any]] = {}
    parts: list[str] = []
    ordered: list[Any] = []
    cursor = 0
    for match in matches:
        name = match.group("colon_name")
        if name not in values:
            msg = f"No value supplied for parameter ':{name}'"
            raise MissingParameterError(msg, sql)
        if name not in expanded:
            value = values[name]
            expanded[name] = list(value) if is_expandable_parameter(value) else [value]
        bound = expanded[name]
        parts.append(sql[cursor : match.start()])
        parts.append(",".join(placeholder for _ in bound))
        ordered.extend(bound)
        cursor = match.end()
    parts.append(sql[cursor:])

    unused = values.keys() - expanded.keys()
    if unused:
        log_with_context(logger, logging.DEBUG, "preprocess.parameters.unused", names=sorted(unused))
    return "".join(parts), tuple(ordered)


def ensure_single_statement(sql: str) -> str:
    """Check that SQL text holds exactly one statement.

    Trailing semicolons are tolerated and removed.

    Args:
        sql: SQL text without comments

    Raises:
        PreprocessingError: If the text cannot be tokenized or contains several statements

    Returns:
        The statement text without trailing semicolons
    """
    try:
        tokens = _tokenizer.tokenize(sql)
    except TokenError as exc:
        msg = f"Unable to tokenize SQL: {exc}"
        raise PreprocessingError(msg, sql) from exc

    semicolons = [index for index, token in enumerate(tokens) if token.token_type == TokenType.SEMICOLON]
    if not semicolons:
        return sql
    first = semicolons[0]
    if any(token.token_type != TokenType.SEMICOLON for token in tokens[first:]):
        msg = "Query is not a single statement"
        raise PreprocessingError(msg, sql)
    return sql[: tokens[first].start].rstrip()


def is_procedure_call(sql: str) -> bool:
    """Check if SQL text is a stored procedure call.

    Recognises ``call name(...)``, ``? = call name(...)`` and the escape form
    ``{call name(...)}``.
    """
    return _PROCEDURE_CALL_REGEX.match(sql) is not None


def _render_value(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"X'{bytes(value).hex()}'"
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


def render_sql(sql: str, values: "Iterable[Any]") -> str:
    """Inline positional values into SQL text for log output.

    The result is meant for humans only and is never executed.

    Args:
        sql: SQL text with ``?`` placeholders
        values: Positional values in placeholder order

    Returns:
        SQL text with placeholders replaced; placeholders without a value are kept
    """
    remaining = iter(values)

    def replace(match: "re.Match[str]") -> str:
        if not match.group("qmark"):
            return match.group(0)
        try:
            return _render_value(next(remaining))
        except StopIteration:
            return match.group(0)

    return _PLACEHOLDER_REGEX.sub(replace, sql)
