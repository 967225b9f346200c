"""Split a script into statements on top-level semicolons."""

from __future__ import annotations

import logging
import re

import sqlglot
from sqlglot.errors import TokenError
from sqlglot.tokens import TokenType

from .variables import NAME_PATTERN

LOG = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(rf"\$\{{{NAME_PATTERN}\}}|\$(?:{NAME_PATTERN})")
_DIRECTIVE_LINE_RE = re.compile(r"^\s*@SET\s", re.IGNORECASE)


def split_statements(text: str, dialect: str = "postgres") -> list[str]:
    """Return the non-empty statements in ``text`` in order.

    Semicolons inside strings, quoted identifiers and comments do not split.
    Segments made only of comments are dropped, and ``@SET`` directives stay
    with the statement that follows them.
    """

    if not text or not text.strip():
        return []
    # Placeholders are masked with same-length filler so token offsets still index ``text``.
    masked = _PLACEHOLDER_RE.sub(lambda match: "x" * len(match.group(0)), text)
    try:
        tokens = sqlglot.tokenize(masked, read=dialect)
    except TokenError:
        LOG.debug("Tokenizer failed; splitting on bare semicolons", exc_info=True)
        return _attach_directives(_split_naive(text))

    statements: list[str] = []
    begin = 0
    has_tokens = False
    for token in tokens:
        if token.token_type == TokenType.SEMICOLON:
            if has_tokens:
                statements.append(text[begin : token.start].strip())
            begin = token.end + 1
            has_tokens = False
        else:
            has_tokens = True
    if has_tokens:
        statements.append(text[begin:].strip())
    return _attach_directives([statement for statement in statements if statement])


def _split_naive(text: str) -> list[str]:
    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    for char in text:
        if quote is not None:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == ";":
            statements.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    statements.append("".join(current).strip())
    return [statement for statement in statements if statement]


def _attach_directives(statements: list[str]) -> list[str]:
    merged: list[str] = []
    pending: list[str] = []
    for statement in statements:
        lines = [line for line in statement.splitlines() if line.strip()]
        if all(_DIRECTIVE_LINE_RE.match(line) for line in lines):
            pending.append(statement)
            continue
        merged.append("\n".join([*pending, statement]))
        pending = []
    if pending:
        merged.append("\n".join(pending))
    return merged


__all__ = ["split_statements"]
