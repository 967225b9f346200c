"""Placeholder variable extraction, `@SET` directives and substitution.

Two placeholder spellings are understood: ``${NAME}`` and bare ``$NAME``.
Bare names stop at the first character that cannot belong to an identifier,
so ``$TABLE.column`` refers to ``TABLE``. Directive lines of the form
``@SET NAME = value`` supply defaults and are removed from the SQL.

Unknown braced placeholders collapse to an empty string (shell semantics);
unknown bare placeholders are left untouched so literal ``$`` text survives.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

NAME_PATTERN = r"[A-Za-z_][A-Za-z0-9_]*"

# Braced alternative first; a bare match never starts with "{".
_PLACEHOLDER_RE = re.compile(rf"\$\{{({NAME_PATTERN})\}}|\$({NAME_PATTERN})")
_SET_RE = re.compile(rf"^\s*@SET\s+({NAME_PATTERN})\s*=\s*(.+?)\s*$", re.IGNORECASE)
_QUOTED_RE = re.compile(r"""^(['"])(.*?)\1\s*(?:;(.*))?$""", re.DOTALL)
_LINE_SPLIT_RE = re.compile(r"\r?\n")


class VariableResolutionError(RuntimeError):
    """Raised when placeholder values cannot be obtained."""


@dataclass(frozen=True, slots=True)
class Directives:
    """SQL with `@SET` lines removed plus the defaults they declared."""

    sql: str
    defaults: Mapping[str, str]


@dataclass(frozen=True, slots=True)
class Resolution:
    """Result of resolving a single SQL string."""

    sql: str
    unresolved: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class PreparedStatement:
    """One batch statement with the `@SET` defaults visible at its position."""

    sql: str
    defaults: Mapping[str, str]
    variables: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class PreparedBatch:
    """Statements parsed for directives but not yet substituted."""

    statements: tuple[PreparedStatement, ...] = field(default_factory=tuple)

    def defaults(self) -> dict[str, str]:
        """Every `@SET` default declared in the batch, last one wins."""

        merged: dict[str, str] = {}
        for statement in self.statements:
            merged.update(statement.defaults)
        return merged

    def unresolved(self, overrides: Mapping[str, str] | None = None) -> tuple[str, ...]:
        """Names that neither a preceding `@SET` nor the overrides supply."""

        overrides = overrides or {}
        missing: dict[str, None] = {}
        for statement in self.statements:
            for name in statement.variables:
                if name not in overrides and name not in statement.defaults:
                    missing.setdefault(name, None)
        return tuple(missing)

    def render(self, values: Mapping[str, str] | None = None) -> tuple[str, ...]:
        """Substitute every statement; statements left empty are dropped."""

        values = values or {}
        rendered: list[str] = []
        for statement in self.statements:
            merged = {**statement.defaults, **values}
            sql = substitute(statement.sql, merged)
            if sql.strip():
                rendered.append(sql)
        return tuple(rendered)


def extract_variables(sql: str) -> tuple[str, ...]:
    """Return distinct placeholder names in order of first appearance."""

    if not sql:
        return ()
    seen: dict[str, None] = {}
    for match in _PLACEHOLDER_RE.finditer(sql):
        seen.setdefault(match.group(1) or match.group(2), None)
    return tuple(seen)


def extract_batch_variables(statements: Iterable[str]) -> tuple[str, ...]:
    """Collect variables across several statements so the user is asked once."""

    seen: dict[str, None] = {}
    for statement in statements:
        for name in extract_variables(parse_set_directives(statement).sql):
            seen.setdefault(name, None)
    return tuple(seen)


def parse_set_directives(sql: str) -> Directives:
    """Strip `@SET NAME = value` lines and return their values as defaults.

    ``@SET A = 1; SELECT $A`` keeps ``SELECT $A`` as executable SQL.
    """

    if not sql:
        return Directives(sql="", defaults={})
    remaining: list[str] = []
    defaults: dict[str, str] = {}
    for line in _LINE_SPLIT_RE.split(sql):
        match = _SET_RE.match(line)
        if not match:
            remaining.append(line)
            continue
        value, rest = _split_value(match.group(2))
        defaults[match.group(1)] = value
        if rest:
            remaining.append(rest)
    return Directives(sql="\n".join(remaining), defaults=defaults)


def substitute(sql: str, values: Mapping[str, str]) -> str:
    """Replace placeholders with their values.

    Each bare match consumes the whole identifier, so ``$TABLE_NAME`` is
    never rewritten through a shorter ``$TABLE`` entry.
    """

    def _replace(match: re.Match[str]) -> str:
        braced, bare = match.group(1), match.group(2)
        if braced is not None:
            return values.get(braced, "")
        return values.get(bare, match.group(0))

    return _PLACEHOLDER_RE.sub(_replace, sql)


def resolve(sql: str, overrides: Mapping[str, str] | None = None) -> Resolution:
    """Apply directives and overrides to ``sql`` and report what is missing."""

    parsed = parse_set_directives(sql)
    values = {**parsed.defaults, **(overrides or {})}
    unresolved = tuple(name for name in extract_variables(parsed.sql) if name not in values)
    return Resolution(sql=substitute(parsed.sql, values), unresolved=unresolved)


def prepare_batch(statements: Sequence[str]) -> PreparedBatch:
    """Parse directives statement by statement.

    Defaults accumulate in submission order: a directive in statement ``i``
    applies to statement ``i`` and every statement after it.
    """

    accumulated: dict[str, str] = {}
    prepared: list[PreparedStatement] = []
    for statement in statements:
        parsed = parse_set_directives(statement)
        accumulated.update(parsed.defaults)
        prepared.append(
            PreparedStatement(
                sql=parsed.sql,
                defaults=dict(accumulated),
                variables=extract_variables(parsed.sql),
            )
        )
    return PreparedBatch(statements=tuple(prepared))


def _split_value(raw: str) -> tuple[str, str]:
    quoted = _QUOTED_RE.match(raw)
    if quoted:
        return quoted.group(2), (quoted.group(3) or "").strip()
    value, _, rest = raw.partition(";")
    return value.strip(), rest.strip()


__all__ = [
    "Directives",
    "NAME_PATTERN",
    "PreparedBatch",
    "PreparedStatement",
    "Resolution",
    "VariableResolutionError",
    "extract_batch_variables",
    "extract_variables",
    "parse_set_directives",
    "prepare_batch",
    "resolve",
    "substitute",
]
