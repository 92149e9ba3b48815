"""
Compilation of structured "where" expressions into Airtable formulas.

A where expression is one of four variants:

- Rule: field name -> filter, all entries must match (AND).
- AnyOf: at least one of the rules matches (OR).
- NoneOf: the rule does not match (NOT).
- AnyOfExcept: at least one of the rules matches and the excluded rule
  does not (AND(OR(...), NOT(...))).

Each rule entry holds one of four filters: Match, NotMatch, Includes or
NotIncludes. Plain Python data is accepted as well and parsed into the
variants above by `parse_where()`:

Example:
    >>> from airbaker._formula import compile_formula
    >>> compile_formula({"Status": "Done"})
    '{Status}="Done"'
    >>> compile_formula({"Status": {"not": ["Done", "Archived"]}, "Owner": None})
    'AND(NOT(OR({Status}="Done",{Status}="Archived")),{Owner}=BLANK())'
    >>> compile_formula({"OR": [{"Id": 1}, {"Id": 2}], "NOT": {"Owner": None}})
    'AND(OR({Id}="1",{Id}="2"),NOT({Owner}=BLANK()))'

Values and field names are wrapped verbatim: quote characters supplied by
the caller are not escaped.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

MatchValue = str | int | float | None

OR_KEY = "OR"
NOT_KEY = "NOT"
NEGATION_KEY = "not"
RESERVED_KEYS = frozenset({OR_KEY, NOT_KEY})

BLANK = "BLANK()"
FALSE = "FALSE()"


# =============================================================================
# Exceptions
# =============================================================================


class CompileError(ValueError):
    """
    Raised when a where expression has a shape that cannot be compiled.

    Attributes:
        entry: The offending entry (field name or the whole expression).
    """

    def __init__(self, message: str, entry: Any = None):
        super().__init__(message)
        self.entry = entry


# =============================================================================
# Filters
# =============================================================================


@dataclass(frozen=True)
class Match:
    """Field equals value. `None` and `""` match a blank field."""

    value: MatchValue

    def __post_init__(self) -> None:
        if not _is_match_value(self.value):
            raise CompileError(f"Unsupported match value: {self.value!r}", entry=self.value)


@dataclass(frozen=True)
class NotMatch:
    """Field does not equal value."""

    filter: Match


@dataclass(frozen=True)
class Includes:
    """Field equals any of the values. An empty sequence matches a blank field."""

    values: tuple[Match, ...] = ()

    @classmethod
    def of(cls, *values: MatchValue) -> Includes:
        return cls(tuple(Match(v) for v in values))


@dataclass(frozen=True)
class NotIncludes:
    """Field equals none of the values."""

    filter: Includes


Filter = Match | NotMatch | Includes | NotIncludes


# =============================================================================
# Where Expressions
# =============================================================================


@dataclass(frozen=True)
class Rule:
    """
    Conjunction of per-field filters.

    Field names are unique and must not be one of the reserved keys
    (`OR`, `NOT`). An empty rule matches every record.

    Example:
        >>> Rule.of({"Status": Match("Done"), "Tags": Includes.of("a", "b")})
    """

    entries: tuple[tuple[str, Filter], ...] = ()

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for name, _ in self.entries:
            if name in RESERVED_KEYS:
                raise CompileError(f"Reserved key used as field name: {name}", entry=name)
            if name in seen:
                raise CompileError(f"Duplicated field in rule: {name}", entry=name)
            seen.add(name)

    @classmethod
    def of(cls, filters: Mapping[str, Filter]) -> Rule:
        return cls(tuple(filters.items()))

    def has_negated_filters(self) -> bool:
        return any(isinstance(f, NotMatch | NotIncludes) for _, f in self.entries)


@dataclass(frozen=True)
class AnyOf:
    """Disjunction of rules."""

    rules: tuple[Rule, ...]


@dataclass(frozen=True)
class NoneOf:
    """Negation of a rule. The rule must not hold negated filters itself."""

    rule: Rule

    def __post_init__(self) -> None:
        _ensure_not_negated(self.rule)


@dataclass(frozen=True)
class AnyOfExcept:
    """Disjunction of `rules`, excluding records matched by `excluded`."""

    rules: tuple[Rule, ...]
    excluded: Rule = field(default_factory=Rule)

    def __post_init__(self) -> None:
        _ensure_not_negated(self.excluded)


Where = Rule | AnyOf | NoneOf | AnyOfExcept


def _ensure_not_negated(rule: Rule) -> None:
    if rule.has_negated_filters():
        raise CompileError(
            f"Negated filters are not allowed inside {NOT_KEY}: {_describe(rule)}",
            entry=rule,
        )


# =============================================================================
# Parsing
# =============================================================================


def parse_where(where: Where | Mapping[str, Any]) -> Where:
    """
    Convert plain Python data into a where expression.

    Already-built expressions are returned untouched.

    Raises:
        CompileError: If the shape is not recognized.
    """
    if isinstance(where, Rule | AnyOf | NoneOf | AnyOfExcept):
        return where

    if not isinstance(where, Mapping):
        raise CompileError(f"Unable to formulate where: {_describe(where)}", entry=where)

    has_or = OR_KEY in where
    has_not = NOT_KEY in where
    if not has_or and not has_not:
        return _parse_rule(where)

    extra_keys = set(where) - RESERVED_KEYS
    if extra_keys:
        raise CompileError(
            f"Unable to formulate where mixing {OR_KEY}/{NOT_KEY} with fields: {sorted(extra_keys)}",
            entry=where,
        )

    if has_or and not has_not:
        return AnyOf(_parse_rules(where[OR_KEY]))
    if has_not and not has_or:
        return NoneOf(_parse_rule(where[NOT_KEY]))
    return AnyOfExcept(_parse_rules(where[OR_KEY]), _parse_rule(where[NOT_KEY]))


def _parse_rules(value: Any) -> tuple[Rule, ...]:
    if isinstance(value, str | bytes) or not isinstance(value, Sequence):
        raise CompileError(f"{OR_KEY} expects a list of rules, got: {_describe(value)}", entry=value)
    return tuple(_parse_rule(rule) for rule in value)


def _parse_rule(value: Any) -> Rule:
    if isinstance(value, Rule):
        return value
    if not isinstance(value, Mapping):
        raise CompileError(f"Unable to formulate rule: {_describe(value)}", entry=value)
    return Rule(tuple((name, _parse_filter(name, f)) for name, f in value.items()))


def _parse_filter(name: str, value: Any) -> Filter:
    if isinstance(value, Match | NotMatch | Includes | NotIncludes):
        return value
    if _is_match_value(value):
        return Match(value)
    if _is_includes_value(value):
        return Includes(tuple(Match(v) for v in value))
    if isinstance(value, Mapping) and set(value) == {NEGATION_KEY}:
        negated = value[NEGATION_KEY]
        if _is_match_value(negated):
            return NotMatch(Match(negated))
        if _is_includes_value(negated):
            return NotIncludes(Includes(tuple(Match(v) for v in negated)))
    raise CompileError(f"Unable to resolve rule entry: {name}", entry=name)


def _is_match_value(value: Any) -> bool:
    # bool is an int subclass but has no formula rendering
    if isinstance(value, bool):
        return False
    return value is None or isinstance(value, str | int | float)


def _is_includes_value(value: Any) -> bool:
    return isinstance(value, list | tuple) and all(_is_match_value(v) for v in value)


def _describe(value: Any) -> str:
    try:
        return json.dumps(value, indent=2, default=repr)
    except (TypeError, ValueError):
        return repr(value)


# =============================================================================
# Compilation
# =============================================================================


def compile_formula(where: Where | Mapping[str, Any]) -> str:
    """
    Compile a where expression into an Airtable formula.

    Args:
        where: A where expression, or plain data accepted by `parse_where()`.

    Returns:
        The formula. An empty rule compiles to "" (match every record).

    Raises:
        CompileError: If the expression has an unrecognized shape.
    """
    expression = parse_where(where)

    if isinstance(expression, Rule):
        return _compile_rule(expression)
    if isinstance(expression, AnyOf):
        return _or(_compile_rule(rule) for rule in expression.rules)
    if isinstance(expression, NoneOf):
        return _not(_compile_rule(expression.rule))
    if isinstance(expression, AnyOfExcept):
        return _and([
            _or(_compile_rule(rule) for rule in expression.rules),
            _not(_compile_rule(expression.excluded)),
        ])

    raise CompileError(f"Unable to formulate where: {_describe(expression)}", entry=expression)


def _compile_rule(rule: Rule) -> str:
    if not rule.entries:
        return ""
    return _and(_compile_filter(_field_ref(name), f) for name, f in rule.entries)


def _compile_filter(ref: str, f: Filter) -> str:
    if isinstance(f, Match):
        return _match(ref, f.value)
    if isinstance(f, NotMatch):
        return _not(_match(ref, f.filter.value))
    if isinstance(f, Includes):
        return _includes(ref, f)
    if isinstance(f, NotIncludes):
        return _not(_includes(ref, f.filter))
    raise CompileError(f"Unable to resolve rule entry: {ref}", entry=ref)


def _includes(ref: str, f: Includes) -> str:
    if not f.values:
        return _match(ref, None)
    return _or(_match(ref, m.value) for m in f.values)


# Formula constructors

def _match(ref: str, value: MatchValue) -> str:
    text = _render(value)
    return f"{ref}={BLANK if not text else _quote(text)}"


def _render(value: MatchValue) -> str:
    if value is None:
        return ""
    # 1.0 -> "1", 1e16 -> "10000000000000000"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _and(expressions: Iterable[str]) -> str:
    return _combine("AND", expressions)


def _or(expressions: Iterable[str]) -> str:
    return _combine("OR", expressions)


def _not(expression: str) -> str:
    return f"NOT({expression})"


def _combine(function: str, expressions: Iterable[str]) -> str:
    # Textual dedup, first occurrence wins
    unique = list(dict.fromkeys(expressions))
    if not unique:
        return FALSE
    if len(unique) == 1:
        return unique[0]
    return f"{function}({','.join(unique)})"


def _field_ref(name: str) -> str:
    return f"{{{name}}}"


def _quote(text: str) -> str:
    return f'"{text}"'


class FormulaCompiler:
    """
    Stateless compiler object held by the client.

    Example:
        >>> FormulaCompiler().compile({"Name": ["a", "a", "b"]})
        'OR({Name}="a",{Name}="b")'
    """

    def compile(self, where: Where | Mapping[str, Any]) -> str:
        return compile_formula(where)
