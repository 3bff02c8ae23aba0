"""Predicate tree used by :class:`~sqla_relations.query.QueryBuilder`.

Every ``where*`` call appends one node. Nodes are immutable and compared
by identity, so a relation can remember the exact nodes it added (for
example the eager ``IN`` batch) and strip them later without touching
look-alike predicates supplied by the caller.

Rendering follows SQL precedence for a flat list: ``AND`` binds tighter
than ``OR``, so ``[a, or b, and c]`` means ``a OR (b AND c)``. A
:class:`Nested` node renders as one parenthesised group.
"""

from __future__ import annotations

import dataclasses
import operator as op
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Literal, Union

import sqlalchemy as sa

from .datastructures import frozendict
from .errors import InvalidOperatorError
from .tools import leaf


Connective = Literal["and", "or"]
ColumnRef = Union[str, sa.ColumnElement[Any]]
Resolver = Callable[[ColumnRef], sa.ColumnElement[Any]]

MAX_PREDICATE_DEPTH: Final[int] = 25

_OPERATORS: Final[frozendict[str, Callable[[Any, Any], sa.ColumnElement[bool]]]] = frozendict({
    "=": op.eq,
    "!=": op.ne,
    "<>": op.ne,
    "<": op.lt,
    "<=": op.le,
    ">": op.gt,
    ">=": op.ge,
    "like": lambda col, value: col.like(value),
    "not like": lambda col, value: col.not_like(value),
    "ilike": lambda col, value: col.ilike(value),
    "not ilike": lambda col, value: col.not_ilike(value),
})
ALLOWED_OPERATORS: Final[frozenset[str]] = frozenset(_OPERATORS)


def check_operator(operator: Any) -> str:
    """Normalise *operator* and reject anything outside the allow-list."""
    if not isinstance(operator, str):
        raise InvalidOperatorError(operator, ALLOWED_OPERATORS)
    normalized = " ".join(operator.lower().split())
    if normalized not in _OPERATORS:
        raise InvalidOperatorError(operator, ALLOWED_OPERATORS)
    return normalized


@dataclass(frozen=True, eq=False)
class Comparison:
    column: ColumnRef
    operator: str
    value: Any
    connective: Connective = "and"


@dataclass(frozen=True, eq=False)
class Null:
    column: ColumnRef
    connective: Connective = "and"


@dataclass(frozen=True, eq=False)
class NotNull:
    column: ColumnRef
    connective: Connective = "and"


@dataclass(frozen=True, eq=False)
class In:
    column: ColumnRef
    values: tuple[Any, ...]
    connective: Connective = "and"


@dataclass(frozen=True, eq=False)
class NotIn:
    column: ColumnRef
    values: tuple[Any, ...]
    connective: Connective = "and"


@dataclass(frozen=True, eq=False)
class Between:
    column: ColumnRef
    low: Any
    high: Any
    connective: Connective = "and"
    negated: bool = False


@dataclass(frozen=True, eq=False)
class Raw:
    """Raw SQL text with named bind parameters, or a ready SQLAlchemy expression."""

    sql: str | sa.ColumnElement[bool]
    params: frozendict[str, Any] = field(default_factory=frozendict)
    connective: Connective = "and"


@dataclass(frozen=True, eq=False)
class Nested:
    children: tuple[Predicate, ...]
    connective: Connective = "and"


Predicate = Union[Comparison, Null, NotNull, In, NotIn, Between, Raw, Nested]


def column_key(column: ColumnRef) -> str:
    """Printable ``table.column`` form of a column reference."""
    if isinstance(column, str):
        return column
    table = getattr(column, "table", None)
    name = getattr(column, "name", None) or getattr(column, "key", None) or str(column)
    table_name = getattr(table, "name", None)
    return f"{table_name}.{name}" if table_name else name


def same_column(first: ColumnRef, second: ColumnRef) -> bool:
    """Compare two references, treating an unqualified one as matching any table."""
    a, b = column_key(first), column_key(second)
    if a == b:
        return True
    if "." in a and "." in b:
        return False
    return leaf(a) == leaf(b)


def has_or(nodes: Sequence[Predicate]) -> bool:
    """``True`` when any top-level node joins with ``OR``."""
    return any(node.connective == "or" for node in nodes)


def wrap_in_group(nodes: Sequence[Predicate]) -> tuple[Predicate, ...]:
    """Replay *nodes* into a single parenthesised group.

    The first node is forced to ``AND``, every following node keeps its own
    connective, so a predicate list such as ``a OR b`` becomes ``(a OR b)``
    and any predicate appended afterwards applies to the whole group.
    """
    if not nodes:
        return ()
    first, *rest = nodes
    if first.connective != "and":
        first = dataclasses.replace(first, connective="and")
    return (Nested(children=(first, *rest)),)


def find_in(
    nodes: Iterable[Predicate], column: ColumnRef, depth: int = 0
) -> In | None:
    """Find an ``IN`` node on *column*, searching nested groups up to :data:`MAX_PREDICATE_DEPTH`."""
    if depth > MAX_PREDICATE_DEPTH:
        return None
    for node in nodes:
        if isinstance(node, In) and same_column(node.column, column):
            return node
        if isinstance(node, Nested):
            found = find_in(node.children, column, depth + 1)
            if found is not None:
                return found
    return None


def references(node: Predicate, column: ColumnRef, depth: int = 0) -> bool:
    """``True`` when *node* (or any nested child) filters on *column*."""
    if depth > MAX_PREDICATE_DEPTH:
        return False
    if isinstance(node, Nested):
        return any(references(child, column, depth + 1) for child in node.children)
    if isinstance(node, Raw):
        return False
    return same_column(node.column, column)


def without(
    nodes: Iterable[Predicate], targets: Iterable[Predicate]
) -> tuple[Predicate, ...]:
    """Return *nodes* minus *targets*, matched by identity at any depth."""
    drop = {id(target) for target in targets}
    if not drop:
        return tuple(nodes)

    def _strip(items: Iterable[Predicate]) -> tuple[Predicate, ...]:
        out: list[Predicate] = []
        for node in items:
            if id(node) in drop:
                continue
            if isinstance(node, Nested):
                children = _strip(node.children)
                if not children:
                    continue
                if len(children) != len(node.children):
                    node = dataclasses.replace(node, children=children)
            out.append(node)
        return tuple(out)

    return _strip(nodes)


def render_node(node: Predicate, resolve: Resolver) -> sa.ColumnElement[bool]:
    """Render a single node to a SQLAlchemy boolean expression."""
    if isinstance(node, Comparison):
        return _OPERATORS[node.operator](resolve(node.column), node.value)
    if isinstance(node, Null):
        return resolve(node.column).is_(None)
    if isinstance(node, NotNull):
        return resolve(node.column).is_not(None)
    if isinstance(node, In):
        return resolve(node.column).in_(node.values)
    if isinstance(node, NotIn):
        return resolve(node.column).not_in(node.values)
    if isinstance(node, Between):
        expr = resolve(node.column).between(node.low, node.high)
        return sa.not_(expr) if node.negated else expr
    if isinstance(node, Raw):
        if isinstance(node.sql, str):
            return sa.text(node.sql).bindparams(**node.params)  # type: ignore[return-value]
        return node.sql
    if isinstance(node, Nested):
        rendered = render(node.children, resolve)
        return sa.true() if rendered is None else rendered.self_group()
    raise TypeError(f"Unknown predicate node {type(node).__name__}")


def render(
    nodes: Sequence[Predicate], resolve: Resolver
) -> sa.ColumnElement[bool] | None:
    """Render a flat predicate list, honouring ``AND``-over-``OR`` precedence.

    Returns ``None`` for an empty list.
    """
    if not nodes:
        return None

    runs: list[list[sa.ColumnElement[bool]]] = [[]]
    for index, node in enumerate(nodes):
        if index and node.connective == "or":
            runs.append([])
        runs[-1].append(render_node(node, resolve))

    terms = [run[0] if len(run) == 1 else sa.and_(*run) for run in runs]
    return terms[0] if len(terms) == 1 else sa.or_(*terms)
