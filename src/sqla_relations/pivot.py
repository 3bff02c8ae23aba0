"""Join-table ("pivot") state shared by many-to-many relations.

:class:`PivotConstraintSet` is owned by :class:`~sqla_relations.BelongsToMany`
and its polymorphic variants. It knows the pivot table and both pivot keys,
which extra pivot columns to select, and every constraint placed on the
pivot table.

Constraints registered before the pivot join exists are staged and
replayed once the join is added. Constraints registered after the join
exists go straight into the query.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Final, Literal

import sqlalchemy as sa

from .errors import InvalidJsonPathError, InvalidPivotDataError, InvalidRelatedIdError
from .matching import PIVOT_PREFIX
from .model import Pivot
from .predicates import Between, Comparison, Connective, In, NotIn, NotNull, Null, Predicate, check_operator
from .schema import SchemaCache, default_schema_cache
from .tools import leaf, unique


if TYPE_CHECKING:
    from .model import Model
    from .query import QueryBuilder

IDENTIFIER: Final = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
JSON_PATH: Final = re.compile(r"^\$(\.[A-Za-z_][A-Za-z0-9_]*|\[\d+\])*$")
PIVOT_FUNCTIONS: Final[frozenset[str]] = frozenset({"date", "month", "year", "time"})
SCALAR_TYPES: Final[tuple[type, ...]] = (str, int, float, bool, Decimal, date, time)

PivotWhereKind = Literal[
    "basic", "null", "not_null", "in", "not_in", "between", "function", "json_contains", "json_length"
]


def validate_identifier(name: Any) -> str:
    if not isinstance(name, str) or not IDENTIFIER.match(name):
        raise InvalidPivotDataError(f"Pivot column name {name!r} is not a valid identifier")
    return name


def validate_json_path(path: Any) -> str:
    """Accept ``$``, ``$.a.b``, ``$.items[0]`` and similar, reject everything else."""
    if not isinstance(path, str) or not JSON_PATH.match(path):
        raise InvalidJsonPathError(str(path))
    return path


def validate_pivot_data(data: Mapping[str, Any]) -> dict[str, Any]:
    """Check that *data* maps identifier-shaped column names to scalar values."""
    if not isinstance(data, Mapping):
        raise InvalidPivotDataError(f"Pivot data must be a mapping, got {type(data).__name__}")
    for column, value in data.items():
        validate_identifier(column)
        if value is not None and not isinstance(value, SCALAR_TYPES):
            raise InvalidPivotDataError(
                f"Pivot value for {column!r} must be a scalar, got {type(value).__name__}"
            )
    return dict(data)


def validate_related_id(value: Any) -> Any:
    from .model import Model

    if isinstance(value, Model):
        value = value.key
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise InvalidRelatedIdError(value)
    return value


def format_sync_records(ids: Any) -> dict[Any, dict[str, Any]]:
    """Normalise ids for attach/sync/toggle into ``{related_id: pivot_data}``.

    Accepts a single id or record, an iterable of ids or records, or a
    mapping of id to pivot data. Everything is validated before returning.
    """
    from .model import Model

    if isinstance(ids, Mapping):
        return {
            validate_related_id(key): validate_pivot_data(value or {})
            for key, value in ids.items()
        }
    if isinstance(ids, (int, str, Model)):
        return {validate_related_id(ids): {}}
    if isinstance(ids, Iterable):
        return {validate_related_id(value): {} for value in ids}
    raise InvalidRelatedIdError(ids)


@dataclass(frozen=True, slots=True)
class PivotWhere:
    """One structured constraint on a pivot column, rendered at application time."""

    kind: PivotWhereKind
    column: str
    operator: str = "="
    value: Any = None
    values: tuple[Any, ...] = ()
    function: str | None = None
    path: str | None = None
    connective: Connective = "and"
    negated: bool = False


@dataclass(frozen=True, slots=True)
class PivotOrder:
    column: str
    direction: str = "asc"


@dataclass
class PivotConstraintSet:
    table: sa.Table
    foreign_pivot_key: str
    related_pivot_key: str
    morph_type_column: str | None = None
    morph_class: str | None = None
    columns: list[str] = field(default_factory=list)
    all_columns: bool = False
    timestamps: bool = False
    accessor: str = "pivot"
    pivot_class: type[Pivot] = Pivot
    wheres: list[PivotWhere] = field(default_factory=list)
    orders: list[PivotOrder] = field(default_factory=list)
    schema_cache: SchemaCache = field(default=default_schema_cache)
    _staged: list[PivotWhere] = field(default_factory=list, repr=False)
    _staged_orders: list[PivotOrder] = field(default_factory=list, repr=False)

    @property
    def name(self) -> str:
        return self.table.name

    def copy(self) -> PivotConstraintSet:
        return PivotConstraintSet(
            table=self.table,
            foreign_pivot_key=self.foreign_pivot_key,
            related_pivot_key=self.related_pivot_key,
            morph_type_column=self.morph_type_column,
            morph_class=self.morph_class,
            columns=list(self.columns),
            all_columns=self.all_columns,
            timestamps=self.timestamps,
            accessor=self.accessor,
            pivot_class=self.pivot_class,
            wheres=list(self.wheres),
            orders=list(self.orders),
            schema_cache=self.schema_cache,
            _staged=list(self._staged),
            _staged_orders=list(self._staged_orders),
        )

    def qualify(self, column: str) -> str:
        """``role`` and ``other_table.role`` both become ``<pivot>.role``."""
        return f"{self.name}.{leaf(column)}"

    def alias(self, column: str) -> str:
        return f"{PIVOT_PREFIX}{leaf(column)}"

    def key_columns(self) -> list[str]:
        keys = [self.foreign_pivot_key, self.related_pivot_key]
        if self.morph_type_column:
            keys.append(self.morph_type_column)
        return keys

    def with_pivot(self, *names: str) -> None:
        """Select extra pivot columns. ``'*'`` defers to schema introspection at execution time."""
        for name in names:
            if name == "*":
                self.all_columns = True
                continue
            validate_identifier(leaf(name))
        self.columns = unique([*self.columns, *(leaf(name) for name in names if name != "*")])

    def with_timestamps(self) -> None:
        self.timestamps = True
        self.with_pivot("created_at", "updated_at")

    # constraints

    def add(self, entry: PivotWhere, query: QueryBuilder[Any] | None) -> None:
        validate_identifier(leaf(entry.column))
        if entry.kind == "basic" or entry.kind == "function" or entry.kind == "json_length":
            check_operator(entry.operator)
        if entry.path is not None:
            validate_json_path(entry.path)
        if entry.function is not None and entry.function not in PIVOT_FUNCTIONS:
            raise InvalidPivotDataError(
                f"Unsupported pivot function {entry.function!r}, expected one of {sorted(PIVOT_FUNCTIONS)}"
            )

        self.wheres.append(entry)
        if query is not None and self.is_joined(query):
            query.push(self.to_predicate(entry))
        else:
            self._staged.append(entry)

    def add_order(self, order: PivotOrder, query: QueryBuilder[Any] | None) -> None:
        validate_identifier(leaf(order.column))
        self.orders.append(order)
        self.with_pivot(order.column)
        if query is not None and self.is_joined(query):
            query.order_by(self.qualify(order.column), order.direction)
        else:
            self._staged_orders.append(order)

    def is_joined(self, query: QueryBuilder[Any]) -> bool:
        return query.has_join(self.table)

    def apply(self, query: QueryBuilder[Any]) -> None:
        """Replay staged constraints and orders into a query that now has the pivot join."""
        for entry in self._staged:
            query.push(self.to_predicate(entry))
        for order in self._staged_orders:
            query.order_by(self.qualify(order.column), order.direction)
        self._staged.clear()
        self._staged_orders.clear()

    def apply_all(self, query: QueryBuilder[Any]) -> None:
        """Apply every registered constraint, used for queries on the pivot table itself."""
        for entry in self.wheres:
            query.push(self.to_predicate(entry))

    def scope_predicates(self) -> tuple[Predicate, ...]:
        """Predicates every pivot row of the relation must satisfy, the morph type for polymorphic pivots."""
        if self.morph_type_column is None or self.morph_class is None:
            return ()
        return (Comparison(self.qualify(self.morph_type_column), "=", self.morph_class),)

    def to_predicate(self, entry: PivotWhere) -> Predicate:
        column = self.qualify(entry.column)
        match entry.kind:
            case "basic":
                return Comparison(column, check_operator(entry.operator), entry.value, entry.connective)
            case "null":
                return Null(column, entry.connective)
            case "not_null":
                return NotNull(column, entry.connective)
            case "in":
                return In(column, entry.values, entry.connective)
            case "not_in":
                return NotIn(column, entry.values, entry.connective)
            case "between":
                low, high = entry.values
                return Between(column, low, high, entry.connective, entry.negated)
            case "function":
                expr = _function_expression(entry.function or "", self._column(entry.column))
                return Comparison(expr, check_operator(entry.operator), entry.value, entry.connective)
            case "json_contains":
                expr = sa.func.json_contains(
                    self._column(entry.column),
                    json.dumps(entry.value),
                    _path_literal(entry.path or "$"),
                )
                return Comparison(expr, "=", 1, entry.connective)
            case "json_length":
                col = self._column(entry.column)
                expr = (
                    sa.func.json_length(col, _path_literal(entry.path))
                    if entry.path
                    else sa.func.json_length(col)
                )
                return Comparison(expr, check_operator(entry.operator), entry.value, entry.connective)
        raise ValueError(f"Unknown pivot constraint kind {entry.kind!r}")

    def _column(self, column: str) -> sa.ColumnElement[Any]:
        try:
            return self.table.c[leaf(column)]
        except KeyError:
            raise ValueError(
                f"Column {leaf(column)!r} not found in pivot table {self.name!r}. "
                f"Available: {[c.key for c in self.table.c]}"
            ) from None

    # columns

    def extra_columns(self, conn: sa.Connection | None) -> list[str]:
        """Requested pivot columns without the keys, resolving ``'*'`` through the schema cache."""
        names = list(self.columns)
        if self.all_columns and conn is not None:
            names.extend(self.schema_cache.columns(conn, self.name))
        keys = set(self.key_columns())
        return [name for name in unique(names) if name not in keys]

    def select_columns(self, query: QueryBuilder[Any], conn: sa.Connection | None) -> None:
        """Add ``<pivot>.<col> AS pivot_<col>`` for both keys and every extra column."""
        for column in (*self.key_columns(), *self.extra_columns(conn)):
            query.add_select(f"{self.qualify(column)} as {self.alias(column)}")

    def order_label(self, column: str) -> str | None:
        """Label of a pivot-table order column inside the selected columns."""
        table, _, name = column.rpartition(".")
        return self.alias(name) if table == self.name else None

    def make_pivot(self, parent: Model | None, data: Mapping[str, Any], exists: bool = True) -> Pivot:
        return self.pivot_class.from_raw_attributes(parent, data, self.table, exists)

    def validate_structure(self, conn: sa.Connection) -> bool:
        """``True`` when the pivot table really has the key columns (and extra columns) expected."""
        return self.schema_cache.has_columns(conn, self.name, *self.key_columns(), *self.columns)


def _function_expression(function: str, column: sa.ColumnElement[Any]) -> sa.ColumnElement[Any]:
    if function in ("month", "year"):
        return sa.extract(function, column)
    return getattr(sa.func, function)(column)


def _path_literal(path: str) -> sa.ColumnElement[Any]:
    # paths cannot be bound as parameters, they are interpolated after validation
    return sa.literal_column(f"'{validate_json_path(path)}'")
