from __future__ import annotations

import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Generic, Literal, TypeVar

import sqlalchemy as sa
from sqlalchemy.engine import Dialect


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from . import predicates as p
from .datastructures import ModelCollection, frozendict
from .predicates import ColumnRef, Connective, Predicate


if TYPE_CHECKING:
    from .model import Model

M = TypeVar("M", bound="Model")
Direction = Literal["asc", "desc"]


class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<unset>"


UNSET: Final = _Unset()


@dataclass(frozen=True, slots=True)
class JoinClause:
    table: sa.Table
    first: ColumnRef
    operator: str
    second: ColumnRef
    outer: bool = False


@dataclass(frozen=True, slots=True)
class OrderClause:
    column: ColumnRef
    direction: Direction = "asc"


class QueryBuilder(Generic[M]):
    """Accumulating SELECT builder over one base table.

    Predicates are stored as a :mod:`~sqla_relations.predicates` tree
    rather than as a compiled ``sa.Select``, so relations can inspect and
    rewrite them (OR grouping, eager ``IN`` removal) before execution.
    Everything compiles through SQLAlchemy Core at the last moment.
    """

    __slots__ = (
        "_columns",
        "_distinct",
        "_joins",
        "_limit",
        "_offset",
        "_orders",
        "_wheres",
        "model",
        "table",
    )

    def __init__(self, table: sa.Table, model: type[M] | None = None) -> None:
        self.table = table
        self.model = model
        self._wheres: list[Predicate] = []
        self._joins: list[JoinClause] = []
        self._columns: list[ColumnRef] = []
        self._orders: list[OrderClause] = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._distinct = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.table.name!r} wheres={len(self._wheres)}>"

    # accessors

    @property
    def wheres(self) -> tuple[Predicate, ...]:
        return tuple(self._wheres)

    @property
    def joins(self) -> tuple[JoinClause, ...]:
        return tuple(self._joins)

    @property
    def columns(self) -> tuple[ColumnRef, ...]:
        return tuple(self._columns)

    @property
    def orders(self) -> tuple[OrderClause, ...]:
        return tuple(self._orders)

    @property
    def limit_value(self) -> int | None:
        return self._limit

    @property
    def offset_value(self) -> int | None:
        return self._offset

    def set_wheres(self, nodes: Iterable[Predicate]) -> Self:
        """Replace the predicate list. Used for controlled rewrites only."""
        self._wheres = list(nodes)
        return self

    def push(self, node: Predicate) -> Predicate:
        """Append *node* and return it, so callers can keep its identity."""
        self._wheres.append(node)
        return node

    def has_join(self, table: sa.Table | str) -> bool:
        name = table if isinstance(table, str) else table.name
        return any(join.table.name == name for join in self._joins)

    def from_tables(self) -> dict[str, sa.Table]:
        tables = {self.table.name: self.table}
        for join in self._joins:
            tables.setdefault(join.table.name, join.table)
        return tables

    # predicates

    def where(
        self,
        column: ColumnRef,
        operator: Any = UNSET,
        value: Any = UNSET,
        *,
        connective: Connective = "and",
    ) -> Self:
        """``where("votes", 100)`` or ``where("votes", ">", 100)``."""
        if operator is UNSET:
            raise TypeError("where() requires a value")
        if value is UNSET:
            operator, value = "=", operator
        self._wheres.append(p.Comparison(column, p.check_operator(operator), value, connective))
        return self

    def or_where(self, column: ColumnRef, operator: Any = UNSET, value: Any = UNSET) -> Self:
        return self.where(column, operator, value, connective="or")

    def where_in(
        self, column: ColumnRef, values: Iterable[Any], *, connective: Connective = "and"
    ) -> Self:
        self._wheres.append(p.In(column, tuple(values), connective))
        return self

    def or_where_in(self, column: ColumnRef, values: Iterable[Any]) -> Self:
        return self.where_in(column, values, connective="or")

    def where_not_in(
        self, column: ColumnRef, values: Iterable[Any], *, connective: Connective = "and"
    ) -> Self:
        self._wheres.append(p.NotIn(column, tuple(values), connective))
        return self

    def or_where_not_in(self, column: ColumnRef, values: Iterable[Any]) -> Self:
        return self.where_not_in(column, values, connective="or")

    def where_null(self, column: ColumnRef, *, connective: Connective = "and") -> Self:
        self._wheres.append(p.Null(column, connective))
        return self

    def or_where_null(self, column: ColumnRef) -> Self:
        return self.where_null(column, connective="or")

    def where_not_null(self, column: ColumnRef, *, connective: Connective = "and") -> Self:
        self._wheres.append(p.NotNull(column, connective))
        return self

    def or_where_not_null(self, column: ColumnRef) -> Self:
        return self.where_not_null(column, connective="or")

    def where_between(
        self,
        column: ColumnRef,
        low: Any,
        high: Any,
        *,
        connective: Connective = "and",
        negated: bool = False,
    ) -> Self:
        self._wheres.append(p.Between(column, low, high, connective, negated))
        return self

    def where_not_between(self, column: ColumnRef, low: Any, high: Any) -> Self:
        return self.where_between(column, low, high, negated=True)

    def or_where_between(self, column: ColumnRef, low: Any, high: Any) -> Self:
        return self.where_between(column, low, high, connective="or")

    def where_raw(self, sql: str, *, connective: Connective = "and", **params: Any) -> Self:
        """Raw SQL with ``:name`` placeholders bound from *params*."""
        self._wheres.append(p.Raw(sql, frozendict(params), connective))
        return self

    def or_where_raw(self, sql: str, **params: Any) -> Self:
        return self.where_raw(sql, connective="or", **params)

    def where_expr(
        self, expression: sa.ColumnExpressionArgument[bool], *, connective: Connective = "and"
    ) -> Self:
        """Add a ready SQLAlchemy boolean expression."""
        self._wheres.append(p.Raw(sa.and_(expression), connective=connective))
        return self

    def or_where_expr(self, expression: sa.ColumnExpressionArgument[bool]) -> Self:
        return self.where_expr(expression, connective="or")

    def where_group(
        self, callback: Callable[[QueryBuilder[M]], Any], *, connective: Connective = "and"
    ) -> Self:
        """Collect the predicates added by *callback* into one parenthesised group."""
        inner: QueryBuilder[M] = QueryBuilder(self.table, self.model)
        inner._joins = list(self._joins)
        callback(inner)
        if inner._wheres:
            group = p.wrap_in_group(inner._wheres)[0]
            self._wheres.append(p.Nested(group.children, connective))  # type: ignore[union-attr]
        return self

    def or_where_group(self, callback: Callable[[QueryBuilder[M]], Any]) -> Self:
        return self.where_group(callback, connective="or")

    # joins, columns, ordering

    def join(
        self,
        table: sa.Table,
        first: ColumnRef,
        operator: str,
        second: ColumnRef,
        *,
        outer: bool = False,
    ) -> Self:
        self._joins.append(JoinClause(table, first, p.check_operator(operator), second, outer))
        return self

    def left_join(self, table: sa.Table, first: ColumnRef, operator: str, second: ColumnRef) -> Self:
        return self.join(table, first, operator, second, outer=True)

    def select(self, *columns: ColumnRef) -> Self:
        self._columns = list(columns)
        return self

    def add_select(self, *columns: ColumnRef) -> Self:
        if not self._columns:
            self._columns = [f"{self.table.name}.*"]
        self._columns.extend(column for column in columns if column not in self._columns)
        return self

    def order_by(self, column: ColumnRef, direction: str = "asc") -> Self:
        normalized = direction.lower()
        if normalized not in ("asc", "desc"):
            raise ValueError(f"Order direction must be 'asc' or 'desc', got {direction!r}")
        self._orders.append(OrderClause(column, normalized))  # type: ignore[arg-type]
        return self

    def order_by_desc(self, column: ColumnRef) -> Self:
        return self.order_by(column, "desc")

    def latest(self, column: ColumnRef = "created_at") -> Self:
        return self.order_by(column, "desc")

    def oldest(self, column: ColumnRef = "created_at") -> Self:
        return self.order_by(column, "asc")

    def reorder(self) -> Self:
        self._orders = []
        return self

    def limit(self, value: int | None) -> Self:
        self._limit = None if value is None else max(int(value), 0)
        return self

    def offset(self, value: int | None) -> Self:
        self._offset = None if value is None else max(int(value), 0)
        return self

    take = limit
    skip = offset

    def for_page(self, page: int, per_page: int) -> Self:
        return self.offset((page - 1) * per_page).limit(per_page)

    def distinct(self, value: bool = True) -> Self:
        self._distinct = value
        return self

    def clone(self) -> QueryBuilder[M]:
        other: QueryBuilder[M] = QueryBuilder(self.table, self.model)
        other._wheres = list(self._wheres)
        other._joins = list(self._joins)
        other._columns = list(self._columns)
        other._orders = list(self._orders)
        other._limit = self._limit
        other._offset = self._offset
        other._distinct = self._distinct
        return other

    # compilation

    def resolve(self, ref: ColumnRef) -> sa.ColumnElement[Any]:
        """Resolve ``"column"`` or ``"table.column"`` against the query's FROM tables.

        Raises ``ValueError`` if the table or column is unknown.
        """
        if not isinstance(ref, str):
            return ref
        table_name, _, name = ref.rpartition(".")
        tables = self.from_tables()
        table = tables.get(table_name) if table_name else self.table
        if table is None:
            raise ValueError(
                f"Table {table_name!r} is not part of the query. Available: {list(tables)}"
            )
        try:
            return table.c[name]
        except KeyError:
            raise ValueError(
                f"Column {name!r} not found in table {table.name!r}. "
                f"Available: {[c.key for c in table.c]}"
            ) from None

    def selected_columns(self) -> list[sa.ColumnElement[Any]]:
        """Expand the select list, ``*`` and ``table.*`` included."""
        if not self._columns:
            return list(self.table.c)

        tables = self.from_tables()
        out: list[sa.ColumnElement[Any]] = []
        for column in self._columns:
            if not isinstance(column, str):
                out.append(column)
                continue
            name, sep, alias = column.partition(" as ")
            name = name.strip()
            if name == "*":
                out.extend(self.table.c)
            elif name.endswith(".*"):
                table_name = name[:-2]
                if table_name not in tables:
                    raise ValueError(f"Table {table_name!r} is not part of the query")
                out.extend(tables[table_name].c)
            elif sep:
                out.append(self.resolve(name).label(alias.strip()))
            else:
                out.append(self.resolve(name))
        return out

    def where_clause(self) -> sa.ColumnElement[bool] | None:
        return p.render(self._wheres, self.resolve)

    def from_clause(self) -> sa.FromClause:
        from_: sa.FromClause = self.table
        for join in self._joins:
            on = p.render_node(
                p.Comparison(join.first, join.operator, self.resolve(join.second)), self.resolve
            )
            from_ = from_.join(join.table, on, isouter=join.outer)
        return from_

    def to_select(self) -> sa.Select[Any]:
        stmt = sa.select(*self.selected_columns()).select_from(self.from_clause())
        where = self.where_clause()
        if where is not None:
            stmt = stmt.where(where)
        if self._orders:
            stmt = stmt.order_by(*(
                self.resolve(order.column).desc() if order.direction == "desc"
                else self.resolve(order.column).asc()
                for order in self._orders
            ))
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        if self._offset:
            stmt = stmt.offset(self._offset)
        if self._distinct:
            stmt = stmt.distinct()
        return stmt

    def to_sql(self, dialect: Dialect | None = None) -> str:
        return str(self.to_select().compile(dialect=dialect))

    def bindings(self, dialect: Dialect | None = None) -> dict[str, Any]:
        return dict(self.to_select().compile(dialect=dialect).params)

    # execution

    def rows(self, conn: sa.Connection) -> list[dict[str, Any]]:
        return [dict(row) for row in conn.execute(self.to_select()).mappings()]

    def get(self, conn: sa.Connection) -> ModelCollection[M]:
        if self.model is None:
            raise TypeError(f"Query on {self.table.name!r} is not bound to a model, use rows()")
        return self.model.hydrate(self.rows(conn))

    def first(self, conn: sa.Connection) -> M | None:
        return self.clone().limit(1).get(conn).first()

    def count(self, conn: sa.Connection) -> int:
        inner = self.clone().reorder().to_select().subquery("counted")
        return int(conn.execute(sa.select(sa.func.count()).select_from(inner)).scalar_one())

    def exists(self, conn: sa.Connection) -> bool:
        return bool(conn.execute(sa.select(self.clone().reorder().to_select().exists())).scalar())

    def _aggregate(self, conn: sa.Connection, function: str, column: ColumnRef) -> Any:
        expr = getattr(sa.func, function)(self.resolve(column)).label("aggregate")
        stmt = self.clone().reorder().limit(None).offset(None).select(expr).to_select()
        return conn.execute(stmt).scalar()

    def sum(self, conn: sa.Connection, column: ColumnRef) -> Any:
        return self._aggregate(conn, "sum", column)

    def avg(self, conn: sa.Connection, column: ColumnRef) -> Any:
        return self._aggregate(conn, "avg", column)

    def min(self, conn: sa.Connection, column: ColumnRef) -> Any:
        return self._aggregate(conn, "min", column)

    def max(self, conn: sa.Connection, column: ColumnRef) -> Any:
        return self._aggregate(conn, "max", column)

    def count_by(self, conn: sa.Connection, column: ColumnRef) -> dict[Any, int]:
        """Row counts grouped by *column*, groups without rows are absent."""
        key = self.resolve(column)
        stmt = (
            self.clone()
            .reorder()
            .limit(None)
            .offset(None)
            .select(key.label("group_key"), sa.func.count().label("aggregate"))
            .to_select()
            .group_by(key)
        )
        return {row.group_key: int(row.aggregate) for row in conn.execute(stmt)}

    def pluck(self, conn: sa.Connection, column: ColumnRef) -> list[Any]:
        stmt = self.clone().select(self.resolve(column)).to_select()
        return list(conn.execute(stmt).scalars())

    def insert(self, conn: sa.Connection, records: Sequence[Mapping[str, Any]]) -> int:
        if not records:
            return 0
        conn.execute(sa.insert(self.table), [dict(record) for record in records])
        return len(records)

    def _write_filter(self) -> sa.ColumnElement[bool] | None:
        if not self._joins:
            return self.where_clause()
        # joined writes go through a derived table of matching primary keys
        pk = next(iter(self.table.primary_key))
        keys = self.clone().reorder().select(pk).to_select().subquery("write_keys")
        return pk.in_(sa.select(keys.c[pk.name]))

    def update(self, conn: sa.Connection, values: Mapping[str, Any]) -> int:
        stmt = sa.update(self.table).values(dict(values))
        where = self._write_filter()
        if where is not None:
            stmt = stmt.where(where)
        return conn.execute(stmt).rowcount

    def delete(self, conn: sa.Connection) -> int:
        stmt = sa.delete(self.table)
        where = self._write_filter()
        if where is not None:
            stmt = stmt.where(where)
        return conn.execute(stmt).rowcount
