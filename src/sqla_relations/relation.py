from __future__ import annotations

import copy
import sys
from abc import ABC, abstractmethod
from collections.abc import Callable, Hashable, Iterable, Sequence
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

import sqlalchemy as sa
from sqlalchemy.engine import Dialect


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from . import window
from .datastructures import CursorPage, ModelCollection, Page
from .errors import InvalidInputError, InvalidPageSizeError, MissingParentKeyError
from .matching import dictionary_key
from .predicates import ColumnRef, Comparison, In, Predicate, find_in, has_or, references, without, wrap_in_group
from .query import UNSET, QueryBuilder
from .tools import unique


if TYPE_CHECKING:
    from .model import Model

M = TypeVar("M", bound="Model")


class Relation(ABC, Generic[M]):
    """One edge between an owner record and a related model.

    A relation wraps a :class:`QueryBuilder` on the related table. On
    construction it constrains the query to its single owner (lazy mode).
    For eager loading, :meth:`new_eager_instance` copies the accumulated
    constraints without the owner-specific ones, :meth:`add_eager_constraints`
    binds the copy to a whole batch of owners with one ``IN`` predicate,
    and :meth:`match` distributes the results.

    Query methods (``where``, ``order_by``, ``limit`` ...) are forwarded to
    the wrapped builder and return the relation for chaining.
    """

    many: ClassVar[bool] = True

    def __init__(self, query: QueryBuilder[M], parent: Model, foreign_key: str, local_key: str) -> None:
        if query.model is None:
            raise TypeError("Relation query must be bound to a model")
        self.query = query
        self.parent = parent
        self.related: type[M] = query.model
        self.foreign_key = foreign_key
        self.local_key = local_key
        self._owner_constraints: list[Predicate] = []
        self._scope_constraints: list[Predicate] = []
        self._eager_constraints: list[Predicate] = []
        self._eager_keys: tuple[Any, ...] = ()
        self._eager_empty = False
        self.add_constraints()

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {type(self.parent).__name__} -> "
            f"{self.related.__name__} {self.constraint_column!r}>"
        )

    # keys

    @property
    @abstractmethod
    def constraint_column(self) -> str:
        """Qualified column compared with owner key values."""

    @property
    def owner_key_name(self) -> str:
        """Attribute read from owner records to build the constraint."""
        return self.local_key

    def parent_key_value(self) -> Any:
        return self.parent.get_attribute(self.owner_key_name)

    def owner_keys(self, models: Iterable[Model]) -> tuple[Any, ...]:
        """Distinct, non-null owner key values in first-seen order."""
        return tuple(unique(
            key for model in models if (key := model.get_attribute(self.owner_key_name)) is not None
        ))

    def require_parent_key(self) -> Any:
        key = self.parent_key_value()
        if key is None:
            raise MissingParentKeyError(self.parent, self.owner_key_name)
        return key

    # constraints

    def add_constraints(self) -> None:
        """Constrain the query to the single owner.

        Skipped when the owner has no key, or when a batch ``IN`` on the same
        column is already present (``x = ? AND x IN (...)`` would contradict).
        """
        key = self.parent_key_value()
        if key is None:
            return
        if find_in(self.query.wheres, self.constraint_column) is not None:
            return
        self._owner_constraints.append(
            self.query.push(Comparison(self.constraint_column, "=", key))
        )

    def add_eager_constraints(self, models: Sequence[Model]) -> None:
        """Constrain the query to a batch of owners with one ``IN`` predicate.

        Predicates joined with ``OR`` are grouped first so the batch applies
        to all of them: ``(a OR b) AND key IN (...)``.
        """
        keys = self.owner_keys(models)
        self._eager_keys = keys
        self._eager_empty = not keys
        if not keys:
            return
        self._group_existing_predicates()
        self._eager_constraints.append(self.query.push(In(self.constraint_column, keys)))

    def add_scope_constraint(self, node: Predicate) -> Predicate:
        """Push a predicate that must hold for every row, whatever the caller adds with ``OR``."""
        self._scope_constraints.append(self.query.push(node))
        return node

    def _grouped_wheres(self) -> tuple[Predicate, ...] | None:
        """Caller predicates wrapped in one group ahead of the owner, batch and type predicates.

        Returns ``None`` when the caller predicates contain no ``OR``.
        """
        scope = [*self._scope_constraints, *self._owner_constraints, *self._eager_constraints]
        caller = without(self.query.wheres, scope)
        if not has_or(caller):
            return None
        kept = {id(node) for node in scope}
        return (*wrap_in_group(caller), *(node for node in self.query.wheres if id(node) in kept))

    def _group_existing_predicates(self) -> None:
        grouped = self._grouped_wheres()
        if grouped is not None:
            self.query.set_wheres(grouped)

    def scoped_query(self) -> QueryBuilder[M]:
        """The relation query with caller ``OR`` predicates kept inside the owner scope.

        ``rel.where(a).or_where(b)`` on a lazy relation reads
        ``(a OR b) AND owner = ?`` instead of ``(owner = ? AND a) OR b``.
        The wrapped builder itself is left untouched.
        """
        grouped = self._grouped_wheres()
        if grouped is None:
            return self.query
        return self.query.clone().set_wheres(grouped)

    def new_eager_instance(self) -> Self:
        """Copy of this relation for eager loading.

        Keeps the select list, joins, orders, limit, offset and every
        predicate except those tied to the current owner, and binds the copy
        to a blank owner of the same class.
        """
        instance = copy.copy(self)
        instance.parent = self.parent.new_instance()
        instance.query = self.query.clone()
        instance.query.set_wheres(
            node
            for node in without(self.query.wheres, self._owner_constraints)
            if not (isinstance(node, Comparison) and references(node, self.constraint_column))
        )
        instance._owner_constraints = []
        instance._scope_constraints = list(self._scope_constraints)
        instance._eager_constraints = []
        instance._eager_keys = ()
        instance._eager_empty = False
        instance._copy_state(self)
        return instance

    def _copy_state(self, source: Relation[M]) -> None:
        """Hook for subclasses holding extra mutable state."""

    def count_by_owner(self, conn: sa.Connection) -> dict[Hashable, int]:
        """Related row counts keyed by owner key for the current eager batch, in one grouped query."""
        if self._eager_empty or not self._eager_constraints:
            return {}
        counts = self.scoped_query().count_by(conn, self.constraint_column)
        return {dictionary_key(key): count for key, count in counts.items()}

    def owner_count_key(self, model: Model) -> Hashable:
        return dictionary_key(model.get_attribute(self.owner_key_name))

    @property
    def eager_constraints(self) -> tuple[Predicate, ...]:
        return tuple(self._eager_constraints)

    @property
    def eager_keys(self) -> tuple[Any, ...]:
        return self._eager_keys

    # results

    def execution_query(self, conn: sa.Connection) -> QueryBuilder[M]:
        """The query actually executed. Subclasses add pivot or through columns here."""
        return self.scoped_query()

    def window_plan(self, query: QueryBuilder[M]) -> window.WindowPlan | None:
        """Plan for per-owner limiting, ``None`` when the relation cannot be ranked."""
        return None

    def hydrate(self, rows: Iterable[dict[str, Any]]) -> ModelCollection[M]:
        return self.related.hydrate(rows)

    def prepare_results(self, results: ModelCollection[M]) -> ModelCollection[M]:
        """Post-process lazily loaded results. Pivot relations attach pivot records here."""
        return results

    def fetch(self, conn: sa.Connection) -> ModelCollection[M]:
        query = self.execution_query(conn)
        rows = window.fetch_ranked(conn, query, self.window_plan(query))
        if rows is None:
            rows = query.rows(conn)
        return self.hydrate(rows)

    def empty_result(self) -> ModelCollection[M] | None:
        return ModelCollection() if self.many else None

    def get_results(self, conn: sa.Connection) -> Any:
        """Lazily load the relation for the single owner."""
        if self.parent_key_value() is None:
            return self.empty_result()
        results = self.prepare_results(self.fetch(conn))
        return results if self.many else results.first()

    def get_eager(self, conn: sa.Connection) -> ModelCollection[M]:
        """Run the eager query. An empty owner batch issues no SQL."""
        if self._eager_empty:
            return ModelCollection()
        return self.fetch(conn)

    def init_relation(self, models: Iterable[Model], name: str) -> None:
        for model in models:
            model.set_relation(name, self.empty_result())

    @abstractmethod
    def match(self, models: Sequence[Model], results: ModelCollection[M], name: str) -> None:
        """Attach *results* to *models* under *name*."""

    def get(self, conn: sa.Connection) -> Any:
        return self.get_results(conn)

    def load_into(self, conn: sa.Connection, name: str) -> Any:
        """Lazily load and cache the result on the owner."""
        value = self.get_results(conn)
        self.parent.set_relation(name, value)
        return value

    # query forwarding

    def where(self, column: ColumnRef, operator: Any = UNSET, value: Any = UNSET) -> Self:
        self.query.where(column, operator, value)
        return self

    def or_where(self, column: ColumnRef, operator: Any = UNSET, value: Any = UNSET) -> Self:
        self.query.or_where(column, operator, value)
        return self

    def where_in(self, column: ColumnRef, values: Iterable[Any]) -> Self:
        self.query.where_in(column, values)
        return self

    def or_where_in(self, column: ColumnRef, values: Iterable[Any]) -> Self:
        self.query.or_where_in(column, values)
        return self

    def where_not_in(self, column: ColumnRef, values: Iterable[Any]) -> Self:
        self.query.where_not_in(column, values)
        return self

    def or_where_not_in(self, column: ColumnRef, values: Iterable[Any]) -> Self:
        self.query.or_where_not_in(column, values)
        return self

    def where_null(self, column: ColumnRef) -> Self:
        self.query.where_null(column)
        return self

    def or_where_null(self, column: ColumnRef) -> Self:
        self.query.or_where_null(column)
        return self

    def where_not_null(self, column: ColumnRef) -> Self:
        self.query.where_not_null(column)
        return self

    def or_where_not_null(self, column: ColumnRef) -> Self:
        self.query.or_where_not_null(column)
        return self

    def where_between(self, column: ColumnRef, low: Any, high: Any) -> Self:
        self.query.where_between(column, low, high)
        return self

    def where_not_between(self, column: ColumnRef, low: Any, high: Any) -> Self:
        self.query.where_not_between(column, low, high)
        return self

    def where_raw(self, sql: str, **params: Any) -> Self:
        self.query.where_raw(sql, **params)
        return self

    def or_where_raw(self, sql: str, **params: Any) -> Self:
        self.query.or_where_raw(sql, **params)
        return self

    def where_expr(self, expression: sa.ColumnExpressionArgument[bool]) -> Self:
        self.query.where_expr(expression)
        return self

    def or_where_expr(self, expression: sa.ColumnExpressionArgument[bool]) -> Self:
        self.query.or_where_expr(expression)
        return self

    def where_group(self, callback: Callable[[QueryBuilder[M]], Any]) -> Self:
        self.query.where_group(callback)
        return self

    def or_where_group(self, callback: Callable[[QueryBuilder[M]], Any]) -> Self:
        self.query.or_where_group(callback)
        return self

    def select(self, *columns: ColumnRef) -> Self:
        self.query.select(*columns)
        return self

    def add_select(self, *columns: ColumnRef) -> Self:
        self.query.add_select(*columns)
        return self

    def order_by(self, column: ColumnRef, direction: str = "asc") -> Self:
        self.query.order_by(self.qualify_order(column), direction)
        return self

    def order_by_desc(self, column: ColumnRef) -> Self:
        return self.order_by(column, "desc")

    def latest(self, column: str = "created_at") -> Self:
        return self.order_by(column, "desc")

    def oldest(self, column: str = "created_at") -> Self:
        return self.order_by(column, "asc")

    def qualify_order(self, column: ColumnRef) -> ColumnRef:
        if isinstance(column, str) and "." not in column:
            return self.related.qualify(column)
        return column

    def limit(self, value: int | None) -> Self:
        self.query.limit(value)
        return self

    def offset(self, value: int | None) -> Self:
        self.query.offset(value)
        return self

    take = limit
    skip = offset

    def to_sql(self, dialect: Dialect | None = None) -> str:
        return self.scoped_query().to_sql(dialect)

    # reads

    def is_bound(self) -> bool:
        """``True`` once the query is tied to an owner or to an eager batch."""
        return self.parent_key_value() is not None or bool(self._eager_constraints)

    def first(self, conn: sa.Connection) -> M | None:
        if not self.is_bound():
            return None
        query = self.execution_query(conn).clone().limit(1)
        return self.prepare_results(self.hydrate(query.rows(conn))).first()

    def find(self, conn: sa.Connection, key: Any) -> M | None:
        if not self.is_bound():
            return None
        query = self.execution_query(conn).clone()
        query.where(self.related.qualify(self.related.primary_key()), key)
        return self.prepare_results(self.hydrate(query.limit(1).rows(conn))).first()

    def find_many(self, conn: sa.Connection, keys: Iterable[Any]) -> ModelCollection[M]:
        if not self.is_bound():
            return ModelCollection()
        query = self.execution_query(conn).clone()
        query.where_in(self.related.qualify(self.related.primary_key()), list(keys))
        return self.prepare_results(self.hydrate(query.rows(conn)))

    def count(self, conn: sa.Connection) -> int:
        return self.scoped_query().count(conn) if self.is_bound() else 0

    def exists(self, conn: sa.Connection) -> bool:
        return self.is_bound() and self.scoped_query().exists(conn)

    def sum(self, conn: sa.Connection, column: ColumnRef) -> Any:
        return self.scoped_query().sum(conn, self.qualify_order(column)) if self.is_bound() else None

    def avg(self, conn: sa.Connection, column: ColumnRef) -> Any:
        return self.scoped_query().avg(conn, self.qualify_order(column)) if self.is_bound() else None

    def min(self, conn: sa.Connection, column: ColumnRef) -> Any:
        return self.scoped_query().min(conn, self.qualify_order(column)) if self.is_bound() else None

    def max(self, conn: sa.Connection, column: ColumnRef) -> Any:
        return self.scoped_query().max(conn, self.qualify_order(column)) if self.is_bound() else None

    def pluck(self, conn: sa.Connection, column: ColumnRef) -> list[Any]:
        return self.scoped_query().pluck(conn, self.qualify_order(column)) if self.is_bound() else []

    def paginate(self, conn: sa.Connection, per_page: int = 15, page: int = 1) -> Page[M]:
        """Return one page of related records plus the total count.

        Raises:
            InvalidPageSizeError: If *per_page* or *page* is lower than 1.
        """
        if not isinstance(per_page, int) or per_page < 1:
            raise InvalidPageSizeError("per_page", per_page)
        if not isinstance(page, int) or page < 1:
            raise InvalidPageSizeError("page", page)
        if not self.is_bound():
            return Page(ModelCollection(), 0, per_page, page)

        query = self.execution_query(conn)
        total = query.clone().limit(None).offset(None).count(conn)
        rows = query.clone().for_page(page, per_page).rows(conn)
        return Page(self.prepare_results(self.hydrate(rows)), total, per_page, page)

    def chunk_by_id(
        self,
        conn: sa.Connection,
        size: int,
        callback: Callable[[ModelCollection[M]], Any],
    ) -> bool:
        """Feed related records to *callback* in primary-key pages of *size*.

        Uses keyset pagination, so rows inserted or deleted while iterating do
        not shift page boundaries. Returns ``False`` if *callback* stopped the
        iteration by returning ``False``.
        """
        if not isinstance(size, int) or size < 1:
            raise InvalidPageSizeError("size", size)
        if not self.is_bound():
            return True
        pk = self.related.qualify(self.related.primary_key())
        last: Any = None
        while True:
            query = self.execution_query(conn).clone().reorder().order_by(pk).limit(size)
            if last is not None:
                query.where(pk, ">", last)
            chunk = self.prepare_results(self.hydrate(query.rows(conn)))
            if not chunk:
                return True
            if callback(chunk) is False:
                return False
            if len(chunk) < size:
                return True
            last = chunk[-1].key

    def cursor_paginate(
        self,
        conn: sa.Connection,
        per_page: int = 15,
        cursor: Any = None,
        column: str | None = None,
        direction: str = "asc",
    ) -> CursorPage[M]:
        """Return one keyset page of related records ordered by *column*.

        Pass the page's ``next_cursor`` back as *cursor* for the following page.
        No count query is issued, and rows inserted behind the cursor do not
        shift later pages. *column* defaults to the related primary key and
        should be unique.

        Raises:
            InvalidPageSizeError: If *per_page* is lower than 1.
            InvalidInputError: If *column* is not a column of the related table.
            ValueError: If *direction* is not ``"asc"`` or ``"desc"``.
        """
        if not isinstance(per_page, int) or per_page < 1:
            raise InvalidPageSizeError("per_page", per_page)
        normalized = direction.lower()
        if normalized not in ("asc", "desc"):
            raise ValueError(f"Order direction must be 'asc' or 'desc', got {direction!r}")
        name = column or self.related.primary_key()
        if not self.related.has_column(name):
            raise InvalidInputError(f"{self.related.table_name()} has no column {name!r} to paginate by")
        if not self.is_bound():
            return CursorPage(ModelCollection(), per_page, False, None, cursor)

        qualified = self.related.qualify(name)
        query = self.execution_query(conn).clone().reorder().order_by(qualified, normalized).limit(per_page + 1)
        if cursor is not None:
            query.where(qualified, ">" if normalized == "asc" else "<", cursor)
        records = self.prepare_results(self.hydrate(query.rows(conn)))
        has_more = len(records) > per_page
        items = records[:per_page]
        next_cursor = items[-1].get_attribute(name) if has_more else None
        return CursorPage(items, per_page, has_more, next_cursor, cursor)
