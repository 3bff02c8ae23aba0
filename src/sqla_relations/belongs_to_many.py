from __future__ import annotations

import sys
from collections.abc import Hashable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final, TypeVar

import sqlalchemy as sa


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from . import matching
from .datastructures import ModelCollection
from .model import Pivot
from .errors import InvalidPivotDataError
from .pivot import (
    PivotConstraintSet,
    PivotOrder,
    PivotWhere,
    format_sync_records,
    validate_identifier,
    validate_pivot_data,
    validate_related_id,
)
from .predicates import ColumnRef, Connective, column_key, has_or, wrap_in_group
from .query import UNSET, QueryBuilder
from .relation import Relation
from .schema import SchemaCache, default_schema_cache
from .tools import batched, leaf, transaction, utcnow
from .window import Partition, WindowPlan


if TYPE_CHECKING:
    from .model import Model

M = TypeVar("M", bound="Model")

SYNC_CHUNK_THRESHOLD: Final[int] = 5000
DEFAULT_SYNC_CHUNK_SIZE: Final[int] = 1000

SyncChanges = dict[str, list[Any]]


class BelongsToMany(Relation[M]):
    """Many-to-many through a pivot table.

    ``Post.belongs_to_many(Tag)`` joins ``tags.id = post_tag.tag_id`` and
    constrains ``post_tag.post_id``. Every related record gets a pivot
    record under :attr:`accessor` (``"pivot"`` by default) holding both keys
    and any extra columns requested with :meth:`with_pivot`.
    """

    def __init__(
        self,
        query: QueryBuilder[M],
        parent: Model,
        table: sa.Table,
        foreign_pivot_key: str,
        related_pivot_key: str,
        parent_key: str,
        related_key: str,
        *,
        schema_cache: SchemaCache | None = None,
    ) -> None:
        self.related_key = related_key
        self.parent_key = parent_key
        self.pivot = PivotConstraintSet(
            table=table,
            foreign_pivot_key=foreign_pivot_key,
            related_pivot_key=related_pivot_key,
            morph_type_column=self.morph_type_column(),
            morph_class=self.pivot_morph_class(),
            schema_cache=schema_cache or default_schema_cache,
        )
        super().__init__(query, parent, foreign_pivot_key, parent_key)

    def morph_type_column(self) -> str | None:
        return None

    def pivot_morph_class(self) -> str | None:
        return None

    @property
    def constraint_column(self) -> str:
        return self.pivot.qualify(self.pivot.foreign_pivot_key)

    @property
    def related_pivot_column(self) -> str:
        return self.pivot.qualify(self.pivot.related_pivot_key)

    @property
    def accessor(self) -> str:
        return self.pivot.accessor

    def _copy_state(self, source: Relation[M]) -> None:
        if not isinstance(source, BelongsToMany):
            raise TypeError(f"Cannot copy pivot state from {type(source).__name__}")
        self.pivot = source.pivot.copy()

    # configuration

    def with_pivot(self, *columns: str) -> Self:
        """Select extra pivot columns as ``pivot_<name>``. ``'*'`` selects all of them."""
        self.pivot.with_pivot(*columns)
        return self

    def with_timestamps(self) -> Self:
        self.pivot.with_timestamps()
        return self

    def as_(self, accessor: str) -> Self:
        """Rename the relation under which pivot records are attached."""
        self.pivot.accessor = accessor
        return self

    def using(self, pivot_class: type[Pivot]) -> Self:
        self.pivot.pivot_class = pivot_class
        return self

    def with_schema_cache(self, cache: SchemaCache) -> Self:
        self.pivot.schema_cache = cache
        return self

    # pivot constraints

    def _pivot_where(self, entry: PivotWhere) -> Self:
        self.pivot.add(entry, self.query)
        return self

    def where_pivot(
        self,
        column: str,
        operator: Any = UNSET,
        value: Any = UNSET,
        *,
        connective: Connective = "and",
    ) -> Self:
        if value is UNSET:
            operator, value = "=", operator
        return self._pivot_where(PivotWhere("basic", column, operator, value, connective=connective))

    def or_where_pivot(self, column: str, operator: Any = UNSET, value: Any = UNSET) -> Self:
        return self.where_pivot(column, operator, value, connective="or")

    def where_pivot_in(
        self, column: str, values: Iterable[Any], *, connective: Connective = "and"
    ) -> Self:
        return self._pivot_where(PivotWhere("in", column, values=tuple(values), connective=connective))

    def or_where_pivot_in(self, column: str, values: Iterable[Any]) -> Self:
        return self.where_pivot_in(column, values, connective="or")

    def where_pivot_not_in(
        self, column: str, values: Iterable[Any], *, connective: Connective = "and"
    ) -> Self:
        return self._pivot_where(PivotWhere("not_in", column, values=tuple(values), connective=connective))

    def or_where_pivot_not_in(self, column: str, values: Iterable[Any]) -> Self:
        return self.where_pivot_not_in(column, values, connective="or")

    def where_pivot_null(self, column: str, *, connective: Connective = "and") -> Self:
        return self._pivot_where(PivotWhere("null", column, connective=connective))

    def or_where_pivot_null(self, column: str) -> Self:
        return self.where_pivot_null(column, connective="or")

    def where_pivot_not_null(self, column: str, *, connective: Connective = "and") -> Self:
        return self._pivot_where(PivotWhere("not_null", column, connective=connective))

    def or_where_pivot_not_null(self, column: str) -> Self:
        return self.where_pivot_not_null(column, connective="or")

    def where_pivot_between(
        self,
        column: str,
        low: Any,
        high: Any,
        *,
        connective: Connective = "and",
        negated: bool = False,
    ) -> Self:
        return self._pivot_where(
            PivotWhere("between", column, values=(low, high), connective=connective, negated=negated)
        )

    def or_where_pivot_between(self, column: str, low: Any, high: Any) -> Self:
        return self.where_pivot_between(column, low, high, connective="or")

    def where_pivot_not_between(self, column: str, low: Any, high: Any) -> Self:
        return self.where_pivot_between(column, low, high, negated=True)

    def or_where_pivot_not_between(self, column: str, low: Any, high: Any) -> Self:
        return self.where_pivot_between(column, low, high, connective="or", negated=True)

    def _where_pivot_function(self, function: str, column: str, operator: Any, value: Any) -> Self:
        if value is UNSET:
            operator, value = "=", operator
        return self._pivot_where(PivotWhere("function", column, operator, value, function=function))

    def where_pivot_date(self, column: str, operator: Any = UNSET, value: Any = UNSET) -> Self:
        return self._where_pivot_function("date", column, operator, value)

    def where_pivot_month(self, column: str, operator: Any = UNSET, value: Any = UNSET) -> Self:
        return self._where_pivot_function("month", column, operator, value)

    def where_pivot_year(self, column: str, operator: Any = UNSET, value: Any = UNSET) -> Self:
        return self._where_pivot_function("year", column, operator, value)

    def where_pivot_time(self, column: str, operator: Any = UNSET, value: Any = UNSET) -> Self:
        return self._where_pivot_function("time", column, operator, value)

    def where_pivot_json_contains(self, column: str, value: Any, path: str = "$") -> Self:
        """``JSON_CONTAINS(<pivot>.column, value, path)``. *path* is validated, then inlined."""
        return self._pivot_where(PivotWhere("json_contains", column, value=value, path=path))

    def where_pivot_json_length(
        self, column: str, operator: Any = UNSET, value: Any = UNSET, path: str | None = None
    ) -> Self:
        if value is UNSET:
            operator, value = "=", operator
        return self._pivot_where(PivotWhere("json_length", column, operator, value, path=path))

    def order_by_pivot(self, column: str, direction: str = "asc") -> Self:
        self.pivot.add_order(PivotOrder(column, direction.lower()), self.query)
        return self

    # query construction

    def perform_join(self) -> QueryBuilder[M]:
        """Join the pivot table once and replay staged pivot constraints."""
        if not self.pivot.is_joined(self.query):
            self.query.join(
                self.pivot.table,
                self.related.qualify(self.related_key),
                "=",
                self.related_pivot_column,
            )
            for node in self.pivot.scope_predicates():
                self.add_scope_constraint(node)
        self.pivot.apply(self.query)
        return self.query

    def add_constraints(self) -> None:
        if self.parent_key_value() is None:
            return
        self.perform_join()
        super().add_constraints()

    def add_eager_constraints(self, models: Sequence[Model]) -> None:
        self.perform_join()
        super().add_eager_constraints(models)

    def execution_query(self, conn: sa.Connection) -> QueryBuilder[M]:
        self.perform_join()
        query = self.scoped_query().clone()
        if not query.columns:
            query.select(f"{self.related.table_name()}.*")
        self.pivot.select_columns(query, conn)
        return query

    def window_partitions(self) -> tuple[Partition, ...]:
        return (Partition(self.pivot.alias(self.pivot.foreign_pivot_key), self._eager_keys),)

    def window_plan(self, query: QueryBuilder[M]) -> WindowPlan | None:
        if not self._eager_constraints:
            return None
        return WindowPlan(
            partitions=self.window_partitions(),
            eager_predicates=tuple(self._eager_constraints),
            tiebreaker=self.related.primary_key(),
            order_label=self._order_label,
        )

    def _order_label(self, column: ColumnRef) -> str:
        key = column_key(column)
        return self.pivot.order_label(key) or leaf(key)

    # matching

    def result_owner_key(self, result: Model) -> Hashable:
        return matching.dictionary_key(
            result.get_attribute(self.pivot.alias(self.pivot.foreign_pivot_key))
        )

    def owner_match_key(self, model: Model) -> Hashable:
        return matching.dictionary_key(model.get_attribute(self.parent_key))

    def match(self, models: Sequence[Model], results: ModelCollection[M], name: str) -> None:
        matching.match_pivot(
            models,
            results,
            name=name,
            result_owner_key=self.result_owner_key,
            owner_key=self.owner_match_key,
            related_key=self.related_key,
            make_pivot=self.pivot.make_pivot,
            accessor=self.pivot.accessor,
        )

    def prepare_results(self, results: ModelCollection[M]) -> ModelCollection[M]:
        for result in results:
            raw = result.remove_attributes_by_prefix(matching.PIVOT_PREFIX)
            data = {column[len(matching.PIVOT_PREFIX):]: value for column, value in raw.items()}
            result.set_relation(self.pivot.accessor, self.pivot.make_pivot(self.parent, data))
        return results

    # pivot table access

    def pivot_query(self) -> QueryBuilder[Any]:
        """Query on the pivot table scoped to the owner and every pivot constraint."""
        query: QueryBuilder[Any] = QueryBuilder(self.pivot.table)
        self.pivot.apply_all(query)
        if has_or(query.wheres):
            query.set_wheres(wrap_in_group(query.wheres))
        query.where(self.constraint_column, self.require_parent_key())
        for node in self.pivot.scope_predicates():
            query.push(node)
        return query

    def _current_rows(
        self, conn: sa.Connection, ids: Iterable[Any] | None = None
    ) -> dict[Hashable, dict[str, Any]]:
        query = self.pivot_query()
        if ids is not None:
            query.where_in(self.related_pivot_column, list(ids))
        key = self.pivot.related_pivot_key
        return {matching.dictionary_key(row[key]): row for row in query.rows(conn)}

    def get_current_pivot_ids(self, conn: sa.Connection) -> list[Any]:
        return self.pivot_query().pluck(conn, self.related_pivot_column)

    def pivot_exists(self, conn: sa.Connection, related_id: Any, **constraints: Any) -> bool:
        """``True`` when a pivot row links the owner to *related_id* (and matches *constraints*)."""
        query = self.pivot_query().where(self.related_pivot_column, validate_related_id(related_id))
        for column, value in constraints.items():
            query.where(self.pivot.qualify(column), value)
        return query.exists(conn)

    def distinct_pivot(self, conn: sa.Connection, column: str) -> list[Any]:
        return self.pivot_query().distinct().pluck(conn, self.pivot.qualify(column))

    def sum_pivot(self, conn: sa.Connection, column: str) -> Any:
        """Sum of a pivot column over the related rows, ``None`` when nothing matches."""
        return self.sum(conn, self.pivot.qualify(validate_identifier(leaf(column))))

    def avg_pivot(self, conn: sa.Connection, column: str) -> Any:
        return self.avg(conn, self.pivot.qualify(validate_identifier(leaf(column))))

    def min_pivot(self, conn: sa.Connection, column: str) -> Any:
        return self.min(conn, self.pivot.qualify(validate_identifier(leaf(column))))

    def max_pivot(self, conn: sa.Connection, column: str) -> Any:
        return self.max(conn, self.pivot.qualify(validate_identifier(leaf(column))))

    def find_by_pivot(self, conn: sa.Connection, column: str, value: Any) -> M | None:
        return self.get_by_pivot(conn, column, value, limit=1).first()

    def get_by_pivot(
        self, conn: sa.Connection, column: str, value: Any, *, limit: int | None = None
    ) -> ModelCollection[M]:
        if not self.is_bound():
            return ModelCollection()
        query = self.execution_query(conn).clone().where(self.pivot.qualify(column), value)
        if limit is not None:
            query.limit(limit)
        return self.prepare_results(self.hydrate(query.rows(conn)))

    def validate_pivot_structure(self, conn: sa.Connection) -> bool:
        return self.pivot.validate_structure(conn)

    # mutations

    def _pivot_record(self, parent_key: Any, related_id: Any, data: Mapping[str, Any]) -> dict[str, Any]:
        record: dict[str, Any] = {
            self.pivot.foreign_pivot_key: parent_key,
            self.pivot.related_pivot_key: related_id,
        }
        record.update(self.morph_attributes())
        if self.pivot.timestamps:
            now = utcnow()
            record["created_at"] = now
            record["updated_at"] = now
        record.update(data)
        return record

    def morph_attributes(self) -> dict[str, Any]:
        return {}

    def _insert(self, conn: sa.Connection, parent_key: Any, records: Mapping[Any, Mapping[str, Any]]) -> None:
        rows = [self._pivot_record(parent_key, rid, data) for rid, data in records.items()]
        if rows:
            conn.execute(sa.insert(self.pivot.table), rows)

    def _delete_ids(self, conn: sa.Connection, ids: Sequence[Any]) -> int:
        if not ids:
            return 0
        return self.pivot_query().where_in(self.related_pivot_column, ids).delete(conn)

    def _update_row(self, conn: sa.Connection, related_id: Any, data: Mapping[str, Any]) -> int:
        values = dict(data)
        if self.pivot.timestamps and "updated_at" not in values:
            values["updated_at"] = utcnow()
        if not values:
            return 0
        return self.pivot_query().where(self.related_pivot_column, related_id).update(conn, values)

    @staticmethod
    def _changed(row: Mapping[str, Any], data: Mapping[str, Any]) -> bool:
        return any(row.get(column) != value for column, value in data.items())

    def touch_parent(self, conn: sa.Connection) -> None:
        self.parent.touch(conn)

    def attach(
        self,
        conn: sa.Connection,
        ids: Any,
        attributes: Mapping[str, Any] | None = None,
        *,
        touch: bool = True,
    ) -> None:
        """Insert pivot rows linking the owner to *ids*.

        *ids* may be one id or record, several ids, or a mapping of id to
        per-row pivot data. *attributes* apply to every inserted row.

        Runs inside :func:`~sqla_relations.tools.transaction`. When *conn* is
        already in a transaction (an autobegun one included) the insert only
        releases a SAVEPOINT and the caller must still ``conn.commit()``.

        Raises:
            MissingParentKeyError: If the owner has no key.
            InvalidPivotDataError: If pivot data is not identifier -> scalar.
        """
        records = format_sync_records(ids)
        shared = validate_pivot_data(attributes or {})
        parent_key = self.require_parent_key()
        if not records:
            return
        with transaction(conn):
            self._insert(conn, parent_key, {rid: {**shared, **data} for rid, data in records.items()})
            if touch:
                self.touch_parent(conn)

    def attach_with_pivot_data(
        self, conn: sa.Connection, records: Mapping[Any, Mapping[str, Any]], *, touch: bool = True
    ) -> list[Any]:
        """Attach ``{related_id: pivot_data}`` in one insert and return the attached ids.

        Raises:
            InvalidPivotDataError: If *records* is not a mapping.
        """
        if not isinstance(records, Mapping):
            raise InvalidPivotDataError(
                f"attach_with_pivot_data expects a mapping of related id to pivot data, got {type(records).__name__}"
            )
        formatted = format_sync_records(records)
        self.attach(conn, formatted, touch=touch)
        return list(formatted)

    def detach(self, conn: sa.Connection, ids: Any = None, *, touch: bool = True) -> int:
        """Delete pivot rows for *ids*, or every pivot row of the owner when *ids* is ``None``.

        Returns the number of deleted rows.
        """
        records = None if ids is None else format_sync_records(ids)
        self.require_parent_key()
        if records is not None and not records:
            return 0
        with transaction(conn):
            query = self.pivot_query()
            if records is not None:
                query.where_in(self.related_pivot_column, list(records))
            deleted = query.delete(conn)
            if touch and deleted:
                self.touch_parent(conn)
        return deleted

    def sync(
        self,
        conn: sa.Connection,
        ids: Any,
        detaching: bool = True,
        *,
        touch: bool = True,
    ) -> SyncChanges:
        """Make the owner's pivot rows match *ids* exactly.

        Current rows are loaded once, missing ids are attached, rows whose
        pivot data differs are updated, and (when *detaching*) ids absent
        from *ids* are detached, all in one transaction. Above
        :data:`SYNC_CHUNK_THRESHOLD` ids the work is delegated to
        :meth:`sync_chunked`.

        As with :meth:`attach`, an outer transaction already open on *conn*
        is not committed here.

        Returns:
            ``{"attached": [...], "detached": [...], "updated": [...]}``
        """
        records = format_sync_records(ids)
        parent_key = self.require_parent_key()
        if len(records) > SYNC_CHUNK_THRESHOLD:
            return self.sync_chunked(conn, records, detaching, touch=touch)

        changes: SyncChanges = {"attached": [], "detached": [], "updated": []}
        with transaction(conn):
            current = self._current_rows(conn)
            wanted = {matching.dictionary_key(rid): rid for rid in records}
            if detaching:
                key = self.pivot.related_pivot_key
                stale = [row[key] for k, row in current.items() if k not in wanted]
                self._delete_ids(conn, stale)
                changes["detached"] = stale
            self._apply_records(conn, parent_key, records, current, changes)
            if touch and any(changes.values()):
                self.touch_parent(conn)
        return changes

    def sync_without_detaching(self, conn: sa.Connection, ids: Any, *, touch: bool = True) -> SyncChanges:
        return self.sync(conn, ids, detaching=False, touch=touch)

    def sync_with_pivot_values(
        self,
        conn: sa.Connection,
        ids: Any,
        values: Mapping[str, Any],
        detaching: bool = True,
        *,
        touch: bool = True,
    ) -> SyncChanges:
        """:meth:`sync` with the same pivot *values* written to every id."""
        shared = validate_pivot_data(values)
        records = format_sync_records(ids)
        return self.sync(conn, {rid: {**data, **shared} for rid, data in records.items()}, detaching, touch=touch)

    def sync_chunked(
        self,
        conn: sa.Connection,
        ids: Any,
        detaching: bool = True,
        chunk_size: int = DEFAULT_SYNC_CHUNK_SIZE,
        *,
        touch: bool = True,
    ) -> SyncChanges:
        """:meth:`sync` for very large id sets.

        Stale rows are found by a keyset scan over the owner's current pivot
        ids, and each batch of wanted ids only looks up the current rows for
        that batch, so neither phase loads the whole pivot set at once.
        """
        records = format_sync_records(ids)
        parent_key = self.require_parent_key()
        changes: SyncChanges = {"attached": [], "detached": [], "updated": []}
        column = self.related_pivot_column
        key = self.pivot.related_pivot_key

        with transaction(conn):
            if detaching:
                wanted = {matching.dictionary_key(rid) for rid in records}
                stale: list[Any] = []
                last: Any = None
                while True:
                    page_query = self.pivot_query().select(column).order_by(column).limit(chunk_size)
                    if last is not None:
                        page_query.where(column, ">", last)
                    page = [row[key] for row in page_query.rows(conn)]
                    if not page:
                        break
                    stale.extend(rid for rid in page if matching.dictionary_key(rid) not in wanted)
                    if len(page) < chunk_size:
                        break
                    last = page[-1]
                for batch in batched(stale, chunk_size):
                    self._delete_ids(conn, batch)
                changes["detached"] = stale

            for batch in batched(records.items(), chunk_size):
                chunk = dict(batch)
                current = self._current_rows(conn, list(chunk))
                self._apply_records(conn, parent_key, chunk, current, changes)

            if touch and any(changes.values()):
                self.touch_parent(conn)
        return changes

    def _apply_records(
        self,
        conn: sa.Connection,
        parent_key: Any,
        records: Mapping[Any, Mapping[str, Any]],
        current: Mapping[Hashable, Mapping[str, Any]],
        changes: SyncChanges,
    ) -> None:
        to_attach: dict[Any, Mapping[str, Any]] = {}
        for rid, data in records.items():
            row = current.get(matching.dictionary_key(rid))
            if row is None:
                to_attach[rid] = data
            elif data and self._changed(row, data):
                self._update_row(conn, rid, data)
                changes["updated"].append(rid)
        self._insert(conn, parent_key, to_attach)
        changes["attached"].extend(to_attach)

    def toggle(self, conn: sa.Connection, ids: Any, *, touch: bool = True) -> SyncChanges:
        """Detach the ids that are attached and attach the others."""
        records = format_sync_records(ids)
        parent_key = self.require_parent_key()
        changes: SyncChanges = {"attached": [], "detached": []}
        if not records:
            return changes
        with transaction(conn):
            current = self._current_rows(conn, list(records))
            present = [rid for rid in records if matching.dictionary_key(rid) in current]
            absent = {rid: data for rid, data in records.items() if matching.dictionary_key(rid) not in current}
            self._delete_ids(conn, present)
            self._insert(conn, parent_key, absent)
            changes["detached"] = present
            changes["attached"] = list(absent)
            if touch and (present or absent):
                self.touch_parent(conn)
        return changes

    def update_existing_pivot(
        self,
        conn: sa.Connection,
        related_id: Any,
        attributes: Mapping[str, Any],
        *,
        touch: bool = True,
    ) -> int:
        """Update the pivot row for *related_id*, returns the affected row count."""
        rid = validate_related_id(related_id)
        data = validate_pivot_data(attributes)
        self.require_parent_key()
        with transaction(conn):
            updated = self._update_row(conn, rid, data)
            if touch and updated:
                self.touch_parent(conn)
        return updated

    def update_or_attach(
        self, conn: sa.Connection, related_id: Any, attributes: Mapping[str, Any] | None = None
    ) -> bool:
        """Update the pivot row if present, attach otherwise. ``True`` when attached."""
        rid = validate_related_id(related_id)
        data = validate_pivot_data(attributes or {})
        with transaction(conn):
            if self.pivot_exists(conn, rid):
                self.update_existing_pivot(conn, rid, data)
                return False
            self.attach(conn, rid, data)
            return True

    # related writes

    def create(
        self,
        conn: sa.Connection,
        attributes: Mapping[str, Any] | None = None,
        pivot_data: Mapping[str, Any] | None = None,
    ) -> M:
        """Insert a related record and attach it in one transaction."""
        data = validate_pivot_data(pivot_data or {})
        self.require_parent_key()
        with transaction(conn):
            instance = self.related(attributes).save(conn)
            self.attach(conn, instance.key, data)
        instance.set_relation(self.pivot.accessor, self.pivot.make_pivot(self.parent, data))
        return instance

    def save(self, conn: sa.Connection, model: M, pivot_data: Mapping[str, Any] | None = None) -> M:
        data = validate_pivot_data(pivot_data or {})
        self.require_parent_key()
        with transaction(conn):
            model.save(conn)
            self.attach(conn, model.key, data)
        return model

    def first_or_create(
        self,
        conn: sa.Connection,
        attributes: Mapping[str, Any],
        pivot_data: Mapping[str, Any] | None = None,
    ) -> M:
        self.require_parent_key()
        query = self.execution_query(conn).clone()
        for column, value in attributes.items():
            query.where(self.related.qualify(column), value)
        found = self.prepare_results(self.hydrate(query.limit(1).rows(conn))).first()
        return found if found is not None else self.create(conn, attributes, pivot_data)


class MorphToMany(BelongsToMany[M]):
    """Polymorphic many-to-many: the pivot stores ``<name>_type`` next to ``<name>_id``.

    ``Post.morph_to_many(Tag, "taggable")`` reads ``taggables`` rows whose
    ``taggable_type`` is the owner's morph class. The inverse direction
    (:class:`MorphedByMany`) filters on the related class instead.
    """

    inverse = False

    def __init__(
        self,
        query: QueryBuilder[M],
        parent: Model,
        name: str,
        table: sa.Table,
        foreign_pivot_key: str,
        related_pivot_key: str,
        parent_key: str,
        related_key: str,
        *,
        schema_cache: SchemaCache | None = None,
    ) -> None:
        self.morph_name = name
        related = query.model
        if related is None:
            raise TypeError("Relation query must be bound to a model")
        self.morph_class = related.morph_class() if self.inverse else type(parent).morph_class()
        super().__init__(
            query,
            parent,
            table,
            foreign_pivot_key,
            related_pivot_key,
            parent_key,
            related_key,
            schema_cache=schema_cache,
        )

    def morph_type_column(self) -> str:
        return f"{self.morph_name}_type"

    def pivot_morph_class(self) -> str:
        return self.morph_class

    def morph_attributes(self) -> dict[str, Any]:
        return {self.morph_type_column(): self.morph_class}

    def window_partitions(self) -> tuple[Partition, ...]:
        if self.inverse:
            return super().window_partitions()
        return (
            Partition(self.pivot.alias(self.morph_type_column()), (self.morph_class,)),
            Partition(self.pivot.alias(self.pivot.foreign_pivot_key), self._eager_keys),
        )

    def result_owner_key(self, result: Model) -> Hashable:
        if self.inverse:
            return super().result_owner_key(result)
        return matching.morph_key(
            result.get_attribute(self.pivot.alias(self.morph_type_column())),
            result.get_attribute(self.pivot.alias(self.pivot.foreign_pivot_key)),
        )

    def owner_match_key(self, model: Model) -> Hashable:
        if self.inverse:
            return super().owner_match_key(model)
        return matching.morph_key(type(model).morph_class(), model.get_attribute(self.parent_key))

    # TODO: add a single-pass match keyed on the pivot id alone, enabled only after
    # checking that every owner in the batch shares one morph class.


class MorphedByMany(MorphToMany[M]):
    """Inverse of :class:`MorphToMany`: ``Tag.morphed_by_many(Post, "taggable")``."""

    inverse = True
