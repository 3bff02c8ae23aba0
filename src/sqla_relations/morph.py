"""Polymorphic relations.

``MorphOne`` / ``MorphMany`` are has-relations whose related rows also store
the owner's type in ``<name>_type``. ``MorphTo`` is the inverse: the owner
row stores ``<name>_type`` and ``<name>_id`` and the related table differs
per row.

Eager loading a ``MorphTo`` groups the owners by stored type and then
either runs one query per type, or, when every type can share one column
list, a single ``UNION ALL`` tagged with a ``morph_discriminator`` literal.
"""

from __future__ import annotations

import copy
import logging
import sys
import warnings
from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, ClassVar, Final, Generic, TypeVar

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from . import matching
from .datastructures import ModelCollection
from .has import HasOneOrMany
from .morph_map import MorphMap
from .predicates import Comparison
from .schema import SchemaCache, default_schema_cache
from .tools import leaf, transaction


if TYPE_CHECKING:
    from .model import Model
    from .query import QueryBuilder

M = TypeVar("M", bound="Model")

logger = logging.getLogger(__name__)

MORPH_BATCH_THRESHOLD: Final[int] = 2
MORPH_TYPE_LABEL: Final[str] = "morph_discriminator"

MorphConstraint = Callable[["QueryBuilder[Any]"], Any]


class MorphOneOrMany(HasOneOrMany[M]):
    """``has_one`` / ``has_many`` with an extra ``<name>_type`` column on the related table."""

    def __init__(
        self,
        query: QueryBuilder[M],
        parent: Model,
        type_column: str,
        id_column: str,
        local_key: str,
    ) -> None:
        self.type_column = type_column
        self.morph_class = type(parent).morph_class()
        super().__init__(query, parent, id_column, local_key)
        self.add_scope_constraint(Comparison(self.related.qualify(type_column), "=", self.morph_class))

    def match_key(self, result: Model) -> Any:
        return matching.morph_key(
            result.get_attribute(leaf(self.type_column)),
            result.get_attribute(leaf(self.foreign_key)),
        )

    def owner_match_key(self, model: Model) -> Any:
        return matching.morph_key(type(model).morph_class(), model.get_attribute(self.local_key))

    def owner_attributes(self) -> dict[str, Any]:
        attributes = super().owner_attributes()
        attributes[leaf(self.type_column)] = self.morph_class
        return attributes


class MorphOne(MorphOneOrMany[M]):
    many = False


class MorphMany(MorphOneOrMany[M]):
    many = True


class MorphTo(Generic[M]):
    """Inverse polymorphic relation, resolving ``<name>_type`` to a model class per owner.

    Unlike the other relations it has no single related table, so it builds
    a fresh query per type. ``constrain`` and ``morph_with`` tune those
    queries per class:

    Example:
        >>> eager_load(
        ...     conn,
        ...     images,
        ...     loads=("imageable",),
        ...     conditions={"imageable": lambda rel: rel.constrain({Post: lambda q: q.where("published", True)})},
        ... )
    """

    many: ClassVar[bool] = False

    def __init__(
        self,
        parent: Model,
        type_column: str,
        id_column: str,
        owner_key: str | None = None,
        name: str | None = None,
        *,
        schema_cache: SchemaCache | None = None,
    ) -> None:
        self.parent = parent
        self.type_column = type_column
        self.id_column = id_column
        self.owner_key = owner_key
        self.name = name or type_column.removesuffix("_type")
        self.schema_cache = schema_cache or default_schema_cache
        self.batch_loading = True
        self.batch_threshold = MORPH_BATCH_THRESHOLD
        self._constraints: dict[type[Model], MorphConstraint] = {}
        self._loads: dict[type[Model], tuple[str, ...]] = {}
        self._counts: dict[type[Model], tuple[str, ...]] = {}
        self._dictionary: dict[str, dict[Hashable, list[Model]]] = {}
        self._ids: dict[str, list[Any]] = {}
        self._loaded: dict[str, ModelCollection[Any]] = {}

    def __repr__(self) -> str:
        return f"<MorphTo {type(self.parent).__name__}.{self.name} ({self.type_column}, {self.id_column})>"

    # owner state

    def type_value(self) -> str | None:
        return self.parent.get_attribute(self.type_column) or None

    def id_value(self) -> Any:
        return self.parent.get_attribute(self.id_column)

    def related_class(self) -> type[Model] | None:
        """The model class named by the owner's type column, ``None`` when unset."""
        value = self.type_value()
        return None if value is None else MorphMap().resolve(value)

    def key_name(self, model: type[Model]) -> str:
        return self.owner_key or model.primary_key()

    # configuration

    def constrain(self, callbacks: Mapping[type[Model] | str, MorphConstraint]) -> Self:
        """Register a query callback per related class (or morph alias)."""
        for model, callback in callbacks.items():
            self._constraints[_resolve(model)] = callback
        return self

    def morph_with(self, loads: Mapping[type[Model] | str, str | Iterable[str]]) -> Self:
        """Register relations to eager load on the results of one related class."""
        for model, names in loads.items():
            self._loads[_resolve(model)] = (names,) if isinstance(names, str) else tuple(names)
        return self

    def morph_with_count(self, counts: Mapping[type[Model] | str, str | Iterable[str]]) -> Self:
        """Register relations to count on the results of one related class.

        Each loaded record of that class gets a ``<relation>_count`` attribute.
        Types with counts are always loaded with one query per type.
        """
        for model, names in counts.items():
            self._counts[_resolve(model)] = (names,) if isinstance(names, str) else tuple(names)
        return self

    def with_batch_loading(self, enable: bool = True) -> Self:
        self.batch_loading = enable
        return self

    def set_batch_loading_threshold(self, threshold: int) -> Self:
        if threshold < MORPH_BATCH_THRESHOLD:
            warnings.warn(
                f"Morph batch loading threshold must be at least {MORPH_BATCH_THRESHOLD}, got {threshold}",
                UserWarning,
                stacklevel=2,
            )
            threshold = MORPH_BATCH_THRESHOLD
        self.batch_threshold = threshold
        return self

    def with_schema_cache(self, cache: SchemaCache) -> Self:
        self.schema_cache = cache
        return self

    # eager loading

    def new_eager_instance(self) -> Self:
        instance = copy.copy(self)
        instance.parent = self.parent.new_instance()
        instance._constraints = dict(self._constraints)
        instance._loads = dict(self._loads)
        instance._counts = dict(self._counts)
        instance._dictionary = {}
        instance._ids = {}
        instance._loaded = {}
        return instance

    def add_eager_constraints(self, models: Sequence[Model]) -> None:
        """Group owners as ``{type: {id: [owners]}}``. Owners without type or id are skipped."""
        self._dictionary = {}
        self._ids = {}
        for model in models:
            type_ = model.get_attribute(self.type_column)
            id_ = model.get_attribute(self.id_column)
            if not type_ or id_ is None:
                continue
            owners = self._dictionary.setdefault(str(type_), {})
            key = matching.dictionary_key(id_)
            if key not in owners:
                self._ids.setdefault(str(type_), []).append(id_)
            owners.setdefault(key, []).append(model)

    @property
    def types(self) -> tuple[str, ...]:
        return tuple(self._dictionary)

    def _classes(self, types: Iterable[str]) -> dict[str, type[Model]]:
        classes: dict[str, type[Model]] = {}
        for type_ in types:
            try:
                classes[type_] = MorphMap().resolve(type_)
            except LookupError:
                logger.warning("unknown morph type %r on %s, owners left empty", type_, self.name)
        return classes

    def can_batch(self, classes: Mapping[str, type[Model]]) -> bool:
        """``UNION ALL`` needs enough types, no per-class tuning and a shared key name."""
        if not self.batch_loading or len(classes) < self.batch_threshold:
            return False
        if self._constraints or self._loads or self._counts:
            return False
        return len({self.key_name(model) for model in classes.values()}) == 1

    def get_eager(self, conn: sa.Connection) -> ModelCollection[Any]:
        classes = self._classes(self._dictionary)
        self._loaded = {}
        if not classes:
            return ModelCollection()

        if self.can_batch(classes):
            loaded = self._union_results(conn, classes)
            if loaded is not None:
                self._loaded = loaded
                return ModelCollection.flatten(loaded.values())

        for type_, model in classes.items():
            self._loaded[type_] = self._results_for_type(conn, type_, model)
        return ModelCollection.flatten(self._loaded.values())

    def _results_for_type(
        self, conn: sa.Connection, type_: str, model: type[Model]
    ) -> ModelCollection[Any]:
        ids = self._ids.get(type_, [])
        if not ids:
            return ModelCollection()
        query = model.query()
        callback = self._constraints.get(model)
        if callback is not None:
            callback(query)
        query.where_in(model.qualify(self.key_name(model)), ids)
        results = query.get(conn)

        loads = self._loads.get(model)
        if loads and results:
            from .eager import eager_load

            eager_load(conn, results, loads=loads)
        counts = self._counts.get(model)
        if counts and results:
            from .eager import load_counts

            load_counts(conn, results, *counts)
        return results

    def _union_results(
        self, conn: sa.Connection, classes: Mapping[str, type[Model]]
    ) -> dict[str, ModelCollection[Any]] | None:
        """One ``UNION ALL`` over every type, or ``None`` when the caller must query per type."""
        key = self.key_name(next(iter(classes.values())))
        try:
            common = self.schema_cache.intersection(conn, [model.table_name() for model in classes.values()])
            columns = [
                column for column in common if all(column in model.__table__.c for model in classes.values())
            ]
            if key not in columns:
                logger.debug("no shared %r column across %s, querying per type", key, sorted(classes))
                return None

            selects = []
            for type_, model in classes.items():
                table = model.__table__
                selects.append(
                    sa.select(
                        *(table.c[column] for column in columns),
                        sa.literal(type_, sa.String()).label(MORPH_TYPE_LABEL),
                    ).where(table.c[key].in_(self._ids[type_]))
                )
            stmt = sa.union_all(*selects)

            if conn.dialect.name == "postgresql":
                # a failed statement aborts the whole transaction on PostgreSQL
                with conn.begin_nested():
                    rows = [dict(row) for row in conn.execute(stmt).mappings()]
            else:
                rows = [dict(row) for row in conn.execute(stmt).mappings()]
        except SQLAlchemyError as exc:
            logger.warning(
                "UNION ALL morph load of %s failed, falling back to one query per type: %s",
                sorted(classes),
                exc,
            )
            return None

        loaded: dict[str, ModelCollection[Any]] = {type_: ModelCollection() for type_ in classes}
        for row in rows:
            type_ = row.pop(MORPH_TYPE_LABEL)
            loaded[type_].append(classes[type_].new_from_row(row))
        return loaded

    def init_relation(self, models: Iterable[Model], name: str) -> None:
        for model in models:
            model.set_relation(name, None)

    def match(self, models: Sequence[Model], results: ModelCollection[Any], name: str) -> None:
        """Attach loaded records by ``(type, id)``. Unmatched owners get ``None``."""
        for model in models:
            model.set_relation(name, None)
        for type_, loaded in self._loaded.items():
            owners = self._dictionary.get(type_, {})
            for result in loaded:
                key = matching.dictionary_key(result.get_attribute(self.key_name(type(result))))
                for owner in owners.get(key, ()):
                    owner.set_relation(name, result)

    # lazy loading

    def _lazy_query(self) -> QueryBuilder[Any] | None:
        model = self.related_class()
        id_ = self.id_value()
        if model is None or id_ is None:
            return None
        query = model.query().where(model.qualify(self.key_name(model)), id_)
        callback = self._constraints.get(model)
        if callback is not None:
            callback(query)
        return query

    def get_results(self, conn: sa.Connection) -> Model | None:
        query = self._lazy_query()
        return None if query is None else query.first(conn)

    def get(self, conn: sa.Connection) -> Model | None:
        return self.get_results(conn)

    def load_into(self, conn: sa.Connection, name: str | None = None) -> Model | None:
        value = self.get_results(conn)
        self.parent.set_relation(name or self.name, value)
        return value

    def exists(self, conn: sa.Connection) -> bool:
        query = self._lazy_query()
        return query is not None and query.exists(conn)

    def count(self, conn: sa.Connection) -> int:
        return 1 if self.exists(conn) else 0

    # writes

    def associate(self, model: Model | None) -> Model:
        """Point the owner at *model*. The owner is not saved."""
        if model is None:
            return self.dissociate()
        self.parent.set_attribute(self.id_column, model.get_attribute(self.key_name(type(model))))
        self.parent.set_attribute(self.type_column, type(model).morph_class())
        self.parent.set_relation(self.name, model)
        return self.parent

    def dissociate(self) -> Model:
        self.parent.set_attribute(self.id_column, None)
        self.parent.set_attribute(self.type_column, None)
        self.parent.set_relation(self.name, None)
        return self.parent

    def create_of_type(
        self, conn: sa.Connection, type_: type[Model] | str, attributes: Mapping[str, Any] | None = None
    ) -> Model:
        """Create a related record of *type_*, associate it and save the owner.

        Raises:
            UnknownMorphTypeError: If *type_* is an alias that resolves to no model.
        """
        model = _resolve(type_)
        with transaction(conn):
            instance = model.create(conn, attributes)
            self.associate(instance).save(conn)
        return instance

    def is_type(self, type_: type[Model] | str) -> bool:
        """``True`` when the owner currently points at a record of *type_*."""
        current = self.type_value()
        if current is None:
            return False
        if isinstance(type_, str) and current == type_:
            return True
        try:
            return MorphMap().resolve(current) is _resolve(type_)
        except LookupError:
            return False

    def is_(self, model: Model) -> bool:
        return self.is_type(type(model)) and matching.dictionary_key(
            model.get_attribute(self.key_name(type(model)))
        ) == matching.dictionary_key(self.id_value())


def _resolve(model: type[Model] | str) -> type[Model]:
    return MorphMap().resolve(model) if isinstance(model, str) else model
