"""Minimal table-bound record used as owner and related side of relations.

A model class binds to a Core ``sa.Table`` through ``__table__`` and keeps
row values in a plain dict. Loaded relations live in a separate dict so a
relation name never shadows a column value.

Relations are declared as methods returning a relation object::

    class Post(Model):
        __table__ = posts

        def comments(self) -> HasMany[Comment]:
            return self.has_many(Comment)

        def tags(self) -> MorphToMany[Tag]:
            return self.morph_to_many(Tag, "taggable")

Because the method occupies the attribute name, eager-loaded results are
read back with ``post.get_relation("comments")``.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

import sqlalchemy as sa


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from .datastructures import ModelCollection
from .morph_map import MorphMap
from .query import QueryBuilder
from .tools import get_primary_key, get_table_name, qualify, snake_case, utcnow


if TYPE_CHECKING:
    from .belongs_to_many import BelongsToMany, MorphedByMany, MorphToMany
    from .has import BelongsTo, HasMany, HasOne
    from .morph import MorphMany, MorphOne, MorphTo
    from .through import HasManyThrough, HasOneThrough

M = TypeVar("M", bound="Model")

_MODELS: dict[str, type[Model]] = {}


def resolve_model(model: type[M] | str) -> type[M]:
    """Accept a model class or the name of a declared model class."""
    if isinstance(model, str):
        try:
            return _MODELS[model]  # type: ignore[return-value]
        except KeyError:
            raise ValueError(f"Unknown model {model!r}. Known: {sorted(_MODELS)}") from None
    return model


class Model:
    __table__: ClassVar[sa.Table]
    __morph_alias__: ClassVar[str | None] = None
    timestamps: ClassVar[bool] = True

    def __init__(self, attributes: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        self.attributes: dict[str, Any] = {**(attributes or {}), **kwargs}
        self.relations: dict[str, Any] = {}
        self.exists = False

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        _MODELS[cls.__name__] = cls
        MorphMap.remember(cls)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_") or name in ("attributes", "relations", "exists"):
            raise AttributeError(name)
        attributes = self.__dict__.get("attributes", {})
        if name in attributes:
            return attributes[name]
        relations = self.__dict__.get("relations", {})
        if name in relations:
            return relations[name]
        raise AttributeError(f"{type(self).__name__!r} has no attribute or loaded relation {name!r}")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.attributes!r}>"

    # table metadata

    @classmethod
    def table_name(cls) -> str:
        return get_table_name(cls)

    @classmethod
    def primary_key(cls) -> str:
        return get_primary_key(cls)

    @classmethod
    def morph_class(cls) -> str:
        return MorphMap().alias_for(cls)

    @classmethod
    def qualify(cls, column: str) -> str:
        return qualify(cls.table_name(), column)

    @classmethod
    def query(cls) -> QueryBuilder[Self]:
        return QueryBuilder(cls.__table__, cls)

    @classmethod
    def has_column(cls, column: str) -> bool:
        return column in cls.__table__.c

    # attributes

    @property
    def key(self) -> Any:
        return self.attributes.get(self.primary_key())

    def get_attribute(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def set_attribute(self, key: str, value: Any) -> Self:
        self.attributes[key] = value
        return self

    def fill(self, attributes: Mapping[str, Any]) -> Self:
        self.attributes.update(attributes)
        return self

    def remove_attribute(self, key: str) -> Any:
        return self.attributes.pop(key, None)

    def remove_attributes_by_prefix(self, prefix: str) -> dict[str, Any]:
        """Remove and return every attribute whose name starts with *prefix*."""
        removed = {key: value for key, value in self.attributes.items() if key.startswith(prefix)}
        for key in removed:
            del self.attributes[key]
        return removed

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.attributes)
        for name, value in self.relations.items():
            if isinstance(value, list):
                data[name] = [item.to_dict() for item in value]
            elif isinstance(value, Model):
                data[name] = value.to_dict()
            else:
                data[name] = value
        return data

    # relations cache

    def set_relation(self, name: str, value: Any) -> Self:
        self.relations[name] = value
        return self

    def get_relation(self, name: str, default: Any = None) -> Any:
        return self.relations.get(name, default)

    def relation_loaded(self, name: str) -> bool:
        return name in self.relations

    def unset_relation(self, name: str) -> Self:
        self.relations.pop(name, None)
        return self

    # construction

    @classmethod
    def new_from_row(cls, row: Mapping[str, Any]) -> Self:
        instance = cls(row)
        instance.exists = True
        return instance

    @classmethod
    def hydrate(cls, rows: Iterable[Mapping[str, Any]]) -> ModelCollection[Self]:
        return ModelCollection(cls.new_from_row(row) for row in rows)

    def new_instance(self, attributes: Mapping[str, Any] | None = None) -> Self:
        return type(self)(attributes)

    def replicate(self) -> Self:
        """Shallow clone sharing no mutable state with the original."""
        clone = type(self)(self.attributes)
        clone.relations = dict(self.relations)
        clone.exists = self.exists
        return clone

    # persistence

    def _touch_columns(self, columns: Iterable[str]) -> None:
        if not self.timestamps:
            return
        now = utcnow()
        for column in columns:
            if self.has_column(column):
                self.attributes[column] = now

    def save(self, conn: sa.Connection) -> Self:
        """Insert the record, or update it by primary key when it already exists."""
        table = self.__table__
        pk = self.primary_key()
        if self.exists:
            self._touch_columns(("updated_at",))
            values = {k: v for k, v in self.attributes.items() if k in table.c and k != pk}
            if values:
                conn.execute(sa.update(table).where(table.c[pk] == self.key).values(values))
            return self

        self._touch_columns(("created_at", "updated_at"))
        values = {k: v for k, v in self.attributes.items() if k in table.c}
        result = conn.execute(sa.insert(table).values(values))
        if self.key is None and result.inserted_primary_key:
            self.attributes[pk] = result.inserted_primary_key[0]
        self.exists = True
        return self

    @classmethod
    def create(cls, conn: sa.Connection, attributes: Mapping[str, Any] | None = None, **kwargs: Any) -> Self:
        return cls(attributes, **kwargs).save(conn)

    def delete(self, conn: sa.Connection) -> bool:
        if not self.exists or self.key is None:
            return False
        table = self.__table__
        conn.execute(sa.delete(table).where(table.c[self.primary_key()] == self.key))
        self.exists = False
        return True

    def touch(self, conn: sa.Connection) -> bool:
        """Bump ``updated_at``. Returns ``False`` when the table has no such column."""
        if not self.has_column("updated_at") or self.key is None:
            return False
        now = utcnow()
        table = self.__table__
        conn.execute(
            sa.update(table).where(table.c[self.primary_key()] == self.key).values(updated_at=now)
        )
        self.attributes["updated_at"] = now
        return True

    @classmethod
    def find(cls, conn: sa.Connection, key: Any) -> Self | None:
        return cls.query().where(cls.qualify(cls.primary_key()), key).first(conn)

    @classmethod
    def find_many(cls, conn: sa.Connection, keys: Iterable[Any]) -> ModelCollection[Self]:
        return cls.query().where_in(cls.qualify(cls.primary_key()), list(keys)).get(conn)

    @classmethod
    def all(cls, conn: sa.Connection) -> ModelCollection[Self]:
        return cls.query().order_by(cls.qualify(cls.primary_key())).get(conn)

    def fresh(self, conn: sa.Connection) -> Self | None:
        return None if self.key is None else type(self).find(conn, self.key)

    # relation definitions

    def _foreign_key(self) -> str:
        return f"{snake_case(type(self).__name__)}_id"

    def has_one(
        self, related: type[M] | str, foreign_key: str | None = None, local_key: str | None = None
    ) -> HasOne[M]:
        from .has import HasOne

        model = resolve_model(related)
        return HasOne(
            model.query(), self, foreign_key or self._foreign_key(), local_key or self.primary_key()
        )

    def has_many(
        self, related: type[M] | str, foreign_key: str | None = None, local_key: str | None = None
    ) -> HasMany[M]:
        from .has import HasMany

        model = resolve_model(related)
        return HasMany(
            model.query(), self, foreign_key or self._foreign_key(), local_key or self.primary_key()
        )

    def belongs_to(
        self, related: type[M] | str, foreign_key: str | None = None, owner_key: str | None = None
    ) -> BelongsTo[M]:
        from .has import BelongsTo

        model = resolve_model(related)
        return BelongsTo(
            model.query(),
            self,
            foreign_key or f"{snake_case(model.__name__)}_id",
            owner_key or model.primary_key(),
        )

    def belongs_to_many(
        self,
        related: type[M] | str,
        table: str | sa.Table | None = None,
        foreign_pivot_key: str | None = None,
        related_pivot_key: str | None = None,
        parent_key: str | None = None,
        related_key: str | None = None,
    ) -> BelongsToMany[M]:
        from .belongs_to_many import BelongsToMany

        model = resolve_model(related)
        if table is None:
            table = "_".join(sorted((snake_case(type(self).__name__), snake_case(model.__name__))))
        return BelongsToMany(
            model.query(),
            self,
            _pivot_table(table),
            foreign_pivot_key or self._foreign_key(),
            related_pivot_key or f"{snake_case(model.__name__)}_id",
            parent_key or self.primary_key(),
            related_key or model.primary_key(),
        )

    def has_one_through(
        self,
        related: type[M] | str,
        through: type[Model] | str,
        first_key: str | None = None,
        second_key: str | None = None,
        local_key: str | None = None,
        second_local_key: str | None = None,
    ) -> HasOneThrough[M]:
        from .through import HasOneThrough

        return self._through(HasOneThrough, related, through, first_key, second_key, local_key, second_local_key)

    def has_many_through(
        self,
        related: type[M] | str,
        through: type[Model] | str,
        first_key: str | None = None,
        second_key: str | None = None,
        local_key: str | None = None,
        second_local_key: str | None = None,
    ) -> HasManyThrough[M]:
        from .through import HasManyThrough

        return self._through(HasManyThrough, related, through, first_key, second_key, local_key, second_local_key)

    def _through(
        self,
        relation_cls: Any,
        related: type[M] | str,
        through: type[Model] | str,
        first_key: str | None,
        second_key: str | None,
        local_key: str | None,
        second_local_key: str | None,
    ) -> Any:
        model = resolve_model(related)
        through_model = resolve_model(through)
        return relation_cls(
            model.query(),
            self,
            through_model,
            first_key or self._foreign_key(),
            second_key or f"{snake_case(through_model.__name__)}_id",
            local_key or self.primary_key(),
            second_local_key or through_model.primary_key(),
        )

    def morph_one(
        self, related: type[M] | str, name: str, local_key: str | None = None
    ) -> MorphOne[M]:
        from .morph import MorphOne

        model = resolve_model(related)
        return MorphOne(
            model.query(), self, f"{name}_type", f"{name}_id", local_key or self.primary_key()
        )

    def morph_many(
        self, related: type[M] | str, name: str, local_key: str | None = None
    ) -> MorphMany[M]:
        from .morph import MorphMany

        model = resolve_model(related)
        return MorphMany(
            model.query(), self, f"{name}_type", f"{name}_id", local_key or self.primary_key()
        )

    def morph_to(
        self,
        name: str,
        type_column: str | None = None,
        id_column: str | None = None,
        owner_key: str | None = None,
    ) -> MorphTo[Model]:
        """Inverse of ``morph_one`` / ``morph_many``. *name* is also the relation name."""
        from .morph import MorphTo

        return MorphTo(
            self, type_column or f"{name}_type", id_column or f"{name}_id", owner_key, name
        )

    def morph_to_many(
        self,
        related: type[M] | str,
        name: str,
        table: str | sa.Table | None = None,
        foreign_pivot_key: str | None = None,
        related_pivot_key: str | None = None,
        parent_key: str | None = None,
        related_key: str | None = None,
    ) -> MorphToMany[M]:
        from .belongs_to_many import MorphToMany

        model = resolve_model(related)
        return MorphToMany(
            model.query(),
            self,
            name,
            _pivot_table(table or f"{name}s"),
            foreign_pivot_key or f"{name}_id",
            related_pivot_key or f"{snake_case(model.__name__)}_id",
            parent_key or self.primary_key(),
            related_key or model.primary_key(),
        )

    def morphed_by_many(
        self,
        related: type[M] | str,
        name: str,
        table: str | sa.Table | None = None,
        foreign_pivot_key: str | None = None,
        related_pivot_key: str | None = None,
        parent_key: str | None = None,
        related_key: str | None = None,
    ) -> MorphedByMany[M]:
        from .belongs_to_many import MorphedByMany

        model = resolve_model(related)
        return MorphedByMany(
            model.query(),
            self,
            name,
            _pivot_table(table or f"{name}s"),
            foreign_pivot_key or self._foreign_key(),
            related_pivot_key or f"{name}_id",
            parent_key or self.primary_key(),
            related_key or model.primary_key(),
        )


class Pivot(Model):
    """A join-table row attached to a related record under the pivot accessor.

    Not bound to a class-level table, the relation hands over the pivot
    table and the owning record when it builds the instance.
    """

    timestamps = False

    def __init__(self, attributes: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        super().__init__(attributes, **kwargs)
        self.pivot_table: sa.Table | None = None
        self.pivot_parent: Model | None = None

    @classmethod
    def from_raw_attributes(
        cls,
        parent: Model | None,
        attributes: Mapping[str, Any],
        table: sa.Table,
        exists: bool = True,
    ) -> Self:
        instance = cls(attributes)
        instance.pivot_table = table
        instance.pivot_parent = parent
        instance.exists = exists
        return instance

    def replicate(self) -> Self:
        clone = super().replicate()
        clone.pivot_table = self.pivot_table
        clone.pivot_parent = self.pivot_parent
        return clone


def _pivot_table(table: str | sa.Table) -> sa.Table:
    """Accept a ``sa.Table`` or the name of a table declared on a known model's metadata."""
    if isinstance(table, sa.Table):
        return table
    for model in _MODELS.values():
        metadata_table = getattr(model, "__table__", None)
        if isinstance(metadata_table, sa.Table) and table in metadata_table.metadata.tables:
            return metadata_table.metadata.tables[table]
    raise ValueError(f"Pivot table {table!r} is not declared on any model's MetaData")
