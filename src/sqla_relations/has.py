from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa

from . import matching
from .datastructures import ModelCollection
from .relation import Relation
from .tools import leaf, transaction
from .window import Partition, WindowPlan


if TYPE_CHECKING:
    from .model import Model
    from .query import QueryBuilder

M = TypeVar("M", bound="Model")


class HasOneOrMany(Relation[M]):
    """Related rows carry a foreign key pointing at the owner's local key."""

    @property
    def constraint_column(self) -> str:
        return self.related.qualify(self.foreign_key)

    def window_plan(self, query: QueryBuilder[M]) -> WindowPlan | None:
        if not self.many or not self._eager_constraints:
            return None
        return WindowPlan(
            partitions=(Partition(leaf(self.foreign_key), self._eager_keys),),
            eager_predicates=tuple(self._eager_constraints),
            tiebreaker=self.related.primary_key(),
        )

    def match_key(self, result: Model) -> Any:
        return matching.dictionary_key(result.get_attribute(leaf(self.foreign_key)))

    def owner_match_key(self, model: Model) -> Any:
        return matching.dictionary_key(model.get_attribute(self.local_key))

    def match(self, models: Sequence[Model], results: ModelCollection[M], name: str) -> None:
        if self.many:
            dictionary = matching.build_dictionary(results, self.match_key)
            matching.match_many(models, dictionary, self.owner_match_key, name)
        else:
            single = matching.build_single_dictionary(results, self.match_key)
            matching.match_one(models, single, self.owner_match_key, name)

    # writes

    def owner_attributes(self) -> dict[str, Any]:
        """Attributes that tie a new related record to the owner."""
        return {leaf(self.foreign_key): self.require_parent_key()}

    def make(self, attributes: Mapping[str, Any] | None = None, **kwargs: Any) -> M:
        """New, unsaved related record already pointing at the owner."""
        instance = self.related({**(attributes or {}), **kwargs})
        instance.fill(self.owner_attributes())
        return instance

    def create(self, conn: sa.Connection, attributes: Mapping[str, Any] | None = None, **kwargs: Any) -> M:
        """Insert a related record for the owner.

        Raises:
            MissingParentKeyError: If the owner has no key, before any SQL is issued.
        """
        return self.make(attributes, **kwargs).save(conn)

    def create_many(self, conn: sa.Connection, records: Iterable[Mapping[str, Any]]) -> ModelCollection[M]:
        """Insert several related records atomically."""
        owner = self.owner_attributes()
        pending = [self.related(record).fill(owner) for record in records]
        with transaction(conn):
            return ModelCollection(instance.save(conn) for instance in pending)

    def save(self, conn: sa.Connection, model: M) -> M:
        """Point *model* at the owner and save it."""
        return model.fill(self.owner_attributes()).save(conn)

    def save_many(self, conn: sa.Connection, models: Iterable[M]) -> ModelCollection[M]:
        owner = self.owner_attributes()
        pending = list(models)
        with transaction(conn):
            return ModelCollection(model.fill(owner).save(conn) for model in pending)

    def update(self, conn: sa.Connection, values: Mapping[str, Any]) -> int:
        """Update every related row of the owner, returns the affected row count."""
        self.require_parent_key()
        return self.scoped_query().update(conn, values)

    def delete(self, conn: sa.Connection) -> int:
        self.require_parent_key()
        return self.scoped_query().delete(conn)

    def _matching(self, attributes: Mapping[str, Any]) -> QueryBuilder[M]:
        query = self.scoped_query().clone()
        for column, value in attributes.items():
            query.where(self.related.qualify(column), value)
        return query

    def first_or_new(
        self,
        conn: sa.Connection,
        attributes: Mapping[str, Any],
        values: Mapping[str, Any] | None = None,
    ) -> M:
        """First related record matching *attributes*, or an unsaved new one."""
        self.require_parent_key()
        found = self._matching(attributes).first(conn)
        if found is not None:
            return found
        return self.make({**attributes, **(values or {})})

    def first_or_create(
        self,
        conn: sa.Connection,
        attributes: Mapping[str, Any],
        values: Mapping[str, Any] | None = None,
    ) -> M:
        instance = self.first_or_new(conn, attributes, values)
        if not instance.exists:
            instance.save(conn)
        return instance

    def update_or_create(
        self,
        conn: sa.Connection,
        attributes: Mapping[str, Any],
        values: Mapping[str, Any] | None = None,
    ) -> M:
        with transaction(conn):
            instance = self.first_or_new(conn, attributes)
            instance.fill(values or {})
            return instance.save(conn)


class HasOne(HasOneOrMany[M]):
    many = False


class HasMany(HasOneOrMany[M]):
    many = True


class BelongsTo(Relation[M]):
    """The owner carries the foreign key, the related row holds the owner key."""

    many = False

    def __init__(self, query: QueryBuilder[M], child: Model, foreign_key: str, owner_key: str) -> None:
        self.owner_key = owner_key
        super().__init__(query, child, foreign_key, owner_key)

    @property
    def constraint_column(self) -> str:
        return self.related.qualify(self.owner_key)

    @property
    def owner_key_name(self) -> str:
        return self.foreign_key

    def match(self, models: Sequence[Model], results: ModelCollection[M], name: str) -> None:
        dictionary = matching.build_single_dictionary(results, self.owner_key)
        matching.match_one(models, dictionary, self.foreign_key, name)

    def associate(self, model: M | Any, name: str | None = None) -> Model:
        """Point the child at *model* (a record or a raw key). The child is not saved."""
        from .model import Model

        if isinstance(model, Model):
            self.parent.set_attribute(self.foreign_key, model.get_attribute(self.owner_key))
            if name:
                self.parent.set_relation(name, model)
        else:
            self.parent.set_attribute(self.foreign_key, model)
            if name:
                self.parent.unset_relation(name)
        return self.parent

    def dissociate(self, name: str | None = None) -> Model:
        self.parent.set_attribute(self.foreign_key, None)
        if name:
            self.parent.set_relation(name, None)
        return self.parent
