from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa

from . import matching
from .datastructures import ModelCollection
from .relation import Relation
from .window import Partition, WindowPlan


if TYPE_CHECKING:
    from .model import Model
    from .query import QueryBuilder

M = TypeVar("M", bound="Model")


class HasOneOrManyThrough(Relation[M]):
    """Related rows reached through an intermediate table.

    ``Country.has_many_through(Post, User)`` joins
    ``users.id = posts.user_id`` and constrains ``users.country_id``. The
    intermediate key is selected as ``through_<first_key>`` for matching
    and removed from the related records afterwards.
    """

    def __init__(
        self,
        query: QueryBuilder[M],
        far_parent: Model,
        through: type[Model],
        first_key: str,
        second_key: str,
        local_key: str,
        second_local_key: str,
    ) -> None:
        self.through = through
        self.first_key = first_key
        self.second_key = second_key
        self.second_local_key = second_local_key
        related = query.model
        if related is None:
            raise TypeError("Relation query must be bound to a model")
        query.join(
            through.__table__,
            through.qualify(second_local_key),
            "=",
            related.qualify(second_key),
        )
        super().__init__(query, far_parent, first_key, local_key)

    @property
    def constraint_column(self) -> str:
        return self.through.qualify(self.first_key)

    @property
    def through_key_label(self) -> str:
        return f"through_{self.first_key}"

    def execution_query(self, conn: sa.Connection) -> QueryBuilder[M]:
        query = self.scoped_query().clone()
        if not query.columns:
            query.select(f"{self.related.table_name()}.*")
        query.add_select(f"{self.constraint_column} as {self.through_key_label}")
        return query

    def window_plan(self, query: QueryBuilder[M]) -> WindowPlan | None:
        if not self.many or not self._eager_constraints:
            return None
        return WindowPlan(
            partitions=(Partition(self.through_key_label, self._eager_keys),),
            eager_predicates=tuple(self._eager_constraints),
            tiebreaker=self.related.primary_key(),
        )

    def prepare_results(self, results: ModelCollection[M]) -> ModelCollection[M]:
        for result in results:
            result.remove_attribute(self.through_key_label)
        return results

    def _match_key(self, result: Model) -> Any:
        return matching.dictionary_key(result.remove_attribute(self.through_key_label))

    def match(self, models: Sequence[Model], results: ModelCollection[M], name: str) -> None:
        if self.many:
            dictionary = matching.build_dictionary(results, self._match_key)
            matching.match_many(models, dictionary, self.local_key, name)
        else:
            single = matching.build_single_dictionary(results, self._match_key)
            matching.match_one(models, single, self.local_key, name)


class HasOneThrough(HasOneOrManyThrough[M]):
    many = False


class HasManyThrough(HasOneOrManyThrough[M]):
    many = True
