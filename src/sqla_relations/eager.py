from __future__ import annotations

import sys
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack

import sqlalchemy as sa

from .datastructures import ModelCollection, frozendict
from .model import Model
from .relation import Relation
from .tools import tools_cache_clear, tools_cache_info

Condition = Callable[[Any], Any]


@dataclass(frozen=True, slots=True)
class _EagerParams:
    loads: tuple[str, ...] = ()
    conditions: Mapping[str, Condition] = field(default_factory=frozendict)
    limit: int | None = None
    order_by: tuple[str, ...] | None = None


class _EagerParamsType(TypedDict, total=False):
    loads: tuple[str, ...]
    conditions: Mapping[str, Condition]
    limit: int | None
    order_by: tuple[str, ...] | None


@lru_cache(maxsize=256)
def _expand_loads(loads: tuple[str, ...]) -> tuple[str, ...]:
    """Every path and its prefixes, shallow first: ``("a.b",)`` -> ``("a", "a.b")``."""
    paths: dict[str, None] = {}
    for load in loads:
        parts = load.split(".")
        for depth in range(1, len(parts) + 1):
            paths.setdefault(".".join(parts[:depth]), None)
    return tuple(sorted(paths, key=lambda path: path.count(".")))


@lru_cache(maxsize=512)
def _relation_method(model: type[Model], name: str) -> Callable[[Model], Any]:
    """The relation-defining method *name* on *model* (cached)."""
    method = getattr(model, name, None)
    if not callable(method) or name.startswith("_") or hasattr(Model, name):
        available = sorted(
            attr
            for attr, value in vars(model).items()
            if callable(value) and not attr.startswith("_") and not hasattr(Model, attr)
        )
        raise ValueError(f"Relation {name!r} not found on {model.__name__}. Available: {available}")
    return method


def _load_relation(
    conn: sa.Connection,
    owners: ModelCollection[Model],
    name: str,
    path: str,
    params: _EagerParams,
) -> None:
    """Load one relation for owners of a single class and attach the results."""
    relation = _relation_method(type(owners[0]), name)(owners[0])
    if not hasattr(relation, "new_eager_instance"):
        raise ValueError(f"{type(owners[0]).__name__}.{name}() does not return a relation")

    eager = relation.new_eager_instance()
    condition = params.conditions.get(path) or params.conditions.get(name)
    if condition is not None:
        condition(eager)

    if isinstance(eager, Relation) and eager.many:
        for column in params.order_by or ():
            eager.order_by(column, "desc")
        if params.limit is not None:
            eager.limit(params.limit)

    eager.add_eager_constraints(owners)
    results = eager.get_eager(conn)
    eager.match(owners, results, name)


def eager_load(
    conn: sa.Connection,
    models: Iterable[Model],
    **params: Unpack[_EagerParamsType],
) -> ModelCollection[Model]:
    """Load relations for a batch of already-fetched records.

    Every relation is resolved with one query per owner class (or one per
    morph type, or a single ``UNION ALL`` for ``MorphTo``), whatever the
    number of owners. Results are attached to each owner under the relation
    name; owners without related rows get an empty collection or ``None``.

    Args:
        conn: Open connection used for every query.
        models: Owner records. They may be of different classes.
        loads: tuple[str, ...]
            Relation method names to load. Dotted paths (``"posts.comments"``)
            load each level in turn over the records of the level above.
        conditions: Mapping[str, Callable[[Relation], Any]]
            Callbacks applied to the eager relation before it runs, keyed by
            dotted path, falling back to the plain relation name.
        limit: int | None
            Per-owner limit for to-many relations, enforced with
            ``ROW_NUMBER()`` where the backend supports it.
        order_by: tuple[str, ...]
            Related columns to order to-many relations by, descending.

    Returns:
        The owners as a :class:`ModelCollection`.

    Raises:
        ValueError: If a relation name does not exist on an owner class.

    Examples:
        Per-owner limit::

            posts = Post.query().get(conn)
            eager_load(conn, posts, loads=("comments",), limit=3, order_by=("created_at",))

        Nested and constrained::

            eager_load(
                conn,
                users,
                loads=("posts.tags",),
                conditions={"posts": lambda rel: rel.where("published", True)},
            )
    """
    parameters = _EagerParams(
        loads=tuple(params.get("loads", ())),
        conditions=frozendict(params.get("conditions") or {}),
        limit=params.get("limit"),
        order_by=tuple(order_by) if (order_by := params.get("order_by")) else None,
    )

    roots: ModelCollection[Model] = ModelCollection(models)
    levels: dict[str, ModelCollection[Model]] = {"": roots}

    for path in _expand_loads(parameters.loads):
        parent_path, _, name = path.rpartition(".")
        owners = levels.get(parent_path, ModelCollection())
        for group in owners.group_by_class().values():
            _load_relation(conn, group, name, path, parameters)
        levels[path] = ModelCollection.flatten(owner.get_relation(name) for owner in owners)

    return roots


def load_counts(conn: sa.Connection, models: Iterable[Model], *names: str) -> ModelCollection[Model]:
    """Set ``<name>_count`` on every record, one grouped ``COUNT`` per relation and owner class.

    Records without related rows get ``0``.

    Raises:
        ValueError: If a relation name does not exist on an owner class, or
            names a relation that cannot be counted in a batch.
    """
    roots: ModelCollection[Model] = ModelCollection(models)
    for group in roots.group_by_class().values():
        for name in names:
            relation = _relation_method(type(group[0]), name)(group[0])
            if not isinstance(relation, Relation):
                raise ValueError(f"{type(group[0]).__name__}.{name}() cannot be counted in a batch")
            eager = relation.new_eager_instance()
            eager.add_eager_constraints(group)
            counts = eager.count_by_owner(conn)
            for model in group:
                model.set_attribute(f"{name}_count", counts.get(eager.owner_count_key(model), 0))
    return roots


def relations_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    return {
        **{fn.__name__: fn.cache_info() for fn in (_expand_loads, _relation_method)},
        **tools_cache_info(),
    }


def relations_cache_clear() -> None:
    """Clear all internal LRU caches."""
    for fn in (_expand_loads, _relation_method):
        fn.cache_clear()
    tools_cache_clear()
