from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from itertools import islice
from typing import TYPE_CHECKING, Any, Final, TypeVar

import sqlalchemy as sa
from sqlalchemy.engine import Dialect

from .datastructures import frozendict


if TYPE_CHECKING:
    from .model import Model
    from .relation import Relation

T = TypeVar("T", bound="Model")
R = TypeVar("R", bound="Relation[Any]")
_I = TypeVar("_I")

# minimum server versions with ROW_NUMBER() OVER (...)
WINDOW_FUNCTION_MINIMUM_VERSIONS: Final[frozendict[str, tuple[int, ...]]] = frozendict({
    "postgresql": (8, 4),
    "mssql": (0,),
    "oracle": (0,),
    "sqlite": (3, 25, 0),
    "mysql": (8,),
    "mariadb": (10, 2),
})

_CAMEL_BOUNDARY: Final = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


@lru_cache
def _get_primary_key(model: type[T]) -> str:
    """Return the first primary-key column name of *model* (cached)."""
    table = _get_table(model)
    try:
        return next(iter(table.primary_key)).name
    except StopIteration:
        raise ValueError(f"Table {table.name!r} of {model.__name__} has no primary key") from None


@lru_cache
def _get_table_name(model: type[T]) -> str:
    """Return the table name bound to *model* (cached)."""
    return _get_table(model).name


def _get_table(model: type[T]) -> sa.Table:
    table = getattr(model, "__table__", None)
    if not isinstance(table, sa.Table):
        raise TypeError(f"{model.__name__} is not bound to a table, set __table__")
    return table


def get_table_name(model: type[T]) -> str:
    """Get the table name for a model class.

    Args:
        model: Model subclass with a ``__table__``.

    Returns:
        The table name as a string.

    Raises:
        TypeError: If the model is not bound to a table.
    """
    return _get_table_name(model)


def get_primary_key(model: type[T]) -> str:
    """Get the primary-key column name for a model class.

    Args:
        model: Model subclass with a ``__table__``.

    Returns:
        Name of the first primary-key column.

    Raises:
        ValueError: If the table declares no primary key.
    """
    return _get_primary_key(model)


@lru_cache(maxsize=256)
def snake_case(name: str) -> str:
    """``BlogPost`` -> ``blog_post``."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def qualify(table: str, column: str) -> str:
    """Prefix *column* with *table* unless it is already qualified."""
    return column if "." in column else f"{table}.{column}"


def leaf(column: str) -> str:
    """``posts.title`` -> ``title``."""
    return column.rpartition(".")[2]


def supports_window_functions(dialect: Dialect) -> bool:
    """Return ``True`` when the connected backend can run ``ROW_NUMBER() OVER``.

    Unknown dialects are treated as unsupported. A dialect whose server
    version has not been detected yet is trusted, execution errors are
    recovered by the caller.
    """
    name = dialect.name
    if name == "mysql" and getattr(dialect, "is_mariadb", False):
        name = "mariadb"

    minimum = WINDOW_FUNCTION_MINIMUM_VERSIONS.get(name)
    if minimum is None:
        return False

    version = getattr(dialect, "server_version_info", None)
    if not version:
        return True

    return tuple(part for part in version if isinstance(part, int)) >= minimum


@contextmanager
def transaction(conn: sa.Connection) -> Iterator[sa.Connection]:
    """Run a block atomically on *conn*.

    Opens a SAVEPOINT when a transaction is already in progress, a new
    transaction otherwise. Commits (or releases) on success, rolls back
    and re-raises on any exception.

    SQLAlchemy 2.0 connections autobegin on their first statement, so after
    any earlier read on *conn* the block only releases a SAVEPOINT. The
    writes are then durable only once the caller commits the outer
    transaction with ``conn.commit()``.
    """
    trans = conn.begin_nested() if conn.in_transaction() else conn.begin()
    with trans:
        yield conn


def utcnow() -> datetime:
    """Naive UTC timestamp for ``created_at`` / ``updated_at`` columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def batched(values: Iterable[_I], size: int) -> Iterator[list[_I]]:
    """Yield successive lists of at most *size* items."""
    if size < 1:
        raise ValueError(f"size must be positive, got {size}")
    iterator = iter(values)
    while chunk := list(islice(iterator, size)):
        yield chunk


def unique(values: Iterable[_I]) -> list[_I]:
    """Deduplicate *values* preserving first-seen order."""
    return list(dict.fromkeys(values))


def add_constraints(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[R], R]:
    """Create a condition callable for :func:`eager_load`.

    Args:
        *conditions: SQLAlchemy boolean expressions against the related table.

    Returns:
        A function that adds every expression to the relation's query with ``AND``.

    Example:
        >>> eager_load(
        ...     conn,
        ...     posts,
        ...     loads=("comments",),
        ...     conditions={"comments": add_constraints(comments.c.approved.is_(True))},
        ... )
    """

    def _add(relation: R) -> R:
        for condition in conditions:
            relation.where_expr(condition)
        return relation

    return _add


def tools_cache_info() -> dict[str, Any]:
    return {fn.__name__: fn.cache_info() for fn in (_get_primary_key, _get_table_name, snake_case)}


def tools_cache_clear() -> None:
    for fn in (_get_primary_key, _get_table_name, snake_case):
        fn.cache_clear()
