from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Final

import sqlalchemy as sa


logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_CACHE_TTL: Final[float] = 300.0


@dataclass(frozen=True, slots=True)
class _Entry:
    columns: tuple[str, ...]
    captured_at: float


class SchemaCache:
    """TTL cache of table column names.

    Column lists are read through ``sqlalchemy.inspect(conn).get_columns``,
    which issues the backend specific introspection query (information_schema
    on MySQL and PostgreSQL, ``PRAGMA table_info`` on SQLite).

    The cache is shared and not synchronised. Two callers missing the same
    table at the same time both query the database and the last write wins;
    both write the same columns.

    Example:
        >>> cache = SchemaCache(ttl=60)
        >>> cache.columns(conn, "post_tag")
        ('post_id', 'tag_id', 'role', 'created_at', 'updated_at')
    """

    __slots__ = ("_clock", "_entries", "_hits", "_misses", "ttl")

    def __init__(
        self,
        ttl: float = DEFAULT_SCHEMA_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._hits = 0
        self._misses = 0

    def columns(self, conn: sa.Connection, table: str) -> tuple[str, ...]:
        """Return the column names of *table*, querying the database on a miss or after expiry.

        Raises:
            sqlalchemy.exc.NoSuchTableError: If the table does not exist.
        """
        now = self._clock()
        entry = self._entries.get(table)
        if entry is not None and now - entry.captured_at < self.ttl:
            self._hits += 1
            return entry.columns

        self._misses += 1
        columns = tuple(column["name"] for column in sa.inspect(conn).get_columns(table))
        logger.debug("schema cache miss for %s: %d columns", table, len(columns))
        self._entries[table] = _Entry(columns, now)
        return columns

    def intersection(self, conn: sa.Connection, tables: Iterable[str]) -> tuple[str, ...]:
        """Columns present in every one of *tables*, in the order of the first table."""
        common: tuple[str, ...] | None = None
        for table in tables:
            columns = self.columns(conn, table)
            if common is None:
                common = columns
            else:
                present = set(columns)
                common = tuple(column for column in common if column in present)
        return common or ()

    def has_columns(self, conn: sa.Connection, table: str, *columns: str) -> bool:
        present = set(self.columns(conn, table))
        return all(column in present for column in columns)

    def clear(self, table: str | None = None) -> None:
        """Drop one table's entry, or every entry when *table* is ``None``."""
        if table is None:
            self._entries.clear()
        else:
            self._entries.pop(table, None)

    def configure_ttl(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError(f"TTL must not be negative, got {seconds}")
        self.ttl = seconds

    def info(self) -> dict[str, Any]:
        return {
            "hits": self._hits,
            "misses": self._misses,
            "tables": len(self._entries),
            "ttl": self.ttl,
        }


default_schema_cache: Final[SchemaCache] = SchemaCache()
