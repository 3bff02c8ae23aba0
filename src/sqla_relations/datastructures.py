from __future__ import annotations

import sys
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar, overload


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .model import Model


K = TypeVar("K")
V = TypeVar("V")
M = TypeVar("M", bound="Model")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Used for snapshots that must not change after construction: morph map
    registrations, bound parameters of raw predicates and per-call eager
    loading conditions.

    Example:
        >>> aliases = frozendict({"post": Post})
        >>> aliases.copy(video=Video)
        <frozendict {'post': <class 'Post'>, 'video': <class 'Video'>}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *add_or_replace* merged on top."""
        return type(self)(self, **add_or_replace)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        # computed on first use, raises TypeError when a value is unhashable
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))
        return self._hash


class ModelCollection(list[M], Generic[M]):
    """Ordered, sliceable container of hydrated records.

    A plain ``list`` subclass so that relation results behave like any other
    sequence, with a few helpers used by the matcher and by callers.
    """

    @overload
    def __getitem__(self, index: int) -> M: ...

    @overload
    def __getitem__(self, index: slice) -> ModelCollection[M]: ...

    def __getitem__(self, index: int | slice) -> M | ModelCollection[M]:
        result = super().__getitem__(index)
        if isinstance(index, slice):
            return type(self)(result)
        return result

    def first(self) -> M | None:
        return self[0] if self else None

    def last(self) -> M | None:
        return self[-1] if self else None

    def pluck(self, attribute: str) -> list[Any]:
        """Return the value of *attribute* for every record, in order."""
        return [model.get_attribute(attribute) for model in self]

    def model_keys(self) -> list[Any]:
        """Return primary-key values for every record, in order."""
        return [model.key for model in self]

    def group_by_class(self) -> dict[type[M], ModelCollection[M]]:
        """Split a heterogeneous collection by concrete model class, keeping order."""
        groups: dict[type[M], ModelCollection[M]] = {}
        for model in self:
            groups.setdefault(type(model), type(self)()).append(model)
        return groups

    @classmethod
    def flatten(cls, values: Iterable[Any]) -> ModelCollection[Any]:
        """Flatten relation values (records, collections or ``None``) into one collection."""
        out: ModelCollection[Any] = cls()
        for value in values:
            if value is None:
                continue
            if isinstance(value, list):
                out.extend(value)
            else:
                out.append(value)
        return out


@dataclass(frozen=True, slots=True)
class Page(Generic[M]):
    """One page of related records returned by ``paginate``."""

    items: ModelCollection[M]
    total: int
    per_page: int
    page: int

    @property
    def last_page(self) -> int:
        return max(1, -(-self.total // self.per_page))

    @property
    def has_more(self) -> bool:
        return self.page < self.last_page


@dataclass(frozen=True, slots=True)
class CursorPage(Generic[M]):
    """One keyset page returned by ``cursor_paginate``.

    ``next_cursor`` is the ordering column's value on the last item, or
    ``None`` on the final page. ``previous_cursor`` echoes the cursor the page
    was requested with.
    """

    items: ModelCollection[M]
    per_page: int
    has_more: bool
    next_cursor: Any = None
    previous_cursor: Any = None
