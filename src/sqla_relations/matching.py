"""Dictionary matching of eager-loaded results back onto owner records.

Every function here runs in O(owners + results): results are bucketed once
by their match key, then each owner looks up its bucket. Owners without a
bucket always receive an explicit empty collection (to-many) or ``None``
(to-one), never an unset relation.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Final, TypeVar

from .datastructures import ModelCollection


if TYPE_CHECKING:
    from .model import Model, Pivot

M = TypeVar("M", bound="Model")

PIVOT_PREFIX: Final[str] = "pivot_"
CANONICAL_INT: Final = re.compile(r"^(?:0|-?[1-9][0-9]*)\Z")

KeyFunc = Callable[["Model"], Any]


def dictionary_key(value: Any) -> Hashable:
    """Normalise a key value so numerically equal keys land in the same bucket.

    ``1``, ``1.0``, ``Decimal("1")`` and the canonical integer string ``"1"``
    share a bucket. Any other string is kept as it is, so ``"01"`` and
    ``"007"`` stay distinct from ``1`` and ``7``.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Decimal) and value.is_finite() and value == value.to_integral_value():
        return int(value)
    if isinstance(value, str) and CANONICAL_INT.match(value):
        return int(value)
    if isinstance(value, bytearray):
        return bytes(value)
    return value


def morph_key(type_: Any, id_: Any) -> str:
    """Composite ``type:id`` key for polymorphic matching."""
    return f"{type_}:{dictionary_key(id_)}"


def build_dictionary(results: Iterable[M], key: str | KeyFunc) -> dict[Hashable, list[M]]:
    """Bucket *results* by *key* (attribute name or callable), keeping result order."""
    key_of = _key_func(key)
    dictionary: dict[Hashable, list[M]] = {}
    for result in results:
        dictionary.setdefault(key_of(result), []).append(result)
    return dictionary


def build_single_dictionary(results: Iterable[M], key: str | KeyFunc) -> dict[Hashable, M]:
    """Map *key* to one result. On duplicates the last one wins."""
    key_of = _key_func(key)
    return {key_of(result): result for result in results}


def match_many(
    models: Iterable[Model],
    dictionary: Mapping[Hashable, Sequence[M]],
    owner_key: str | KeyFunc,
    name: str,
) -> None:
    key_of = _key_func(owner_key)
    for model in models:
        model.set_relation(name, ModelCollection(dictionary.get(key_of(model), ())))


def match_one(
    models: Iterable[Model],
    dictionary: Mapping[Hashable, M],
    owner_key: str | KeyFunc,
    name: str,
) -> None:
    key_of = _key_func(owner_key)
    for model in models:
        model.set_relation(name, dictionary.get(key_of(model)))


def match_pivot(
    models: Iterable[Model],
    results: Iterable[M],
    *,
    name: str,
    result_owner_key: KeyFunc,
    owner_key: KeyFunc,
    related_key: str,
    make_pivot: Callable[[Model, dict[str, Any]], Pivot],
    accessor: str = "pivot",
) -> None:
    """Attach pivot-joined *results* to their owners.

    Each result row carries ``pivot_*`` columns. They are extracted into a
    pivot payload and stripped from the related record. A related record
    shared by several owners (one tag on many posts) is hydrated once, then
    cloned per owner so every owner sees its own pivot payload. Duplicate
    join rows for the same related id reuse the first instance.
    """
    dictionary: dict[Hashable, list[tuple[Hashable, dict[str, Any]]]] = {}
    related_index: dict[Hashable, M] = {}

    for result in results:
        owner = result_owner_key(result)
        raw = result.remove_attributes_by_prefix(PIVOT_PREFIX)
        pivot = {column[len(PIVOT_PREFIX):]: value for column, value in raw.items()}
        related_id = dictionary_key(result.get_attribute(related_key))
        related_index.setdefault(related_id, result)
        dictionary.setdefault(owner, []).append((related_id, pivot))

    for model in models:
        entries = dictionary.get(owner_key(model), ())
        collection: ModelCollection[M] = ModelCollection()
        for related_id, pivot in entries:
            clone = related_index[related_id].replicate()
            clone.set_relation(accessor, make_pivot(model, pivot))
            collection.append(clone)
        model.set_relation(name, collection)


def _key_func(key: str | KeyFunc) -> KeyFunc:
    if callable(key):
        return key
    return lambda model: dictionary_key(model.get_attribute(key))
