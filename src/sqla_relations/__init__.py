"""Relationship resolution for SQLAlchemy Core tables.

sqla_relations loads related records for a batch of already-fetched owner
records without issuing one query per owner. Declare relations as methods on
``Model`` subclasses, then call ``eager_load(conn, owners, loads=(...))``:
constraint batching, per-owner ``ROW_NUMBER()`` limits, pivot tables,
polymorphic types and ``UNION ALL`` type batching are handled automatically.
"""

from ._version import __version__, __version_tuple__
from .belongs_to_many import BelongsToMany, MorphedByMany, MorphToMany
from .datastructures import CursorPage, ModelCollection, Page, frozendict
from .eager import eager_load, load_counts, relations_cache_clear, relations_cache_info
from .errors import (
    InvalidInputError,
    InvalidJsonPathError,
    InvalidOperatorError,
    InvalidPageSizeError,
    InvalidPivotDataError,
    InvalidRelatedIdError,
    MissingParentKeyError,
    RelationError,
    UnknownMorphTypeError,
)
from .has import BelongsTo, HasMany, HasOne
from .model import Model, Pivot
from .morph import MorphMany, MorphOne, MorphTo
from .morph_map import MorphMap, morph_map
from .query import QueryBuilder
from .relation import Relation
from .schema import SchemaCache, default_schema_cache
from .through import HasManyThrough, HasOneThrough
from .tools import add_constraints, get_primary_key, get_table_name, supports_window_functions


__all__ = (
    "BelongsTo",
    "BelongsToMany",
    "CursorPage",
    "HasMany",
    "HasManyThrough",
    "HasOne",
    "HasOneThrough",
    "InvalidInputError",
    "InvalidJsonPathError",
    "InvalidOperatorError",
    "InvalidPageSizeError",
    "InvalidPivotDataError",
    "InvalidRelatedIdError",
    "MissingParentKeyError",
    "Model",
    "ModelCollection",
    "MorphMany",
    "MorphMap",
    "MorphOne",
    "MorphTo",
    "MorphToMany",
    "MorphedByMany",
    "Page",
    "Pivot",
    "QueryBuilder",
    "Relation",
    "RelationError",
    "SchemaCache",
    "UnknownMorphTypeError",
    "__version__",
    "__version_tuple__",
    "add_constraints",
    "default_schema_cache",
    "eager_load",
    "frozendict",
    "get_primary_key",
    "get_table_name",
    "load_counts",
    "morph_map",
    "relations_cache_clear",
    "relations_cache_info",
    "supports_window_functions",
)
