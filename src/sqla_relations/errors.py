"""Structured error types for sqla_relations."""

from __future__ import annotations

from typing import Any


class RelationError(Exception):
    """Base error for all relationship-resolution errors."""


class InvalidInputError(RelationError, ValueError):
    """Raised when caller input is rejected before any query is built."""


class InvalidJsonPathError(InvalidInputError):
    """Raised when a JSON path does not match ``$``, ``.identifier`` or ``[index]`` segments."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(
            f"Invalid JSON path {path!r}. "
            "Expected '$' followed by '.identifier' or '[index]' segments."
        )


class InvalidOperatorError(InvalidInputError):
    """Raised when a comparison operator is not on the allow-list."""

    def __init__(self, operator: Any, allowed: frozenset[str]) -> None:
        self.operator = operator
        super().__init__(
            f"Operator {operator!r} is not allowed. Allowed: {sorted(allowed)}"
        )


class InvalidPivotDataError(InvalidInputError):
    """Raised for non-identifier pivot column names or non-scalar pivot values."""


class InvalidPageSizeError(InvalidInputError):
    """Raised when a page size or page number is lower than 1."""

    def __init__(self, name: str, value: Any) -> None:
        self.value = value
        super().__init__(f"{name} must be a positive integer, got {value!r}")


class InvalidRelatedIdError(InvalidInputError):
    """Raised when a related id passed to a pivot mutation is not a scalar key."""

    def __init__(self, value: Any) -> None:
        self.value = value
        super().__init__(f"Related ids must be int or str, got {type(value).__name__}: {value!r}")


class MissingParentKeyError(RelationError, RuntimeError):
    """Raised when a write requires the owner record's key and it has none."""

    def __init__(self, model: Any, key: str) -> None:
        self.model = model
        self.key = key
        super().__init__(
            f"{type(model).__name__} has no value for {key!r}. "
            "Save the owner record before writing through its relations."
        )


class UnknownMorphTypeError(RelationError, LookupError):
    """Raised when a polymorphic type alias cannot be resolved to a model class."""

    def __init__(self, alias: str) -> None:
        self.alias = alias
        super().__init__(
            f"Cannot resolve morph type {alias!r}. "
            "Register it with MorphMap or use the model class name."
        )
