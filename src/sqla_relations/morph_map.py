from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, ClassVar, final

from .datastructures import frozendict
from .errors import UnknownMorphTypeError


if TYPE_CHECKING:
    from .model import Model


@final
class MorphMap:
    """Process-wide registry of polymorphic type aliases.

    Discriminator columns store either a registered alias (``"post"``) or,
    for unregistered models, the model class name (``"Post"``). The map is
    kept as a :class:`frozendict` snapshot, every registration swaps in a
    new one.
    """

    __instance: ClassVar[MorphMap | None] = None
    _aliases: frozendict[str, type[Model]]
    _classes: ClassVar[dict[str, type[Model]]] = {}

    def __new__(cls) -> MorphMap:
        if cls.__instance is None:
            instance = super().__new__(cls)
            instance._aliases = frozendict()
            cls.__instance = instance
        return cls.__instance

    @property
    def aliases(self) -> Mapping[str, type[Model]]:
        """The alias-to-model mapping (read-only)."""
        return self._aliases

    def register(self, mapping: Mapping[str, type[Model]], *, merge: bool = True) -> None:
        """Register aliases, merging with existing ones unless *merge* is ``False``."""
        base = dict(self._aliases) if merge else {}
        base.update(mapping)
        self._aliases = frozendict(base)

    def resolve(self, alias: str) -> type[Model]:
        """Map a stored discriminator value back to its model class.

        Raises:
            UnknownMorphTypeError: If neither an alias nor a model class name matches.
        """
        model = self._aliases.get(alias) or self._classes.get(alias)
        if model is None:
            raise UnknownMorphTypeError(alias)
        return model

    def alias_for(self, model: type[Model]) -> str:
        """The value written to discriminator columns for *model*."""
        for alias, registered in self._aliases.items():
            if registered is model:
                return alias
        return getattr(model, "__morph_alias__", None) or model.__name__

    @classmethod
    def remember(cls, model: type[Model]) -> None:
        """Track a model class by name, called for every ``Model`` subclass."""
        cls._classes[model.__name__] = model
        alias = getattr(model, "__morph_alias__", None)
        if alias:
            cls._classes[alias] = model

    @classmethod
    def reset(cls) -> None:
        """Drop registered aliases (primarily for tests). Known class names are kept."""
        cls.__instance = None


def morph_map(mapping: Mapping[str, type[Model]] | None = None) -> MorphMap:
    """Return the global :class:`MorphMap`, registering *mapping* first when given.

    Example:
        >>> morph_map({"post": Post, "video": Video})
    """
    registry = MorphMap()
    if mapping:
        registry.register(mapping)
    return registry
