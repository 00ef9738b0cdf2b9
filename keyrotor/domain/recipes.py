"""Recipe capability contract and registry.

A recipe knows how to mint and check a credential for one provider. The
registry maps names to recipe factories explicitly; deriving a recipe name
from a secret key is a pure function supplied by the caller.
"""
import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from keyrotor.errors import UnknownRecipeError

logger = logging.getLogger(__name__)


class Recipe(ABC):
    """Generates and validates replacement values for a secret."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def generate(self) -> str:
        """Produce a new candidate value."""
        ...

    @abstractmethod
    def validate(self, value: str) -> bool:
        """Return True if the candidate works against the provider."""
        ...


class DiscardableRecipe(Recipe):
    """Recipe that can delete a retired value at the provider."""

    @abstractmethod
    def discard(self, value: str) -> None:
        ...


class InitializableRecipe(Recipe):
    """Recipe that can bootstrap the first value of a secret."""

    @abstractmethod
    def init(self) -> Optional[str]:
        ...


class SecretRotator(ABC):
    """External rotate/rollback capability for caller-driven rotations."""

    @abstractmethod
    def rotate(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


RecipeFactory = Callable[[], Recipe]


def key_prefix(key: str) -> Optional[str]:
    """Recipe name for a key: the segment before the first dot."""
    head, sep, _ = key.partition(".")
    if not sep or not head:
        return None
    return head


@dataclass(frozen=True)
class RecipeConfig:
    factory: RecipeFactory
    provider_cleanup: bool = True


class RecipeRegistry:
    """Explicit name -> recipe mapping."""

    def __init__(self, key_to_name: Callable[[str], Optional[str]] = key_prefix):
        self._recipes: Dict[str, RecipeConfig] = {}
        self._key_to_name = key_to_name

    def register(
        self,
        name: str,
        recipe: Union[Recipe, RecipeFactory, type],
        provider_cleanup: bool = True,
    ) -> "RecipeRegistry":
        if isinstance(recipe, Recipe):
            instance = recipe
            factory: RecipeFactory = lambda: instance
        else:
            factory = recipe  # type: ignore[assignment]
        self._recipes[name] = RecipeConfig(factory=factory, provider_cleanup=provider_cleanup)
        return self

    def has(self, name: str) -> bool:
        return name in self._recipes

    def names(self) -> List[str]:
        return sorted(self._recipes)

    def get_config(self, name: str) -> Optional[RecipeConfig]:
        return self._recipes.get(name)

    def provider_cleanup(self, name: str) -> bool:
        config = self._recipes.get(name)
        return config.provider_cleanup if config else True

    def resolve(self, name: str) -> Optional[Recipe]:
        config = self._recipes.get(name)
        if config is None:
            return None
        return config.factory()

    def require(self, name: str) -> Recipe:
        recipe = self.resolve(name)
        if recipe is None:
            raise UnknownRecipeError(name)
        return recipe

    def name_for_key(self, key: str) -> Optional[str]:
        return self._key_to_name(key)

    def resolve_for_key(self, key: str) -> Optional[Recipe]:
        name = self._key_to_name(key)
        if name is None:
            return None
        return self.resolve(name)

    @classmethod
    def from_config(
        cls,
        recipes: Mapping[str, Any],
        key_to_name: Callable[[str], Optional[str]] = key_prefix,
    ) -> "RecipeRegistry":
        """Build a registry from settings.

        Accepts ``{"twilio": "pkg.mod:TwilioRecipe"}`` or
        ``{"twilio": {"class": "pkg.mod:TwilioRecipe", "provider_cleanup": False}}``.
        """
        registry = cls(key_to_name=key_to_name)
        for name, entry in recipes.items():
            if isinstance(entry, str):
                path, provider_cleanup = entry, True
            else:
                path = entry["class"]
                provider_cleanup = bool(entry.get("provider_cleanup", True))
            registry.register(name, _import_object(path), provider_cleanup=provider_cleanup)
            logger.debug(f"Registered recipe {name} -> {path}")
        return registry


def _import_object(path: str) -> Any:
    module_name, _, attr = path.partition(":")
    if not attr:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Invalid recipe import path: {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)
