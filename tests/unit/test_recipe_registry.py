"""Tests for the explicit recipe registry."""
import sys
import types

import pytest

from keyrotor.domain.recipes import Recipe, RecipeRegistry, key_prefix
from keyrotor.errors import UnknownRecipeError


class EchoRecipe(Recipe):
    def generate(self) -> str:
        return "echo"

    def validate(self, value: str) -> bool:
        return value == "echo"


@pytest.mark.parametrize("key,expected", [
    ("aws.credentials", "aws"),
    ("aws.prod.credentials", "aws"),
    ("standalone", None),
    (".hidden", None),
])
def test_key_prefix(key, expected):
    assert key_prefix(key) == expected


def test_register_instance_resolves_same_object():
    recipe = EchoRecipe()
    registry = RecipeRegistry().register("echo", recipe)
    assert registry.resolve("echo") is recipe
    assert registry.has("echo")
    assert registry.names() == ["echo"]


def test_register_class_builds_new_instance_each_time():
    registry = RecipeRegistry().register("echo", EchoRecipe)
    first, second = registry.resolve("echo"), registry.resolve("echo")
    assert isinstance(first, EchoRecipe)
    assert first is not second


def test_resolve_for_key_uses_injected_derivation():
    registry = RecipeRegistry(key_to_name=lambda key: key.split("/")[0])
    registry.register("vault", EchoRecipe)
    assert isinstance(registry.resolve_for_key("vault/db"), EchoRecipe)
    assert registry.resolve_for_key("other/db") is None


def test_provider_cleanup_defaults_to_true():
    registry = RecipeRegistry().register("echo", EchoRecipe, provider_cleanup=False)
    assert registry.provider_cleanup("echo") is False
    assert registry.provider_cleanup("unknown") is True


def test_require_unknown_recipe_raises():
    with pytest.raises(UnknownRecipeError) as exc:
        RecipeRegistry().require("missing")
    assert exc.value.code == "UNKNOWN_RECIPE"


def test_recipe_name_is_class_name():
    assert EchoRecipe().name == "EchoRecipe"


def test_from_config_imports_recipes(monkeypatch):
    module = types.ModuleType("fake_recipes")
    module.EchoRecipe = EchoRecipe
    monkeypatch.setitem(sys.modules, "fake_recipes", module)

    registry = RecipeRegistry.from_config({
        "echo": "fake_recipes:EchoRecipe",
        "quiet": {"class": "fake_recipes.EchoRecipe", "provider_cleanup": False},
    })

    assert isinstance(registry.resolve("echo"), EchoRecipe)
    assert registry.provider_cleanup("echo") is True
    assert registry.provider_cleanup("quiet") is False


def test_from_config_rejects_bad_path():
    with pytest.raises(ValueError):
        RecipeRegistry.from_config({"bad": "nocolon"})
