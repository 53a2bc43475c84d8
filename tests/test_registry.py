import dataclasses
import pytest
from lodashbuild import (
    ALIAS_TO_REAL, DEFAULT_REGISTRY, DEPENDENCY_MAP, UNIT_CATEGORIES, BuildOptions,
    SourceEditor, Unit, UnitRegistry, normalize_category,
)


class TestUnitRegistry:
    def test_default_registry_size(self):
        """Every unit of the dependency table is registered"""
        assert len(DEFAULT_REGISTRY) == len(DEPENDENCY_MAP) == 95
        assert "map" in DEFAULT_REGISTRY
        assert "collect" not in DEFAULT_REGISTRY

    def test_canonicalize(self):
        """Aliases resolve to real names, other names map to themselves"""
        assert DEFAULT_REGISTRY.canonicalize("collect") == "map"
        assert DEFAULT_REGISTRY.canonicalize("foldr") == "reduceRight"
        assert DEFAULT_REGISTRY.canonicalize("map") == "map"
        assert DEFAULT_REGISTRY.canonicalize("nope") == "nope"

    def test_canonicalize_is_idempotent(self):
        for name in [*ALIAS_TO_REAL, *DEFAULT_REGISTRY.all_units()]:
            real = DEFAULT_REGISTRY.canonicalize(name)
            assert DEFAULT_REGISTRY.canonicalize(real) == real
            assert real in DEFAULT_REGISTRY

    def test_aliases_of(self):
        """Aliases are listed in sorted order"""
        assert DEFAULT_REGISTRY.aliases_of("first") == ["head", "take"]
        assert DEFAULT_REGISTRY.aliases_of("reduce") == ["foldl", "inject"]
        assert DEFAULT_REGISTRY.aliases_of("bind") == []
        assert DEFAULT_REGISTRY.aliases_of("nope") == []

    def test_unit_lookup_by_alias(self):
        unit = DEFAULT_REGISTRY.unit("each")
        assert unit.name == "forEach"
        assert unit.category == "Collections"
        assert unit.aliases == frozenset({"each"})

    def test_unknown_unit(self):
        assert DEFAULT_REGISTRY.unit("nope") is None
        assert DEFAULT_REGISTRY.dependencies_of("nope") == frozenset()

    def test_categories(self):
        """Every unit carries exactly one category"""
        assert DEFAULT_REGISTRY.category_of("each") == "Collections"
        assert DEFAULT_REGISTRY.category_of("nope") is None
        assert DEFAULT_REGISTRY.members_of("Chaining") == {"chain", "tap", "value"}
        total = sum(len(names) for names in UNIT_CATEGORIES.values())
        assert total == len(DEFAULT_REGISTRY)

    def test_dependencies_of(self):
        assert DEFAULT_REGISTRY.dependencies_of("zip") == frozenset({"max", "pluck"})
        assert DEFAULT_REGISTRY.dependencies_of("after") == frozenset()
        assert DEFAULT_REGISTRY.dependencies_of("nope") == frozenset()

    def test_all_units_order(self):
        """Units keep the order of the dependency table"""
        assert DEFAULT_REGISTRY.all_units() == list(DEPENDENCY_MAP)

    def test_with_overrides_returns_new_registry(self):
        """Overrides never touch the original registry"""
        registry = DEFAULT_REGISTRY.with_overrides({"clone": ["extend"]})
        assert registry is not DEFAULT_REGISTRY
        assert registry.dependencies_of("clone") == frozenset({"extend"})
        assert "forOwn" in DEFAULT_REGISTRY.dependencies_of("clone")
        assert registry.aliases_of("first") == ["head", "take"]

    def test_with_overrides_unknown_name(self):
        with pytest.raises(KeyError):
            DEFAULT_REGISTRY.with_overrides({"nope": []})

    def test_for_options_underscore(self):
        """Underscore builds use the narrower edges"""
        registry = DEFAULT_REGISTRY.for_options(BuildOptions(underscore=True))
        assert registry.dependencies_of("clone") == frozenset({"extend", "isArray"})
        assert registry.dependencies_of("isEqual") == frozenset({"isArray", "isFunction"})
        assert DEFAULT_REGISTRY.dependencies_of("clone") == frozenset(
            {"extend", "forIn", "forOwn", "isArguments", "isFunction"}
        )

    def test_for_options_default(self):
        assert DEFAULT_REGISTRY.for_options(BuildOptions()) is DEFAULT_REGISTRY

    def test_for_options_legacy_underscore(self):
        """Legacy builds keep the deep `clone` and its edges"""
        options = BuildOptions(legacy=True, underscore=True)
        assert DEFAULT_REGISTRY.for_options(options) is DEFAULT_REGISTRY

    def test_unit_is_frozen(self):
        unit = DEFAULT_REGISTRY.unit("map")
        with pytest.raises(dataclasses.FrozenInstanceError):
            unit.name = "other"


class TestVerify:
    def test_registry_matches_source(self, source):
        """Every unit has one declaration tagged with its category"""
        assert DEFAULT_REGISTRY.verify(source) == []

    def test_missing_declaration(self, source):
        editor = SourceEditor()
        modified = editor.remove_function(source, "zip")
        problems = DEFAULT_REGISTRY.verify(modified, editor)
        assert problems == ["zip: no declaration found"]

    def test_category_mismatch(self, source):
        registry = UnitRegistry([Unit("zip", "Objects")])
        assert registry.verify(source) == [
            "zip: category 'Objects' does not match ['Arrays']"
        ]

    def test_duplicate_declaration(self, source):
        editor = SourceEditor()
        declaration = editor.match(source, "zip")
        registry = UnitRegistry([Unit("zip", "Arrays")])
        problems = registry.verify(source + declaration, editor)
        assert problems == ["zip: 2 declarations found"]


def test_normalize_category():
    assert normalize_category("arrays") == "Arrays"
    assert normalize_category("FUNCTIONS") == "Functions"
    assert normalize_category("") == ""
