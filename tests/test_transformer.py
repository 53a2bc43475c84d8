import dataclasses
import re
import pytest
from conftest import COMPILED, FakeEvaluator
from lodashbuild import (
    BuildContext, BuildOptions, CleanupPass, CompatibilityPass, DeadCodePass,
    LegacyMode, MobileMode, PipelineOrderError, ShimPruningPass, SourceArtifact,
    SourceTransformer, StrictMode, TemplateInlining, UnderscoreMode, UnitRemovalPass,
)


def context_for(**kwargs):
    return BuildContext.for_options(BuildOptions(**kwargs))


def build(source, evaluator=None, **kwargs):
    return SourceTransformer(evaluator=evaluator).transform(source, context_for(**kwargs))


class TestPipeline:
    def test_apply_records_pass(self, source):
        artifact = SourceArtifact(source)
        UnitRemovalPass().apply(artifact, context_for())
        assert artifact.applied == ["remove-units"]

    def test_out_of_order_pass(self, source):
        """Passes refuse to run before their prerequisites"""
        with pytest.raises(PipelineOrderError):
            ShimPruningPass().apply(SourceArtifact(source), context_for())

    def test_dead_code_requires_references(self, source):
        with pytest.raises(PipelineOrderError):
            DeadCodePass().apply(SourceArtifact(source), context_for())

    def test_cleanup_requires_references(self, source):
        with pytest.raises(PipelineOrderError):
            CleanupPass().apply(SourceArtifact(source), context_for())

    def test_copy_is_independent(self):
        artifact = SourceArtifact("x", ["remove-units"])
        other = artifact.copy()
        other.applied.append("prune-shims")
        assert artifact.applied == ["remove-units"]

    def test_no_evaluator(self, source):
        transformer = SourceTransformer()
        assert transformer.compile(source, context_for(mobile=True)) == {}

    def test_evaluates_prepared_source(self, source):
        """The evaluated copy carries the pre-evaluation edits"""
        evaluator = FakeEvaluator()
        build(source, evaluator, mobile=True)
        assert len(evaluator.sources) == 1
        assert "var isKeysFast" not in evaluator.sources[0]
        assert "var isKeysFast" in source


class TestModes:
    def mode_names(self, **kwargs):
        modes = CompatibilityPass().modes(BuildOptions(**kwargs))
        return [type(mode) for mode in modes]

    def test_default_modes(self):
        assert self.mode_names() == [StrictMode, TemplateInlining]

    def test_mobile_modes(self):
        assert self.mode_names(mobile=True) == [StrictMode, MobileMode]

    def test_legacy_modes(self):
        assert self.mode_names(legacy=True) == [StrictMode, LegacyMode, TemplateInlining]

    def test_underscore_modes(self):
        assert self.mode_names(underscore=True) == [StrictMode, UnderscoreMode, MobileMode]

    def test_legacy_wins_over_underscore(self):
        assert self.mode_names(legacy=True, underscore=True) == [
            StrictMode, LegacyMode, TemplateInlining,
        ]


class TestBuilds:
    def test_default(self, source):
        result = build(source)
        assert "lodash.map = map;" in result.source
        assert "var iteratorTemplate = template(" in result.source
        assert "\n  'use strict';\n" not in result.source
        assert "lodash._iteratorTemplate" not in result.source
        assert "lodash._shimKeys" not in result.debug_source

    def test_strict(self, source):
        result = build(source, strict=True)
        assert "\n  'use strict';\n" in result.source
        assert "'\\'use strict\\';\\n' +" in result.source
        assert "isStrictFast" not in result.source

    def test_include(self, source):
        result = build(source, include=("map",))
        assert "var map = createIterator(" in result.source
        assert "function identity(value)" in result.source
        assert "lodash.collect = map;" in result.source
        assert "function bind(" not in result.source
        assert "lodash.filter" not in result.source
        assert "hasObjectSpliceBug" not in result.source

    def test_mobile(self, source):
        result = build(source, FakeEvaluator(), mobile=True)
        assert "createIterator" not in result.source
        assert "function createIterator()" in result.debug_source
        assert "var iteratorTemplate" not in result.source
        assert "var forEach = function(collection, callback, thisArg) {\n    var index" in result.source
        assert "result = merge(result, source, compareAscending);" in result.source
        for name in ("hasObjectSpliceBug", "iteratesOwnLast", "noCharByIndex",
                     "noArraySliceOnStrings", "noNodeClass", "lodash._shimKeys"):
            assert name not in result.source

    def test_legacy(self, source):
        result = build(source, FakeEvaluator(), legacy=True)
        for name in ("isBindFast", "nativeBind", "nativeIsArray", "reNative", "var shimKeys"):
            assert name not in result.source
        assert "var keys = createIterator({" in result.source
        assert "var noArgsClass = true;" in result.source
        assert "if (noArgsClass) {" not in result.source
        assert "hasOwnProperty.call(value, 'callee')" in result.source
        assert "var iteratorTemplate = function(obj) {" in result.source
        assert "with (obj)" not in result.source

    def test_underscore(self, source):
        result = build(source, FakeEvaluator(), underscore=True)
        assert "var arrayLikeClasses" not in result.source
        assert "var cloneableClasses" not in result.source
        assert "isPartial" not in result.source
        assert UnderscoreMode.clone_source in result.source
        assert "lodash.forOwn" not in result.source
        assert "define.amd" not in result.source
        assert "module.exports" in result.source


class TestExports:
    def test_no_exports(self, source):
        result = build(source, exports=("none",))
        assert "freeExports" not in result.source
        assert "window._ = lodash" not in result.source
        assert "typeof define" not in result.source

    def test_global_only(self, source):
        result = build(source, exports=("global",))
        assert "window._ = lodash;" in result.source
        assert "freeExports" not in result.source
        assert "typeof define" not in result.source

    def test_all_exports(self, source):
        result = build(source)
        assert "define.amd" in result.source
        assert "module.exports == freeExports" in result.source
        assert "freeExports._ = lodash;" in result.source

    def test_iife(self, source):
        result = build(source, iife="!function(window){%output%}(this)")
        assert result.source.startswith("/*!")
        assert "*/\n!function(window){" in result.source
        assert result.source.endswith("}(this)")
        assert ";(function(window, undefined) {" not in result.source


class TestCleanup:
    def test_consolidates_separators(self):
        text = "a\n  /*----*/\n\n  /*----*/\nb"
        result = CleanupPass().transform(text, context_for())
        assert result == "a\n  /*----*/\nb"
        assert CleanupPass().transform(result, context_for()) == result

    def test_removes_pseudo_private_properties(self):
        text = (
            "  lodash.map = map;\n\n"
            "  // add pseudo private properties used and removed during the build process\n"
            "  lodash._iteratorTemplate = iteratorTemplate;\n"
            "  lodash._shimKeys = shimKeys;\n\n"
            "  /*--*/\n"
        )
        result = CleanupPass().transform(text, context_for())
        assert result == "  lodash.map = map;\n\n  /*--*/\n"


class TestTemplateInlining:
    def test_precompile(self):
        snippet = TemplateInlining.precompile(COMPILED["_iteratorTemplate"])
        assert snippet.startswith("function(obj) {")
        assert "with (" not in snippet
        assert "__t" not in snippet
        assert "obj.firstArg" in snippet
        assert "var __p = 'var index, value, iteratee = ' +" in snippet

    def test_missing_compiled_template(self, source):
        context = dataclasses.replace(context_for(), compiled={})
        mode = TemplateInlining(CompatibilityPass().editor)
        assert mode.rewrite(source, context) == source


def code_lines(source):
    """source without comment lines"""
    return "\n".join(
        line for line in source.splitlines()
        if not line.lstrip().startswith(("*", "/*", "//"))
    )


@pytest.mark.parametrize("args", [
    [],
    ["legacy"],
    ["mobile"],
    ["underscore"],
    ["underscore", "include=clone"],
    ["legacy", "underscore"],
    ["legacy", "underscore", "include=clone"],
    ["backbone"],
])
class TestRemovedUnits:
    def build(self, source, args):
        context = BuildContext.for_options(BuildOptions.from_args(args))
        result = SourceTransformer(evaluator=FakeEvaluator()).transform(source, context)
        return context, result

    def test_no_references_to_removed_units(self, source, args):
        """Retained code never calls or declares a removed unit"""
        context, result = self.build(source, args)
        code = code_lines(result.source)
        for name in context.plan.removed:
            assert not re.search(r"(?<![\w.$])" + name + r"\(", code), name
            assert not re.search(r"^  (?:function|var) " + name + r"\b", code, re.M), name

    def test_cleanup_is_idempotent(self, source, args):
        context, result = self.build(source, args)
        assert CleanupPass().transform(result.source, context) == result.source
        assert CleanupPass().transform(result.debug_source, context) == result.debug_source


def test_legacy_underscore_keeps_deep_clone(source):
    """Legacy builds skip the underscore rewrites, so `clone` keeps its dependencies"""
    context = context_for(legacy=True, underscore=True, include=("clone",))
    assert context.plan.retained == {
        "clone", "extend", "forIn", "forOwn", "isArguments", "isFunction",
    }
    result = SourceTransformer(evaluator=FakeEvaluator()).transform(source, context)
    assert "forOwn(value, function(objValue, key) {" in result.source
    assert "var forOwn = createIterator(" in result.source
    assert "function isPlainObject(value)" in result.source
    assert UnderscoreMode.clone_source not in result.source


def test_unused_create_bound_is_pruned(source):
    result = build(source, include=("map",))
    assert "function createBound" not in result.source
    assert "function createBound" in result.debug_source
