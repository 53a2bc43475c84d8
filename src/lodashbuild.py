#!/usr/bin/env python3
"""lodashbuild.py - builds custom lodash variants

features:

- Single script which trims and rewrites lodash.js into custom builds
- Units selected by name, alias or category (include, minus, plus, category)
- Compatibility modes (backbone, csp, legacy, mobile, strict, underscore)
- Configurable export mechanisms and custom IIFE wrappers
- Emits a readable debug build and a minified release build

class structure:

UnitRegistry
DependencyResolver
BuildPlanner

UnitLocator
    SourceEditor

TransformPass
    UnitRemovalPass
    ShimPruningPass
    CompatibilityPass
    ExportsPass
    WrapperPass
    ReferencePruningPass
    DeadCodePass
    CleanupPass

ModeRewrite
    StrictMode
    LegacyMode
    UnderscoreMode
    MobileMode
    TemplateInlining

SourceTransformer
Emitter

ShellCmd
    NodeEvaluator
    CommandMinifier
    LodashBuilder

"""

import argparse
import dataclasses
import datetime
import json
import logging
import os
import re
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import IO, Any, Callable, Iterable, Mapping, Optional, Sequence, Union

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
Callback = Callable[[str, Optional[Path]], None]
Replacement = Union[str, Callable[["re.Match[str]"], str]]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


# ----------------------------------------------------------------------------
# constants

PY_VER_MINOR = sys.version_info.minor
DEFAULT_SOURCE = os.getenv("LODASH_SOURCE", "lodash.js")
DEFAULT_MINIFIER = os.getenv("LODASH_MINIFIER", "uglifyjs --compress --mangle")
NODE = os.getenv("NODE", "node")
OUTPUT_MARKER = "%output%"

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=True)
COLOR = getenv("COLOR", default=True)

# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        if PY_VER_MINOR > 10:
            duration = datetime.datetime.fromtimestamp(
                record.relativeCreated / 1000, datetime.UTC
            )
        else:
            duration = datetime.datetime.fromtimestamp(record.relativeCreated / 1000)
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


strm_handler = logging.StreamHandler()
strm_handler.setFormatter(CustomFormatter())
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    handlers=[strm_handler],
)


# ----------------------------------------------------------------------------
# unit tables

# used to resolve a method alias to its real name
ALIAS_TO_REAL = {
    "all": "every",
    "any": "some",
    "collect": "map",
    "detect": "find",
    "drop": "rest",
    "each": "forEach",
    "foldl": "reduce",
    "foldr": "reduceRight",
    "head": "first",
    "include": "contains",
    "inject": "reduce",
    "methods": "functions",
    "select": "filter",
    "tail": "rest",
    "take": "first",
    "unique": "uniq",
}

# used to track the dependencies of each unit
DEPENDENCY_MAP: dict[str, list[str]] = {
    "after": [],
    "bind": ["isFunction"],
    "bindAll": ["bind", "isFunction"],
    "chain": ["mixin"],
    "clone": ["extend", "forIn", "forOwn", "isArguments", "isFunction"],
    "compact": [],
    "compose": [],
    "contains": [],
    "countBy": [],
    "debounce": [],
    "defaults": ["isArguments"],
    "defer": [],
    "delay": [],
    "difference": ["indexOf"],
    "escape": [],
    "every": ["identity"],
    "extend": ["isArguments"],
    "filter": ["identity"],
    "find": [],
    "first": [],
    "flatten": ["isArray"],
    "forEach": [],
    "forIn": ["isArguments"],
    "forOwn": ["isArguments"],
    "functions": ["forIn", "isArguments", "isFunction"],
    "groupBy": [],
    "has": [],
    "identity": [],
    "indexOf": ["sortedIndex"],
    "initial": [],
    "intersection": ["indexOf"],
    "invert": [],
    "invoke": [],
    "isArguments": [],
    "isArray": [],
    "isBoolean": [],
    "isDate": [],
    "isElement": [],
    "isEmpty": ["isArguments", "isFunction"],
    "isEqual": ["isArguments", "isFunction"],
    "isFinite": [],
    "isFunction": [],
    "isNaN": [],
    "isNull": [],
    "isNumber": [],
    "isObject": [],
    "isRegExp": [],
    "isString": [],
    "isUndefined": [],
    "keys": ["isArguments"],
    "last": [],
    "lastIndexOf": [],
    "lateBind": ["isFunction"],
    "map": ["identity"],
    "max": [],
    "memoize": [],
    "merge": ["isArguments", "isArray", "forIn"],
    "min": [],
    "mixin": ["forEach", "functions"],
    "noConflict": [],
    "object": [],
    "omit": ["indexOf", "isArguments"],
    "once": [],
    "pairs": [],
    "partial": ["isFunction"],
    "pick": [],
    "pluck": [],
    "random": [],
    "range": [],
    "reduce": [],
    "reduceRight": ["forEach", "keys"],
    "reject": ["identity"],
    "rest": [],
    "result": ["isFunction"],
    "shuffle": [],
    "size": ["keys"],
    "some": ["identity"],
    "sortBy": [],
    "sortedIndex": ["bind"],
    "tap": ["mixin"],
    "template": ["escape"],
    "throttle": [],
    "times": [],
    "toArray": ["isFunction", "values"],
    "unescape": [],
    "union": ["indexOf"],
    "uniq": ["identity", "indexOf"],
    "uniqueId": [],
    "value": ["mixin"],
    "values": ["isArguments"],
    "where": ["forIn"],
    "without": ["indexOf"],
    "wrap": [],
    "zip": ["max", "pluck"],
}

# doc comment `@category` of each unit
# fmt: off
UNIT_CATEGORIES = {
    "Arrays": [
        "compact", "difference", "first", "flatten", "indexOf", "initial",
        "intersection", "last", "lastIndexOf", "object", "range", "rest",
        "sortedIndex", "union", "uniq", "without", "zip",
    ],
    "Chaining": ["chain", "tap", "value"],
    "Collections": [
        "contains", "countBy", "every", "filter", "find", "forEach", "groupBy",
        "invoke", "map", "max", "min", "pluck", "reduce", "reduceRight",
        "reject", "shuffle", "size", "some", "sortBy", "toArray", "where",
    ],
    "Functions": [
        "after", "bind", "bindAll", "compose", "debounce", "defer", "delay",
        "lateBind", "memoize", "once", "partial", "throttle", "wrap",
    ],
    "Objects": [
        "clone", "defaults", "extend", "forIn", "forOwn", "functions", "has",
        "invert", "isArguments", "isArray", "isBoolean", "isDate", "isElement",
        "isEmpty", "isEqual", "isFinite", "isFunction", "isNaN", "isNull",
        "isNumber", "isObject", "isRegExp", "isString", "isUndefined", "keys",
        "merge", "omit", "pairs", "pick", "values",
    ],
    "Utilities": [
        "escape", "identity", "mixin", "noConflict", "random", "result",
        "template", "times", "unescape", "uniqueId",
    ],
}
# fmt: on

CATEGORY_MAP = {
    name: category for category, names in UNIT_CATEGORIES.items() for name in names
}

# units used by Backbone
# fmt: off
BACKBONE_DEPENDENCIES = [
    "bind", "bindAll", "clone", "contains", "escape", "every", "extend",
    "filter", "find", "first", "forEach", "groupBy", "has", "indexOf",
    "initial", "invoke", "isArray", "isEmpty", "isEqual", "isFunction",
    "isObject", "isRegExp", "keys", "last", "lastIndexOf", "lateBind", "map",
    "max", "min", "mixin", "reduce", "reduceRight", "reject", "rest", "result",
    "shuffle", "size", "some", "sortBy", "sortedIndex", "toArray", "uniqueId",
    "without",
]
# fmt: on

# units not found in Underscore
LODASH_ONLY = ["forIn", "forOwn", "lateBind", "merge", "partial"]

UNDERSCORE_METHODS = [name for name in DEPENDENCY_MAP if name not in LODASH_ONLY]

# narrower edges of the Underscore-compatible implementations
UNDERSCORE_OVERRIDES = {
    "clone": ["extend", "isArray"],
    "isEmpty": ["isArray"],
    "isEqual": ["isArray", "isFunction"],
}

# options of the `iteratorTemplate`
# fmt: off
ITERATOR_OPTIONS = [
    "args", "array", "arrayBranch", "beforeLoop", "bottom", "exit",
    "firstArg", "hasDontEnumBug", "inLoop", "init", "isKeysFast", "object",
    "objectBranch", "noArgsEnum", "noCharByIndex", "shadowed", "top",
    "useHas", "useStrict",
]
# fmt: on

EXPORTS_ALL = ("amd", "commonjs", "global", "node")
EXPORTS_UNDERSCORE = ("commonjs", "global", "node")

MODE_FLAGS = ("backbone", "csp", "legacy", "mobile", "strict", "underscore")
SELECTORS = ("category", "exclude", "exports", "iife", "include", "minus", "plus")


# ----------------------------------------------------------------------------
# custom exceptions


class BuildError(Exception):
    """Base exception for build errors"""

    pass


class CommandError(BuildError):
    """Exception for command execution errors"""

    pass


class CyclicDependency(BuildError):
    """Exception for a cycle in the unit dependency graph"""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__("cyclic dependency: " + " -> ".join(cycle))


class ValidationError(BuildError):
    """Exception for invalid build options"""

    pass


class PipelineOrderError(BuildError):
    """Exception for a transform pass applied before its prerequisites"""

    pass


class EvaluationError(BuildError):
    """Exception for failures evaluating the library source"""

    pass


class MinifyError(BuildError):
    """Exception for minifier failures"""

    pass


# ----------------------------------------------------------------------------
# unit registry


def normalize_category(name: str) -> str:
    """capitalize a category name: 'arrays' -> 'Arrays'"""
    return name[:1].upper() + name[1:].lower()


@dataclass(frozen=True)
class Unit:
    """A named, separately removable piece of the library."""

    name: str
    category: str
    dependencies: frozenset[str] = frozenset()
    aliases: frozenset[str] = frozenset()


class UnitRegistry:
    """Static catalog of units with their aliases, categories and edges

    Registries are never mutated: mode specific edges are obtained from
    `with_overrides` or `for_options` as a new registry.
    """

    def __init__(self, units: Iterable[Unit]) -> None:
        self._units: dict[str, Unit] = {unit.name: unit for unit in units}
        self._alias_to_real: dict[str, str] = {
            alias: unit.name for unit in self._units.values() for alias in unit.aliases
        }
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} units={len(self._units)}>"

    def __contains__(self, name: object) -> bool:
        return name in self._units

    def __len__(self) -> int:
        return len(self._units)

    @classmethod
    def from_tables(
        cls,
        dependencies: Mapping[str, Sequence[str]] = DEPENDENCY_MAP,
        aliases: Mapping[str, str] = ALIAS_TO_REAL,
        categories: Mapping[str, str] = CATEGORY_MAP,
    ) -> "UnitRegistry":
        """create a registry from the module level tables"""
        real_to_alias: dict[str, set[str]] = {}
        for alias, real in aliases.items():
            real_to_alias.setdefault(real, set()).add(alias)
        return cls(
            Unit(
                name=name,
                category=categories[name],
                dependencies=frozenset(deps),
                aliases=frozenset(real_to_alias.get(name, ())),
            )
            for name, deps in dependencies.items()
        )

    def unit(self, name: str) -> Optional[Unit]:
        """return the unit registered under name or alias, None if unknown"""
        return self._units.get(self.canonicalize(name))

    def canonicalize(self, name: str) -> str:
        """resolve an alias to its real name, other names map to themselves"""
        return self._alias_to_real.get(name, name)

    def aliases_of(self, name: str) -> list[str]:
        """sorted aliases of a real name"""
        unit = self._units.get(name)
        return sorted(unit.aliases) if unit else []

    def members_of(self, category: str) -> set[str]:
        """names of the units tagged with the (canonically cased) category"""
        return {unit.name for unit in self._units.values() if unit.category == category}

    def all_units(self) -> list[str]:
        """every unit name in registry order"""
        return list(self._units)

    def dependencies_of(self, name: str) -> frozenset[str]:
        """direct dependencies of a unit"""
        unit = self.unit(name)
        return unit.dependencies if unit else frozenset()

    def category_of(self, name: str) -> Optional[str]:
        """category of a unit, or None for unknown names"""
        unit = self.unit(name)
        return unit.category if unit else None

    def with_overrides(self, overrides: Mapping[str, Sequence[str]]) -> "UnitRegistry":
        """return a new registry with replaced dependency edges"""
        for name in overrides:
            if name not in self._units:
                raise KeyError(name)
        return self.__class__(
            dataclasses.replace(unit, dependencies=frozenset(overrides[unit.name]))
            if unit.name in overrides
            else unit
            for unit in self._units.values()
        )

    def for_options(self, options: "BuildOptions") -> "UnitRegistry":
        """return the registry adjusted for the modes of a build"""
        if options.is_underscore:
            self.log.debug("using underscore dependency edges")
            return self.with_overrides(UNDERSCORE_OVERRIDES)
        return self

    def verify(self, source: str, locator: Optional["UnitLocator"] = None) -> list[str]:
        """check units against a library source

        Args:
            source: library source text
            locator: locator used to find declarations

        Returns:
            human readable problems, empty when registry and source agree
        """
        locator = locator or UnitLocator()
        problems = []
        for name, unit in self._units.items():
            found = locator.count(source, name)
            if not found:
                problems.append(f"{name}: no declaration found")
                continue
            if found > 1:
                problems.append(f"{name}: {found} declarations found")
            tags = locator.categories(source, name)
            if unit.category not in tags:
                problems.append(
                    f"{name}: category {unit.category!r} does not match {tags}"
                )
        return problems


DEFAULT_REGISTRY = UnitRegistry.from_tables()


# ----------------------------------------------------------------------------
# dependency resolution

_ACTIVE, _DONE = 1, 2


class DependencyResolver:
    """Computes dependency closures over a registry"""

    def __init__(self, registry: UnitRegistry = DEFAULT_REGISTRY) -> None:
        self.registry = registry
        self._dependents: dict[str, set[str]] = {}
        for name in registry.all_units():
            for dep in registry.dependencies_of(name):
                self._dependents.setdefault(dep, set()).add(name)

    def closure_of(self, names: Iterable[str]) -> set[str]:
        """names plus all their transitive dependencies

        Raises:
            CyclicDependency: if a cycle is reachable from names
        """
        result = set(names)
        self.check_acyclic(result)
        frontier = set(result)
        while frontier:
            discovered: set[str] = set()
            for name in frontier:
                discovered |= self.registry.dependencies_of(name)
            frontier = discovered - result
            result |= frontier
        return result

    def check_acyclic(self, roots: Iterable[str]) -> None:
        """depth first walk from roots raising on a back edge"""
        state: dict[str, int] = {}
        for root in sorted(roots):
            if root in state:
                continue
            state[root] = _ACTIVE
            path = [root]
            stack = [iter(sorted(self.registry.dependencies_of(root)))]
            while stack:
                for child in stack[-1]:
                    mark = state.get(child)
                    if mark == _ACTIVE:
                        raise CyclicDependency(path[path.index(child) :] + [child])
                    if mark is None:
                        state[child] = _ACTIVE
                        path.append(child)
                        stack.append(iter(sorted(self.registry.dependencies_of(child))))
                        break
                else:
                    state[path.pop()] = _DONE
                    stack.pop()

    def direct_dependents_of(self, name: str) -> set[str]:
        """units that list name as a direct dependency"""
        return set(self._dependents.get(name, ()))

    def dependents_closure_of(self, names: Iterable[str]) -> set[str]:
        """units that transitively depend on any of names"""
        result: set[str] = set()
        frontier = set(names)
        while frontier:
            discovered: set[str] = set()
            for name in frontier:
                discovered |= self.direct_dependents_of(name)
            frontier = discovered - result
            result |= frontier
        return result


# ----------------------------------------------------------------------------
# build configuration


def split_names(value: str) -> tuple[str, ...]:
    """convert a comma separated option value into a tuple of names"""
    return tuple(re.split(r", *", value))


@dataclass(frozen=True)
class BuildOptions:
    """Immutable description of a single build request."""

    backbone: bool = False
    csp: bool = False
    legacy: bool = False
    mobile: bool = False
    strict: bool = False
    underscore: bool = False
    include: tuple[str, ...] = ()
    minus: tuple[str, ...] = ()
    plus: tuple[str, ...] = ()
    category: tuple[str, ...] = ()
    exports: Optional[tuple[str, ...]] = None
    iife: Optional[str] = None
    output_path: Optional[str] = None
    stdout: bool = False
    silent: bool = False

    def __post_init__(self) -> None:
        if self.iife is not None and self.iife.count(OUTPUT_MARKER) != 1:
            raise ValidationError(
                f"iife template must contain exactly one {OUTPUT_MARKER} marker"
            )

    @classmethod
    def from_args(cls, args: Sequence[str]) -> "BuildOptions":
        """parse build command tokens, e.g. ["mobile", "include=map", "-s"]

        Selector tokens accumulate, the last `exports=` and the first `iife=`
        win, and unrecognized tokens are ignored.
        """
        kwargs: dict[str, Any] = {}
        include: list[str] = []
        minus: list[str] = []
        plus: list[str] = []
        category: list[str] = []
        args = list(args)
        skip = False
        for index, arg in enumerate(args):
            if skip:
                skip = False
            elif arg in ("-o", "--output"):
                if index + 1 < len(args):
                    kwargs.setdefault("output_path", args[index + 1])
                    skip = True
            elif arg in ("-c", "--stdout"):
                kwargs["stdout"] = True
            elif arg in ("-s", "--silent"):
                kwargs["silent"] = True
            elif arg.lower() == "csp":
                kwargs["csp"] = True
            elif arg in MODE_FLAGS:
                kwargs[arg] = True
            elif "=" in arg:
                key, _, value = arg.partition("=")
                if key == "iife":
                    kwargs.setdefault("iife", value)
                elif key == "exports":
                    kwargs["exports"] = tuple(sorted(set(split_names(value))))
                elif key == "include":
                    include.extend(split_names(value))
                elif key in ("exclude", "minus"):
                    minus.extend(split_names(value))
                elif key == "plus":
                    plus.extend(split_names(value))
                elif key == "category":
                    category.extend(split_names(value))
        return cls(
            include=tuple(include),
            minus=tuple(minus),
            plus=tuple(plus),
            category=tuple(category),
            **kwargs,
        )

    @property
    def is_mobile(self) -> bool:
        """mobile rewrites apply to csp, mobile and underscore builds"""
        return not self.legacy and (self.csp or self.mobile or self.underscore)

    @property
    def is_underscore(self) -> bool:
        """underscore rewrites and dependency edges never apply to legacy builds"""
        return self.underscore and not self.legacy

    @property
    def use_strict(self) -> bool:
        """strict mode is kept unless a legacy or mobile build turns it off"""
        return self.strict or not (self.legacy or self.is_mobile)

    @property
    def quiet(self) -> bool:
        """progress output is suppressed when silent or streaming"""
        return self.silent or self.stdout

    @property
    def has_selection(self) -> bool:
        """True if include or category selectors were given"""
        return bool(self.include or self.category)

    @property
    def export_targets(self) -> tuple[str, ...]:
        """export mechanisms kept in the build"""
        if self.exports is None:
            return EXPORTS_UNDERSCORE if self.underscore else EXPORTS_ALL
        return tuple(name for name in EXPORTS_ALL if name in self.exports)

    @property
    def is_custom(self) -> bool:
        """True if the build differs from the stock library"""
        return bool(
            self.backbone
            or self.legacy
            or self.is_mobile
            or self.strict
            or self.underscore
            or self.include
            or self.minus
            or self.plus
            or self.category
            or self.exports is not None
            or self.iife is not None
            or self.export_targets != EXPORTS_ALL
        )

    @property
    def working_name(self) -> str:
        """basename of the minified artifact: lodash[.custom].min"""
        return "lodash" + (".custom" if self.is_custom else "") + ".min"


# ----------------------------------------------------------------------------
# build plan


@dataclass(frozen=True)
class BuildPlan:
    """Immutable set of retained units within the registry universe."""

    retained: frozenset[str]
    universe: frozenset[str]

    def __contains__(self, name: object) -> bool:
        return name in self.retained

    def __len__(self) -> int:
        return len(self.retained)

    def is_retained(self, name: str) -> bool:
        """True if the unit survives the build"""
        return name in self.retained

    @property
    def removed(self) -> frozenset[str]:
        """units to be excised from the source"""
        return self.universe - self.retained

    def as_mapping(self) -> Mapping[str, bool]:
        """read-only name -> retained mapping over the universe"""
        return MappingProxyType({name: name in self.retained for name in sorted(self.universe)})


class BuildPlanner:
    """Assembles the retained set of units for a build"""

    def __init__(self, registry: UnitRegistry = DEFAULT_REGISTRY) -> None:
        self.registry = registry
        self.resolver = DependencyResolver(registry)
        self.log = logging.getLogger(self.__class__.__name__)

    def resolve_names(self, names: Iterable[str], categories_only: bool = False) -> set[str]:
        """convert selector names into unit names

        Unit names and aliases win over category names, so `functions` is the
        unit while `Functions` (or `category=functions`) is the category.
        Unknown names are dropped with a warning.
        """
        result: set[str] = set()
        for name in names:
            if not name:
                continue
            real = self.registry.canonicalize(name)
            if not categories_only and real in self.registry:
                result.add(real)
                continue
            members = self.registry.members_of(normalize_category(name))
            if members:
                result |= members
            else:
                self.log.warning("ignoring unknown unit or category: %r", name)
        return result

    def plan(self, options: BuildOptions) -> BuildPlan:
        """compute the retained set for options"""
        universe = frozenset(self.registry.all_units())
        if options.has_selection:
            selected = self.resolve_names(options.include)
            selected |= self.resolve_names(options.category, categories_only=True)
            base = self.resolver.closure_of(selected)
        elif options.backbone:
            base = self.resolver.closure_of(
                name for name in BACKBONE_DEPENDENCIES if name in self.registry
            )
        elif options.underscore:
            base = self.resolver.closure_of(
                name for name in UNDERSCORE_METHODS if name in self.registry
            )
        else:
            base = set(universe)

        if options.plus:
            base |= self.resolver.closure_of(self.resolve_names(options.plus))

        if options.minus:
            minus = self.resolve_names(options.minus)
            base -= minus | self.resolver.dependents_closure_of(minus)

        plan = BuildPlan(retained=frozenset(base), universe=universe)
        self.log.info("retaining %d of %d units", len(plan), len(universe))
        return plan


# ----------------------------------------------------------------------------
# source location and editing

# multi-line comment block (could be on a single line)
COMMENT = r"\n +/\*[^*]*\*+(?:[^/][^*]*\*+)*/"

# leading `//` comment lines
LINE_COMMENTS = r"(?: *//.*\n)*"


def sub(
    pattern: str, repl: Replacement, source: str, count: int = 1, flags: int = 0
) -> str:
    """regex substitution replacing the first match unless count is 0"""
    return re.sub(pattern, repl, source, count=count, flags=flags)


def replace_snippet(source: str, snippet: str, modified: str) -> str:
    """replace the first occurrence of a non-empty snippet"""
    if not snippet:
        return source
    return source.replace(snippet, modified, 1)


@dataclass(frozen=True)
class Span:
    """Half-open character range of a declaration within a source."""

    start: int
    end: int

    def text(self, source: str) -> str:
        """slice of source covered by the span"""
        return source[self.start : self.end]


class UnitLocator:
    """Finds doc-commented unit declarations in the library source"""

    def __init__(self) -> None:
        self._patterns: dict[str, re.Pattern[str]] = {}
        self.log = logging.getLogger(self.__class__.__name__)

    def pattern(self, name: str) -> re.Pattern[str]:
        """declaration pattern for a function, createIterator or var expression"""
        if name not in self._patterns:
            esc = re.escape(name)
            self._patterns[name] = re.compile(
                COMMENT + r"\n"
                r"(?:"
                r"( +)function " + esc + r"\b[\s\S]+?\n\1\}|"
                r" +var " + esc + r" *=.*?createIterator\((?:\{|[a-zA-Z])[\s\S]+?\);|"
                r"( +)var " + esc + r" *=.*?function[\s\S]+?\n\2\};"
                r")\n"
            )
        return self._patterns[name]

    def find(self, source: str, name: str) -> Optional[Span]:
        """span of the first declaration of name"""
        match = self.pattern(name).search(source)
        return Span(match.start(), match.end()) if match else None

    def match(self, source: str, name: str) -> str:
        """text of the first declaration of name, or ''"""
        span = self.find(source, name)
        return span.text(source) if span else ""

    def count(self, source: str, name: str) -> int:
        """number of declarations of name"""
        return sum(1 for _ in self.pattern(name).finditer(source))

    def categories(self, source: str, name: str) -> list[str]:
        """`@category` tags in the doc comment of name"""
        return re.findall(r"@category (\w+)", self.match(source, name))

    def is_removed(self, source: str, *names: str) -> bool:
        """True if none of names has a declaration left"""
        return all(not self.match(source, name) for name in names)

    @staticmethod
    def excise(source: str, span: Span) -> str:
        """remove the span from source"""
        return source[: span.start] + source[span.end :]


class SourceEditor(UnitLocator):
    """Pattern-based edits of the library source"""

    def method_assignments(self, source: str) -> str:
        """the `lodash.VERSION = ...` public assignment block"""
        match = re.search(r"lodash\.VERSION *= *[\s\S]+?/\*-+\*/\n", source)
        return match.group(0) if match else ""

    def remove_function(self, source: str, name: str, aliases: Iterable[str] = ()) -> str:
        """remove a declaration, its public assignments and factory reference"""
        span = self.find(source, name)
        if span is None:
            return source
        self.log.debug("removing %s", name)
        source = self.excise(source, span)

        snippet = self.method_assignments(source)
        modified = snippet
        for other in [*aliases, name]:
            modified = sub(
                r"(?:\n *//.*\s*)* *lodash\." + re.escape(other) + r" *= *.+\n",
                "",
                modified,
            )
        source = replace_snippet(source, snippet, modified)
        return self.remove_from_create_iterator(source, name)

    def remove_from_create_iterator(self, source: str, ref: str) -> str:
        """remove a reference from the `createIterator` factory arguments"""
        snippet = self.match(source, "createIterator")
        index = snippet.find("Function(")
        if index < 0:
            return source
        snippet = snippet[index:]
        modified = re.sub(r"\b" + re.escape(ref) + r"\b,? *", "", snippet)
        return replace_snippet(source, snippet, modified)

    def remove_var(self, source: str, name: str) -> str:
        """remove a variable declaration and its references in lookup tables"""
        esc = re.escape(name)
        if name in ("arrayLikeClasses", "cloneableClasses"):
            # remove the class assignments that follow the declaration
            source = sub(r"(var " + esc + r" *=)[\s\S]+?(true;\n)", r"\1\2", source)

        source = sub(
            r"(?:"
            r"(?:" + COMMENT + r")?\n"
            r"( +)var " + esc + r" *= *"
            r"(?:.+?(?:;|&&\n[^;]+;)|(?:\w+\(|\{)[\s\S]+?\n\1.+?;)\n|"
            r"\n +" + esc + r" *=.+?,"
            r")",
            "",
            source,
        )
        # first of a comma separated declaration list
        source = sub(r"(var +)" + esc + r" *=.+?,\s+", r"\1", source)
        # last of a comma separated declaration list
        source = sub(r",\s*" + esc + r" *=.+?;", ";", source)
        source = sub(
            r"(?:arrayLikeClasses|cloneableClasses)\[" + esc + r"\] *= *(?:false|true)?",
            "",
            source,
            count=0,
        )
        return self.remove_from_create_iterator(source, name)

    def replace_var(self, source: str, name: str, value: str) -> str:
        """hard-code the value of a variable declaration"""
        esc = re.escape(name)
        source = sub(
            r"(( +)var " + esc + r" *= *)"
            r"(?:.+?;|(?:Function\(.+?|.*?[^,])\n[\s\S]+?\n\2.+?;)\n",
            lambda m: m.group(1) + value + ";\n",
            source,
        )
        source = sub(
            r"((?:var|\n) +" + esc + r" *=).+?,",
            lambda m: m.group(1) + " " + value + ",",
            source,
        )
        return sub(
            r"(,\s*" + esc + r" *=).+?;",
            lambda m: m.group(1) + " " + value + ";",
            source,
        )

    def set_use_strict(self, source: str, value: bool) -> str:
        """hard-code the `useStrict` template option"""
        source = self.remove_var(source, "isStrictFast")
        source = sub(
            LINE_COMMENTS + r"(\s*)' *<% *if *\(useStrict\).+",
            (lambda m: m.group(1) + "'\\'use strict\\';\\n' +") if value else "",
            source,
        )
        source = sub(r" *'useStrict': *false,\n", "", source, count=0)
        source = sub(r",\s*useStrict *=[^;]+", "", source)
        return sub(r"\s*.+?\.useStrict *=.+", "", source)

    def remove_keys_optimization(self, source: str) -> str:
        """remove the `Object.keys` fast path from the iterator template"""
        source = self.remove_var(source, "isKeysFast")
        source = sub(
            LINE_COMMENTS + r" *'( *)<% *if *\(isKeysFast[\s\S]+?'\1<% *\} *else *\{ *%>.+\n"
            r"([\s\S]+?) *'\1<% *\} *%>.+",
            lambda m: "'\\n' +\n" + m.group(2),
            source,
        )
        source = sub(r"=\s*'\s*\+\s*\(isKeysFast.+", "= []'", source)
        source = sub(r"'\s*\+\s*\(isKeysFast[^)]+?\)\s*\+\s*'", ".push", source, count=0)
        return sub(r"\s*.+?\.isKeysFast *=.+", "", source)

    def remove_no_args_class(self, source: str) -> str:
        """remove the `noArgsClass` flag and its branches"""
        source = self.remove_var(source, "noArgsClass")
        source = sub(r" *\|\| *\(noArgsClass *&&[^)]+?\)\)", "", source, count=0)
        return sub(r"if *\(noArgsClass[^}]+?\}\n", "\n", source)

    def remove_no_node_class(self, source: str) -> str:
        """remove the `noNodeClass` detection and its branches"""
        source = sub(
            r"(?:" + COMMENT + r")?\n *try *\{(?:\s*//.*)*\n *var noNodeClass[\s\S]+?catch[^}]+\}\n",
            "",
            source,
        )
        source = sub(r"\(!noNodeClass *\|\|[\s\S]+?\)\) *&&", "", source)
        return sub(r" *\|\| *\(noNodeClass *&&[\s\S]+?\)\)\)", "", source)

    def is_arguments_fallback(self, source: str) -> str:
        """the `isArguments` fallback for environments without `argsClass`"""
        match = re.search(r"(?:\s*//.*)*\n( +)if *\(noArgsClass\)[\s\S]+?\};\n\1\}", source)
        return match.group(0) if match else ""

    def is_function_fallback(self, source: str) -> str:
        """the `isFunction` fallback for older browsers"""
        match = re.search(r"(?:\s*//.*)*\n( +)if *\(isFunction\(/x/[\s\S]+?\};\n\1\}", source)
        return match.group(0) if match else ""

    def remove_is_arguments_fallback(self, source: str) -> str:
        """remove the `isArguments` fallback"""
        return replace_snippet(source, self.is_arguments_fallback(source), "")

    def remove_is_function_fallback(self, source: str) -> str:
        """remove the `isFunction` fallback"""
        return replace_snippet(source, self.is_function_fallback(source), "")

    def remove_block(self, source: str, condition: str, count: int = 1) -> str:
        """remove an `if (<condition>...) {...}` block with its comments"""
        return sub(
            r"(?:\s*//.*)*\n( +)if *\(" + condition + r"[\s\S]+?\n\1\}",
            "",
            source,
            count=count,
        )

    def remove_lines(self, source: str, name: str) -> str:
        """remove the declaration and every assignment of a flag"""
        return sub(
            r"(?:" + COMMENT + r")?\n *var " + name + r";|.+?" + name + r" *=.+",
            "",
            source,
            count=0,
        )


def function_source(source: str) -> str:
    """indent a compiled function for inlining as a two-space nested expression"""

    def indent(match: "re.Match[str]") -> str:
        line = match.group(0)[1:]
        if line == "}" and source.find("}", match.start() + 2) == -1:
            return "\n  " + line
        return "\n    " + line

    return re.sub(r"\n.*", indent, source)


def simplify_template_snippets(source: str) -> str:
    """remove needless braces from single statement template snippets"""
    source = sub(
        r"\{(\\n' *\+\s*.*?\+\n\s*' *)\}(?:\\n)?' *([,\n])",
        lambda m: m.group(1) + "'" + m.group(2),
        source,
        count=0,
    )
    return sub(
        r"\{(\\n' *\+\s*.*?\+\n\s*' *)\}(?:\\n)?' *\+",
        lambda m: m.group(1) + ";\\n'+",
        source,
        count=0,
    )


def source_version(source: str) -> str:
    """version declared by `lodash.VERSION` in the source"""
    match = re.search(r"lodash\.VERSION *= *'([^']+)'", source)
    return match.group(1) if match else "unknown"


# ----------------------------------------------------------------------------
# transform passes


@dataclass
class SourceArtifact:
    """Library source text being transformed plus the passes applied to it."""

    source: str
    applied: list[str] = field(default_factory=list)

    def copy(self) -> "SourceArtifact":
        """independent copy of the artifact"""
        return SourceArtifact(self.source, list(self.applied))


@dataclass(frozen=True)
class BuildContext:
    """Read-only state shared by the transform passes of a build."""

    options: BuildOptions
    plan: BuildPlan
    registry: UnitRegistry = DEFAULT_REGISTRY
    compiled: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def for_options(
        cls, options: BuildOptions, registry: UnitRegistry = DEFAULT_REGISTRY
    ) -> "BuildContext":
        """plan a build and wrap it in a context"""
        registry = registry.for_options(options)
        return cls(options=options, plan=BuildPlanner(registry).plan(options), registry=registry)

    def is_retained(self, name: str) -> bool:
        """True if the unit survives the build"""
        return self.plan.is_retained(name)


@dataclass(frozen=True)
class TransformResult:
    """Debug and pre-minification artifacts of a build."""

    debug_source: str
    source: str


class TransformPass:
    """Abstract transform pass

    Subclasses implement `transform`; `apply` checks prerequisites and
    records the pass on the artifact.
    """

    name: str = "pass"
    requires: tuple[str, ...] = ()

    def __init__(self, editor: Optional[SourceEditor] = None) -> None:
        self.editor = editor or SourceEditor()
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'>"

    def apply(self, artifact: SourceArtifact, context: BuildContext) -> SourceArtifact:
        """run the pass over an artifact in place

        Raises:
            PipelineOrderError: if a required pass has not been applied
        """
        missing = [name for name in self.requires if name not in artifact.applied]
        if missing:
            raise PipelineOrderError(f"{self.name} requires {', '.join(missing)}")
        self.log.debug("applying %s", self.name)
        artifact.source = self.transform(artifact.source, context)
        if self.name not in artifact.applied:
            artifact.applied.append(self.name)
        return artifact

    def transform(self, source: str, context: BuildContext) -> str:
        """override by subclass"""
        raise NotImplementedError


class UnitRemovalPass(TransformPass):
    """Excises every unit not retained by the build plan"""

    name = "remove-units"

    def transform(self, source: str, context: BuildContext) -> str:
        source = simplify_template_snippets(source)
        for name in sorted(context.plan.removed):
            source = self.editor.remove_function(
                source, name, context.registry.aliases_of(name)
            )
        return source


class ShimPruningPass(TransformPass):
    """Drops fallbacks of removed type checks"""

    name = "prune-shims"
    requires = ("remove-units",)

    def transform(self, source: str, context: BuildContext) -> str:
        if self.editor.is_removed(source, "isArguments"):
            source = self.editor.remove_is_arguments_fallback(source)
        if self.editor.is_removed(source, "isFunction"):
            source = self.editor.remove_is_function_fallback(source)
        return source


# ----------------------------------------------------------------------------
# compatibility modes


class ModeRewrite:
    """Abstract compatibility mode

    `prepare` runs before the library is evaluated and is applied to the
    evaluated copy as well; `rewrite` runs once compiled sources exist.
    """

    def __init__(self, editor: SourceEditor) -> None:
        self.editor = editor
        self.log = logging.getLogger(self.__class__.__name__)

    def enabled(self, options: BuildOptions) -> bool:
        """True if the mode applies to a build"""
        return False

    def prepare(self, source: str, context: BuildContext) -> str:
        """pre-evaluation edits"""
        return source

    def rewrite(self, source: str, context: BuildContext) -> str:
        """post-evaluation edits"""
        return source


class StrictMode(ModeRewrite):
    """Keeps or strips the strict mode directive"""

    def enabled(self, options: BuildOptions) -> bool:
        return True

    def prepare(self, source: str, context: BuildContext) -> str:
        options = context.options
        if options.strict:
            source = self.editor.set_use_strict(source, True)
        else:
            source = sub(r"([\"'])use strict\1;( *\n)?", "", source)
            if not options.use_strict:
                source = self.editor.set_use_strict(source, False)
        return source


class LegacyMode(ModeRewrite):
    """Targets environments without ES5 natives"""

    flags = ["isBindFast", "isKeysFast", "isStrictFast", "nativeBind", "nativeIsArray", "nativeKeys"]

    def enabled(self, options: BuildOptions) -> bool:
        return options.legacy

    def prepare(self, source: str, context: BuildContext) -> str:
        for name in self.flags:
            source = self.editor.replace_var(source, name, "false")
        source = self.editor.replace_var(source, "noArgsClass", "true")
        return self.editor.remove_keys_optimization(source)

    def rewrite(self, source: str, context: BuildContext) -> str:
        editor = self.editor
        for name in ("isBindFast", "nativeBind", "nativeIsArray", "nativeKeys"):
            source = editor.remove_var(source, name)

        # remove native `Function#bind` branch in `bind`
        snippet = editor.match(source, "bind")
        source = replace_snippet(
            source,
            snippet,
            sub(
                r"(?:\n *//.*)*(\s*)return isBindFast[^:]+:\s*",
                lambda m: m.group(1) + "return ",
                snippet,
            ),
        )

        # remove native `Array.isArray` branch in `isArray`
        snippet = editor.match(source, "isArray")
        source = replace_snippet(source, snippet, sub(r"nativeIsArray * \|\|", "", snippet))

        # replace `keys` with `shimKeys`
        if not editor.is_removed(source, "keys"):
            keys_body = sub(r"[\s\S]+?var keys *=", "", editor.match(source, "keys"))
            shim_body = sub(r"[\s\S]+?var shimKeys *=", "", editor.match(source, "shimKeys"))
            if keys_body and shim_body:
                source = replace_snippet(source, keys_body, shim_body)
                source = editor.remove_function(source, "shimKeys")

        # replace `isArguments` with its fallback
        if not editor.is_removed(source, "isArguments"):
            fallback = re.search(
                r"isArguments *= *function([\s\S]+?) *\};",
                editor.is_arguments_fallback(source),
            )
            if fallback:
                body = sub(r"[\s\S]+?function isArguments", "", editor.match(source, "isArguments"))
                source = replace_snippet(source, body, fallback.group(1) + "  }\n")
                source = editor.remove_is_arguments_fallback(source)

        source = editor.remove_var(source, "reNative")
        return editor.remove_from_create_iterator(source, "nativeKeys")


class UnderscoreMode(ModeRewrite):
    """Matches the behavior of Underscore's implementations"""

    clone_source = (
        "  function clone(value) {\n"
        "    return value && objectTypes[typeof value]\n"
        "      ? (isArray(value) ? slice.call(value) : extend({}, value))\n"
        "      : value\n"
        "  }"
    )

    def enabled(self, options: BuildOptions) -> bool:
        return options.is_underscore

    def prepare(self, source: str, context: BuildContext) -> str:
        editor = self.editor
        source = editor.remove_var(source, "arrayLikeClasses")
        source = editor.remove_var(source, "cloneableClasses")

        # `isEmpty` checks arrays only
        source = sub(
            r"'if *\(arrayLikeClasses[\s\S]+?' \|\|\\n",
            "'if (isArray(value) ||",
            source,
        )

        # `isEqual` checks arrays only
        snippet = editor.match(source, "isEqual")
        source = replace_snippet(
            source,
            snippet,
            sub(
                LINE_COMMENTS + r"( +)var isArr *= *arrayLikeClasses[^}]+\}",
                lambda m: m.group(1) + "var isArr = isArray(a);",
                snippet,
            ),
        )

        # shallow only `clone`
        snippet = editor.match(source, "clone")
        source = replace_snippet(
            source,
            snippet,
            sub(r"( +)function clone[\s\S]+?\n\1\}", lambda m: self.clone_source, snippet),
        )

        # drop partial application support from `createBound`
        if not context.is_retained("partial"):
            snippet = editor.match(source, "createBound")
            modified = sub(
                r"(function createBound\([^{]+\{)[\s\S]+?(\n *function bound)",
                lambda m: m.group(1) + m.group(2),
                snippet,
            )
            modified = sub(r"thisBinding *=[^}]+\}", "thisBinding = thisArg;\n", modified)
            source = replace_snippet(source, snippet, modified)
        return source


class MobileMode(ModeRewrite):
    """Avoids runtime compilation by inlining the iterator functions"""

    quirks = ("iteratesOwnLast", "hasDontEnumBug", "hasObjectSpliceBug")

    def enabled(self, options: BuildOptions) -> bool:
        return options.is_mobile

    def prepare(self, source: str, context: BuildContext) -> str:
        editor = self.editor
        source = editor.replace_var(source, "isKeysFast", "false")
        source = editor.remove_keys_optimization(source)

        # remove `prototype` [[Enumerable]] fix from `keys`
        snippet = editor.match(source, "keys")
        source = replace_snippet(
            source,
            snippet,
            sub(r"(?:\s*//.*)*\n( +)if *\(.+?propertyIsEnumerable[\s\S]+?\n\1\}", "", snippet),
        )

        # remove `hasDontEnumBug` fix from the iterator template
        source = sub(
            r"(?: *//.*\n)* *' *(?:<% *)?if *\(!hasDontEnumBug *(?:&&|\))[\s\S]+?<% *\} *(?:%>|').+",
            "",
            source,
            count=0,
        )
        return sub(r"!hasDontEnumBug *\|\|", "", source, count=0)

    def rewrite(self, source: str, context: BuildContext) -> str:
        editor = self.editor
        for key in sorted(context.compiled):
            name = key[1:] if key.startswith("_") else key
            pattern = (
                r"(\bvar " + re.escape(name) + r" *= *)createIterator\("
                r"((?:\{|[a-zA-Z])[\s\S]+?)\);\n"
            )
            if re.search(pattern, source):
                self.log.debug("inlining %s", name)
                compiled = function_source(context.compiled[key])
                source = sub(pattern, lambda m: m.group(1) + compiled + ";\n", source)

        # `merge` refers to itself through `callee`
        snippet = editor.match(source, "merge")
        source = replace_snippet(source, snippet, re.sub(r"\bcallee\b", "merge", snippet))

        if not context.options.is_underscore:
            source = editor.remove_is_arguments_fallback(source)

        # quirk detections are only consumed by the iterator template
        source = sub(
            r"(?:" + COMMENT + r")?\n *var hasDontEnumBug\b[\s\S]+?\}\(1\)\);\n",
            "",
            source,
        )
        for quirk in self.quirks:
            source = editor.remove_block(source, quirk)

        source = sub(r"noArraySliceOnStrings *\?[^:]+: *([^)]+)", r"\1", source, count=0)
        source = sub(r"\}\s*else if *\(noCharByIndex[^}]+", "", source)

        for name in ("extendIteratorOptions", "iteratorTemplate", "noArraySliceOnStrings", "noCharByIndex"):
            source = editor.remove_var(source, name)
        source = editor.remove_no_args_class(source)
        return editor.remove_no_node_class(source)


class TemplateInlining(ModeRewrite):
    """Replaces `iteratorTemplate` with its precompiled source"""

    def enabled(self, options: BuildOptions) -> bool:
        return not options.is_mobile

    def rewrite(self, source: str, context: BuildContext) -> str:
        compiled = context.compiled.get("_iteratorTemplate")
        if not compiled:
            self.log.debug("no compiled iterator template, leaving it in place")
            return source
        snippet = self.precompile(compiled)
        return sub(
            r"(( +)var iteratorTemplate *= *)[\s\S]+?\n\2.+?;\n",
            lambda m: m.group(1) + snippet + ";\n",
            source,
        )

    @staticmethod
    def precompile(compiled: str) -> str:
        """strip the `with` statement and helpers from a compiled template"""
        snippet = function_source(compiled)
        for prop in ITERATOR_OPTIONS:
            snippet = re.sub(
                r"([^\w.])\b" + prop + r"\b",
                lambda m, prop=prop: m.group(1) + "obj." + prop,
                snippet,
            )
        snippet = sub(r"var __t.+", "var __p = '';", snippet)
        snippet = sub(r"function print[^}]+\}", "", snippet)
        snippet = sub(r"'(?:\\n|\s)+'", "''", snippet, count=0)
        snippet = sub(r"__p *\+= *' *';", "", snippet, count=0)
        snippet = sub(r"(__p *\+= *)' *' *\+", r"\1", snippet, count=0)
        snippet = sub(
            r"(\{) *;|; *(\})",
            lambda m: (m.group(1) or "") + (m.group(2) or ""),
            snippet,
            count=0,
        )
        snippet = sub(
            r"\(\(__t *= *\( *([^)]+) *\)\) *== *null *\? *'' *: *__t\)",
            r"\1",
            snippet,
            count=0,
        )
        snippet = sub(r" *with *\(.+?\) *\{", "\n", snippet)
        snippet = sub(r"\}([^}]*\}[^}]*\Z)", r"\1", snippet)
        snippet = sub(r"obj *\|\| *\(obj *= *\{\}\);", "", snippet)
        snippet = sub(r"var __p = '';\s*__p \+=", "var __p =", snippet)
        return sub(r"\s*//.*(?:\n|\Z)", "", snippet, count=0)


MODES: list[type[ModeRewrite]] = [
    StrictMode,
    LegacyMode,
    UnderscoreMode,
    MobileMode,
    TemplateInlining,
]


class CompatibilityPass(TransformPass):
    """Applies the enabled compatibility modes"""

    name = "compatibility"
    requires = ("prune-shims",)

    def modes(self, options: BuildOptions) -> list[ModeRewrite]:
        """enabled mode rewrites in application order"""
        return [
            mode
            for mode in (cls(self.editor) for cls in MODES)
            if mode.enabled(options)
        ]

    def prepare(self, source: str, context: BuildContext) -> str:
        """apply the pre-evaluation edits of every enabled mode"""
        for mode in self.modes(context.options):
            source = mode.prepare(source, context)
        return source

    def transform(self, source: str, context: BuildContext) -> str:
        modes = self.modes(context.options)
        for mode in modes:
            source = mode.prepare(source, context)
        for mode in modes:
            source = mode.rewrite(source, context)
        return source


# ----------------------------------------------------------------------------
# exports and wrapper


class ExportsPass(TransformPass):
    """Drops export mechanisms outside the target set"""

    name = "exports"
    requires = ("compatibility",)

    def transform(self, source: str, context: BuildContext) -> str:
        targets = context.options.export_targets
        if "amd" not in targets:
            source = sub(
                LINE_COMMENTS + r"( +)if *\(typeof +define[\s\S]+?else ",
                lambda m: m.group(1),
                source,
            )
        if "node" not in targets:
            source = sub(
                LINE_COMMENTS + r" *if *\(typeof +module[\s\S]+?else *\{\n([\s\S]+?) *\}\n",
                lambda m: m.group(1),
                source,
            )
        if "commonjs" not in targets:
            source = sub(
                LINE_COMMENTS + r"(?:( +)else *\{)?\s*freeExports\._ *=.+(?:\n(?(1)\1|)\})?\n",
                "",
                source,
            )
        if "global" not in targets:
            source = sub(
                r"(?:( +)else *\{)?(?:\s*//.*)*\s*window\._ *= *lodash.+(?:\n(?(1)\1|)\})?\n",
                "",
                source,
                count=0,
            )
        # remove `if (freeExports) {...}` if it's empty
        source = sub(
            LINE_COMMENTS + r" *(?:else )?if *\(freeExports\) *\{\s*\}(?:\s*else *\{\n([\s\S]+?) *\})?",
            lambda m: m.group(1) or "",
            source,
        )
        if len(re.findall(r"\bfreeExports\b", source)) < 2:
            source = self.editor.remove_var(source, "freeExports")
        return source


class WrapperPass(TransformPass):
    """Splices the library body into a custom IIFE template"""

    name = "wrapper"
    requires = ("exports",)

    def transform(self, source: str, context: BuildContext) -> str:
        iife = context.options.iife
        if iife is None:
            return source
        match = re.match(r"/\*![\s\S]+?\*/\n", source)
        header = match.group(0) if match else ""
        body = source[len(header) :]
        body = sub(r"\A[^(]*?\(function[^{]+?\{", "", body)
        body = sub(r"\}\(this\)\)[;\s]*\Z", "", body)
        index = iife.index(OUTPUT_MARKER)
        return header + iife[:index] + body + iife[index + len(OUTPUT_MARKER) :]


# ----------------------------------------------------------------------------
# reference and dead code pruning


class ReferencePruningPass(TransformPass):
    """Fixes references to removed units"""

    name = "prune-references"
    requires = ("wrapper",)

    def transform(self, source: str, context: BuildContext) -> str:
        editor = self.editor
        if editor.is_removed(source, "isArguments"):
            source = editor.replace_var(source, "noArgsClass", "false")
        if editor.is_removed(source, "isFunction"):
            source = editor.remove_is_function_fallback(source)
        if editor.is_removed(source, "mixin"):
            # the `LoDash` wrapper only exists for chaining
            source = editor.remove_function(source, "LoDash")
            source = sub(
                r"(?:new +LoDash(?!\()|(?:new +)?LoDash\([^)]*\));?", "", source, count=0
            )
            source = sub(r"(?:\s*//.*)*\s*LoDash\.prototype *=[\s\S]+?/\*-+\*/", "", source)
            source = editor.remove_lines(source, "hasObjectSpliceBug")
        return source


class DeadCodePass(TransformPass):
    """Removes helpers and flags whose only consumers are gone"""

    name = "prune-dead-code"
    requires = ("prune-references",)

    def transform(self, source: str, context: BuildContext) -> str:
        editor = self.editor
        removed = editor.is_removed

        if removed(source, "clone"):
            source = editor.remove_var(source, "cloneableClasses")
        if removed(source, "isArray"):
            source = editor.remove_var(source, "nativeIsArray")
        if removed(source, "keys"):
            source = editor.remove_function(source, "shimKeys")
        if removed(source, "template"):
            source = sub(
                r"(?:" + COMMENT + r")?\n *lodash\.templateSettings[\s\S]+?\};\n", "", source
            )
        if removed(source, "toArray"):
            source = editor.remove_var(source, "noArraySliceOnStrings")
        # the shallow `clone` of underscore builds never calls `isPlainObject`
        if (context.options.is_underscore and removed(source, "merge")) or removed(
            source, "clone", "merge"
        ):
            source = editor.remove_function(source, "isPlainObject")
        if removed(source, "bind", "lateBind", "partial"):
            source = editor.remove_function(source, "createBound")
        if removed(source, "clone", "isArguments", "isEmpty", "isEqual"):
            source = editor.remove_no_args_class(source)
        if removed(source, "isEqual", "isPlainObject"):
            source = editor.remove_no_node_class(source)

        if len(re.findall(r"\bcreateIterator\b", source)) < 2:
            source = editor.remove_function(source, "createIterator")
            source = editor.remove_lines(source, "noArgsEnum")
        if removed(source, "createIterator", "bind"):
            for name in ("isBindFast", "isStrictFast", "nativeBind"):
                source = editor.remove_var(source, name)
        if removed(source, "createIterator", "bind", "isArray", "keys"):
            source = editor.remove_var(source, "reNative")
        if removed(source, "createIterator", "isEmpty", "isEqual"):
            source = editor.remove_var(source, "arrayLikeClasses")
        if removed(source, "createIterator", "isEqual"):
            source = editor.remove_lines(source, "hasDontEnumBug")
        if removed(source, "createIterator", "isPlainObject"):
            source = editor.remove_lines(source, "iteratesOwnLast")
        if removed(source, "createIterator", "keys"):
            source = editor.remove_var(source, "nativeKeys")

        if not re.search(
            r"var (?:hasDontEnumBug|hasObjectSpliceBug|iteratesOwnLast|noArgsEnum)\b", source
        ):
            # the quirk detections have no remaining consumer
            source = sub(r" *\(function\(\) *\{[\s\S]+?\}\(1\)\);", "", source)
        return source


class CleanupPass(TransformPass):
    """Removes build-only properties and empty lines"""

    name = "cleanup"
    requires = ("prune-references",)

    def transform(self, source: str, context: BuildContext) -> str:
        # pseudo private properties only exist for the build
        source = sub(r"(?:(?:\s*//.*)*\s*lodash\._[^=]+=.+\n)+", "\n", source, count=0)
        source = sub(r"^ *;\n", "", source, count=0, flags=re.MULTILINE)
        return sub(r"(?:\s*/\*-+\*/\s*){2,}", self.consolidate, source, count=0)

    @staticmethod
    def consolidate(match: "re.Match[str]") -> str:
        """keep the last of consecutive horizontal rule separators"""
        separators = match.group(0)
        leading = separators[: len(separators) - len(separators.lstrip())]
        return leading + separators[separators.rfind("/*") :]


# ----------------------------------------------------------------------------
# external collaborators


class ShellCmd:
    """Provides subprocess handling for external tools."""

    log: logging.Logger

    def pipe(self, shellcmd: list[str], text: str, cwd: Pathlike = ".") -> str:
        """Run shell command feeding text to stdin

        Args:
            shellcmd: Command as a list of args
            text: Text written to the command's stdin
            cwd: Working directory for command execution

        Returns:
            stdout of the command

        Raises:
            CommandError: If command execution fails
        """
        self.log.debug(" ".join(shellcmd))
        try:
            result = subprocess.run(
                shellcmd,
                input=text,
                capture_output=True,
                encoding="utf8",
                check=True,
                cwd=str(cwd),
            )
        except (subprocess.CalledProcessError, OSError) as e:
            self.log.critical("Command failed: %s", e, exc_info=True)
            raise CommandError(f"Command failed: {' '.join(shellcmd)}") from e
        return result.stdout

    def fail(self, msg: str, *args: str) -> str:
        """Raise BuildError with formatted message

        Args:
            msg: Error message format string
            *args: Format arguments

        Raises:
            BuildError: Always raised with formatted message
        """
        formatted_msg = msg % args if args else msg
        self.log.critical(formatted_msg)
        raise BuildError(formatted_msg)


class Evaluator:
    """Abstract library evaluator"""

    def evaluate(self, source: str) -> dict[str, str]:
        """source text of every function exposed by the loaded library"""
        raise NotImplementedError


EVALUATOR_SCRIPT = """\
var fs = require('fs'),
    vm = require('vm');

var context = vm.createContext({ 'setTimeout': setTimeout, 'clearTimeout': clearTimeout });
vm.runInContext(fs.readFileSync(0, 'utf8'), context);

var lodash = context._,
    result = {};

for (var key in lodash) {
  if (typeof lodash[key] == 'function') {
    result[key] = lodash[key].source || String(lodash[key]);
  }
}
process.stdout.write(JSON.stringify(result));
"""


class NodeEvaluator(ShellCmd, Evaluator):
    """Evaluates the library with node"""

    def __init__(self, node: str = NODE) -> None:
        self.node = node
        self.log = logging.getLogger(self.__class__.__name__)

    def evaluate(self, source: str) -> dict[str, str]:
        try:
            output = self.pipe([self.node, "-e", EVALUATOR_SCRIPT], source)
            result = json.loads(output)
        except (CommandError, ValueError) as e:
            raise EvaluationError("could not evaluate the library source") from e
        self.log.debug("compiled %d functions", len(result))
        return result


class Minifier:
    """Abstract minifier"""

    def minify(
        self,
        source: str,
        silent: bool = False,
        working_name: str = "lodash.min",
        on_complete: Optional[Callable[[str], None]] = None,
    ) -> None:
        """minify source and pass the result to on_complete"""
        raise NotImplementedError


class CommandMinifier(ShellCmd, Minifier):
    """Pipes the source through a minifier command"""

    def __init__(self, command: Optional[str] = None) -> None:
        self.command = shlex.split(command or DEFAULT_MINIFIER)
        self.log = logging.getLogger(self.__class__.__name__)

    def minify(
        self,
        source: str,
        silent: bool = False,
        working_name: str = "lodash.min",
        on_complete: Optional[Callable[[str], None]] = None,
    ) -> None:
        if not silent:
            self.log.info("minifying %s.js", working_name)
        try:
            text = self.pipe(self.command, source)
        except CommandError as e:
            raise MinifyError(f"could not minify {working_name}.js") from e
        if on_complete:
            on_complete(text)


def write_file(text: str, path: Optional[Path] = None) -> None:
    """default sink: write text to path"""
    if path is not None:
        Path(path).write_text(text, encoding="utf8")


# ----------------------------------------------------------------------------
# transformer and emitter


class SourceTransformer:
    """Runs the transform passes over the library source"""

    passes: list[type[TransformPass]] = [
        UnitRemovalPass,
        ShimPruningPass,
        CompatibilityPass,
        ExportsPass,
        WrapperPass,
        ReferencePruningPass,
    ]

    def __init__(
        self, editor: Optional[SourceEditor] = None, evaluator: Optional[Evaluator] = None
    ) -> None:
        self.editor = editor or SourceEditor()
        self.evaluator = evaluator
        self.log = logging.getLogger(self.__class__.__name__)

    def compile(self, source: str, context: BuildContext) -> dict[str, str]:
        """evaluate a mode-prepared copy of the pristine source"""
        if self.evaluator is None:
            self.log.debug("no evaluator, skipping compiled sources")
            return {}
        prepared = CompatibilityPass(self.editor).prepare(source, context)
        return self.evaluator.evaluate(prepared)

    def transform(self, source: str, context: BuildContext) -> TransformResult:
        """produce the debug and release artifacts of a build"""
        context = dataclasses.replace(context, compiled=self.compile(source, context))
        artifact = SourceArtifact(source)
        for cls in self.passes:
            cls(self.editor).apply(artifact, context)

        debug = artifact.copy()
        DeadCodePass(self.editor).apply(artifact, context)

        cleanup = CleanupPass(self.editor)
        cleanup.apply(debug, context)
        cleanup.apply(artifact, context)
        self.log.debug("applied %s", ", ".join(artifact.applied))
        return TransformResult(debug_source=debug.source, source=artifact.source)


class Emitter:
    """Routes build artifacts to the minifier and sinks"""

    def __init__(
        self,
        options: BuildOptions,
        minifier: Minifier,
        stream: Optional[IO[bytes]] = None,
        cwd: Optional[Pathlike] = None,
    ) -> None:
        self.options = options
        self.minifier = minifier
        self.stream = stream
        self.cwd = Path(cwd or Path.cwd())
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def debug_path(self) -> Optional[Path]:
        """sink path of the debug artifact, None if it is not emitted"""
        options = self.options
        if options.is_custom and not options.output_path and not options.stdout:
            return self.cwd / "lodash.custom.js"
        return None

    @property
    def release_path(self) -> Path:
        """sink path of the minified artifact"""
        if self.options.output_path:
            return Path(self.options.output_path)
        return self.cwd / f"{self.options.working_name}.js"

    def patch(self, text: str) -> str:
        """post-minification fixes"""
        # restore the `y` property dropped from the quirk detection object
        text = sub(r"prototype\s*=\s*\{\s*valueOf\s*:\s*1\s*\}", "prototype={valueOf:1,y:1}", text)
        if self.options.strict:
            text = sub(
                r"^(/\*![\s\S]+?\*/\n;\(function[^)]+\)\{)([^'\"])",
                r'\1"use strict";\2',
                text,
            )
        return text

    def emit(self, result: TransformResult, callback: Callback = write_file) -> str:
        """emit the debug artifact and the minified release artifact

        Raises:
            MinifyError: if the minifier fails or never completes
        """
        options = self.options
        if self.debug_path:
            self.log.info("writing %s", self.debug_path.name)
            callback(result.debug_source, self.debug_path)

        completed: list[str] = []
        try:
            self.minifier.minify(
                result.source,
                silent=options.quiet,
                working_name=options.working_name,
                on_complete=completed.append,
            )
        except MinifyError:
            raise
        except Exception as e:
            raise MinifyError(f"could not minify {options.working_name}.js") from e
        if not completed:
            raise MinifyError(f"minifier did not complete {options.working_name}.js")

        text = self.patch(completed[0])
        if options.stdout:
            if self.stream is not None:
                self.stream.write(text.encode("utf8"))
            callback(text, None)
        else:
            if not options.quiet:
                self.log.info("writing %s", self.release_path.name)
            callback(text, self.release_path)
        return text


# ----------------------------------------------------------------------------
# main classes


@dataclass(frozen=True)
class BuildResult:
    """Outcome of a build."""

    plan: BuildPlan
    debug_source: str
    source: str
    minified: str


class LodashBuilder(ShellCmd):
    """Builds a custom lodash from a library source"""

    def __init__(
        self,
        options: BuildOptions,
        source_path: Optional[Pathlike] = None,
        source: Optional[str] = None,
        registry: UnitRegistry = DEFAULT_REGISTRY,
        evaluator: Optional[Evaluator] = None,
        minifier: Optional[Minifier] = None,
        stream: Optional[IO[bytes]] = None,
        cwd: Optional[Pathlike] = None,
    ) -> None:
        self.options = options
        self.source_path = Path(source_path or DEFAULT_SOURCE)
        self._source = source
        self.registry = registry
        self.editor = SourceEditor()
        self.evaluator = evaluator if evaluator is not None else NodeEvaluator()
        self.minifier = minifier if minifier is not None else CommandMinifier()
        self.emitter = Emitter(options, self.minifier, stream=stream, cwd=cwd)
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.options.working_name}'>"

    @property
    def source(self) -> str:
        """library source text, read on first use"""
        if self._source is None:
            if not self.source_path.exists():
                self.fail("library source not found: %s", str(self.source_path))
            self._source = self.source_path.read_text(encoding="utf8")
        return self._source

    @property
    def version(self) -> str:
        """version of the library source"""
        return source_version(self.source)

    def check(self) -> list[str]:
        """registry problems against the library source"""
        problems = self.registry.verify(self.source, self.editor)
        for problem in problems:
            self.log.warning(problem)
        return problems

    def plan(self) -> BuildContext:
        """plan the build"""
        return BuildContext.for_options(self.options, self.registry)

    def transform(self, context: BuildContext) -> TransformResult:
        """produce debug and release artifacts"""
        transformer = SourceTransformer(self.editor, self.evaluator)
        return transformer.transform(self.source, context)

    def process(self, callback: Callback = write_file) -> BuildResult:
        """main builder process"""
        if not self.options.quiet:
            self.log.info("building lodash %s", self.version)
        self.check()
        context = self.plan()
        result = self.transform(context)
        minified = self.emitter.emit(result, callback)
        return BuildResult(
            plan=context.plan,
            debug_source=result.debug_source,
            source=result.source,
            minified=minified,
        )


def build(args: Sequence[str], callback: Callback = write_file, **kwargs: Any) -> BuildResult:
    """build a custom lodash from command tokens

    Args:
        args: build command tokens, e.g. ["backbone", "exports=none"]
        callback: sink receiving (text, path) for every artifact
        **kwargs: passed on to LodashBuilder

    Returns:
        the BuildResult of the build
    """
    options = BuildOptions.from_args(args)
    return LodashBuilder(options, **kwargs).process(callback)


# ----------------------------------------------------------------------------
# commandline interface

COMMANDS_HELP = """\
commands:
  backbone                 build with only the units required by Backbone
  csp                      build supporting default Content Security Policy restrictions
  legacy                   build tailored for older browsers without ES5 support
  mobile                   build without method compilation and most bug fixes for old browsers
  strict                   build with `_.bindAll`, `_.defaults`, and `_.extend` in strict mode
  underscore               build tailored for projects already using Underscore
  include=...              comma separated unit/category names to include in the build
  minus=...                comma separated unit/category names to remove from those included
  plus=...                 comma separated unit/category names to add to those included
  category=...             comma separated categories of units to include in the build
  exports=...              comma separated export options: amd, commonjs, global, node, none
  iife=...                 code to replace the immediately-invoked function expression,
                           must contain one %output% marker for the library body
"""


def is_valid_command(command: str) -> bool:
    """True for known mode flags and key=value selectors"""
    if command.lower() == "csp" or command in MODE_FLAGS:
        return True
    key, sep, _ = command.partition("=")
    return bool(sep) and key in SELECTORS


def main() -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="lodashbuild",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="A custom lodash builder",
        epilog=COMMANDS_HELP,
    )
    opt = parser.add_argument

    # fmt: off
    opt("commands", nargs="*", metavar="COMMAND", help="build commands (see below)")
    opt("-c", "--stdout", help="write output to standard output", action="store_true")
    opt("-o", "--output", help="write output to a given path/filename", metavar="PATH")
    opt("-s", "--silent", help="skip status updates normally logged", action="store_true")
    opt("-V", "--version", help="output the library version", action="store_true")
    opt("--source", default=DEFAULT_SOURCE, help="library source (default: %(default)s)", metavar="PATH")
    opt("--check", help="check the unit registry against the source", action="store_true")
    # fmt: on

    args = parser.parse_args()

    invalid = [command for command in args.commands if not is_valid_command(command)]
    if invalid:
        parser.error(f"invalid command(s): {', '.join(invalid)}")

    modes = {command.lower() for command in args.commands if "=" not in command}
    if "legacy" in modes and modes & {"csp", "mobile"}:
        parser.error("legacy may not be combined with csp or mobile")

    if args.silent or args.stdout:
        logging.getLogger().setLevel(logging.WARNING)

    tokens = list(args.commands)
    if args.output:
        tokens += ["-o", args.output]
    if args.stdout:
        tokens.append("-c")
    if args.silent:
        tokens.append("-s")

    try:
        options = BuildOptions.from_args(tokens)
        builder = LodashBuilder(
            options, source_path=args.source, stream=sys.stdout.buffer
        )
        if args.version:
            print(builder.version)
            sys.exit(0)
        if args.check:
            sys.exit(1 if builder.check() else 0)
        builder.process()
    except BuildError as e:
        logging.getLogger("lodashbuild").critical("build failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
