import pytest
from pathlib import Path
from unittest.mock import Mock
from lodashbuild import Evaluator, Minifier, logging

FIXTURES = Path(__file__).parent / "fixtures"

# sources of the iterator functions as the library would compile them
COMPILED = {
    "_iteratorTemplate": (
        "function(obj) {\n"
        "obj || (obj = {});\n"
        "var __t, __p = '', __e = _.escape;\n"
        "with (obj) {\n"
        "__p += 'var index, value, iteratee = ' +\n"
        "((__t = ( firstArg )) == null ? '' : __t) +\n"
        "';\\nreturn result';\n"
        "}\n"
        "return __p\n"
        "}"
    ),
    "_shimKeys": (
        "function(object) {\n"
        "var index, iteratee = object, result = [];\n"
        "if (!iteratee) return result;\n"
        "for (index in iteratee) {\n"
        "  if (hasOwnProperty.call(iteratee, index)) result.push(index)\n"
        "}\n"
        "return result\n"
        "}"
    ),
    "forEach": (
        "function(collection, callback, thisArg) {\n"
        "var index, iteratee = collection, result = collection;\n"
        "if (!collection) return result;\n"
        "callback = createCallback(callback, thisArg);\n"
        "return result\n"
        "}"
    ),
    "forIn": (
        "function(collection, callback, thisArg) {\n"
        "var index, iteratee = collection, result = collection;\n"
        "callback = createCallback(callback, thisArg);\n"
        "for (index in iteratee) {\n"
        "  if (callback(iteratee[index], index, collection) === false) return result\n"
        "}\n"
        "return result\n"
        "}"
    ),
    "forOwn": (
        "function(collection, callback, thisArg) {\n"
        "var index, iteratee = collection, result = collection;\n"
        "return result\n"
        "}"
    ),
    "defaults": "function(object) {\nvar result = object;\nreturn result\n}",
    "extend": "function(object) {\nvar result = object;\nreturn result\n}",
    "every": "function(collection, callback, thisArg) {\nvar result = true;\nreturn result\n}",
    "filter": "function(collection, callback, thisArg) {\nvar result = [];\nreturn result\n}",
    "map": "function(collection, callback, thisArg) {\nvar result = [];\nreturn result\n}",
    "reject": "function(collection, callback, thisArg) {\nvar result = [];\nreturn result\n}",
    "some": "function(collection, callback, thisArg) {\nvar result = false;\nreturn result\n}",
    "isEmpty": "function(value) {\nvar result = true;\nreturn result\n}",
    "merge": (
        "function(object, source, indicator) {\n"
        "var result = object;\n"
        "result = callee(result, source, compareAscending);\n"
        "return result\n"
        "}"
    ),
    "identity": "function identity(value) {\n    return value;\n  }",
}

MINIFIED = (
    "/*! Lo-Dash v0.8.2 lodash.com/license */\n"
    ";(function(n,t){function e(){this.x=1}e.prototype={valueOf:1};t._=e}(this));"
)


class FakeEvaluator(Evaluator):
    """returns canned compiled sources and records what it was given"""

    def __init__(self, compiled=None):
        self.compiled = dict(COMPILED if compiled is None else compiled)
        self.sources = []

    def evaluate(self, source):
        self.sources.append(source)
        return dict(self.compiled)


class FakeMinifier(Minifier):
    """completes with a canned minified text"""

    def __init__(self, text=MINIFIED):
        self.text = text
        self.calls = []

    def minify(self, source, silent=False, working_name="lodash.min", on_complete=None):
        self.calls.append((source, silent, working_name))
        if on_complete:
            on_complete(self.text)


@pytest.fixture(scope="session")
def source():
    """the library source used throughout the tests"""
    return (FIXTURES / "lodash.js").read_text(encoding="utf8")


@pytest.fixture
def source_path():
    return FIXTURES / "lodash.js"


@pytest.fixture
def evaluator():
    return FakeEvaluator()


@pytest.fixture
def minifier():
    return FakeMinifier()


@pytest.fixture
def mock_log():
    return Mock(spec=logging.Logger)
