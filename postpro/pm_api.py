"""pm API - Host objects exposed to sandboxed test scripts.

Everything a script can reach starts from the globals built here: pm,
console, JSON and JSONPath. Assertions raise AssertionFailure, which
pm.test() turns into a failed TestResult.

    pm.test("Status code is 200", function () {
        pm.response.to.have.status(200);
    });

    pm.test("Has a user", () => {
        const data = pm.response.json();
        pm.expect(data.user).to.have.property("name");
        pm.expect(data.items.length).to.be.at.least(1);
    });
"""

from __future__ import annotations

import copy
import json
from http import HTTPStatus
from typing import Any, Callable

import httpx
import structlog
from jsonpath_ng import parse as jsonpath_parse
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError

from postpro.errors import AssertionFailure, ScriptRuntimeError
from postpro.models import ProcessedResponse, RequestDefinition, TestResult, VariableScope
from postpro.script_runtime import (
    UNDEFINED,
    HostObject,
    NativeFunction,
    PendingAssertion,
    ScriptRegExp,
    deep_equals,
    is_number,
    script_api,
    strict_equals,
    stringify,
    to_number,
    to_string,
    truthy,
    type_of,
)
from postpro.variables import VariableStore

logger = structlog.get_logger(__name__)


def _fmt(value: Any) -> str:
    """Render a value for an assertion message."""
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, HostObject):
        return value.to_display()
    rendered = stringify(value)
    return "undefined" if rendered is UNDEFINED else rendered


def _walk_path(data: Any, path: str) -> Any:
    """Follow a dotted path through dicts and lists. UNDEFINED when missing."""
    current = data
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return UNDEFINED
    return current


def _arg(args: tuple[Any, ...], index: int) -> Any:
    return args[index] if index < len(args) else UNDEFINED


# =============================================================================
# pm.expect
# =============================================================================

# Words that only make the chain read well
_CHAIN_WORDS = frozenset({
    "to", "be", "been", "is", "that", "which", "and", "has", "have", "with",
    "at", "of", "same", "does", "still",
})


class Expectation(HostObject):
    """Fluent matcher over one value: pm.expect(value).to.<assertion>."""

    def __init__(self, value: Any) -> None:
        self._value = value
        self._negate = False
        self._deep = False

    def get_member(self, name: str) -> Any:
        if name in _CHAIN_WORDS:
            return self
        if name == "not":
            self._negate = not self._negate
            return self
        if name == "deep":
            self._deep = True
            return self

        properties: dict[str, Callable[[], None]] = {
            "ok": self._ok,
            "true": lambda: self._is_exactly(True, "true"),
            "false": lambda: self._is_exactly(False, "false"),
            "null": lambda: self._is_exactly(None, "null"),
            "undefined": lambda: self._is_exactly(UNDEFINED, "undefined"),
            "empty": self._empty,
            "exist": self._exist,
        }
        if name in properties:
            return PendingAssertion(properties[name])

        methods: dict[str, Callable[..., None]] = {
            "equal": self._equal,
            "equals": self._equal,
            "eq": self._equal,
            "eql": self._eql,
            "include": self._include,
            "includes": self._include,
            "contain": self._include,
            "contains": self._include,
            "match": self._match,
            "property": self._property,
            "length": self._length,
            "lengthOf": self._length,
            "above": self._above,
            "gt": self._above,
            "greaterThan": self._above,
            "below": self._below,
            "lt": self._below,
            "lessThan": self._below,
            "least": self._least,
            "gte": self._least,
            "most": self._most,
            "lte": self._most,
            "a": self._a,
            "an": self._a,
            "oneOf": self._one_of,
        }
        if name in methods:
            return NativeFunction(methods[name], name)
        return UNDEFINED

    def _assert(self, passed: bool, message: str, negated_message: str) -> None:
        if self._negate:
            if passed:
                raise AssertionFailure(negated_message)
        elif not passed:
            raise AssertionFailure(message)

    def _ok(self) -> None:
        v = _fmt(self._value)
        self._assert(truthy(self._value), f"Expected {v} to be truthy", f"Expected {v} to be falsy")

    def _is_exactly(self, expected: Any, label: str) -> None:
        v = _fmt(self._value)
        self._assert(
            strict_equals(self._value, expected),
            f"Expected {v} to be {label}",
            f"Expected {v} not to be {label}",
        )

    def _empty(self) -> None:
        value = self._value
        if isinstance(value, (str, list, dict)):
            passed = len(value) == 0
        else:
            raise AssertionFailure(f"Expected {_fmt(value)} to be a string, array or object")
        v = _fmt(value)
        self._assert(passed, f"Expected {v} to be empty", f"Expected {v} not to be empty")

    def _exist(self) -> None:
        v = _fmt(self._value)
        exists = self._value is not None and self._value is not UNDEFINED
        self._assert(exists, f"Expected {v} to exist", f"Expected {v} not to exist")

    def _equal(self, *args: Any) -> None:
        expected = _arg(args, 0)
        if self._deep:
            self._eql(expected)
            return
        v, e = _fmt(self._value), _fmt(expected)
        self._assert(
            strict_equals(self._value, expected),
            f"Expected {v} to equal {e}",
            f"Expected {v} not to equal {e}",
        )

    def _eql(self, *args: Any) -> None:
        expected = _arg(args, 0)
        v, e = _fmt(self._value), _fmt(expected)
        self._assert(
            deep_equals(self._value, expected),
            f"Expected {v} to deep equal {e}",
            f"Expected {v} not to deep equal {e}",
        )

    def _include(self, *args: Any) -> None:
        expected = _arg(args, 0)
        value = self._value
        if isinstance(value, str):
            passed = to_string(expected) in value
            message = f"Expected '{value}' to include '{to_string(expected)}'"
        elif isinstance(value, list):
            passed = any(
                deep_equals(item, expected) if self._deep else strict_equals(item, expected)
                for item in value
            )
            message = f"Expected array to include {_fmt(expected)}"
        elif isinstance(value, dict) and isinstance(expected, dict):
            passed = all(k in value and deep_equals(value[k], v) for k, v in expected.items())
            message = f"Expected {_fmt(value)} to include {_fmt(expected)}"
        else:
            raise AssertionFailure(f"Cannot check inclusion on {type_of(value)}")
        self._assert(passed, message, message.replace(" to include ", " not to include "))

    def _match(self, *args: Any) -> None:
        pattern = _arg(args, 0)
        if not isinstance(self._value, str):
            raise AssertionFailure(f"Expected value to be a string, got {type_of(self._value)}")
        if not isinstance(pattern, ScriptRegExp):
            raise AssertionFailure(f"Expected a regular expression, got {type_of(pattern)}")
        self._assert(
            pattern.search(self._value),
            f"Expected '{self._value}' to match {pattern.to_display()}",
            f"Expected '{self._value}' not to match {pattern.to_display()}",
        )

    def _property(self, *args: Any) -> None:
        name = to_string(_arg(args, 0))
        value = self._value
        if not isinstance(value, (dict, list)):
            raise AssertionFailure(f"Expected {_fmt(value)} to be an object")
        if isinstance(value, dict):
            present = name in value
            actual = value.get(name, UNDEFINED)
        else:
            present = name.isdigit() and int(name) < len(value)
            actual = value[int(name)] if present else UNDEFINED
        self._assert(
            present,
            f"Expected object to have property '{name}'",
            f"Expected object not to have property '{name}'",
        )
        if len(args) > 1 and present:
            expected = args[1]
            self._assert(
                strict_equals(actual, expected),
                f"Expected property '{name}' to equal {_fmt(expected)}, got {_fmt(actual)}",
                f"Expected property '{name}' not to equal {_fmt(expected)}",
            )

    def _length(self, *args: Any) -> None:
        expected = _arg(args, 0)
        value = self._value
        if not isinstance(value, (str, list)):
            raise AssertionFailure(f"Expected {_fmt(value)} to have length property")
        self._assert(
            strict_equals(len(value), expected),
            f"Expected length {_fmt(expected)}, got {len(value)}",
            f"Expected length not to be {_fmt(expected)}",
        )

    def _numeric(self, expected: Any, label: str, compare: Callable[[Any, Any], bool]) -> None:
        value = self._value
        passed = is_number(value) and is_number(expected) and compare(value, expected)
        self._assert(
            passed,
            f"Expected {_fmt(value)} to be {label} {_fmt(expected)}",
            f"Expected {_fmt(value)} not to be {label} {_fmt(expected)}",
        )

    def _above(self, *args: Any) -> None:
        self._numeric(_arg(args, 0), "above", lambda a, b: a > b)

    def _below(self, *args: Any) -> None:
        self._numeric(_arg(args, 0), "below", lambda a, b: a < b)

    def _least(self, *args: Any) -> None:
        self._numeric(_arg(args, 0), "at least", lambda a, b: a >= b)

    def _most(self, *args: Any) -> None:
        self._numeric(_arg(args, 0), "at most", lambda a, b: a <= b)

    def _a(self, *args: Any) -> None:
        expected = to_string(_arg(args, 0)).lower()
        value = self._value
        if value is None:
            actual = "null"
        elif isinstance(value, list):
            actual = "array"
        elif isinstance(value, ScriptRegExp):
            actual = "regexp"
        else:
            actual = type_of(value)
        self._assert(
            actual == expected,
            f"Expected {_fmt(value)} to be a {expected}, got {actual}",
            f"Expected {_fmt(value)} not to be a {expected}",
        )

    def _one_of(self, *args: Any) -> None:
        options = _arg(args, 0)
        if not isinstance(options, list):
            raise AssertionFailure("oneOf expects an array")
        self._assert(
            any(strict_equals(self._value, option) for option in options),
            f"Expected {_fmt(self._value)} to be one of {_fmt(options)}",
            f"Expected {_fmt(self._value)} not to be one of {_fmt(options)}",
        )


# =============================================================================
# pm.response / pm.request
# =============================================================================


class HeaderList(HostObject):
    """Case-insensitive, read-only view of a header mapping."""

    def __init__(self, headers: dict[str, str]) -> None:
        self._headers = dict(headers or {})

    def _find(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self._headers.items():
            if key.lower() == lowered:
                return value
        return None

    @script_api
    def get(self, name: Any = UNDEFINED) -> Any:
        value = self._find(to_string(name))
        return UNDEFINED if value is None else value

    @script_api
    def has(self, name: Any = UNDEFINED) -> bool:
        return self._find(to_string(name)) is not None

    @script_api
    def all(self) -> dict[str, str]:
        return dict(self._headers)


class ResponseAssertions(HostObject):
    """pm.response.to.have.status(200), pm.response.to.be.ok, ..."""

    def __init__(self, response: ProcessedResponse) -> None:
        self._response = response

    def get_member(self, name: str) -> Any:
        if name in _CHAIN_WORDS:
            return self
        if name in ("ok", "successful", "success"):
            return PendingAssertion(self._successful)
        methods: dict[str, Callable[..., None]] = {
            "status": self._status,
            "header": self._header,
            "property": self._property,
            "include": self._include,
            "match": self._match,
        }
        if name in methods:
            return NativeFunction(methods[name], name)
        return UNDEFINED

    def _successful(self) -> None:
        status = self._response.status
        if status < 200 or status >= 300:
            raise AssertionFailure(f"Expected status to be successful (200-299), got {status}")

    def _status(self, *args: Any) -> None:
        expected = _arg(args, 0)
        status = self._response.status
        if isinstance(expected, str) and not expected.strip().isdigit():
            actual_text = _status_text(self._response)
            if actual_text.lower() != expected.lower():
                raise AssertionFailure(f"Expected status '{expected}', got '{actual_text}'")
            return
        if to_number(expected) != status:
            raise AssertionFailure(f"Expected status {to_string(expected)}, got {status}")

    def _header(self, *args: Any) -> None:
        name = to_string(_arg(args, 0))
        actual = self._response.header(name)
        if actual is None:
            raise AssertionFailure(f"Expected header '{name}' to exist")
        if len(args) < 2 or args[1] is UNDEFINED:
            return
        expected = args[1]
        if isinstance(expected, ScriptRegExp):
            if not expected.search(actual):
                raise AssertionFailure(
                    f"Expected header '{name}' to match {expected.to_display()}, got '{actual}'"
                )
        elif actual != to_string(expected):
            raise AssertionFailure(
                f"Expected header '{name}' to equal '{to_string(expected)}', got '{actual}'"
            )

    def _property(self, *args: Any) -> None:
        path = to_string(_arg(args, 0))
        body = self._response.body
        if not isinstance(body, (dict, list)):
            raise AssertionFailure("Response body is not a JSON object")
        actual = _walk_path(body, path)
        if actual is UNDEFINED:
            raise AssertionFailure(f"Property '{path}' does not exist in response")
        if len(args) > 1 and args[1] is not UNDEFINED and not strict_equals(actual, args[1]):
            raise AssertionFailure(
                f"Expected property '{path}' to equal {_fmt(args[1])}, got {_fmt(actual)}"
            )

    def _include(self, *args: Any) -> None:
        expected = to_string(_arg(args, 0))
        if expected not in (self._response.body_text or ""):
            raise AssertionFailure(f"Expected response body to include '{expected}'")

    def _match(self, *args: Any) -> None:
        pattern = _arg(args, 0)
        if not isinstance(pattern, ScriptRegExp):
            raise AssertionFailure(f"Expected a regular expression, got {type_of(pattern)}")
        if not pattern.search(self._response.body_text or ""):
            raise AssertionFailure(f"Expected response body to match {pattern.to_display()}")


def _status_text(response: ProcessedResponse) -> str:
    if response.status_text:
        return response.status_text
    try:
        return HTTPStatus(response.status).phrase
    except ValueError:
        return "Unknown"


class ResponseProxy(HostObject):
    """pm.response"""

    def __init__(self, response: ProcessedResponse) -> None:
        self._response = response
        self._headers = HeaderList(response.headers)
        self._to = ResponseAssertions(response)

    @script_api
    @property
    def code(self) -> int:
        return self._response.status

    @script_api
    @property
    def status(self) -> str:
        return _status_text(self._response)

    @script_api
    @property
    def responseTime(self) -> float:
        return self._response.duration

    @script_api
    @property
    def responseSize(self) -> int:
        return self._response.size

    @script_api
    @property
    def headers(self) -> HeaderList:
        return self._headers

    @script_api
    @property
    def to(self) -> ResponseAssertions:
        return self._to

    @script_api
    def json(self) -> Any:
        body = self._response.body
        if not isinstance(body, str):
            return copy.deepcopy(body)
        try:
            return json.loads(self._response.body_text)
        except ValueError as e:
            raise ScriptRuntimeError(f"Response body is not valid JSON: {e}") from e

    @script_api
    def text(self) -> str:
        return self._response.body_text


class UrlProxy(HostObject):
    def __init__(self, url: str) -> None:
        self._url = url

    def _parsed(self) -> httpx.URL | None:
        try:
            return httpx.URL(self._url)
        except httpx.InvalidURL:
            return None

    @script_api
    def toString(self) -> str:
        return self._url

    @script_api
    @property
    def protocol(self) -> str:
        parsed = self._parsed()
        return f"{parsed.scheme}:" if parsed and parsed.scheme else ""

    @script_api
    @property
    def host(self) -> str:
        parsed = self._parsed()
        if parsed is None:
            return ""
        return f"{parsed.host}:{parsed.port}" if parsed.port else parsed.host

    @script_api
    @property
    def path(self) -> str:
        parsed = self._parsed()
        return parsed.path if parsed else ""

    def to_display(self) -> str:
        return self._url


class RequestProxy(HostObject):
    """pm.request, a read-only view of the request that was sent."""

    def __init__(self, request: RequestDefinition) -> None:
        self._request = request

    @script_api
    @property
    def method(self) -> str:
        return (self._request.method or "GET").upper()

    @script_api
    @property
    def url(self) -> UrlProxy:
        return UrlProxy(self._request.url)

    @script_api
    @property
    def headers(self) -> HeaderList:
        return HeaderList(self._request.headers)

    @script_api
    @property
    def body(self) -> Any:
        body = self._request.body
        return UNDEFINED if body is None else copy.deepcopy(body)


# =============================================================================
# Variables
# =============================================================================


class VariableProxy(HostObject):
    """pm.environment, pm.globals, pm.collectionVariables and pm.variables.

    pm.variables reads with full precedence and writes the local scope. The
    others read and write their own scope only.
    """

    def __init__(self, store: VariableStore, scope: VariableScope, resolve_all: bool = False) -> None:
        self._store = store
        self._scope = scope
        self._resolve_all = resolve_all

    @script_api
    def get(self, key: Any = UNDEFINED) -> Any:
        name = to_string(key)
        if self._resolve_all:
            value = self._store.get(name)
        else:
            value = self._store.get_scoped(self._scope, name)
        return UNDEFINED if value is None else value

    @script_api
    def set(self, key: Any = UNDEFINED, value: Any = UNDEFINED) -> Any:
        if isinstance(value, (dict, list)):
            text = stringify(value)
        else:
            text = to_string(value)
        try:
            self._store.set(self._scope, to_string(key), text)
        except ValueError as e:
            raise ScriptRuntimeError(str(e)) from e
        return UNDEFINED

    @script_api
    def unset(self, key: Any = UNDEFINED) -> Any:
        try:
            self._store.unset(self._scope, to_string(key))
        except ValueError as e:
            raise ScriptRuntimeError(str(e)) from e
        return UNDEFINED

    @script_api
    def has(self, key: Any = UNDEFINED) -> bool:
        name = to_string(key)
        if self._resolve_all:
            return self._store.get(name) is not None
        return self._store.has(self._scope, name)

    @script_api
    def toObject(self) -> dict[str, str]:
        return self._store.snapshot(self._scope)


# =============================================================================
# pm, console, JSON, JSONPath
# =============================================================================


class PostmanApi(HostObject):
    """The pm object. Results of pm.test() calls accumulate in results."""

    def __init__(
        self,
        store: VariableStore,
        response: ProcessedResponse,
        request: RequestDefinition | None = None,
        iteration: int = 1,
    ) -> None:
        self.results: list[TestResult] = []
        self._call: Callable[[Any, list[Any]], Any] | None = None
        self._response = ResponseProxy(response)
        self._request = RequestProxy(request) if request is not None else UNDEFINED
        self._environment = VariableProxy(store, VariableScope.ENVIRONMENT)
        self._globals = VariableProxy(store, VariableScope.GLOBAL)
        self._collection_variables = VariableProxy(store, VariableScope.COLLECTION)
        self._variables = VariableProxy(store, VariableScope.LOCAL, resolve_all=True)
        self._info = {
            "requestName": request.name if request is not None else "",
            "requestId": request.id if request is not None else "",
            "iteration": iteration,
        }

    def bind(self, call: Callable[[Any, list[Any]], Any]) -> None:
        """Attach the interpreter's call function used to run test callbacks."""
        self._call = call

    @script_api
    def test(self, name: Any = UNDEFINED, callback: Any = UNDEFINED) -> Any:
        test_name = to_string(name)
        if self._call is None:
            raise ScriptRuntimeError("pm.test is not bound to an interpreter")
        try:
            self._call(callback, [])
        except (AssertionFailure, ScriptRuntimeError) as e:
            self.results.append(TestResult(name=test_name, passed=False, error=str(e)))
            logger.debug("sandbox.test_failed", test=test_name, error=str(e))
        else:
            self.results.append(TestResult(name=test_name, passed=True))
        return UNDEFINED

    @script_api
    def expect(self, value: Any = UNDEFINED) -> Expectation:
        return Expectation(value)

    @script_api
    @property
    def response(self) -> ResponseProxy:
        return self._response

    @script_api
    @property
    def request(self) -> Any:
        return self._request

    @script_api
    @property
    def environment(self) -> VariableProxy:
        return self._environment

    @script_api
    @property
    def globals(self) -> VariableProxy:
        return self._globals

    @script_api
    @property
    def collectionVariables(self) -> VariableProxy:
        return self._collection_variables

    @script_api
    @property
    def variables(self) -> VariableProxy:
        return self._variables

    @script_api
    @property
    def info(self) -> dict[str, Any]:
        return self._info


class ScriptConsole(HostObject):
    """console.log and friends, routed to structlog."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def _emit(self, level: str, args: tuple[Any, ...]) -> Any:
        message = " ".join(to_string(arg) for arg in args)
        self.lines.append(message)
        getattr(logger, level)("sandbox.console", message=message)
        return UNDEFINED

    @script_api
    def log(self, *args: Any) -> Any:
        return self._emit("info", args)

    @script_api
    def info(self, *args: Any) -> Any:
        return self._emit("info", args)

    @script_api
    def warn(self, *args: Any) -> Any:
        return self._emit("warning", args)

    @script_api
    def error(self, *args: Any) -> Any:
        return self._emit("error", args)


class JsonApi(HostObject):
    """JSON.parse / JSON.stringify"""

    @script_api
    def parse(self, text: Any = UNDEFINED) -> Any:
        try:
            return json.loads(to_string(text))
        except ValueError as e:
            raise ScriptRuntimeError(f"JSON.parse: {e}") from e

    @script_api
    def stringify(self, value: Any = UNDEFINED, replacer: Any = UNDEFINED, indent: Any = UNDEFINED) -> Any:
        return stringify(value, indent)


def jsonpath_query(options: Any = UNDEFINED, data: Any = UNDEFINED) -> list[Any]:
    """JSONPath({path, json}) or JSONPath(path, json). Returns every match."""
    if isinstance(options, dict):
        path = to_string(options.get("path", "$"))
        data = options.get("json", UNDEFINED)
    else:
        path = to_string(options)
    try:
        compiled = jsonpath_parse(path)
    except (JsonPathParserError, JsonPathLexerError) as e:
        raise ScriptRuntimeError(f"Invalid JSONPath '{path}': {e}") from e
    return [match.value for match in compiled.find(data)]


class ObjectApi(HostObject):
    """Object.keys / Object.values / Object.entries"""

    @staticmethod
    def _require_object(value: Any, method: str) -> dict[str, Any]:
        if isinstance(value, list):
            return {str(i): item for i, item in enumerate(value)}
        if not isinstance(value, dict):
            raise ScriptRuntimeError(f"Object.{method} called on non-object")
        return value

    @script_api
    def keys(self, value: Any = UNDEFINED) -> list[str]:
        return list(self._require_object(value, "keys"))

    @script_api
    def values(self, value: Any = UNDEFINED) -> list[Any]:
        return list(self._require_object(value, "values").values())

    @script_api
    def entries(self, value: Any = UNDEFINED) -> list[list[Any]]:
        return [[k, v] for k, v in self._require_object(value, "entries").items()]


class ArrayApi(HostObject):
    @script_api
    def isArray(self, value: Any = UNDEFINED) -> bool:
        return isinstance(value, list)


def build_globals(pm: PostmanApi, console: ScriptConsole | None = None) -> dict[str, Any]:
    """Global bindings for one sandbox run."""
    return {
        "pm": pm,
        "console": console or ScriptConsole(),
        "JSON": JsonApi(),
        "JSONPath": NativeFunction(jsonpath_query, "JSONPath"),
        "Object": ObjectApi(),
        "Array": ArrayApi(),
    }
