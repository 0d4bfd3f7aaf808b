"""Script Runtime - Tree-walking evaluator for parsed test scripts.

Values are plain Python data: dict, list, str, int/float, bool, None
(null) and the UNDEFINED sentinel. Functions written in the script become
ScriptFunction closures. Everything else a script can touch is a
HostObject, and only members marked with @script_api are reachable.
Python attributes are never looked up by name.
"""

from __future__ import annotations

import json
import math
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Callable

from postpro.errors import AssertionFailure, ScriptRuntimeError
from postpro.script_parser import (
    ArrayLiteral,
    Assign,
    Binary,
    Block,
    Call,
    Conditional,
    ExprStatement,
    ForOf,
    FunctionDecl,
    FunctionExpr,
    Identifier,
    If,
    Literal,
    Logical,
    Member,
    Node,
    ObjectLiteral,
    Program,
    RegexLiteral,
    Return,
    TemplateLiteral,
    Unary,
    VarDecl,
)

MAX_CALL_DEPTH = 64


class _Undefined:
    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


# =============================================================================
# Host objects
# =============================================================================


def script_api(func: Callable) -> Callable:
    """Mark a HostObject method or property getter as reachable from scripts."""
    target = func.fget if isinstance(func, property) else func
    target._script_api = True
    return func


class HostObject:
    """Base class for every Python object exposed to scripts.

    Subclasses expose members by decorating methods with @script_api. A
    decorated method is returned as a bound callable; a decorated property
    is read. Subclasses may override get_member for dynamic members.
    """

    type_name = "object"

    def get_member(self, name: str) -> Any:
        if name.startswith("_"):
            return UNDEFINED
        attr = getattr(type(self), name, None)
        if isinstance(attr, property):
            if getattr(attr.fget, "_script_api", False):
                return attr.fget(self)
            return UNDEFINED
        if attr is not None and getattr(attr, "_script_api", False):
            return NativeFunction(getattr(self, name), name)
        return UNDEFINED

    def to_display(self) -> str:
        return "[object Object]"


class NativeFunction(HostObject):
    """A Python callable handed to scripts as a function value."""

    type_name = "function"

    def __init__(self, func: Callable[..., Any], name: str = "") -> None:
        self._func = func
        self.name = name or getattr(func, "__name__", "native")

    def __call__(self, *args: Any) -> Any:
        return self._func(*args)

    def to_display(self) -> str:
        return f"function {self.name}() {{ [native code] }}"


class PendingAssertion(HostObject):
    """An assertion written in property style, e.g. pm.expect(x).to.be.true.

    Runs when called, or when it is left as the value of an expression
    statement or returned from a function without being called.
    """

    type_name = "function"

    def __init__(self, check: Callable[[], None]) -> None:
        self._check = check
        self.done = False

    def __call__(self, *args: Any) -> Any:
        self.done = True
        self._check()
        return UNDEFINED

    def settle(self) -> None:
        if not self.done:
            self()


@dataclass
class ScriptRegExp(HostObject):
    source: str
    flags: str
    compiled: re.Pattern = field(repr=False, default=None)

    def __post_init__(self) -> None:
        # Named groups use (?<name>...) in scripts and (?P<name>...) in Python
        pattern = re.sub(r"\(\?<(?![=!])", "(?P<", self.source)
        py_flags = 0
        if "i" in self.flags:
            py_flags |= re.IGNORECASE
        if "m" in self.flags:
            py_flags |= re.MULTILINE
        if "s" in self.flags:
            py_flags |= re.DOTALL
        try:
            self.compiled = re.compile(pattern, py_flags)
        except re.error as e:
            raise ScriptRuntimeError(f"Invalid regular expression /{self.source}/: {e}") from e

    def search(self, text: str) -> bool:
        return self.compiled.search(text) is not None

    @script_api
    def test(self, text: Any = UNDEFINED) -> bool:
        return self.search(to_string(text))

    def to_display(self) -> str:
        return f"/{self.source}/{self.flags}"


# =============================================================================
# Conversions and operators
# =============================================================================


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def format_number(value: float | int) -> str:
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return format_number(value)
    if isinstance(value, list):
        return ",".join("" if v is None or v is UNDEFINED else to_string(v) for v in value)
    if isinstance(value, dict):
        return "[object Object]"
    if isinstance(value, HostObject):
        return value.to_display()
    if isinstance(value, ScriptFunction):
        return f"function {value.name or ''}() {{ ... }}"
    return str(value)


def to_number(value: Any) -> float | int:
    if isinstance(value, bool):
        return 1 if value else 0
    if is_number(value):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return math.nan
        # Python accepts "nan"/"inf" spellings that scripts do not
        return number if text.lstrip("+-")[:1].isdigit() or text.lstrip("+-")[:1] == "." else math.nan
    if isinstance(value, list) and len(value) <= 1:
        return to_number(value[0]) if value else 0
    return math.nan


def truthy(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, bool):
        return value
    if is_number(value):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def type_of(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, ScriptFunction):
        return "function"
    if isinstance(value, HostObject):
        return value.type_name
    return "object"


def strict_equals(a: Any, b: Any) -> bool:
    if is_number(a) and is_number(b):
        return a == b
    if type_of(a) != type_of(b):
        return False
    if isinstance(a, (str, bool)) or a is None or a is UNDEFINED:
        return a == b
    return a is b


def loose_equals(a: Any, b: Any) -> bool:
    a_nullish = a is None or a is UNDEFINED
    b_nullish = b is None or b is UNDEFINED
    if a_nullish or b_nullish:
        return a_nullish and b_nullish
    if type_of(a) == type_of(b):
        return strict_equals(a, b)
    primitive = (str, int, float, bool)
    if isinstance(a, primitive) and isinstance(b, primitive):
        return to_number(a) == to_number(b)
    return False


def deep_equals(a: Any, b: Any) -> bool:
    """Structural equality for objects and arrays, strict for primitives."""
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(deep_equals(a[k], b[k]) for k in a)
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(deep_equals(x, y) for x, y in zip(a, b))
    return strict_equals(a, b)


def to_json_value(value: Any) -> Any:
    """Convert a script value into something json.dumps accepts."""
    if isinstance(value, dict):
        return {
            k: to_json_value(v)
            for k, v in value.items()
            if v is not UNDEFINED and not callable(v)
        }
    if isinstance(value, list):
        return [None if v is UNDEFINED or callable(v) else to_json_value(v) for v in value]
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        if value.is_integer():
            return int(value)
    if isinstance(value, HostObject):
        return {}
    return value


def stringify(value: Any, indent: Any = UNDEFINED) -> Any:
    if value is UNDEFINED or callable(value) and not isinstance(value, (dict, list)):
        return UNDEFINED
    spaces = min(_to_integer(indent), 10) if is_number(indent) and indent >= 1 else None
    if spaces is None:
        return json.dumps(to_json_value(value), separators=(",", ":"), ensure_ascii=False)
    return json.dumps(to_json_value(value), indent=spaces, ensure_ascii=False)


def _arithmetic(operator: str, left: Any, right: Any) -> Any:
    if operator == "+":
        if isinstance(left, (str, list, dict, HostObject)) or isinstance(
            right, (str, list, dict, HostObject)
        ):
            return to_string(left) + to_string(right)
        return to_number(left) + to_number(right)

    a, b = to_number(left), to_number(right)
    try:
        if operator == "-":
            return a - b
        if operator == "*":
            return a * b
        if operator == "/":
            if b == 0:
                if a == 0 or math.isnan(a):
                    return math.nan
                return math.copysign(math.inf, a) * math.copysign(1, b)
            result = a / b
            return int(result) if isinstance(a, int) and isinstance(b, int) and a % b == 0 else result
        if operator == "%":
            if b == 0 or math.isinf(a):
                return math.nan
            return math.fmod(a, b) if isinstance(a, float) or isinstance(b, float) else int(math.fmod(a, b))
    except (ArithmeticError, ValueError) as e:
        raise ScriptRuntimeError(f"Arithmetic error: {e}") from e
    raise ScriptRuntimeError(f"Unsupported operator '{operator}'")


def _compare(operator: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left
        b: Any = right
    else:
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if operator == "<":
        return a < b
    if operator == ">":
        return a > b
    if operator == "<=":
        return a <= b
    return a >= b


# =============================================================================
# Members of plain data
# =============================================================================


def _to_integer(value: Any) -> int:
    """ToIntegerOrInfinity, with infinities clamped to a size no sequence reaches."""
    number = to_number(value)
    if math.isnan(number):
        return 0
    if math.isinf(number):
        return sys.maxsize if number > 0 else -sys.maxsize
    return int(number)


def _index_of(items: Any, target: Any, start: Any = 0) -> int:
    if isinstance(items, str):
        return items.find(to_string(target), max(_to_integer(start), 0))
    for index, item in enumerate(items):
        if strict_equals(item, target):
            return index
    return -1


def _slice(value: Any, start: Any = UNDEFINED, end: Any = UNDEFINED) -> Any:
    s = None if start is UNDEFINED else _to_integer(start)
    e = None if end is UNDEFINED else _to_integer(end)
    return value[s:e]


def _split(text: str, separator: Any = UNDEFINED, limit: Any = UNDEFINED) -> list[str]:
    if separator is UNDEFINED:
        parts = [text]
    elif isinstance(separator, ScriptRegExp):
        parts = separator.compiled.split(text)
    elif separator == "":
        parts = list(text)
    else:
        parts = text.split(to_string(separator))
    if limit is not UNDEFINED:
        parts = parts[: max(_to_integer(limit), 0)]
    return parts


def _replace(text: str, pattern: Any, replacement: Any) -> str:
    if isinstance(pattern, ScriptRegExp):
        count = 0 if "g" in pattern.flags else 1
        return pattern.compiled.sub(lambda _: to_string(replacement), text, count=count)
    return text.replace(to_string(pattern), to_string(replacement), 1)


def _string_member(text: str, name: str) -> Any:
    members: dict[str, Callable[..., Any]] = {
        "includes": lambda sub=UNDEFINED, *_: to_string(sub) in text,
        "startsWith": lambda sub=UNDEFINED, *_: text.startswith(to_string(sub)),
        "endsWith": lambda sub=UNDEFINED, *_: text.endswith(to_string(sub)),
        "indexOf": lambda sub=UNDEFINED, start=0, *_: _index_of(text, sub, start),
        "toLowerCase": lambda *_: text.lower(),
        "toUpperCase": lambda *_: text.upper(),
        "trim": lambda *_: text.strip(),
        "split": lambda sep=UNDEFINED, limit=UNDEFINED, *_: _split(text, sep, limit),
        "slice": lambda start=UNDEFINED, end=UNDEFINED, *_: _slice(text, start, end),
        "replace": lambda pattern=UNDEFINED, repl="", *_: _replace(text, pattern, repl),
        "match": lambda pattern=UNDEFINED, *_: _match(text, pattern),
        "toString": lambda *_: text,
    }
    if name == "length":
        return len(text)
    if name in members:
        return NativeFunction(members[name], name)
    return UNDEFINED


def _match(text: str, pattern: Any) -> Any:
    regexp = pattern if isinstance(pattern, ScriptRegExp) else ScriptRegExp(
        re.escape(to_string(pattern)), ""
    )
    if "g" in regexp.flags:
        found = [m.group(0) for m in regexp.compiled.finditer(text)]
        return found or None
    m = regexp.compiled.search(text)
    if m is None:
        return None
    return [m.group(0), *("" if g is None else g for g in m.groups())]


class Interpreter:
    """Evaluates a parsed Program against a set of global bindings.

    Usage:
        interpreter = Interpreter({"pm": pm, "console": console})
        interpreter.run(parse_script(source))
    """

    def __init__(self, globals_: dict[str, Any]) -> None:
        self._globals = Scope(None)
        for name, value in globals_.items():
            self._globals.declare(name, value, "const")
        self._depth = 0

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def run(self, program: Program) -> None:
        """Execute a program.

        Raises:
            ScriptRuntimeError: On an uncaught runtime error.
            AssertionFailure: On an assertion outside any test callback.
        """
        try:
            self._execute_block(program.body, self._globals)
        except _ReturnSignal:
            pass
        except RecursionError as e:
            raise ScriptRuntimeError("Maximum call stack size exceeded") from e

    def call(self, func: Any, args: list[Any]) -> Any:
        """Call a script or native function value."""
        if isinstance(func, ScriptFunction):
            return self._call_script_function(func, args)
        if not isinstance(func, (NativeFunction, PendingAssertion)):
            raise ScriptRuntimeError(f"{to_string(func)} is not a function")
        try:
            return func(*args)
        except (AssertionFailure, ScriptRuntimeError):
            raise
        except (TypeError, ValueError, KeyError, IndexError, ArithmeticError) as e:
            raise ScriptRuntimeError(str(e)) from e

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def _execute_block(self, body: list[Node], scope: "Scope") -> None:
        # Function declarations are visible from the top of their block
        for statement in body:
            if isinstance(statement, FunctionDecl):
                fn = statement.function
                scope.declare(fn.name, ScriptFunction(fn, scope, self), "let")
        for statement in body:
            self._execute(statement, scope)

    def _execute(self, node: Node, scope: "Scope") -> None:
        if isinstance(node, ExprStatement):
            value = self._evaluate(node.expression, scope)
            if isinstance(value, PendingAssertion):
                value.settle()
        elif isinstance(node, VarDecl):
            for name, initializer in node.declarations:
                value = UNDEFINED if initializer is None else self._evaluate(initializer, scope)
                if isinstance(initializer, FunctionExpr) and isinstance(value, ScriptFunction):
                    value.name = value.name or name
                scope.declare(name, value, node.kind, node.line)
        elif isinstance(node, If):
            if truthy(self._evaluate(node.test, scope)):
                self._execute(node.consequent, scope)
            elif node.alternate is not None:
                self._execute(node.alternate, scope)
        elif isinstance(node, Block):
            self._execute_block(node.body, Scope(scope))
        elif isinstance(node, ForOf):
            iterable = self._evaluate(node.iterable, scope)
            if isinstance(iterable, str):
                items: list[Any] = list(iterable)
            elif isinstance(iterable, list):
                items = list(iterable)
            else:
                raise ScriptRuntimeError(f"{to_string(iterable)} is not iterable (line {node.line})")
            for item in items:
                loop_scope = Scope(scope)
                loop_scope.declare(node.name, item, node.kind)
                self._execute(node.body, loop_scope)
        elif isinstance(node, Return):
            value = UNDEFINED if node.value is None else self._evaluate(node.value, scope)
            raise _ReturnSignal(value)
        elif isinstance(node, FunctionDecl):
            pass  # hoisted by _execute_block
        else:
            raise ScriptRuntimeError(f"Unsupported statement (line {node.line})")

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def _evaluate(self, node: Node, scope: "Scope") -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Identifier):
            if node.name == "undefined":
                return UNDEFINED
            return scope.lookup(node.name, node.line)
        if isinstance(node, TemplateLiteral):
            return "".join(
                part if isinstance(part, str) else to_string(self._evaluate(part, scope))
                for part in node.parts
            )
        if isinstance(node, RegexLiteral):
            return ScriptRegExp(node.pattern, node.flags)
        if isinstance(node, ArrayLiteral):
            return [self._evaluate(element, scope) for element in node.elements]
        if isinstance(node, ObjectLiteral):
            return {key: self._evaluate(value, scope) for key, value in node.properties}
        if isinstance(node, FunctionExpr):
            return ScriptFunction(node, scope, self)
        if isinstance(node, Member):
            target = self._evaluate(node.target, scope)
            if node.optional and (target is None or target is UNDEFINED):
                return UNDEFINED
            return self._get_member(target, self._member_name(node, scope), node.line)
        if isinstance(node, Call):
            return self._evaluate_call(node, scope)
        if isinstance(node, Unary):
            return self._evaluate_unary(node, scope)
        if isinstance(node, Binary):
            return self._evaluate_binary(node, scope)
        if isinstance(node, Logical):
            left = self._evaluate(node.left, scope)
            if node.operator == "&&":
                return self._evaluate(node.right, scope) if truthy(left) else left
            if node.operator == "||":
                return left if truthy(left) else self._evaluate(node.right, scope)
            return self._evaluate(node.right, scope) if left is None or left is UNDEFINED else left
        if isinstance(node, Conditional):
            branch = node.consequent if truthy(self._evaluate(node.test, scope)) else node.alternate
            return self._evaluate(branch, scope)
        if isinstance(node, Assign):
            return self._evaluate_assign(node, scope)
        raise ScriptRuntimeError(f"Unsupported expression (line {node.line})")

    def _member_name(self, node: Member, scope: "Scope") -> str | int:
        if isinstance(node.name, str):
            return node.name
        key = self._evaluate(node.name, scope)
        if is_number(key) and float(key).is_integer():
            return int(key)
        return to_string(key)

    def _get_member(self, target: Any, name: str | int, line: int) -> Any:
        if target is None or target is UNDEFINED:
            raise ScriptRuntimeError(
                f"Cannot read properties of {to_string(target)} (reading '{name}') (line {line})"
            )
        if isinstance(target, dict):
            return target.get(str(name), UNDEFINED)
        if isinstance(target, list):
            if isinstance(name, int):
                return target[name] if 0 <= name < len(target) else UNDEFINED
            if name.isdigit():
                index = int(name)
                return target[index] if index < len(target) else UNDEFINED
            return self._list_member(target, name)
        if isinstance(target, str):
            if isinstance(name, int):
                return target[name] if 0 <= name < len(target) else UNDEFINED
            return _string_member(target, name)
        if isinstance(target, HostObject):
            return target.get_member(str(name))
        if name == "toString":
            return NativeFunction(lambda *_: to_string(target), "toString")
        return UNDEFINED

    def _list_member(self, items: list[Any], name: str) -> Any:
        def each(fn: Any) -> list[tuple[Any, Any]]:
            return [(item, self.call(fn, [item, index, items])) for index, item in enumerate(items)]

        members: dict[str, Callable[..., Any]] = {
            "includes": lambda target=UNDEFINED, *_: any(strict_equals(i, target) for i in items),
            "indexOf": lambda target=UNDEFINED, *_: _index_of(items, target),
            "join": lambda sep=",", *_: to_string(sep).join(
                "" if i is None or i is UNDEFINED else to_string(i) for i in items
            ),
            "slice": lambda start=UNDEFINED, end=UNDEFINED, *_: _slice(items, start, end),
            "map": lambda fn, *_: [result for _, result in each(fn)],
            "filter": lambda fn, *_: [item for item, result in each(fn) if truthy(result)],
            "forEach": lambda fn, *_: (each(fn), UNDEFINED)[1],
            "some": lambda fn, *_: any(truthy(result) for _, result in each(fn)),
            "every": lambda fn, *_: all(truthy(result) for _, result in each(fn)),
            "find": lambda fn, *_: next(
                (item for item, result in each(fn) if truthy(result)), UNDEFINED
            ),
            "push": lambda *values: (items.extend(values), len(items))[1],
            "toString": lambda *_: to_string(items),
        }
        if name == "length":
            return len(items)
        if name in members:
            return NativeFunction(members[name], name)
        return UNDEFINED

    def _evaluate_call(self, node: Call, scope: "Scope") -> Any:
        func = self._evaluate(node.callee, scope)
        if node.optional and (func is None or func is UNDEFINED):
            return UNDEFINED
        args = [self._evaluate(arg, scope) for arg in node.arguments]
        if func is UNDEFINED and isinstance(node.callee, Member):
            name = node.callee.name if isinstance(node.callee.name, str) else "(computed)"
            raise ScriptRuntimeError(f"{name} is not a function (line {node.line})")
        return self.call(func, args)

    def _evaluate_unary(self, node: Unary, scope: "Scope") -> Any:
        if node.operator == "typeof":
            if isinstance(node.operand, Identifier) and not scope.has(node.operand.name):
                return "undefined"
            return type_of(self._evaluate(node.operand, scope))
        value = self._evaluate(node.operand, scope)
        if node.operator == "!":
            return not truthy(value)
        if node.operator == "-":
            return -to_number(value)
        return to_number(value)

    def _evaluate_binary(self, node: Binary, scope: "Scope") -> Any:
        left = self._evaluate(node.left, scope)
        right = self._evaluate(node.right, scope)
        operator = node.operator
        if operator == "===":
            return strict_equals(left, right)
        if operator == "!==":
            return not strict_equals(left, right)
        if operator == "==":
            return loose_equals(left, right)
        if operator == "!=":
            return not loose_equals(left, right)
        if operator in ("<", ">", "<=", ">="):
            return _compare(operator, left, right)
        if operator == "in":
            if isinstance(right, dict):
                return to_string(left) in right
            if isinstance(right, list):
                index = to_number(left)
                return is_number(index) and 0 <= index < len(right)
            raise ScriptRuntimeError(
                f"Cannot use 'in' operator to search for '{to_string(left)}' in {to_string(right)}"
            )
        return _arithmetic(operator, left, right)

    def _evaluate_assign(self, node: Assign, scope: "Scope") -> Any:
        value = self._evaluate(node.value, scope)
        if node.operator != "=":
            current = self._evaluate(node.target, scope)
            value = _arithmetic(node.operator[0], current, value)

        if isinstance(node.target, Identifier):
            scope.assign(node.target.name, value, node.line)
            return value

        assert isinstance(node.target, Member)
        target = self._evaluate(node.target.target, scope)
        key = self._member_name(node.target, scope)
        if isinstance(target, dict):
            target[str(key)] = value
        elif isinstance(target, list) and isinstance(key, int) and 0 <= key <= len(target):
            if key == len(target):
                target.append(value)
            else:
                target[key] = value
        else:
            raise ScriptRuntimeError(
                f"Cannot set property '{key}' of {to_string(target)} (line {node.line})"
            )
        return value

    # -------------------------------------------------------------------------
    # Functions
    # -------------------------------------------------------------------------

    def _call_script_function(self, func: "ScriptFunction", args: list[Any]) -> Any:
        if self._depth >= MAX_CALL_DEPTH:
            raise ScriptRuntimeError("Maximum call stack size exceeded")
        self._depth += 1
        try:
            scope = Scope(func.closure)
            for index, param in enumerate(func.node.params):
                scope.declare(param, args[index] if index < len(args) else UNDEFINED, "let")
            body = func.node.body
            if isinstance(body, list):
                try:
                    self._execute_block(body, scope)
                except _ReturnSignal as signal:
                    result = signal.value
                else:
                    result = UNDEFINED
            else:
                result = self._evaluate(body, scope)
        finally:
            self._depth -= 1

        if isinstance(result, PendingAssertion):
            result.settle()
            return UNDEFINED
        return result


class _ReturnSignal(Exception):
    def __init__(self, value: Any) -> None:
        self.value = value


class ScriptFunction:
    """A function defined in script source, closed over its scope."""

    def __init__(self, node: FunctionExpr, closure: "Scope", interpreter: Interpreter) -> None:
        self.node = node
        self.closure = closure
        self.name = node.name or ""
        self._interpreter = interpreter

    def __call__(self, *args: Any) -> Any:
        return self._interpreter.call(self, list(args))


class Scope:
    """Lexical scope. const bindings cannot be reassigned."""

    def __init__(self, parent: "Scope | None") -> None:
        self._parent = parent
        self._values: dict[str, Any] = {}
        self._constants: set[str] = set()

    def declare(self, name: str, value: Any, kind: str, line: int | None = None) -> None:
        if name in self._values and (kind != "var" or name in self._constants):
            suffix = f" (line {line})" if line else ""
            raise ScriptRuntimeError(f"Identifier '{name}' has already been declared{suffix}")
        self._values[name] = value
        if kind == "const":
            self._constants.add(name)

    def has(self, name: str) -> bool:
        scope: Scope | None = self
        while scope is not None:
            if name in scope._values:
                return True
            scope = scope._parent
        return False

    def lookup(self, name: str, line: int) -> Any:
        scope: Scope | None = self
        while scope is not None:
            if name in scope._values:
                return scope._values[name]
            scope = scope._parent
        raise ScriptRuntimeError(f"{name} is not defined (line {line})")

    def assign(self, name: str, value: Any, line: int) -> None:
        scope: Scope | None = self
        while scope is not None:
            if name in scope._values:
                if name in scope._constants:
                    raise ScriptRuntimeError(f"Assignment to constant variable '{name}' (line {line})")
                scope._values[name] = value
                return
            scope = scope._parent
        raise ScriptRuntimeError(f"{name} is not defined (line {line})")
