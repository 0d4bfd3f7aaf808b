"""Script Parser - Tokenizer and recursive-descent parser for test scripts.

Parses the JavaScript-like subset used by pm.* test scripts into a small
AST of dataclasses. Supported:

    const/let/var declarations, if/else, blocks, for...of, return
    function declarations, function expressions, arrow functions
    calls, member access (a.b, a?.b, a[b]), assignment (=, +=, -=)
    object, array, string, template, number and regex literals
    unary ! - + typeof, arithmetic, comparison, equality, && || ??, ternary

Anything else is a ScriptSyntaxError carrying the line number.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from postpro.errors import ScriptSyntaxError

# =============================================================================
# Tokens
# =============================================================================

KEYWORDS = frozenset({
    "const", "let", "var", "if", "else", "function", "return", "for", "of",
    "true", "false", "null", "undefined", "typeof", "in",
})

# Longest first so that "===" wins over "==" and "=".
PUNCTUATORS = (
    "===", "!==", "...", "?.", "??", "=>", "==", "!=", "<=", ">=", "&&", "||",
    "+=", "-=", "{", "}", "(", ")", "[", "]", ";", ",", "<", ">", "+", "-",
    "*", "/", "%", "!", "?", ":", "=", ".",
)

# After these a "/" is division, everywhere else it opens a regex literal.
_VALUE_END_KINDS = frozenset({"number", "string", "template", "regex", "name"})
_VALUE_END_PUNCT = frozenset({")", "]", "}"})
_VALUE_END_WORDS = frozenset({"true", "false", "null", "undefined"})

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}


@dataclass(frozen=True)
class Token:
    kind: str  # number, string, template, regex, name, keyword, punct, eof
    value: Any
    line: int


def _read_escape(source: str, i: int, line: int) -> tuple[str, int]:
    """Decode the escape whose backslash is at source[i - 1]."""
    if i >= len(source):
        raise ScriptSyntaxError("Unterminated escape sequence", line)
    ch = source[i]
    if ch in _ESCAPES:
        return _ESCAPES[ch], i + 1
    try:
        if ch == "u":
            if source[i + 1] == "{":
                end = source.index("}", i)
                return chr(int(source[i + 2:end], 16)), end + 1
            return chr(int(source[i + 1:i + 5], 16)), i + 5
        if ch == "x":
            return chr(int(source[i + 1:i + 3], 16)), i + 3
    except (IndexError, ValueError):
        raise ScriptSyntaxError("Invalid escape sequence", line) from None
    if ch == "\n":
        return "", i + 1
    return ch, i + 1


def tokenize(source: str) -> list[Token]:
    """Split source into tokens.

    Raises:
        ScriptSyntaxError: On unterminated literals or unexpected characters.
    """
    tokens: list[Token] = []
    i = 0
    line = 1
    length = len(source)

    def regex_allowed() -> bool:
        if not tokens:
            return True
        last = tokens[-1]
        if last.kind in _VALUE_END_KINDS:
            return False
        if last.kind == "punct" and last.value in _VALUE_END_PUNCT:
            return False
        if last.kind == "keyword" and last.value in _VALUE_END_WORDS:
            return False
        return True

    while i < length:
        ch = source[i]

        if ch == "\n":
            line += 1
            i += 1
            continue
        if ch.isspace():
            i += 1
            continue

        # Comments
        if source.startswith("//", i):
            end = source.find("\n", i)
            i = length if end == -1 else end
            continue
        if source.startswith("/*", i):
            end = source.find("*/", i + 2)
            if end == -1:
                raise ScriptSyntaxError("Unterminated comment", line)
            line += source.count("\n", i, end)
            i = end + 2
            continue

        start_line = line

        if ch.isdigit() or (ch == "." and i + 1 < length and source[i + 1].isdigit()):
            j = i
            while j < length and (source[j].isalnum() or source[j] in "._"):
                if source[j] in "eE" and j + 1 < length and source[j + 1] in "+-":
                    j += 1
                j += 1
            text = source[i:j].replace("_", "")
            try:
                if text.lower().startswith("0x"):
                    value: Any = int(text, 16)
                elif any(c in text for c in ".eE"):
                    value = float(text)
                else:
                    value = int(text)
            except ValueError:
                raise ScriptSyntaxError(f"Invalid number '{source[i:j]}'", line) from None
            tokens.append(Token("number", value, start_line))
            i = j
            continue

        if ch.isalpha() or ch in "_$":
            j = i
            while j < length and (source[j].isalnum() or source[j] in "_$"):
                j += 1
            word = source[i:j]
            tokens.append(Token("keyword" if word in KEYWORDS else "name", word, start_line))
            i = j
            continue

        if ch in "\"'":
            j = i + 1
            chars: list[str] = []
            while True:
                if j >= length or source[j] == "\n":
                    raise ScriptSyntaxError("Unterminated string literal", start_line)
                c = source[j]
                if c == ch:
                    break
                if c == "\\":
                    decoded, j = _read_escape(source, j + 1, line)
                    chars.append(decoded)
                    continue
                chars.append(c)
                j += 1
            tokens.append(Token("string", "".join(chars), start_line))
            i = j + 1
            continue

        if ch == "`":
            # Template literal: alternating text and ${expression source}
            j = i + 1
            parts: list[tuple[str, str]] = []
            chars = []
            while True:
                if j >= length:
                    raise ScriptSyntaxError("Unterminated template literal", start_line)
                c = source[j]
                if c == "`":
                    break
                if c == "\\":
                    decoded, j = _read_escape(source, j + 1, line)
                    chars.append(decoded)
                    continue
                if c == "$" and j + 1 < length and source[j + 1] == "{":
                    depth = 1
                    k = j + 2
                    while k < length and depth:
                        if source[k] == "{":
                            depth += 1
                        elif source[k] == "}":
                            depth -= 1
                        k += 1
                    if depth:
                        raise ScriptSyntaxError("Unterminated template expression", start_line)
                    parts.append(("text", "".join(chars)))
                    parts.append(("expr", source[j + 2:k - 1]))
                    chars = []
                    j = k
                    continue
                if c == "\n":
                    line += 1
                chars.append(c)
                j += 1
            parts.append(("text", "".join(chars)))
            tokens.append(Token("template", parts, start_line))
            i = j + 1
            continue

        if ch == "/" and regex_allowed():
            j = i + 1
            in_class = False
            while True:
                if j >= length or source[j] == "\n":
                    raise ScriptSyntaxError("Unterminated regular expression", start_line)
                c = source[j]
                if c == "\\":
                    j += 2
                    continue
                if c == "[":
                    in_class = True
                elif c == "]":
                    in_class = False
                elif c == "/" and not in_class:
                    break
                j += 1
            pattern = source[i + 1:j]
            k = j + 1
            while k < length and source[k].isalpha():
                k += 1
            tokens.append(Token("regex", (pattern, source[j + 1:k]), start_line))
            i = k
            continue

        for punct in PUNCTUATORS:
            if source.startswith(punct, i):
                # "?." followed by a digit is a ternary, not optional chaining
                if punct == "?." and i + 2 < length and source[i + 2].isdigit():
                    continue
                tokens.append(Token("punct", punct, start_line))
                i += len(punct)
                break
        else:
            raise ScriptSyntaxError(f"Unexpected character '{ch}'", line)

    tokens.append(Token("eof", None, line))
    return tokens


# =============================================================================
# AST
# =============================================================================


@dataclass
class Node:
    line: int = field(default=0, kw_only=True)


@dataclass
class Literal(Node):
    value: Any


@dataclass
class TemplateLiteral(Node):
    parts: list[Node | str]


@dataclass
class RegexLiteral(Node):
    pattern: str
    flags: str


@dataclass
class Identifier(Node):
    name: str


@dataclass
class ArrayLiteral(Node):
    elements: list[Node]


@dataclass
class ObjectLiteral(Node):
    properties: list[tuple[str, Node]]


@dataclass
class Member(Node):
    target: Node
    name: Node | str  # str for a.b, Node for a[b]
    optional: bool = False


@dataclass
class Call(Node):
    callee: Node
    arguments: list[Node]
    optional: bool = False


@dataclass
class Unary(Node):
    operator: str
    operand: Node


@dataclass
class Binary(Node):
    operator: str
    left: Node
    right: Node


@dataclass
class Logical(Node):
    operator: str
    left: Node
    right: Node


@dataclass
class Conditional(Node):
    test: Node
    consequent: Node
    alternate: Node


@dataclass
class Assign(Node):
    operator: str
    target: Node
    value: Node


@dataclass
class FunctionExpr(Node):
    name: str | None
    params: list[str]
    body: list[Node] | Node  # list for a block body, Node for an arrow expression


@dataclass
class VarDecl(Node):
    kind: str
    declarations: list[tuple[str, Node | None]]


@dataclass
class FunctionDecl(Node):
    function: FunctionExpr


@dataclass
class ExprStatement(Node):
    expression: Node


@dataclass
class If(Node):
    test: Node
    consequent: Node
    alternate: Node | None


@dataclass
class Block(Node):
    body: list[Node]


@dataclass
class ForOf(Node):
    kind: str
    name: str
    iterable: Node
    body: Node


@dataclass
class Return(Node):
    value: Node | None


@dataclass
class Program(Node):
    body: list[Node]


# =============================================================================
# Parser
# =============================================================================


class Parser:
    """Recursive-descent parser over the token list.

    Usage:
        program = Parser(source).parse()
    """

    def __init__(self, source: str) -> None:
        self._tokens = tokenize(source)
        self._pos = 0

    # -------------------------------------------------------------------------
    # Token helpers
    # -------------------------------------------------------------------------

    @property
    def _current(self) -> Token:
        return self._tokens[self._pos]

    def _peek(self, offset: int = 1) -> Token:
        index = min(self._pos + offset, len(self._tokens) - 1)
        return self._tokens[index]

    def _advance(self) -> Token:
        token = self._tokens[self._pos]
        if token.kind != "eof":
            self._pos += 1
        return token

    def _is(self, kind: str, value: Any = None) -> bool:
        token = self._current
        return token.kind == kind and (value is None or token.value == value)

    def _is_punct(self, *values: str) -> bool:
        return self._current.kind == "punct" and self._current.value in values

    def _accept(self, kind: str, value: Any = None) -> Token | None:
        if self._is(kind, value):
            return self._advance()
        return None

    def _expect(self, kind: str, value: Any = None) -> Token:
        if self._is(kind, value):
            return self._advance()
        wanted = value if value is not None else kind
        raise self._error(f"Expected '{wanted}'")

    def _error(self, message: str) -> ScriptSyntaxError:
        token = self._current
        found = "end of script" if token.kind == "eof" else repr(token.value)
        return ScriptSyntaxError(f"{message} but found {found}", token.line)

    def _consume_semicolon(self) -> None:
        self._accept("punct", ";")

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def parse(self) -> Program:
        body = []
        while not self._is("eof"):
            body.append(self._statement())
        return Program(body, line=1)

    def _statement(self) -> Node:
        token = self._current
        line = token.line

        if token.kind == "punct" and token.value == ";":
            self._advance()
            return Block([], line=line)
        if token.kind == "punct" and token.value == "{":
            return self._block()
        if token.kind == "keyword":
            if token.value in ("const", "let", "var"):
                statement = self._var_decl()
                self._consume_semicolon()
                return statement
            if token.value == "if":
                return self._if()
            if token.value == "for":
                return self._for_of()
            if token.value == "return":
                self._advance()
                value = None
                if not self._is_punct(";", "}") and not self._is("eof"):
                    value = self._expression()
                self._consume_semicolon()
                return Return(value, line=line)
            if token.value == "function" and self._peek().kind == "name":
                return FunctionDecl(self._function(), line=line)

        expression = self._expression()
        self._consume_semicolon()
        return ExprStatement(expression, line=line)

    def _block(self) -> Block:
        line = self._expect("punct", "{").line
        body = []
        while not self._is_punct("}"):
            if self._is("eof"):
                raise self._error("Expected '}'")
            body.append(self._statement())
        self._advance()
        return Block(body, line=line)

    def _var_decl(self) -> VarDecl:
        token = self._advance()
        declarations: list[tuple[str, Node | None]] = []
        while True:
            name = self._expect("name").value
            initializer = self._assignment() if self._accept("punct", "=") else None
            if token.value == "const" and initializer is None:
                raise self._error("Missing initializer in const declaration")
            declarations.append((name, initializer))
            if not self._accept("punct", ","):
                break
        return VarDecl(token.value, declarations, line=token.line)

    def _if(self) -> If:
        line = self._advance().line
        self._expect("punct", "(")
        test = self._expression()
        self._expect("punct", ")")
        consequent = self._statement()
        alternate = self._statement() if self._accept("keyword", "else") else None
        return If(test, consequent, alternate, line=line)

    def _for_of(self) -> ForOf:
        line = self._advance().line
        self._expect("punct", "(")
        kind_token = self._current
        if kind_token.kind != "keyword" or kind_token.value not in ("const", "let", "var"):
            raise self._error("Expected declaration in for...of")
        self._advance()
        name = self._expect("name").value
        self._expect("keyword", "of")
        iterable = self._expression()
        self._expect("punct", ")")
        body = self._statement()
        return ForOf(kind_token.value, name, iterable, body, line=line)

    def _function(self) -> FunctionExpr:
        line = self._expect("keyword", "function").line
        name = self._advance().value if self._is("name") else None
        params = self._params()
        body = self._block().body
        return FunctionExpr(name, params, body, line=line)

    def _params(self) -> list[str]:
        self._expect("punct", "(")
        params = []
        while not self._is_punct(")"):
            params.append(self._expect("name").value)
            if not self._accept("punct", ","):
                break
        self._expect("punct", ")")
        return params

    # -------------------------------------------------------------------------
    # Expressions, lowest precedence first
    # -------------------------------------------------------------------------

    def _expression(self) -> Node:
        return self._assignment()

    def _assignment(self) -> Node:
        if self._at_arrow():
            return self._arrow()

        target = self._conditional()
        if self._is_punct("=", "+=", "-="):
            token = self._advance()
            if not isinstance(target, (Identifier, Member)):
                raise ScriptSyntaxError("Invalid assignment target", token.line)
            return Assign(token.value, target, self._assignment(), line=token.line)
        return target

    def _at_arrow(self) -> bool:
        token = self._current
        if token.kind == "name":
            return self._peek().kind == "punct" and self._peek().value == "=>"
        if not (token.kind == "punct" and token.value == "("):
            return False
        # Scan to the matching ")" and look for "=>"
        depth = 0
        offset = 0
        while True:
            t = self._peek(offset)
            if t.kind == "eof":
                return False
            if t.kind == "punct" and t.value == "(":
                depth += 1
            elif t.kind == "punct" and t.value == ")":
                depth -= 1
                if depth == 0:
                    following = self._peek(offset + 1)
                    return following.kind == "punct" and following.value == "=>"
            offset += 1

    def _arrow(self) -> FunctionExpr:
        line = self._current.line
        if self._is("name"):
            params = [self._advance().value]
        else:
            params = self._params()
        self._expect("punct", "=>")
        if self._is_punct("{"):
            body: list[Node] | Node = self._block().body
        else:
            body = self._assignment()
        return FunctionExpr(None, params, body, line=line)

    def _conditional(self) -> Node:
        test = self._logical_or()
        if self._is_punct("?"):
            line = self._advance().line
            consequent = self._assignment()
            self._expect("punct", ":")
            alternate = self._assignment()
            return Conditional(test, consequent, alternate, line=line)
        return test

    def _logical_or(self) -> Node:
        node = self._logical_and()
        while self._is_punct("||", "??"):
            token = self._advance()
            node = Logical(token.value, node, self._logical_and(), line=token.line)
        return node

    def _logical_and(self) -> Node:
        node = self._equality()
        while self._is_punct("&&"):
            token = self._advance()
            node = Logical("&&", node, self._equality(), line=token.line)
        return node

    def _equality(self) -> Node:
        node = self._relational()
        while self._is_punct("===", "!==", "==", "!="):
            token = self._advance()
            node = Binary(token.value, node, self._relational(), line=token.line)
        return node

    def _relational(self) -> Node:
        node = self._additive()
        while self._is_punct("<", ">", "<=", ">=") or self._is("keyword", "in"):
            token = self._advance()
            node = Binary(token.value, node, self._additive(), line=token.line)
        return node

    def _additive(self) -> Node:
        node = self._multiplicative()
        while self._is_punct("+", "-"):
            token = self._advance()
            node = Binary(token.value, node, self._multiplicative(), line=token.line)
        return node

    def _multiplicative(self) -> Node:
        node = self._unary()
        while self._is_punct("*", "/", "%"):
            token = self._advance()
            node = Binary(token.value, node, self._unary(), line=token.line)
        return node

    def _unary(self) -> Node:
        if self._is_punct("!", "-", "+") or self._is("keyword", "typeof"):
            token = self._advance()
            return Unary(token.value, self._unary(), line=token.line)
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            token = self._current
            if self._accept("punct", "."):
                name = self._advance()
                if name.kind not in ("name", "keyword"):
                    raise ScriptSyntaxError("Expected property name after '.'", name.line)
                node = Member(node, name.value, line=token.line)
            elif self._accept("punct", "?."):
                if self._accept("punct", "("):
                    node = Call(node, self._arguments(), optional=True, line=token.line)
                elif self._accept("punct", "["):
                    key = self._expression()
                    self._expect("punct", "]")
                    node = Member(node, key, optional=True, line=token.line)
                else:
                    name = self._advance()
                    if name.kind not in ("name", "keyword"):
                        raise ScriptSyntaxError("Expected property name after '?.'", name.line)
                    node = Member(node, name.value, optional=True, line=token.line)
            elif self._accept("punct", "["):
                key = self._expression()
                self._expect("punct", "]")
                node = Member(node, key, line=token.line)
            elif self._accept("punct", "("):
                node = Call(node, self._arguments(), line=token.line)
            else:
                return node

    def _arguments(self) -> list[Node]:
        arguments = []
        while not self._is_punct(")"):
            arguments.append(self._assignment())
            if not self._accept("punct", ","):
                break
        self._expect("punct", ")")
        return arguments

    def _primary(self) -> Node:
        token = self._current
        line = token.line

        if token.kind in ("number", "string"):
            self._advance()
            return Literal(token.value, line=line)
        if token.kind == "template":
            self._advance()
            parts: list[Node | str] = []
            for kind, text in token.value:
                if kind == "text":
                    parts.append(text)
                else:
                    sub = Parser(text)
                    expr = sub._expression()
                    if not sub._is("eof"):
                        raise ScriptSyntaxError("Invalid template expression", line)
                    parts.append(expr)
            return TemplateLiteral(parts, line=line)
        if token.kind == "regex":
            self._advance()
            pattern, flags = token.value
            return RegexLiteral(pattern, flags, line=line)
        if token.kind == "name":
            self._advance()
            return Identifier(token.value, line=line)
        if token.kind == "keyword":
            if token.value in ("true", "false"):
                self._advance()
                return Literal(token.value == "true", line=line)
            if token.value == "null":
                self._advance()
                return Literal(None, line=line)
            if token.value == "undefined":
                self._advance()
                return Identifier("undefined", line=line)
            if token.value == "function":
                return self._function()

        if token.kind == "punct":
            if token.value == "(":
                self._advance()
                expr = self._expression()
                self._expect("punct", ")")
                return expr
            if token.value == "[":
                return self._array()
            if token.value == "{":
                return self._object()

        raise self._error("Unexpected token")

    def _array(self) -> ArrayLiteral:
        line = self._expect("punct", "[").line
        elements = []
        while not self._is_punct("]"):
            elements.append(self._assignment())
            if not self._accept("punct", ","):
                break
        self._expect("punct", "]")
        return ArrayLiteral(elements, line=line)

    def _object(self) -> ObjectLiteral:
        line = self._expect("punct", "{").line
        properties: list[tuple[str, Node]] = []
        while not self._is_punct("}"):
            key_token = self._advance()
            if key_token.kind in ("name", "keyword", "string"):
                key = str(key_token.value)
            elif key_token.kind == "number":
                key = str(key_token.value)
            else:
                raise ScriptSyntaxError("Invalid object key", key_token.line)

            if self._accept("punct", ":"):
                value = self._assignment()
            elif key_token.kind == "name":
                value = Identifier(key, line=key_token.line)  # {a} shorthand
            else:
                raise self._error("Expected ':'")
            properties.append((key, value))
            if not self._accept("punct", ","):
                break
        self._expect("punct", "}")
        return ObjectLiteral(properties, line=line)


def parse_script(source: str) -> Program:
    """Parse source into a Program.

    Raises:
        ScriptSyntaxError: If the source is not valid for the supported subset
            or nests too deeply to parse.
    """
    try:
        return Parser(source).parse()
    except RecursionError as e:
        raise ScriptSyntaxError("Script is nested too deeply") from e
