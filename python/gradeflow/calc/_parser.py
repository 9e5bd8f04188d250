"""Formula parser: tokenizer + recursive descent parser for the gradebook DSL.

The grammar is closed: numbers, strings, booleans, symbols, calls to named
functions, attribute access, matrix literals, the usual arithmetic and
comparison operators, ``and``/``or``/``not``, the ``?:`` conditional,
variable assignment (``x = expr``) and one-line function definitions
(``f(x) = expr``).  Statements are separated by newlines or ``;``.
"""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, fields, replace
from typing import Any


class FormulaSyntaxError(ValueError):
    """Raised when formula text does not match the grammar."""


# ---------------------------------------------------------------------------
# Syntax tree
# ---------------------------------------------------------------------------


class Node:
    """Base class for syntax tree nodes."""

    __slots__ = ()


@dataclass(frozen=True)
class Number(Node):
    value: int | float


@dataclass(frozen=True)
class String(Node):
    value: str


@dataclass(frozen=True)
class Boolean(Node):
    value: bool


@dataclass(frozen=True)
class Symbol(Node):
    name: str


@dataclass(frozen=True)
class ContextRef(Node):
    """Placeholder for the evaluation context, inserted by the rewrite pass."""


@dataclass(frozen=True)
class Matrix(Node):
    rows: tuple[tuple[Node, ...], ...]
    two_d: bool = False


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: tuple[Node, ...]


@dataclass(frozen=True)
class Attribute(Node):
    target: Node
    name: str


@dataclass(frozen=True)
class Unary(Node):
    op: str  # "-", "+", "not"
    operand: Node


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Logical(Node):
    op: str  # "and" / "or"
    left: Node
    right: Node


@dataclass(frozen=True)
class Conditional(Node):
    test: Node
    if_true: Node
    if_false: Node


@dataclass(frozen=True)
class Assign(Node):
    name: str
    value: Node


@dataclass(frozen=True)
class FunctionDef(Node):
    name: str
    params: tuple[str, ...]
    body: Node


@dataclass(frozen=True)
class Program(Node):
    statements: tuple[Node, ...]


def _child_values(node: Node) -> Iterator[Any]:
    for f in fields(node):  # type: ignore[arg-type]
        yield f.name, getattr(node, f.name)


def iter_children(node: Node) -> Iterator[Node]:
    """Yield the direct child nodes of *node*."""
    for _, value in _child_values(node):
        if isinstance(value, Node):
            yield value
        elif isinstance(value, tuple):
            for item in value:
                if isinstance(item, Node):
                    yield item
                elif isinstance(item, tuple):
                    yield from (x for x in item if isinstance(x, Node))


def walk(node: Node) -> Iterator[Node]:
    """Pre-order traversal of the tree rooted at *node*."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        children = list(iter_children(current))
        stack.extend(reversed(children))


def function_calls(node: Node) -> list[Call]:
    """All call nodes in source order."""
    return [n for n in walk(node) if isinstance(n, Call)]


def transform(node: Node, fn: Callable[[Node], Node]) -> Node:
    """Rebuild the tree bottom-up, passing every node through *fn*."""

    def rebuild(value: Any) -> Any:
        if isinstance(value, Node):
            return transform(value, fn)
        if isinstance(value, tuple):
            items = tuple(rebuild(v) for v in value)
            if all(a is b for a, b in zip(items, value)):
                return value
            return items
        return value

    changes = {}
    for name, value in _child_values(node):
        new = rebuild(value)
        if new is not value:
            changes[name] = new
    if changes:
        node = replace(node, **changes)  # type: ignore[type-var]
    return fn(node)


# ---------------------------------------------------------------------------
# Glob helpers
# ---------------------------------------------------------------------------

_GLOB_CHARS = frozenset("*?[")


def is_glob(pattern: str) -> bool:
    """True when *pattern* contains glob wildcards."""
    return any(ch in _GLOB_CHARS for ch in pattern)


def glob_match(name: str, pattern: str) -> bool:
    """Case-sensitive glob match used for slug references."""
    return fnmatch.fnmatchcase(name, pattern)


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>[ \t\r]+)
    |(?P<comment>\#[^\n]*)
    |(?P<newline>\n)
    |(?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
    |(?P<string>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>==|!=|<=|>=|[-+*/^()\[\],;.=<>?:])
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'"}

_KEYWORDS = frozenset({"and", "or", "not", "true", "false"})

_COMPARISON_OPS = frozenset({"==", "!=", "<", "<=", ">", ">="})


@dataclass(frozen=True)
class Token:
    kind: str  # number, string, name, op, newline, eof
    value: Any
    pos: int


def _unescape(body: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            out.append(_ESCAPES.get(body[i + 1], body[i + 1]))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def tokenize(text: str) -> list[Token]:
    """Split formula text into tokens.

    Newlines are significant (statement separators) only outside of
    parentheses and brackets.
    """
    tokens: list[Token] = []
    depth = 0
    pos = 0
    length = len(text)
    while pos < length:
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise FormulaSyntaxError(f"Unexpected character {text[pos]!r} at position {pos}")
        kind = m.lastgroup
        raw = m.group()
        if kind == "newline":
            if depth == 0:
                tokens.append(Token("newline", raw, pos))
        elif kind == "number":
            value: Any = int(raw) if raw.isdigit() else float(raw)
            tokens.append(Token("number", value, pos))
        elif kind == "string":
            tokens.append(Token("string", _unescape(raw[1:-1]), pos))
        elif kind == "name":
            tokens.append(Token("name", raw, pos))
        elif kind == "op":
            if raw in ("(", "["):
                depth += 1
            elif raw in (")", "]"):
                depth = max(depth - 1, 0)
            tokens.append(Token("op", raw, pos))
        pos = m.end()
    tokens.append(Token("eof", None, length))
    return tokens


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    """Recursive descent over a token list.

    Precedence (lowest to highest)::

        assignment / function definition
        conditional   (a ? b : c)
        or
        and
        not
        comparison    (== != < <= > >=)
        additive      (+ -)
        multiplicative (* /)
        unary         (- +)
        power         (^, right associative)
        postfix       (call, .attribute)
    """

    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._i = 0

    # -- token helpers ---------------------------------------------------

    def _peek(self, offset: int = 0) -> Token:
        idx = min(self._i + offset, len(self._tokens) - 1)
        return self._tokens[idx]

    def _advance(self) -> Token:
        tok = self._tokens[self._i]
        if tok.kind != "eof":
            self._i += 1
        return tok

    def _at(self, kind: str, value: Any = None, offset: int = 0) -> bool:
        tok = self._peek(offset)
        return tok.kind == kind and (value is None or tok.value == value)

    def _at_op(self, *values: str) -> bool:
        tok = self._peek()
        return tok.kind == "op" and tok.value in values

    def _at_keyword(self, word: str) -> bool:
        return self._at("name", word)

    def _expect_op(self, value: str) -> Token:
        tok = self._peek()
        if tok.kind != "op" or tok.value != value:
            raise self._error(f"Expected {value!r}")
        return self._advance()

    def _error(self, message: str) -> FormulaSyntaxError:
        tok = self._peek()
        found = "end of expression" if tok.kind == "eof" else repr(tok.value)
        return FormulaSyntaxError(f"{message} but found {found} at position {tok.pos}")

    # -- statements ------------------------------------------------------

    def parse_program(self) -> Program:
        statements: list[Node] = []
        self._skip_separators()
        while not self._at("eof"):
            statements.append(self.parse_expression())
            if not (self._at("eof") or self._at("newline") or self._at_op(";")):
                raise self._error("Expected end of statement")
            self._skip_separators()
        if not statements:
            raise FormulaSyntaxError("Empty expression")
        return Program(tuple(statements))

    def _skip_separators(self) -> None:
        while self._at("newline") or self._at_op(";"):
            self._advance()

    def parse_expression(self) -> Node:
        if self._at("name") and self._peek().value not in _KEYWORDS:
            if self._at("op", "=", offset=1):
                name = self._advance().value
                self._advance()
                return Assign(name, self.parse_expression())
            if self._at("op", "(", offset=1) and self._looks_like_function_def():
                return self._parse_function_def()
        return self._parse_conditional()

    def _looks_like_function_def(self) -> bool:
        # name ( [name {, name}] ) =
        i = 2
        if self._at("op", ")", offset=i):
            return self._at("op", "=", offset=i + 1)
        while True:
            if not self._at("name", offset=i):
                return False
            i += 1
            if self._at("op", ",", offset=i):
                i += 1
                continue
            if self._at("op", ")", offset=i):
                return self._at("op", "=", offset=i + 1)
            return False

    def _parse_function_def(self) -> FunctionDef:
        name = self._advance().value
        self._expect_op("(")
        params: list[str] = []
        while not self._at_op(")"):
            params.append(self._advance().value)
            if self._at_op(","):
                self._advance()
        self._expect_op(")")
        self._expect_op("=")
        return FunctionDef(name, tuple(params), self.parse_expression())

    # -- expressions -----------------------------------------------------

    def _parse_conditional(self) -> Node:
        test = self._parse_or()
        if self._at_op("?"):
            self._advance()
            if_true = self.parse_expression()
            self._expect_op(":")
            if_false = self.parse_expression()
            return Conditional(test, if_true, if_false)
        return test

    def _parse_or(self) -> Node:
        left = self._parse_and()
        while self._at_keyword("or"):
            self._advance()
            left = Logical("or", left, self._parse_and())
        return left

    def _parse_and(self) -> Node:
        left = self._parse_not()
        while self._at_keyword("and"):
            self._advance()
            left = Logical("and", left, self._parse_not())
        return left

    def _parse_not(self) -> Node:
        if self._at_keyword("not"):
            self._advance()
            return Unary("not", self._parse_not())
        return self._parse_comparison()

    def _parse_comparison(self) -> Node:
        left = self._parse_additive()
        while self._peek().kind == "op" and self._peek().value in _COMPARISON_OPS:
            op = self._advance().value
            left = Binary(op, left, self._parse_additive())
        return left

    def _parse_additive(self) -> Node:
        left = self._parse_multiplicative()
        while self._at_op("+", "-"):
            op = self._advance().value
            left = Binary(op, left, self._parse_multiplicative())
        return left

    def _parse_multiplicative(self) -> Node:
        left = self._parse_unary()
        while self._at_op("*", "/"):
            op = self._advance().value
            left = Binary(op, left, self._parse_unary())
        return left

    def _parse_unary(self) -> Node:
        if self._at_op("-", "+"):
            op = self._advance().value
            return Unary(op, self._parse_unary())
        return self._parse_power()

    def _parse_power(self) -> Node:
        base = self._parse_postfix()
        if self._at_op("^"):
            self._advance()
            return Binary("^", base, self._parse_unary())
        return base

    def _parse_postfix(self) -> Node:
        node = self._parse_primary()
        while True:
            if self._at_op("("):
                if not isinstance(node, Symbol):
                    raise self._error("Only named functions can be called")
                node = Call(node.name, self._parse_args())
            elif self._at_op("."):
                self._advance()
                if not self._at("name"):
                    raise self._error("Expected attribute name")
                node = Attribute(node, self._advance().value)
            else:
                return node

    def _parse_args(self) -> tuple[Node, ...]:
        self._expect_op("(")
        args: list[Node] = []
        if self._at_op(")"):
            self._advance()
            return ()
        while True:
            args.append(self.parse_expression())
            if self._at_op(","):
                self._advance()
                continue
            self._expect_op(")")
            return tuple(args)

    def _parse_primary(self) -> Node:
        tok = self._peek()
        if tok.kind == "number":
            self._advance()
            return Number(tok.value)
        if tok.kind == "string":
            self._advance()
            return String(tok.value)
        if tok.kind == "name":
            if tok.value == "true":
                self._advance()
                return Boolean(True)
            if tok.value == "false":
                self._advance()
                return Boolean(False)
            if tok.value in _KEYWORDS:
                raise self._error("Expected a value")
            self._advance()
            return Symbol(tok.value)
        if self._at_op("("):
            self._advance()
            inner = self.parse_expression()
            self._expect_op(")")
            return inner
        if self._at_op("["):
            return self._parse_matrix()
        raise self._error("Expected a value")

    def _parse_matrix(self) -> Matrix:
        self._expect_op("[")
        if self._at_op("]"):
            self._advance()
            return Matrix(())
        rows: list[tuple[Node, ...]] = []
        row: list[Node] = []
        two_d = False
        while True:
            row.append(self.parse_expression())
            if self._at_op(","):
                self._advance()
            elif self._at_op(";"):
                self._advance()
                rows.append(tuple(row))
                row = []
                two_d = True
            elif self._at_op("]"):
                self._advance()
                rows.append(tuple(row))
                return Matrix(tuple(rows), two_d)
            else:
                raise self._error("Expected ',', ';' or ']'")


def parse(text: str) -> Program:
    """Parse formula text into a :class:`Program`."""
    if text is None:
        raise FormulaSyntaxError("Empty expression")
    return _Parser(tokenize(text)).parse_program()


# ---------------------------------------------------------------------------
# Reference extraction
# ---------------------------------------------------------------------------


def literal_references(tree: Node, function_names: frozenset[str] | set[str]) -> list[tuple[str, str]]:
    """``(function_name, literal)`` pairs for calls whose first argument is literal.

    A first argument that is a matrix of string literals contributes each of
    its strings.  Other argument shapes are ignored.
    """
    refs: list[tuple[str, str]] = []
    for call in function_calls(tree):
        if call.name not in function_names or not call.args:
            continue
        first = call.args[0]
        if isinstance(first, String):
            refs.append((call.name, first.value))
        elif isinstance(first, Matrix):
            for row in first.rows:
                for item in row:
                    if isinstance(item, String):
                        refs.append((call.name, item.value))
    return refs
