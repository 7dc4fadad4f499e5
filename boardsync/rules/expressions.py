"""Parser and interpreter for rule conditions.

Conditions are short JavaScript-flavoured strings such as
``item.author === monitored.user`` or ``!item.pr.closed || item.pr.merged``.
They are parsed once when the rule document is loaded into a small tree of
frozen nodes and evaluated against a mapping of dotted identifiers. Nothing is
ever handed to the Python interpreter.

Grammar::

    expr     := or
    or       := and ("||" and)*
    and      := equality ("&&" equality)*
    equality := unary (("===" | "!==" | "==" | "!=") unary)*
    unary    := "!" unary | postfix
    postfix  := primary (".includes(" expr ")")*
    primary  := STRING | "true" | "false" | "null" | path | "(" expr ")"
    path     := IDENT ("." IDENT)*
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from boardsync.errors import ExpressionError

ITEM_IDENTIFIERS: FrozenSet[str] = frozenset(
    {
        "item.author",
        "item.assignees",
        "item.column",
        "item.sprint",
        "item.repository",
        "item.state",
        "item.merged",
        "item.closed",
        "item.inProject",
        "monitored.user",
        "monitored.repos",
    }
)

LINKED_ISSUE_IDENTIFIERS: FrozenSet[str] = frozenset(
    {
        "item.pr.column",
        "item.pr.assignees",
        "item.pr.closed",
        "item.pr.merged",
    }
)

ALL_IDENTIFIERS = ITEM_IDENTIFIERS | LINKED_ISSUE_IDENTIFIERS

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<op>===|!==|==|!=|&&|\|\||[!().,])
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None, "undefined": None}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    position: int


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    position = 0
    while position < len(source):
        match = _TOKEN_PATTERN.match(source, position)
        if not match:
            raise ExpressionError(source, f"unexpected character {source[position]!r}", position)
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), position))
        position = match.end()
    tokens.append(_Token("end", "", len(source)))
    return tokens


# ---------------------------------------------------------------------------
# Syntax tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Identifier:
    path: str


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Compare:
    operator: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Includes:
    collection: "Node"
    needle: "Node"


Node = Union[Literal, Identifier, Not, And, Or, Compare, Includes]


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = _tokenize(source)
        self.index = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, text: str) -> bool:
        if self.current.kind == "op" and self.current.text == text:
            self.index += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            self._fail(f"expected {text!r}")

    def _fail(self, message: str) -> None:
        token = self.current
        found = token.text or "end of expression"
        raise ExpressionError(self.source, f"{message}, found {found!r}", token.position)

    def parse(self) -> Node:
        if self.current.kind == "end":
            raise ExpressionError(self.source, "empty expression", 0)
        node = self._or()
        if self.current.kind != "end":
            self._fail("unexpected trailing input")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Or(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._accept("&&"):
            node = And(node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._unary()
        while self.current.kind == "op" and self.current.text in {"===", "!==", "==", "!="}:
            operator = self._advance().text
            normalized = "===" if operator in {"===", "=="} else "!=="
            node = Compare(normalized, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("!"):
            return Not(self._unary())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while self.current.kind == "op" and self.current.text == ".":
            self._advance()
            name = self._advance()
            if name.kind != "ident" or name.text != "includes":
                self.index -= 1
                self._fail("only '.includes(...)' may follow an expression")
            self._expect("(")
            needle = self._or()
            self._expect(")")
            node = Includes(node, needle)
        return node

    def _primary(self) -> Node:
        token = self.current
        if token.kind == "string":
            self._advance()
            return Literal(_unquote(token.text))
        if token.kind == "ident":
            if token.text in _KEYWORDS:
                self._advance()
                return Literal(_KEYWORDS[token.text])
            return self._path()
        if self._accept("("):
            node = self._or()
            self._expect(")")
            return node
        self._fail("expected a value")
        raise AssertionError("unreachable")  # pragma: no cover

    def _path(self) -> Node:
        parts = [self._advance().text]
        while (
            self.current.kind == "op"
            and self.current.text == "."
            and self.tokens[self.index + 1].kind == "ident"
            and not (
                self.tokens[self.index + 1].text == "includes"
                and self.tokens[self.index + 2].text == "("
            )
        ):
            self._advance()
            parts.append(self._advance().text)
        return Identifier(".".join(parts))


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    return True


def _equal(left: Any, right: Any) -> bool:
    collections = (list, tuple, set, frozenset)
    if isinstance(left, collections) and isinstance(right, collections):
        return set(left) == set(right)
    return left == right


def _includes(collection: Any, needle: Any) -> bool:
    if collection is None:
        return False
    if isinstance(collection, str):
        return isinstance(needle, str) and needle in collection
    try:
        return needle in collection
    except TypeError:
        return False


def _evaluate(node: Node, bindings: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Identifier):
        return bindings.get(node.path)
    if isinstance(node, Not):
        return not _truthy(_evaluate(node.operand, bindings))
    if isinstance(node, And):
        left = _evaluate(node.left, bindings)
        if not _truthy(left):
            return left
        return _evaluate(node.right, bindings)
    if isinstance(node, Or):
        left = _evaluate(node.left, bindings)
        if _truthy(left):
            return left
        return _evaluate(node.right, bindings)
    if isinstance(node, Compare):
        same = _equal(_evaluate(node.left, bindings), _evaluate(node.right, bindings))
        return same if node.operator == "===" else not same
    if isinstance(node, Includes):
        return _includes(_evaluate(node.collection, bindings), _evaluate(node.needle, bindings))
    raise TypeError(f"Unsupported node {node!r}")  # pragma: no cover


def _identifiers(node: Node) -> Iterable[Identifier]:
    if isinstance(node, Identifier):
        yield node
    elif isinstance(node, Not):
        yield from _identifiers(node.operand)
    elif isinstance(node, (And, Or, Compare)):
        yield from _identifiers(node.left)
        yield from _identifiers(node.right)
    elif isinstance(node, Includes):
        yield from _identifiers(node.collection)
        yield from _identifiers(node.needle)


@dataclass(frozen=True)
class Expression:
    """A parsed condition that can be evaluated any number of times."""

    source: str
    root: Node

    @property
    def identifiers(self) -> Tuple[str, ...]:
        return tuple(sorted({ident.path for ident in _identifiers(self.root)}))

    def evaluate(self, bindings: Mapping[str, Any]) -> Any:
        return _evaluate(self.root, bindings)

    def holds(self, bindings: Mapping[str, Any]) -> bool:
        return _truthy(self.evaluate(bindings))


def parse_expression(source: str, *, allowed: Optional[FrozenSet[str]] = None) -> Expression:
    """Parse ``source`` and reject identifiers outside ``allowed``."""

    if not isinstance(source, str):
        raise ExpressionError(repr(source), "conditions must be strings")
    root = _Parser(source).parse()
    expression = Expression(source=source, root=root)
    vocabulary = ITEM_IDENTIFIERS if allowed is None else allowed
    for path in expression.identifiers:
        if path not in vocabulary:
            raise ExpressionError(source, f"unknown identifier {path!r}")
    return expression


__all__ = [
    "ALL_IDENTIFIERS",
    "Expression",
    "ITEM_IDENTIFIERS",
    "LINKED_ISSUE_IDENTIFIERS",
    "parse_expression",
]
