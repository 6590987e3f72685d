"""Formula parser: tokenizer + recursive descent into a small immutable AST.

Each distinct formula text is parsed once and cached; evaluation walks the
AST directly instead of re-scanning the text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Union

from tabcalc.calc._errors import FormulaSyntaxError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# AST nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Boolean:
    value: bool


@dataclass(frozen=True)
class Ref:
    """Operand token: bare name, ``table.column`` or dotted scalar path."""

    name: str


@dataclass(frozen=True)
class Index:
    """``target[index]``, zero-based."""

    target: Expr
    index: Expr


@dataclass(frozen=True)
class Call:
    name: str  # upper-cased
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Expr


Expr = Union[Number, Text, Boolean, Ref, Index, Call, BinaryOp, UnaryOp]

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"]|"")*"|'[^']*')
  | (?P<ident>[A-Za-z_][A-Za-z0-9_.]*)
  | (?P<op><>|<=|>=|[-+*/^&=<>])
  | (?P<punct>[()\[\],])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class Token:
    kind: str  # number | string | ident | op | punct
    text: str
    pos: int


def tokenize(formula: str) -> list[Token]:
    """Split a formula body (no leading ``=``) into tokens."""
    tokens: list[Token] = []
    pos = 0
    length = len(formula)
    while pos < length:
        m = _TOKEN_RE.match(formula, pos)
        if m is None:
            raise FormulaSyntaxError(f"Unexpected character {formula[pos]!r}", pos)
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(Token(kind, m.group(), pos))
        pos = m.end()
    return tokens


def _unquote(text: str) -> str:
    if text[0] == '"':
        return text[1:-1].replace('""', '"')
    return text[1:-1]


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

_COMPARISON_OPS = ("=", "<>", "<", ">", "<=", ">=")


class _Parser:
    """Recursive descent over a token list.

    Precedence (lowest to highest)::

        comparison  (=, <>, <, >, <=, >=)
        concat      (&)
        additive    (+, -)
        multiplicative (*, /)
        power       (^, right associative)
        unary       (-, +)
        postfix     (call, [index])
    """

    def __init__(self, tokens: list[Token], source: str) -> None:
        self.tokens = tokens
        self.source = source
        self.i = 0

    def _peek(self) -> Token | None:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _pos(self) -> int:
        tok = self._peek()
        return tok.pos if tok is not None else len(self.source)

    def _match(self, kind: str, *texts: str) -> Token | None:
        tok = self._peek()
        if tok is not None and tok.kind == kind and (not texts or tok.text in texts):
            self.i += 1
            return tok
        return None

    def _expect(self, kind: str, text: str) -> None:
        if self._match(kind, text) is None:
            raise FormulaSyntaxError(f"Expected '{text}'", self._pos())

    def parse(self) -> Expr:
        if not self.tokens:
            raise FormulaSyntaxError("Empty formula", 0)
        expr = self._comparison()
        tok = self._peek()
        if tok is not None:
            raise FormulaSyntaxError(f"Unexpected token {tok.text!r}", tok.pos)
        return expr

    def _comparison(self) -> Expr:
        left = self._concat()
        while (tok := self._match("op", *_COMPARISON_OPS)) is not None:
            left = BinaryOp(tok.text, left, self._concat())
        return left

    def _concat(self) -> Expr:
        left = self._additive()
        while self._match("op", "&") is not None:
            left = BinaryOp("&", left, self._additive())
        return left

    def _additive(self) -> Expr:
        left = self._multiplicative()
        while (tok := self._match("op", "+", "-")) is not None:
            left = BinaryOp(tok.text, left, self._multiplicative())
        return left

    def _multiplicative(self) -> Expr:
        left = self._power()
        while (tok := self._match("op", "*", "/")) is not None:
            left = BinaryOp(tok.text, left, self._power())
        return left

    def _power(self) -> Expr:
        left = self._unary()
        if self._match("op", "^") is not None:
            return BinaryOp("^", left, self._power())
        return left

    def _unary(self) -> Expr:
        tok = self._match("op", "-", "+")
        if tok is not None:
            return UnaryOp(tok.text, self._unary())
        return self._postfix()

    def _postfix(self) -> Expr:
        expr = self._primary()
        while True:
            if self._match("punct", "(") is not None:
                if not isinstance(expr, Ref):
                    raise FormulaSyntaxError("Only named functions can be called", self._pos())
                expr = Call(expr.name.upper(), self._arguments())
            elif self._match("punct", "[") is not None:
                index = self._comparison()
                self._expect("punct", "]")
                expr = Index(expr, index)
            else:
                return expr

    def _arguments(self) -> tuple[Expr, ...]:
        args: list[Expr] = []
        if self._match("punct", ")") is not None:
            return ()
        args.append(self._comparison())
        while self._match("punct", ",") is not None:
            args.append(self._comparison())
        self._expect("punct", ")")
        return tuple(args)

    def _primary(self) -> Expr:
        tok = self._peek()
        if tok is None:
            raise FormulaSyntaxError("Unexpected end of formula", len(self.source))
        self.i += 1
        if tok.kind == "number":
            return Number(float(tok.text))
        if tok.kind == "string":
            return Text(_unquote(tok.text))
        if tok.kind == "ident":
            if tok.text.endswith("."):
                raise FormulaSyntaxError(f"Invalid name {tok.text!r}", tok.pos)
            upper = tok.text.upper()
            nxt = self._peek()
            is_call = nxt is not None and nxt.kind == "punct" and nxt.text == "("
            if not is_call and upper in ("TRUE", "FALSE"):
                return Boolean(upper == "TRUE")
            return Ref(tok.text)
        if tok.kind == "punct" and tok.text == "(":
            expr = self._comparison()
            self._expect("punct", ")")
            return expr
        raise FormulaSyntaxError(f"Unexpected token {tok.text!r}", tok.pos)


def parse_formula(formula: str) -> Expr:
    """Parse formula text (leading ``=`` optional) into an AST."""
    body = formula.strip()
    if body.startswith("="):
        body = body[1:]
    return _Parser(tokenize(body), body).parse()


# ---------------------------------------------------------------------------
# AST queries
# ---------------------------------------------------------------------------


def walk(expr: Expr):
    """Yield every node of *expr*, parents before children."""
    stack: list[Expr] = [expr]
    while stack:
        node = stack.pop()
        yield node
        if isinstance(node, Call):
            stack.extend(reversed(node.args))
        elif isinstance(node, BinaryOp):
            stack.append(node.right)
            stack.append(node.left)
        elif isinstance(node, UnaryOp):
            stack.append(node.operand)
        elif isinstance(node, Index):
            stack.append(node.index)
            stack.append(node.target)


def references(expr: Expr) -> list[str]:
    """Referenced operand names in first-seen order.

    String arguments of ``SCENARIO`` are names, not operands, and are
    therefore never returned (they parse as Text nodes).
    """
    refs: list[str] = []
    seen: set[str] = set()
    for node in walk(expr):
        if isinstance(node, Ref) and node.name not in seen:
            refs.append(node.name)
            seen.add(node.name)
    return refs


def function_names(expr: Expr) -> list[str]:
    """All function names called in *expr*, upper-cased, first-seen order."""
    funcs: list[str] = []
    seen: set[str] = set()
    for node in walk(expr):
        if isinstance(node, Call) and node.name not in seen:
            funcs.append(node.name)
            seen.add(node.name)
    return funcs


def has_index(expr: Expr) -> bool:
    return any(isinstance(node, Index) for node in walk(expr))


# ---------------------------------------------------------------------------
# FormulaParser: cached front end
# ---------------------------------------------------------------------------


class FormulaParser:
    """Parses formulas once and caches the AST by formula text.

    ASTs are immutable, so one parser can be shared by every calculation
    an evaluator runs (solver sweeps re-use the same formulas thousands of
    times).
    """

    def __init__(self) -> None:
        self._cache: dict[str, Expr] = {}

    def parse(self, formula: str) -> Expr:
        expr = self._cache.get(formula)
        if expr is None:
            logger.debug("Parsing formula %r", formula)
            expr = parse_formula(formula)
            self._cache[formula] = expr
        return expr

    def parse_refs(self, formula: str) -> list[str]:
        """Extract all operand names from a formula."""
        return references(self.parse(formula))

    def __len__(self) -> int:
        return len(self._cache)
