"""
Rule Condition Language - a tiny expression language for config strategies.

Users write conditions such as::

    fast crossesAbove slow && rsi14 < 70
    price near bb_lower
    Math.abs(macd_histogram) > 0.5 || !(volume < vol_avg)

Evaluation never touches Python's ``eval``. A condition goes through
sugar expansion, then a tokenizer with a fixed character whitelist, then
a recursive-descent parser producing a small AST that is evaluated
against a table of bound numeric values. Anything the tokenizer or
parser does not recognise raises ``RuleError``; the caller treats that
as "rule does not fire".

Grammar (lowest to highest precedence)::

    expr     := or
    or       := and ( "||" and )*
    and      := cmp ( "&&" cmp )*
    cmp      := sum ( ("<"|"<="|">"|">="|"=="|"!="|"==="|"!==") sum )?
    sum      := term ( ("+"|"-") term )*
    term     := unary ( ("*"|"/") unary )*
    unary    := ("!"|"-") unary | primary
    primary  := NUMBER | IDENT | "Math.abs" "(" expr ")" | "(" expr ")"
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple, Union

DEFAULT_NEAR_TOLERANCE = 0.002

_ALLOWED_CHARS = re.compile(r"^[A-Za-z0-9_.\s()<>=!&|+\-*/]*$")
_CROSS_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_]*|\d+(?:\.\d+)?)\s+(crossesAbove|crossesBelow)\s+([A-Za-z_][A-Za-z0-9_]*|\d+(?:\.\d+)?)")
_NEAR_RE = re.compile(r"\bprice\s+near\s+([A-Za-z_][A-Za-z0-9_]*)")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


class RuleError(ValueError):
    """A condition that cannot be tokenized, parsed or evaluated."""


class NotReady(RuleError):
    """A referenced indicator has not accumulated enough history yet."""


# ---------------------------------------------------------------------------
# Sugar
# ---------------------------------------------------------------------------

def _prev(operand: str) -> str:
    return operand if _NUMBER_RE.fullmatch(operand) else f"{operand}_prev"


def expand_sugar(condition: str, near_tolerance: float = DEFAULT_NEAR_TOLERANCE) -> str:
    """
    Rewrite the crossover and proximity shorthands into plain comparisons.

    ``X crossesAbove Y`` -> ``(X_prev < Y_prev && X > Y)``
    ``X crossesBelow Y`` -> ``(X_prev > Y_prev && X < Y)``
    ``price near B``     -> ``(Math.abs(price - B) < tol * price)``
    """
    def _cross(m: re.Match) -> str:
        left, op, right = m.group(1), m.group(2), m.group(3)
        if op == "crossesAbove":
            return f"({_prev(left)} < {_prev(right)} && {left} > {right})"
        return f"({_prev(left)} > {_prev(right)} && {left} < {right})"

    expanded = _CROSS_RE.sub(_cross, condition)
    return _NEAR_RE.sub(
        lambda m: f"(Math.abs(price - {m.group(1)}) < {near_tolerance!r} * price)",
        expanded,
    )


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

Token = Tuple[str, str]  # (kind, text); kind in NUM, IDENT, FUNC, OP, LPAREN, RPAREN

_OPERATORS = ("===", "!==", "==", "!=", "<=", ">=", "&&", "||", "<", ">", "!", "+", "-", "*", "/")


def tokenize(text: str) -> List[Token]:
    if not _ALLOWED_CHARS.match(text):
        raise RuleError("condition contains disallowed characters")
    tokens: List[Token] = []
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch == "(":
            tokens.append(("LPAREN", ch))
            i += 1
            continue
        if ch == ")":
            tokens.append(("RPAREN", ch))
            i += 1
            continue
        m = _NUMBER_RE.match(text, i)
        if m:
            tokens.append(("NUM", m.group()))
            i = m.end()
            continue
        if ch.isalpha() or ch == "_":
            j = i
            while j < n and (text[j].isalnum() or text[j] in "_."):
                j += 1
            word = text[i:j]
            if word == "Math.abs":
                tokens.append(("FUNC", word))
            elif "." in word:
                raise RuleError(f"unknown reference {word!r}")
            else:
                tokens.append(("IDENT", word))
            i = j
            continue
        for op in _OPERATORS:
            if text.startswith(op, i):
                tokens.append(("OP", op))
                i += len(op)
                break
        else:
            raise RuleError(f"unexpected character {ch!r}")
    return tokens


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Num:
    value: float


@dataclass(frozen=True)
class Var:
    name: str


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Abs:
    operand: "Node"


Node = Union[Num, Var, Unary, Binary, Abs]

_COMPARISONS = {"<", "<=", ">", ">=", "==", "!=", "===", "!=="}


class _Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    def _peek(self) -> Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> Token:
        tok = self._peek()
        if tok is None:
            raise RuleError("unexpected end of condition")
        self.pos += 1
        return tok

    def _accept_op(self, *ops: str) -> str | None:
        tok = self._peek()
        if tok is not None and tok[0] == "OP" and tok[1] in ops:
            self.pos += 1
            return tok[1]
        return None

    def parse(self) -> Node:
        if not self.tokens:
            raise RuleError("empty condition")
        node = self._or()
        if self._peek() is not None:
            raise RuleError(f"unexpected token {self._peek()[1]!r}")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept_op("||"):
            node = Binary("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._cmp()
        while self._accept_op("&&"):
            node = Binary("&&", node, self._cmp())
        return node

    def _cmp(self) -> Node:
        node = self._sum()
        op = self._accept_op(*_COMPARISONS)
        if op:
            node = Binary(op, node, self._sum())
        return node

    def _sum(self) -> Node:
        node = self._term()
        while True:
            op = self._accept_op("+", "-")
            if not op:
                return node
            node = Binary(op, node, self._term())

    def _term(self) -> Node:
        node = self._unary()
        while True:
            op = self._accept_op("*", "/")
            if not op:
                return node
            node = Binary(op, node, self._unary())

    def _unary(self) -> Node:
        op = self._accept_op("!", "-")
        if op:
            return Unary(op, self._unary())
        return self._primary()

    def _primary(self) -> Node:
        kind, text = self._take()
        if kind == "NUM":
            return Num(float(text))
        if kind == "IDENT":
            return Var(text)
        if kind == "FUNC":
            if self._take()[0] != "LPAREN":
                raise RuleError("Math.abs must be called")
            inner = self._or()
            if self._take()[0] != "RPAREN":
                raise RuleError("unbalanced parentheses")
            return Abs(inner)
        if kind == "LPAREN":
            inner = self._or()
            if self._take()[0] != "RPAREN":
                raise RuleError("unbalanced parentheses")
            return inner
        raise RuleError(f"unexpected token {text!r}")


def parse(text: str) -> Node:
    return _Parser(tokenize(text)).parse()


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def evaluate(node: Node, bindings: Mapping[str, float]) -> float:
    """Evaluate to a number; comparisons and logic yield 1.0 / 0.0."""
    if isinstance(node, Num):
        return node.value
    if isinstance(node, Var):
        if node.name not in bindings:
            raise RuleError(f"unknown identifier {node.name!r}")
        value = bindings[node.name]
        if value is None or (isinstance(value, float) and math.isnan(value)):
            raise NotReady(f"{node.name!r} has no value yet")
        return float(value)
    if isinstance(node, Abs):
        return abs(evaluate(node.operand, bindings))
    if isinstance(node, Unary):
        value = evaluate(node.operand, bindings)
        return float(not value) if node.op == "!" else -value
    if isinstance(node, Binary):
        if node.op == "&&":
            return float(bool(evaluate(node.left, bindings)) and bool(evaluate(node.right, bindings)))
        if node.op == "||":
            return float(bool(evaluate(node.left, bindings)) or bool(evaluate(node.right, bindings)))
        left = evaluate(node.left, bindings)
        right = evaluate(node.right, bindings)
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        if node.op == "/":
            if right == 0:
                raise RuleError("division by zero")
            return left / right
        if node.op == "<":
            return float(left < right)
        if node.op == "<=":
            return float(left <= right)
        if node.op == ">":
            return float(left > right)
        if node.op == ">=":
            return float(left >= right)
        if node.op in ("==", "==="):
            return float(left == right)
        if node.op in ("!=", "!=="):
            return float(left != right)
    raise RuleError(f"unsupported node {node!r}")


@dataclass(frozen=True)
class CompiledRule:
    source: str
    action: str
    tree: Node | None
    error: str | None = None

    def fires(self, bindings: Mapping[str, float]) -> bool:
        if self.tree is None:
            return False
        return bool(evaluate(self.tree, bindings))


def compile_rule(condition: str, action: str, near_tolerance: float = DEFAULT_NEAR_TOLERANCE) -> CompiledRule:
    """Compile once; a malformed condition compiles to a rule that never fires."""
    try:
        tree = parse(expand_sugar(condition, near_tolerance))
    except RuleError as e:
        return CompiledRule(source=condition, action=action, tree=None, error=str(e))
    return CompiledRule(source=condition, action=action, tree=tree)


def first_firing(rules: List[CompiledRule], bindings: Dict[str, float]) -> Tuple[str | None, List[str]]:
    """
    Return the first firing rule's action plus the errors met on the way.
    A rule that fails to evaluate is skipped; later rules still run.
    """
    errors: List[str] = []
    for rule in rules:
        if rule.error:
            errors.append(f"{rule.source!r}: {rule.error}")
            continue
        try:
            if rule.fires(bindings):
                return rule.action, errors
        except NotReady:
            continue
        except RuleError as e:
            errors.append(f"{rule.source!r}: {e}")
    return None, errors
