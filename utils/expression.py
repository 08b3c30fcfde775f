"""Arithmetic expressions over record fields.

A small recursive-descent parser turns text such as ``(#x3 + #x4)^2`` or
``log(#y)`` into an expression tree that can be evaluated against a record.

Grammar (``^`` is right-associative and binds tighter than unary minus)::

    expr    := term (('+' | '-') term)*
    term    := unary (('*' | '/') unary)*
    unary   := ('+' | '-') unary | power
    power   := atom ('^' unary)?
    atom    := NUMBER | FIELD | NAME '(' args ')' | '(' expr ')'
    FIELD   := '#' NAME | NAME

Field references marked with ``#`` are always fields; bare names are fields
unless followed by ``(``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from remreg.core.errors import ParseError
from remreg.core.missing import UNUSED, is_used, to_value

if TYPE_CHECKING:
    from collections.abc import Mapping

__all__ = [
    "FIELD_MARKER",
    "FUNCTIONS",
    "BinaryOp",
    "Call",
    "Expression",
    "FieldRef",
    "Number",
    "UnaryOp",
    "parse_expression",
]

FIELD_MARKER = "#"

_TOKEN_PAT = re.compile(
    r"\s*(?:"
    r"(?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)"
    r"|(?P<field>#[A-Za-z_][A-Za-z0-9_.]*)"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_.]*)"
    r"|(?P<op>[-+*/^(),])"
    r")",
)


def _log(v: float) -> float:
    return math.log(v)


FUNCTIONS: dict[str, tuple[int, Callable[..., float]]] = {
    "log": (1, _log),
    "ln": (1, _log),
    "log10": (1, math.log10),
    "exp": (1, math.exp),
    "sqrt": (1, math.sqrt),
    "abs": (1, abs),
    "sin": (1, math.sin),
    "cos": (1, math.cos),
    "tan": (1, math.tan),
    "pow": (2, math.pow),
    "min": (2, min),
    "max": (2, max),
}


# ---------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------
class Expression:
    """Base node. ``evaluate`` returns ``UNUSED`` when a value is missing."""

    def evaluate(self, values: Mapping[str, Any]) -> float:
        try:
            out = self._eval(values)
        except (ArithmeticError, ValueError, TypeError):
            return UNUSED
        return out if is_used(out) else UNUSED

    def _eval(self, values: Mapping[str, Any]) -> float:  # pragma: no cover - abstract
        raise NotImplementedError

    def fields(self) -> set[str]:
        """Names of all fields referenced by the expression."""
        return set()


@dataclass(frozen=True)
class Number(Expression):
    value: float

    def _eval(self, values: Mapping[str, Any]) -> float:
        return self.value

    def __str__(self) -> str:
        return repr(self.value)


@dataclass(frozen=True)
class FieldRef(Expression):
    name: str

    def _eval(self, values: Mapping[str, Any]) -> float:
        if self.name not in values:
            return UNUSED
        v = to_value(values[self.name])
        if not is_used(v):
            # Short-circuit the rest of the tree.
            raise ValueError(self.name)
        return v

    def fields(self) -> set[str]:
        return {self.name}

    def __str__(self) -> str:
        return FIELD_MARKER + self.name


@dataclass(frozen=True)
class UnaryOp(Expression):
    op: str
    operand: Expression

    def _eval(self, values: Mapping[str, Any]) -> float:
        v = self.operand._eval(values)  # noqa: SLF001
        return -v if self.op == "-" else v

    def fields(self) -> set[str]:
        return self.operand.fields()

    def __str__(self) -> str:
        return f"{self.op}{self.operand}"


@dataclass(frozen=True)
class BinaryOp(Expression):
    op: str
    left: Expression
    right: Expression

    def _eval(self, values: Mapping[str, Any]) -> float:
        a = self.left._eval(values)  # noqa: SLF001
        b = self.right._eval(values)  # noqa: SLF001
        if self.op == "+":
            return a + b
        if self.op == "-":
            return a - b
        if self.op == "*":
            return a * b
        if self.op == "/":
            return a / b
        return math.pow(a, b)

    def fields(self) -> set[str]:
        return self.left.fields() | self.right.fields()

    def __str__(self) -> str:
        return f"({self.left} {self.op} {self.right})"


@dataclass(frozen=True)
class Call(Expression):
    name: str
    args: tuple[Expression, ...]

    def _eval(self, values: Mapping[str, Any]) -> float:
        _, fn = FUNCTIONS[self.name]
        return float(fn(*(a._eval(values) for a in self.args)))  # noqa: SLF001

    def fields(self) -> set[str]:
        out: set[str] = set()
        for a in self.args:
            out |= a.fields()
        return out

    def __str__(self) -> str:
        return f"{self.name}({', '.join(str(a) for a in self.args)})"


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------
def _tokenize(text: str) -> list[tuple[str, str, int]]:
    tokens: list[tuple[str, str, int]] = []
    pos = 0
    end = len(text.rstrip())
    while pos < end:
        m = _TOKEN_PAT.match(text, pos)
        if m is None or m.end() == pos:
            raise ParseError("Unexpected character", text=text, position=pos)
        kind = m.lastgroup
        if kind is None:
            raise ParseError("Unexpected character", text=text, position=pos)
        tokens.append((kind, m.group(kind), m.start(kind)))
        pos = m.end()
    tokens.append(("end", "", end))
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    def peek(self) -> tuple[str, str, int]:
        return self.tokens[self.i]

    def take(self) -> tuple[str, str, int]:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def expect(self, value: str) -> None:
        kind, val, pos = self.take()
        if kind != "op" or val != value:
            raise ParseError(f"Expected {value!r}", text=self.text, position=pos)

    def parse(self) -> Expression:
        node = self.expr()
        kind, _, pos = self.peek()
        if kind != "end":
            raise ParseError("Unexpected trailing input", text=self.text, position=pos)
        return node

    def expr(self) -> Expression:
        node = self.term()
        while self.peek()[0] == "op" and self.peek()[1] in "+-":
            op = self.take()[1]
            node = BinaryOp(op, node, self.term())
        return node

    def term(self) -> Expression:
        node = self.unary()
        while self.peek()[0] == "op" and self.peek()[1] in "*/":
            op = self.take()[1]
            node = BinaryOp(op, node, self.unary())
        return node

    def unary(self) -> Expression:
        kind, val, _ = self.peek()
        if kind == "op" and val in "+-":
            self.take()
            return UnaryOp(val, self.unary())
        return self.power()

    def power(self) -> Expression:
        node = self.atom()
        if self.peek()[0] == "op" and self.peek()[1] == "^":
            self.take()
            return BinaryOp("^", node, self.unary())
        return node

    def atom(self) -> Expression:
        kind, val, pos = self.take()
        if kind == "number":
            return Number(float(val))
        if kind == "field":
            return FieldRef(val[1:])
        if kind == "name":
            if self.peek()[0] == "op" and self.peek()[1] == "(":
                return self.call(val, pos)
            return FieldRef(val)
        if kind == "op" and val == "(":
            node = self.expr()
            self.expect(")")
            return node
        what = "end of input" if kind == "end" else repr(val)
        raise ParseError(f"Unexpected {what}", text=self.text, position=pos)

    def call(self, name: str, pos: int) -> Expression:
        key = name.lower()
        if key not in FUNCTIONS:
            raise ParseError(f"Unknown function {name!r}", text=self.text, position=pos)
        self.expect("(")
        args = [self.expr()]
        while self.peek()[0] == "op" and self.peek()[1] == ",":
            self.take()
            args.append(self.expr())
        self.expect(")")
        arity, _ = FUNCTIONS[key]
        if len(args) != arity:
            msg = f"{key}() takes {arity} argument(s), got {len(args)}"
            raise ParseError(msg, text=self.text, position=pos)
        return Call(key, tuple(args))


def parse_expression(text: str) -> Expression:
    """Parse ``text`` into an :class:`Expression`; raise ParseError if malformed."""
    if text is None or not str(text).strip():
        raise ParseError("Empty expression")
    return _Parser(str(text)).parse()
