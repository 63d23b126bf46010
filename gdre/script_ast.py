"""Expression and statement nodes produced by the block lifter.

Identifiers and literals are kept as constant-pool indices; the emitter
resolves them against the function's :class:`~gdre.vm.disassembler.ConstantPool`.
Expressions are frozen so structurally equal trees compare equal, which the
reconstructor relies on when it looks for a shared ``match`` scrutinee.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Tuple


class Expr:
    """Base class for expressions."""


@dataclass(frozen=True)
class Const(Expr):
    index: int


@dataclass(frozen=True)
class BoolLit(Expr):
    value: bool


@dataclass(frozen=True)
class Local(Expr):
    slot: int


@dataclass(frozen=True)
class SelfRef(Expr):
    pass


@dataclass(frozen=True)
class Member(Expr):
    name: int


@dataclass(frozen=True)
class Global(Expr):
    name: int


@dataclass(frozen=True)
class Attr(Expr):
    obj: Expr
    name: int


@dataclass(frozen=True)
class Index(Expr):
    obj: Expr
    key: Expr


@dataclass(frozen=True)
class BinOp(Expr):
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class UnaryOp(Expr):
    op: str
    operand: Expr


@dataclass(frozen=True)
class Cast(Expr):
    value: Expr
    type_name: int


@dataclass(frozen=True)
class BuiltinCall(Expr):
    builtin: int
    args: Tuple[Expr, ...] = ()


@dataclass(frozen=True)
class MethodCall(Expr):
    obj: Expr
    name: int
    args: Tuple[Expr, ...] = ()


@dataclass(frozen=True)
class SelfCall(Expr):
    name: int
    args: Tuple[Expr, ...] = ()


@dataclass(frozen=True)
class ArrayLit(Expr):
    items: Tuple[Expr, ...] = ()


@dataclass(frozen=True)
class DictLit(Expr):
    items: Tuple[Tuple[Expr, Expr], ...] = ()


@dataclass(frozen=True)
class Yield(Expr):
    args: Tuple[Expr, ...] = ()


class Stmt:
    """Base class for statements."""

    offset: int = 0


@dataclass
class Assign(Stmt):
    target: Expr
    value: Expr
    offset: int = 0


@dataclass
class ExprStatement(Stmt):
    expr: Expr
    offset: int = 0
    residue: bool = False


@dataclass
class Assert(Stmt):
    test: Expr
    offset: int = 0


@dataclass
class Breakpoint(Stmt):
    offset: int = 0


BINARY_OPERATORS = {
    "ADD": "+",
    "SUB": "-",
    "MUL": "*",
    "DIV": "/",
    "MOD": "%",
    "BIT_AND": "&",
    "BIT_OR": "|",
    "BIT_XOR": "^",
    "SHL": "<<",
    "SHR": ">>",
    "EQ": "==",
    "NE": "!=",
    "LT": "<",
    "LE": "<=",
    "GT": ">",
    "GE": ">=",
    "AND": "and",
    "OR": "or",
    "IN": "in",
    "IS": "is",
}

UNARY_OPERATORS = {"NEG": "-", "NOT": "not ", "BIT_NOT": "~"}


def children(expr: Expr) -> Iterator[Expr]:
    """Yield the direct sub-expressions of ``expr``."""

    if isinstance(expr, (Attr,)):
        yield expr.obj
    elif isinstance(expr, Index):
        yield expr.obj
        yield expr.key
    elif isinstance(expr, BinOp):
        yield expr.left
        yield expr.right
    elif isinstance(expr, UnaryOp):
        yield expr.operand
    elif isinstance(expr, Cast):
        yield expr.value
    elif isinstance(expr, MethodCall):
        yield expr.obj
        yield from expr.args
    elif isinstance(expr, (BuiltinCall, SelfCall, ArrayLit, Yield)):
        yield from (expr.items if isinstance(expr, ArrayLit) else expr.args)
    elif isinstance(expr, DictLit):
        for key, value in expr.items:
            yield key
            yield value


def walk(expr: Expr) -> Iterator[Expr]:
    """Depth-first pre-order traversal of ``expr``."""

    yield expr
    for child in children(expr):
        yield from walk(child)


def negate(expr: Expr) -> Expr:
    """Return the logical negation of ``expr`` removing double ``not``."""

    if isinstance(expr, UnaryOp) and expr.op == "NOT":
        return expr.operand
    if isinstance(expr, BoolLit):
        return BoolLit(not expr.value)
    return UnaryOp("NOT", expr)


def is_pure(expr: Expr) -> bool:
    """Return ``True`` when evaluating ``expr`` cannot call user code."""

    return all(
        isinstance(node, (Const, BoolLit, Local, SelfRef, Member, Global, Attr, Index, BinOp, UnaryOp))
        for node in walk(expr)
    )


def locals_read(expr: Optional[Expr]) -> Iterator[int]:
    if expr is None:
        return
    for node in walk(expr):
        if isinstance(node, Local):
            yield node.slot


__all__ = [
    "Assert",
    "ArrayLit",
    "Assign",
    "Attr",
    "BINARY_OPERATORS",
    "BinOp",
    "BoolLit",
    "Breakpoint",
    "BuiltinCall",
    "Cast",
    "Const",
    "DictLit",
    "Expr",
    "ExprStatement",
    "Global",
    "Index",
    "Local",
    "Member",
    "MethodCall",
    "SelfCall",
    "SelfRef",
    "Stmt",
    "UNARY_OPERATORS",
    "UnaryOp",
    "Yield",
    "children",
    "is_pure",
    "locals_read",
    "negate",
    "walk",
]
