"""Render structured functions as GDScript source.

The emitter performs only textual work: names absent from the binary are
synthesized positionally (``arg0``, ``local3``, ``func_2``) and raw blocks
are rendered as commented regions so low-confidence code stays visible.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .. import script_ast as ast
from ..versions import BytecodeVersion
from ..vm.disassembler import Constant, ConstantPool, FunctionHeader, describe_operand
from ..vm.reconstruct_controlflow import (
    BlockNode,
    BreakNode,
    ContinueNode,
    ForNode,
    IfNode,
    MatchNode,
    RawBlockNode,
    ReturnNode,
    SequenceNode,
    StructuredFunction,
    StructuredNode,
    WhileNode,
    iter_nodes,
)

RAW_MARKER = "# gdre:"

KEYWORDS = frozenset(
    {
        "and", "as", "assert", "break", "breakpoint", "class", "class_name", "const", "continue",
        "elif", "else", "enum", "export", "extends", "false", "for", "func", "if", "in", "is",
        "master", "match", "not", "null", "onready", "or", "pass", "preload", "puppet", "remote",
        "return", "self", "setget", "signal", "slave", "static", "sync", "tool", "true", "var",
        "while", "yield", "INF", "NAN", "PI", "TAU",
    }
)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NODE_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(/[A-Za-z_][A-Za-z0-9_]*)*$")

_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\t": "\\t",
    "\r": "\\r",
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\v": "\\v",
}

# Binding strength, higher binds tighter.
_ATOM = 100
_PRECEDENCE = {
    "IS": 90,
    "AS": 90,
    "BIT_NOT": 85,
    "NEG": 80,
    "MUL": 70,
    "DIV": 70,
    "MOD": 70,
    "ADD": 60,
    "SUB": 60,
    "SHL": 55,
    "SHR": 55,
    "BIT_AND": 50,
    "BIT_XOR": 45,
    "BIT_OR": 40,
    "EQ": 35,
    "NE": 35,
    "LT": 35,
    "LE": 35,
    "GT": 35,
    "GE": 35,
    "IN": 30,
    "NOT": 25,
    "AND": 20,
    "OR": 15,
}


@dataclass(frozen=True)
class Provenance:
    """Metadata rendered as the leading ``# PROVENANCE`` comment header."""

    summary: str
    details: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def for_unit(
        cls,
        unit_name: str,
        version: BytecodeVersion,
        *,
        detection: Optional[str] = None,
        notes: Iterable[str] = (),
    ) -> "Provenance":
        summary = f"{unit_name}: decompiled from {version.tag} ({version.label})"
        details = [f"detection: {detection}"] if detection else []
        details.extend(notes)
        return cls(summary=summary, details=tuple(details))

    def render(self) -> List[str]:
        lines = [f"# PROVENANCE: {self.summary}"]
        lines.extend(f"# {detail}" for detail in self.details)
        return lines


def escape_string(value: str) -> str:
    out = []
    for char in value:
        if char in _ESCAPES:
            out.append(_ESCAPES[char])
        elif ord(char) < 0x20 or ord(char) == 0x7F:
            out.append(f"\\u{ord(char):04x}")
        else:
            out.append(char)
    return '"' + "".join(out) + '"'


def format_float(value: float, version: Optional[BytecodeVersion] = None) -> str:
    """Render ``value`` so it always reads back as a float."""

    has_inf_nan = version is not None and version.supports("const_inf_nan")
    if math.isnan(value):
        return "NAN" if has_inf_nan else "(0.0 / 0.0)"
    if math.isinf(value):
        if has_inf_nan:
            return "INF" if value > 0 else "-INF"
        return "(1.0 / 0.0)" if value > 0 else "(-1.0 / 0.0)"
    if version is not None:
        if value == math.pi and version.supports("const_pi"):
            return "PI"
        if value == math.tau and version.supports("const_tau"):
            return "TAU"
    text = repr(float(value))
    if "e" in text:
        mantissa, exponent = text.split("e", 1)
        if "." not in mantissa:
            mantissa += ".0"
        return f"{mantissa}e{exponent}"
    if "." not in text:
        text += ".0"
    return text


class NameTable:
    """Deterministic names for a function's local slots."""

    def __init__(self, header: FunctionHeader) -> None:
        self.header = header
        self._names: Dict[int, str] = {}
        used: Set[str] = set()
        for slot in range(header.local_count):
            base = self._candidate(slot)
            name = base
            counter = 2
            while name in used:
                name = f"{base}_{counter}"
                counter += 1
            used.add(name)
            self._names[slot] = name

    def _candidate(self, slot: int) -> str:
        names = self.header.local_names
        if slot < len(names):
            name = names[slot]
            if name and _IDENTIFIER.match(name) and name not in KEYWORDS:
                return name
        if slot < self.header.argument_count:
            return f"arg{slot}"
        return f"local{slot}"

    def name(self, slot: int) -> str:
        if slot not in self._names:
            return f"local{slot}"
        return self._names[slot]

    def arguments(self) -> List[str]:
        return [self.name(slot) for slot in range(self.header.argument_count)]


def function_display_name(header: FunctionHeader) -> str:
    return header.display_name


# ----------------------------------------------------------------------
# Emitter
# ----------------------------------------------------------------------


class SourceEmitter:
    """Render structured trees for one bytecode version."""

    def __init__(self, version: BytecodeVersion, *, indent: str = "\t") -> None:
        self.version = version
        self.indent = indent

    def emit(
        self,
        tree: Union[StructuredFunction, Sequence[StructuredNode]],
        constants: ConstantPool,
        *,
        header: Optional[FunctionHeader] = None,
        function_names: Sequence[str] = (),
    ) -> str:
        """Render the body of a function (without its ``func`` line)."""

        writer = _FunctionWriter(self, tree, constants, header, function_names)
        lines = writer.body_lines(0)
        return "\n".join(lines) + "\n" if lines else ""

    def emit_function(
        self,
        header: FunctionHeader,
        constants: ConstantPool,
        tree: Union[StructuredFunction, Sequence[StructuredNode]],
        *,
        function_names: Sequence[str] = (),
    ) -> str:
        writer = _FunctionWriter(self, tree, constants, header, function_names)
        signature = f"func {function_display_name(header)}({', '.join(writer.names.arguments())}):"
        if header.is_static:
            signature = "static " + signature
        lines = [signature]
        lines.extend(writer.body_lines(1))
        return "\n".join(lines) + "\n"

    def emit_failure(self, header: FunctionHeader, message: str) -> str:
        """Render a stub for a function that could not be decompiled."""

        names = NameTable(header)
        signature = f"func {function_display_name(header)}({', '.join(names.arguments())}):"
        if header.is_static:
            signature = "static " + signature
        lines = [f"{RAW_MARKER} failed to decompile {function_display_name(header)}: {message}", signature]
        lines.append(f"{self.indent}pass")
        return "\n".join(lines) + "\n"

    def emit_unit(
        self,
        functions: Sequence[str],
        *,
        extends: str = "",
        class_name: str = "",
        provenance: Optional[Provenance] = None,
    ) -> str:
        parts: List[str] = []
        head: List[str] = []
        if provenance is not None:
            head.extend(provenance.render())
        if extends:
            head.append(f"extends {extends}")
        if class_name:
            head.append(f"class_name {class_name}")
        if head:
            parts.append("\n".join(head) + "\n")
        parts.extend(functions)
        return "\n".join(parts)


class _FunctionWriter:
    def __init__(
        self,
        emitter: SourceEmitter,
        tree: Union[StructuredFunction, Sequence[StructuredNode]],
        constants: ConstantPool,
        header: Optional[FunctionHeader],
        function_names: Sequence[str],
    ) -> None:
        self.emitter = emitter
        self.version = emitter.version
        self.indent = emitter.indent
        self.constants = constants
        self.function_names = list(function_names)
        if isinstance(tree, StructuredFunction):
            self.structured: Optional[StructuredFunction] = tree
            self.body = list(tree.body)
            self.goto_targets = set(tree.goto_targets)
        else:
            self.structured = None
            self.body = list(tree)
            self.goto_targets = set()
        if header is None:
            header = FunctionHeader(
                index=0, name="", argument_count=0, local_count=_max_slot(self.body) + 1, stack_size=0
            )
        self.header = header
        self.names = NameTable(header)
        self._inline_decls: Set[int] = set()
        self._hoisted: List[int] = []
        self._plan_declarations()

    # ------------------------------------------------------------------
    # declarations
    # ------------------------------------------------------------------

    def _plan_declarations(self) -> None:
        first: Dict[int, Tuple[str, int]] = {}
        arguments = self.header.argument_count

        def note(slot: int, kind: str, stmt_id: int = 0) -> None:
            if slot >= arguments and slot not in first:
                first[slot] = (kind, stmt_id)

        def reads(expr: Optional[ast.Expr]) -> None:
            for slot in ast.locals_read(expr):
                note(slot, "other")

        def visit(nodes: Sequence[StructuredNode], top: bool) -> None:
            for node in nodes:
                if isinstance(node, BlockNode):
                    statements(node.statements, top)
                elif isinstance(node, SequenceNode):
                    visit(node.body, top)
                elif isinstance(node, IfNode):
                    reads(node.condition)
                    visit(node.then_branch, False)
                    visit(node.else_branch, False)
                elif isinstance(node, WhileNode):
                    reads(node.condition)
                    visit(node.body, False)
                elif isinstance(node, ForNode):
                    statements(node.setup.statements, top)
                    reads(node.iterable)
                    note(node.variable, "for")
                    visit(node.body, False)
                    statements(node.latch.statements, False)
                elif isinstance(node, MatchNode):
                    reads(node.subject)
                    for case in node.cases:
                        visit(case.body, False)
                    if node.default is not None:
                        visit(node.default, False)
                elif isinstance(node, ReturnNode):
                    reads(node.value)

        def statements(stmts: Sequence[ast.Stmt], top: bool) -> None:
            for stmt in stmts:
                if isinstance(stmt, ast.Assign):
                    reads(stmt.value)
                    if isinstance(stmt.target, ast.Local):
                        note(stmt.target.slot, "assign" if top else "other", id(stmt))
                    else:
                        reads(stmt.target)
                elif isinstance(stmt, ast.ExprStatement):
                    reads(stmt.expr)
                elif isinstance(stmt, ast.Assert):
                    reads(stmt.test)

        visit(self.body, True)
        for slot in sorted(first):
            kind, stmt_id = first[slot]
            if kind == "assign":
                self._inline_decls.add(stmt_id)
            elif kind == "other":
                self._hoisted.append(slot)

    # ------------------------------------------------------------------
    # nodes
    # ------------------------------------------------------------------

    def body_lines(self, depth: int) -> List[str]:
        nodes = list(self.body)
        if nodes and isinstance(nodes[-1], ReturnNode) and self._is_bare_return(nodes[-1]):
            nodes.pop()
        lines = [self._pad(depth) + f"var {self.names.name(slot)}" for slot in self._hoisted]
        lines.extend(self._nodes(nodes, depth))
        if depth > 0 and not _has_code(lines):
            lines.append(self._pad(depth) + "pass")
        return lines

    def _pad(self, depth: int) -> str:
        return self.indent * depth

    def _suite(self, nodes: Sequence[StructuredNode], depth: int) -> List[str]:
        lines = self._nodes(nodes, depth)
        if not _has_code(lines):
            lines.append(self._pad(depth) + "pass")
        return lines

    def _nodes(self, nodes: Sequence[StructuredNode], depth: int) -> List[str]:
        lines: List[str] = []
        for node in nodes:
            lines.extend(self._node(node, depth))
        return lines

    def _label(self, block_id: Optional[int], depth: int) -> List[str]:
        if block_id is None or block_id not in self.goto_targets:
            return []
        return [self._pad(depth) + f"# label {self._label_name(block_id)}:"]

    def _label_name(self, block_id: int) -> str:
        if self.structured is not None:
            return self.structured.label_for(block_id)
        return f"block_{block_id}"

    def _node(self, node: StructuredNode, depth: int) -> List[str]:
        pad = self._pad(depth)
        if isinstance(node, BlockNode):
            return self._label(node.block_id, depth) + self._statements(node.statements, depth)
        if isinstance(node, SequenceNode):
            return self._nodes(node.body, depth)
        if isinstance(node, IfNode):
            return self._if(node, depth, "if")
        if isinstance(node, WhileNode):
            lines = []
            if node.header is not None:
                lines.extend(self._label(node.header.block_id, depth))
            lines.append(pad + f"while {self.expr(node.condition)}:")
            lines.extend(self._suite(node.body, depth + 1))
            return lines
        if isinstance(node, ForNode):
            lines = self._label(node.setup.block_id, depth) + self._statements(node.setup.statements, depth)
            lines.append(pad + f"for {self.names.name(node.variable)} in {self.expr(node.iterable)}:")
            body = self._nodes(node.body, depth + 1)
            body.extend(self._label(node.latch.block_id, depth + 1))
            body.extend(self._statements(node.latch.statements, depth + 1))
            if not _has_code(body):
                body.append(self._pad(depth + 1) + "pass")
            lines.extend(body)
            return lines
        if isinstance(node, MatchNode):
            return self._match(node, depth)
        if isinstance(node, ReturnNode):
            if self._is_bare_return(node):
                return [pad + "return"]
            return [pad + f"return {self.expr(node.value)}"]
        if isinstance(node, BreakNode):
            return [pad + "break"]
        if isinstance(node, ContinueNode):
            return [pad + "continue"]
        if isinstance(node, RawBlockNode):
            return self._raw(node, depth)
        raise TypeError(f"unknown structured node {type(node).__name__}")

    def _is_bare_return(self, node: ReturnNode) -> bool:
        if node.value is None:
            return True
        if isinstance(node.value, ast.Const):
            return self._constant(node.value.index).kind == "nil"
        return False

    def _if(self, node: IfNode, depth: int, keyword: str) -> List[str]:
        pad = self._pad(depth)
        lines = [pad + f"{keyword} {self.expr(node.condition)}:"]
        lines.extend(self._suite(node.then_branch, depth + 1))
        if not node.else_branch:
            return lines
        chained = self._elif_target(node.else_branch)
        if chained is not None:
            lines.extend(self._if(chained, depth, "elif"))
        else:
            lines.append(pad + "else:")
            lines.extend(self._suite(node.else_branch, depth + 1))
        return lines

    def _elif_target(self, branch: Sequence[StructuredNode]) -> Optional[IfNode]:
        if not branch or not isinstance(branch[-1], IfNode):
            return None
        for node in branch[:-1]:
            if not isinstance(node, BlockNode) or node.statements or node.block_id in self.goto_targets:
                return None
        return branch[-1]

    def _match(self, node: MatchNode, depth: int) -> List[str]:
        pad = self._pad(depth)
        lines = [pad + f"match {self.expr(node.subject)}:"]
        for case in node.cases:
            lines.append(self._pad(depth + 1) + f"{self.expr(case.pattern)}:")
            lines.extend(self._suite(case.body, depth + 2))
        if node.default is not None:
            wildcard = "_" if self.version.supports("wildcard") else "var _"
            lines.append(self._pad(depth + 1) + f"{wildcard}:")
            lines.extend(self._suite(node.default, depth + 2))
        return lines

    def _raw(self, node: RawBlockNode, depth: int) -> List[str]:
        pad = self._pad(depth)
        if node.block_id is None:
            target = ", ".join(self._label_name(goto) for goto in node.gotos)
            return [pad + f"{RAW_MARKER} low-confidence goto {target} ({node.reason})"]
        lines = [pad + f"{RAW_MARKER} low-confidence {self._label_name(node.block_id)} ({node.reason})"]
        lines.append(pad + f"# label {self._label_name(node.block_id)}:")
        if node.statements is None:
            for inst in node.instructions:
                operands = " ".join(
                    describe_operand(kind, value, self.constants, self.version)
                    for kind, value in zip(inst.kinds, inst.operands)
                )
                lines.append(pad + f"# 0x{inst.offset:04x} {inst.mnemonic} {operands}".rstrip())
            return lines
        for text in self._statements(node.statements, 0):
            lines.append(pad + "# " + text)
        value = self.expr(node.value) if node.value is not None else None
        if node.terminator == "cond" and len(node.gotos) == 2:
            lines.append(pad + f"# if {value}: goto {self._label_name(node.gotos[0])}")
            lines.append(pad + f"# goto {self._label_name(node.gotos[1])}")
        elif node.terminator in ("iter_begin", "iter_next") and len(node.gotos) == 2:
            source = f" over {value}" if value is not None else ""
            lines.append(pad + f"# next element{source}: goto {self._label_name(node.gotos[0])}")
            lines.append(pad + f"# exhausted: goto {self._label_name(node.gotos[1])}")
        elif node.terminator == "return":
            lines.append(pad + ("# return" if value is None else f"# return {value}"))
        else:
            for goto in node.gotos:
                lines.append(pad + f"# goto {self._label_name(goto)}")
        return lines

    # ------------------------------------------------------------------
    # statements
    # ------------------------------------------------------------------

    def _statements(self, statements: Sequence[ast.Stmt], depth: int) -> List[str]:
        pad = self._pad(depth)
        lines: List[str] = []
        for stmt in statements:
            if isinstance(stmt, ast.Assign):
                target = self.expr(stmt.target)
                prefix = "var " if id(stmt) in self._inline_decls else ""
                lines.append(pad + f"{prefix}{target} = {self.expr(stmt.value)}")
            elif isinstance(stmt, ast.ExprStatement):
                text = pad + self.expr(stmt.expr)
                if stmt.residue:
                    text += f"  {RAW_MARKER} value left on the stack"
                lines.append(text)
            elif isinstance(stmt, ast.Assert):
                lines.append(pad + f"assert({self.expr(stmt.test)})")
            elif isinstance(stmt, ast.Breakpoint):
                lines.append(pad + "breakpoint")
        return lines

    # ------------------------------------------------------------------
    # expressions
    # ------------------------------------------------------------------

    def _constant(self, index: int) -> Constant:
        return self.constants[index]

    def _identifier(self, index: int) -> str:
        return self.constants.string(index)

    def literal(self, constant: Constant) -> str:
        kind, value = constant.kind, constant.value
        if kind == "nil":
            return "null"
        if kind == "bool":
            return "true" if value else "false"
        if kind == "int":
            return str(value)
        if kind == "float":
            return format_float(value, self.version)
        if kind == "string":
            return escape_string(value)
        if kind == "resource":
            return f"preload({escape_string(value)})"
        if kind == "subscript":
            if value < len(self.function_names):
                return self.function_names[value]
            return f"func_{value}"
        raise ValueError(f"unknown constant kind {kind!r}")

    def expr(self, expr: ast.Expr) -> str:
        return self._expr(expr)[0]

    def _wrap(self, expr: ast.Expr, minimum: int) -> str:
        text, precedence = self._expr(expr)
        if precedence < minimum:
            return f"({text})"
        return text

    def _args(self, args: Sequence[ast.Expr]) -> str:
        return ", ".join(self.expr(arg) for arg in args)

    def _node_path(self, name: int, args: Sequence[ast.Expr]) -> Optional[str]:
        if not self.version.supports("dollar") or len(args) != 1:
            return None
        if self._identifier(name) != "get_node" or not isinstance(args[0], ast.Const):
            return None
        constant = self._constant(args[0].index)
        if constant.kind != "string":
            return None
        if _NODE_PATH.match(constant.value):
            return f"${constant.value}"
        return f"${escape_string(constant.value)}"

    def _expr(self, expr: ast.Expr) -> Tuple[str, int]:
        if isinstance(expr, ast.Const):
            text = self.literal(self._constant(expr.index))
            return text, (_PRECEDENCE["NEG"] if text.startswith("-") else _ATOM)
        if isinstance(expr, ast.BoolLit):
            return ("true" if expr.value else "false"), _ATOM
        if isinstance(expr, ast.Local):
            return self.names.name(expr.slot), _ATOM
        if isinstance(expr, ast.SelfRef):
            return "self", _ATOM
        if isinstance(expr, (ast.Member, ast.Global)):
            return self._identifier(expr.name), _ATOM
        if isinstance(expr, ast.Attr):
            return f"{self._wrap(expr.obj, _ATOM)}.{self._identifier(expr.name)}", _ATOM
        if isinstance(expr, ast.Index):
            return f"{self._wrap(expr.obj, _ATOM)}[{self.expr(expr.key)}]", _ATOM
        if isinstance(expr, ast.BinOp):
            precedence = _PRECEDENCE[expr.op]
            left = self._wrap(expr.left, precedence)
            right = self._wrap(expr.right, precedence + 1)
            return f"{left} {ast.BINARY_OPERATORS[expr.op]} {right}", precedence
        if isinstance(expr, ast.UnaryOp):
            precedence = _PRECEDENCE[expr.op]
            operand = self._wrap(expr.operand, precedence)
            symbol = ast.UNARY_OPERATORS[expr.op]
            if symbol in ("-", "~") and operand.startswith(("-", "~")):
                operand = f"({operand})"
            return f"{symbol}{operand}", precedence
        if isinstance(expr, ast.Cast):
            return f"{self._wrap(expr.value, _PRECEDENCE['AS'])} as {self._identifier(expr.type_name)}", _PRECEDENCE["AS"]
        if isinstance(expr, ast.BuiltinCall):
            name = self.version.builtin_name(expr.builtin) or f"__builtin_{expr.builtin}"
            return f"{name}({self._args(expr.args)})", _ATOM
        if isinstance(expr, ast.MethodCall):
            if isinstance(expr.obj, ast.SelfRef):
                path = self._node_path(expr.name, expr.args)
                if path is not None:
                    return path, _ATOM
            obj = self._wrap(expr.obj, _ATOM)
            return f"{obj}.{self._identifier(expr.name)}({self._args(expr.args)})", _ATOM
        if isinstance(expr, ast.SelfCall):
            path = self._node_path(expr.name, expr.args)
            if path is not None:
                return path, _ATOM
            return f"{self._identifier(expr.name)}({self._args(expr.args)})", _ATOM
        if isinstance(expr, ast.ArrayLit):
            return f"[{self._args(expr.items)}]", _ATOM
        if isinstance(expr, ast.DictLit):
            items = ", ".join(f"{self.expr(key)}: {self.expr(value)}" for key, value in expr.items)
            return "{" + items + "}", _ATOM
        if isinstance(expr, ast.Yield):
            return f"yield({self._args(expr.args)})", _ATOM
        raise TypeError(f"unknown expression {type(expr).__name__}")


def _has_code(lines: Sequence[str]) -> bool:
    return any(line.strip() and not line.strip().startswith("#") for line in lines)


def _max_slot(nodes: Sequence[StructuredNode]) -> int:
    highest = -1
    for node in iter_nodes(nodes):
        if isinstance(node, BlockNode):
            for stmt in node.statements:
                for expr in _statement_exprs(stmt):
                    for slot in ast.locals_read(expr):
                        highest = max(highest, slot)
        elif isinstance(node, ForNode):
            highest = max(highest, node.variable)
    return highest


def _statement_exprs(stmt: ast.Stmt) -> List[ast.Expr]:
    if isinstance(stmt, ast.Assign):
        return [stmt.target, stmt.value]
    if isinstance(stmt, ast.ExprStatement):
        return [stmt.expr]
    if isinstance(stmt, ast.Assert):
        return [stmt.test]
    return []


def emit(
    tree: Union[StructuredFunction, Sequence[StructuredNode]],
    constants: ConstantPool,
    version: BytecodeVersion,
    *,
    header: Optional[FunctionHeader] = None,
) -> str:
    """Render ``tree`` as function-body source text."""

    return SourceEmitter(version).emit(tree, constants, header=header)


__all__ = [
    "KEYWORDS",
    "NameTable",
    "Provenance",
    "RAW_MARKER",
    "SourceEmitter",
    "emit",
    "escape_string",
    "format_float",
    "function_display_name",
]
