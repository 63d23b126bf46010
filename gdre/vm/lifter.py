"""Symbolic stack evaluation that turns basic blocks into statements."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .. import script_ast as ast
from ..exceptions import ReconstructError, UnsupportedConstructError
from ..versions import BytecodeVersion
from .disassembler import Instruction

LOG = logging.getLogger(__name__)


@dataclass
class LiftedBlock:
    """Statements of one basic block plus the value its terminator consumes.

    ``value`` is the branch condition for conditional jumps, the container
    for ``ITER_BEGIN`` and the returned expression for ``RETURN``.
    """

    block_id: int
    statements: List[ast.Stmt] = field(default_factory=list)
    value: Optional[ast.Expr] = None
    residue: int = 0

    @property
    def is_pure_test(self) -> bool:
        """``True`` when the block only evaluates its terminator's operand."""

        return not self.statements and self.value is not None


class BlockLifter:
    """Evaluate instruction sequences against a symbolic operand stack."""

    def __init__(self, version: BytecodeVersion) -> None:
        self.version = version
        self._handlers: Dict[str, Callable[[Instruction], None]] = {}
        self._stack: List[ast.Expr] = []
        self._statements: List[ast.Stmt] = []
        self._block_id = 0
        self._value: Optional[ast.Expr] = None

    def lift(self, block_id: int, instructions: Sequence[Instruction]) -> LiftedBlock:
        self._stack = []
        self._statements = []
        self._block_id = block_id
        self._value = None
        for inst in instructions:
            feature = self.version.required_feature(inst.mnemonic)
            if feature is not None and not self.version.supports(feature):
                raise UnsupportedConstructError(
                    inst.mnemonic, feature, offset=inst.position, block_id=block_id
                )
            self._translate(inst)
        residue = len(self._stack)
        for expr in self._stack:
            self._statements.append(ast.ExprStatement(expr, offset=instructions[-1].offset, residue=True))
        if residue:
            LOG.debug("block %d leaves %d value(s) on the stack", block_id, residue)
        return LiftedBlock(block_id, self._statements, self._value, residue)

    # ------------------------------------------------------------------
    # stack helpers
    # ------------------------------------------------------------------

    def _pop(self, inst: Instruction, count: int = 1) -> List[ast.Expr]:
        if count > len(self._stack):
            raise ReconstructError(
                f"stack underflow in {inst.mnemonic} at 0x{inst.offset:04x}",
                self._block_id,
                offset=inst.position,
            )
        if count == 0:
            return []
        values = self._stack[-count:]
        del self._stack[-count:]
        return values

    def _push(self, expr: ast.Expr) -> None:
        self._stack.append(expr)

    def _emit(self, stmt: ast.Stmt) -> None:
        self._statements.append(stmt)

    def _translate(self, inst: Instruction) -> None:
        handler = self._handlers.get(inst.mnemonic)
        if handler is None:
            if inst.mnemonic in ast.BINARY_OPERATORS:
                handler = self._translate_binary
            elif inst.mnemonic in ast.UNARY_OPERATORS:
                handler = self._translate_unary
            else:
                handler = getattr(self, f"_translate_{inst.mnemonic.lower()}")
            self._handlers[inst.mnemonic] = handler
        handler(inst)

    # ------------------------------------------------------------------
    # loads and stores
    # ------------------------------------------------------------------

    def _translate_nop(self, inst: Instruction) -> None:
        return None

    def _translate_load_const(self, inst: Instruction) -> None:
        self._push(ast.Const(inst.operands[0]))

    def _translate_load_local(self, inst: Instruction) -> None:
        self._push(ast.Local(inst.operands[0]))

    def _translate_store_local(self, inst: Instruction) -> None:
        (value,) = self._pop(inst)
        self._emit(ast.Assign(ast.Local(inst.operands[0]), value, offset=inst.offset))

    def _translate_load_self(self, inst: Instruction) -> None:
        self._push(ast.SelfRef())

    def _translate_load_member(self, inst: Instruction) -> None:
        self._push(ast.Member(inst.operands[0]))

    def _translate_store_member(self, inst: Instruction) -> None:
        (value,) = self._pop(inst)
        self._emit(ast.Assign(ast.Member(inst.operands[0]), value, offset=inst.offset))

    def _translate_load_global(self, inst: Instruction) -> None:
        self._push(ast.Global(inst.operands[0]))

    def _translate_get_attr(self, inst: Instruction) -> None:
        (obj,) = self._pop(inst)
        self._push(ast.Attr(obj, inst.operands[0]))

    def _translate_set_attr(self, inst: Instruction) -> None:
        obj, value = self._pop(inst, 2)
        self._emit(ast.Assign(ast.Attr(obj, inst.operands[0]), value, offset=inst.offset))

    def _translate_get_index(self, inst: Instruction) -> None:
        obj, key = self._pop(inst, 2)
        self._push(ast.Index(obj, key))

    def _translate_set_index(self, inst: Instruction) -> None:
        obj, key, value = self._pop(inst, 3)
        self._emit(ast.Assign(ast.Index(obj, key), value, offset=inst.offset))

    # ------------------------------------------------------------------
    # operators
    # ------------------------------------------------------------------

    def _translate_binary(self, inst: Instruction) -> None:
        left, right = self._pop(inst, 2)
        self._push(ast.BinOp(inst.mnemonic, left, right))

    def _translate_unary(self, inst: Instruction) -> None:
        (operand,) = self._pop(inst)
        self._push(ast.UnaryOp(inst.mnemonic, operand))

    def _translate_as(self, inst: Instruction) -> None:
        (value,) = self._pop(inst)
        self._push(ast.Cast(value, inst.operands[0]))

    # ------------------------------------------------------------------
    # calls and literals
    # ------------------------------------------------------------------

    def _translate_call_builtin(self, inst: Instruction) -> None:
        builtin, argc = inst.operands
        args = self._pop(inst, argc)
        self._push(ast.BuiltinCall(builtin, tuple(args)))

    def _translate_call_method(self, inst: Instruction) -> None:
        name, argc = inst.operands
        values = self._pop(inst, argc + 1)
        self._push(ast.MethodCall(values[0], name, tuple(values[1:])))

    def _translate_call_self(self, inst: Instruction) -> None:
        name, argc = inst.operands
        args = self._pop(inst, argc)
        self._push(ast.SelfCall(name, tuple(args)))

    def _translate_make_array(self, inst: Instruction) -> None:
        items = self._pop(inst, inst.operands[0])
        self._push(ast.ArrayLit(tuple(items)))

    def _translate_make_dict(self, inst: Instruction) -> None:
        flat = self._pop(inst, inst.operands[0] * 2)
        pairs = tuple((flat[i], flat[i + 1]) for i in range(0, len(flat), 2))
        self._push(ast.DictLit(pairs))

    def _translate_yield(self, inst: Instruction) -> None:
        args = self._pop(inst, inst.operands[0])
        self._push(ast.Yield(tuple(args)))

    def _translate_pop(self, inst: Instruction) -> None:
        (value,) = self._pop(inst)
        self._emit(ast.ExprStatement(value, offset=inst.offset))

    def _translate_assert(self, inst: Instruction) -> None:
        (test,) = self._pop(inst)
        self._emit(ast.Assert(test, offset=inst.offset))

    def _translate_breakpoint(self, inst: Instruction) -> None:
        self._emit(ast.Breakpoint(offset=inst.offset))

    # ------------------------------------------------------------------
    # terminators
    # ------------------------------------------------------------------

    def _translate_jump(self, inst: Instruction) -> None:
        return None

    def _translate_jump_if_true(self, inst: Instruction) -> None:
        (self._value,) = self._pop(inst)

    _translate_jump_if_false = _translate_jump_if_true

    def _translate_iter_begin(self, inst: Instruction) -> None:
        (self._value,) = self._pop(inst)

    def _translate_iter_next(self, inst: Instruction) -> None:
        return None

    def _translate_return(self, inst: Instruction) -> None:
        (self._value,) = self._pop(inst)


__all__ = ["BlockLifter", "LiftedBlock"]
