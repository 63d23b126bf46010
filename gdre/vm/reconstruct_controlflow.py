"""Restructure a function's control-flow graph into nested constructs.

Shapes are matched in a fixed order at every block the walk reaches:

1. forward conditionals whose arms meet at a join become ``if``/``else``;
2. natural loops become ``while`` loops, or ``for`` loops when an
   ``ITER_BEGIN``/``ITER_NEXT`` pair brackets them;
3. chains of equality tests against one subject become ``match`` when the
   bytecode version has the feature (otherwise they stay chained ``if``);
4. anything else is kept as a :class:`RawBlockNode` with explicit gotos.

A loop header is also the first block of its body, so the order holds there
too: when the header's conditional rejoins inside the loop, the ``if``/``else``
is built first and the loop wraps it; only a header test with one arm leaving
the loop becomes a ``while`` condition.  Arms that leave a loop body early
become ``return``, ``break`` or ``continue``.  A block that cannot be lifted
is kept raw and the walk carries on past it.

Blocks the walk never reaches (including unreachable ones) are appended as
trailing raw blocks so no instruction is ever dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterator, List, Optional, Sequence, Set, Tuple, Union

from .. import script_ast as ast
from ..exceptions import DecompilerError, ReconstructError
from ..versions import BytecodeVersion
from .cfg_builder import CFG, CFGBuilder, LoopInfo
from .disassembler import Instruction
from .lifter import BlockLifter, LiftedBlock

LOG = logging.getLogger(__name__)

DEFAULT_MATCH_MIN_CASES = 3

# Region stop that no block id can equal.
_NEVER = -2

__all__ = [
    "BlockNode",
    "BreakNode",
    "ContinueNode",
    "ControlFlowReconstructor",
    "ForNode",
    "IfNode",
    "MatchCase",
    "MatchNode",
    "RawBlockNode",
    "ReconstructOptions",
    "ReturnNode",
    "SequenceNode",
    "StructuredFunction",
    "WhileNode",
    "iter_leaves",
    "iter_nodes",
    "reconstruct",
]


# ----------------------------------------------------------------------
# Structured nodes
# ----------------------------------------------------------------------


@dataclass
class BlockNode:
    """Straight-line statements lifted from one basic block."""

    block_id: int
    instructions: Tuple[Instruction, ...]
    statements: List[ast.Stmt] = field(default_factory=list)


@dataclass
class SequenceNode:
    body: List["StructuredNode"] = field(default_factory=list)


@dataclass
class IfNode:
    condition: ast.Expr
    then_branch: List["StructuredNode"] = field(default_factory=list)
    else_branch: List["StructuredNode"] = field(default_factory=list)
    block_id: Optional[int] = None


@dataclass
class WhileNode:
    """A loop; ``header`` holds the test block of a conditional loop."""

    condition: ast.Expr
    body: List["StructuredNode"] = field(default_factory=list)
    header: Optional[BlockNode] = None


@dataclass
class ForNode:
    iterator: int
    variable: int
    iterable: ast.Expr
    body: List["StructuredNode"]
    setup: BlockNode
    latch: BlockNode


@dataclass
class MatchCase:
    pattern: ast.Expr
    body: List["StructuredNode"] = field(default_factory=list)


@dataclass
class MatchNode:
    """``match`` over ``subject``; ``tests`` are the folded comparison blocks."""

    subject: ast.Expr
    cases: List[MatchCase]
    default: Optional[List["StructuredNode"]] = None
    tests: Tuple[BlockNode, ...] = ()
    block_id: Optional[int] = None


@dataclass
class ReturnNode:
    value: Optional[ast.Expr] = None
    implicit: bool = False


@dataclass
class BreakNode:
    pass


@dataclass
class ContinueNode:
    pass


@dataclass
class RawBlockNode:
    """Code whose structure could not be recovered.

    ``block_id`` is ``None`` for a bare goto produced when structured code
    jumps somewhere the walk cannot follow.  ``statements`` is ``None`` when
    the block could not even be lifted; the emitter then lists instructions.
    """

    reason: str
    block_id: Optional[int] = None
    instructions: Tuple[Instruction, ...] = ()
    statements: Optional[List[ast.Stmt]] = None
    terminator: str = "jump"
    value: Optional[ast.Expr] = None
    gotos: Tuple[int, ...] = ()


StructuredNode = Union[
    SequenceNode,
    BlockNode,
    IfNode,
    WhileNode,
    ForNode,
    MatchNode,
    ReturnNode,
    BreakNode,
    ContinueNode,
    RawBlockNode,
]


def iter_nodes(nodes: Sequence[StructuredNode]) -> Iterator[StructuredNode]:
    """Depth-first pre-order traversal over a structured body."""

    for node in nodes:
        yield node
        if isinstance(node, SequenceNode):
            yield from iter_nodes(node.body)
        elif isinstance(node, IfNode):
            yield from iter_nodes(node.then_branch)
            yield from iter_nodes(node.else_branch)
        elif isinstance(node, (WhileNode, ForNode)):
            yield from iter_nodes(node.body)
        elif isinstance(node, MatchNode):
            for case in node.cases:
                yield from iter_nodes(case.body)
            if node.default is not None:
                yield from iter_nodes(node.default)


def iter_leaves(nodes: Sequence[StructuredNode]) -> Iterator[Union[BlockNode, RawBlockNode]]:
    """Yield every node that owns instructions."""

    for node in iter_nodes(nodes):
        if isinstance(node, (BlockNode, RawBlockNode)):
            yield node
        elif isinstance(node, WhileNode) and node.header is not None:
            yield node.header
        elif isinstance(node, ForNode):
            yield node.setup
            yield node.latch
        elif isinstance(node, MatchNode):
            yield from node.tests


@dataclass
class StructuredFunction:
    """Reconstruction result for one function."""

    body: List[StructuredNode]
    cfg: Optional[CFG] = None
    unreachable: List[int] = field(default_factory=list)
    raw_blocks: int = 0
    raw_instructions: int = 0
    residue: int = 0
    goto_targets: Set[int] = field(default_factory=set)
    truncated: bool = False

    @property
    def instruction_count(self) -> int:
        return len(self.cfg.instructions) if self.cfg is not None else 0

    @property
    def raw_ratio(self) -> float:
        total = self.instruction_count
        return self.raw_instructions / total if total else 0.0

    @property
    def confidence(self) -> float:
        return round(1.0 - self.raw_ratio, 4)

    @property
    def low_confidence(self) -> bool:
        return bool(self.raw_blocks or self.residue)

    @property
    def raw_transfers(self) -> int:
        """Reachable raw blocks and gotos that move control elsewhere."""

        return sum(
            1
            for node in iter_nodes(self.body)
            if isinstance(node, RawBlockNode) and node.reason != "unreachable" and node.terminator != "fallthrough"
        )

    def label_for(self, block_id: int) -> str:
        if self.cfg is not None and block_id == self.cfg.exit:
            return "end"
        return f"block_{block_id}"


@dataclass
class ReconstructOptions:
    match_min_cases: int = DEFAULT_MATCH_MIN_CASES
    max_steps: Optional[int] = None


# ----------------------------------------------------------------------
# Reconstruction
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class _LoopFrame:
    header: int
    exit: Optional[int]
    continue_target: int


@dataclass(frozen=True)
class _Region:
    stop: Optional[int] = None
    allowed: Optional[FrozenSet[int]] = None
    loop: Optional[_LoopFrame] = None
    header: Optional[int] = None


class ControlFlowReconstructor:
    """Turn decoded instructions into a :class:`StructuredFunction`.

    The reconstructor itself is stateless; each call works on a private
    :class:`_Structurer` so one instance can be shared between threads.
    """

    def __init__(self, version: BytecodeVersion, options: Optional[ReconstructOptions] = None) -> None:
        self.version = version
        self.options = options or ReconstructOptions()

    def build_cfg(self, instructions: Sequence[Instruction], *, code_length: Optional[int] = None) -> CFG:
        return CFGBuilder(instructions, code_length=code_length).build()

    def reconstruct(
        self,
        instructions: Sequence[Instruction],
        *,
        code_length: Optional[int] = None,
    ) -> StructuredFunction:
        if not instructions:
            return StructuredFunction(body=[])
        cfg = self.build_cfg(instructions, code_length=code_length)
        return _Structurer(self.version, cfg, self.options).run()


def reconstruct(
    instructions: Sequence[Instruction],
    version: BytecodeVersion,
    *,
    options: Optional[ReconstructOptions] = None,
    code_length: Optional[int] = None,
) -> StructuredFunction:
    return ControlFlowReconstructor(version, options).reconstruct(instructions, code_length=code_length)


class _Structurer:
    def __init__(self, version: BytecodeVersion, cfg: CFG, options: ReconstructOptions) -> None:
        self.version = version
        self.options = options
        self._cfg = cfg
        self._lifter = BlockLifter(version)
        self._lifted: Dict[int, LiftedBlock] = {}
        self._visited: Set[int] = set()
        self._goto_targets: Set[int] = set()
        self._steps = 0
        self._max_steps = options.max_steps or 8 * len(cfg.blocks) + 64

    def run(self) -> StructuredFunction:
        cfg = self._cfg
        body = self._build_block(cfg.entry, _Region(stop=cfg.exit))
        body.extend(self._leftovers())
        self._check_coverage(body)

        raw_nodes = [leaf for leaf in iter_leaves(body) if isinstance(leaf, RawBlockNode) and leaf.block_id is not None]
        result = StructuredFunction(
            body=body,
            cfg=cfg,
            unreachable=cfg.unreachable,
            raw_blocks=len([node for node in iter_nodes(body) if isinstance(node, RawBlockNode)]),
            raw_instructions=sum(len(node.instructions) for node in raw_nodes),
            residue=sum(lifted.residue for lifted in self._lifted.values()),
            goto_targets=set(self._goto_targets),
            truncated=cfg.truncated,
        )
        if result.unreachable:
            LOG.debug("unreachable blocks kept as raw code: %s", result.unreachable)
        return result

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _step(self, block_id: int) -> None:
        self._steps += 1
        if self._steps > self._max_steps:
            raise ReconstructError("structuring exceeded its step budget", block_id)

    def _lift(self, block_id: int) -> LiftedBlock:
        lifted = self._lifted.get(block_id)
        if lifted is None:
            lifted = self._lifter.lift(block_id, self._cfg.instructions_of(block_id))
            self._lifted[block_id] = lifted
        return lifted

    def _try_lift(self, block_id: int) -> Optional[LiftedBlock]:
        try:
            return self._lift(block_id)
        except ReconstructError as exc:
            LOG.debug("block %d could not be lifted: %s", block_id, exc)
            return None

    def _block_node(self, block_id: int, statements: Optional[List[ast.Stmt]] = None) -> BlockNode:
        return BlockNode(block_id, tuple(self._cfg.instructions_of(block_id)), list(statements or []))

    def _raw(self, block_id: int, reason: str) -> RawBlockNode:
        self._visited.add(block_id)
        block = self._cfg.block(block_id)
        terminator = block.terminator
        statements: Optional[List[ast.Stmt]]
        value: Optional[ast.Expr] = None
        try:
            lifted = self._lift(block_id)
        except DecompilerError as exc:
            LOG.debug("raw block %d kept as instructions: %s", block_id, exc)
            statements = None
        else:
            statements = list(lifted.statements)
            value = lifted.value
        if terminator.kind in ("cond", "iter_begin", "iter_next"):
            gotos: Tuple[int, ...] = (terminator.true_target, terminator.false_target)
        elif terminator.kind == "return":
            gotos = ()
        else:
            gotos = (terminator.target,)
        self._goto_targets.update(gotos)
        return RawBlockNode(
            reason=reason,
            block_id=block_id,
            instructions=tuple(self._cfg.instructions_of(block_id)),
            statements=statements,
            terminator=terminator.kind,
            value=value,
            gotos=gotos,
        )

    def _goto(self, target: int, reason: str) -> RawBlockNode:
        self._goto_targets.add(target)
        return RawBlockNode(reason=reason, gotos=(target,))

    def _exit_node(self, target: int, region: _Region) -> Optional[StructuredNode]:
        loop = region.loop
        if loop is not None:
            if target == loop.continue_target:
                return ContinueNode()
            if target == loop.exit:
                return BreakNode()
        if target == self._cfg.exit and region.stop != self._cfg.exit:
            return ReturnNode(None, implicit=True)
        return None

    def _special_arm(self, target: int, region: _Region) -> Optional[StructuredNode]:
        if target == region.stop:
            return None
        return self._exit_node(target, region)

    def _in_region(self, block_id: int, region: _Region) -> bool:
        if block_id == region.stop:
            return True
        if region.loop is not None and block_id in (region.loop.exit, region.loop.continue_target):
            return True
        if block_id == self._cfg.exit:
            return region.stop == self._cfg.exit
        return region.allowed is None or block_id in region.allowed

    # ------------------------------------------------------------------
    # sequence walking
    # ------------------------------------------------------------------

    def _build_block(self, start: Optional[int], region: _Region, *, entering: bool = False) -> List[StructuredNode]:
        nodes: List[StructuredNode] = []
        block_id = start
        first = True
        while block_id is not None:
            if not (first and entering):
                if block_id == region.stop:
                    break
                exit_node = self._exit_node(block_id, region)
                if exit_node is not None:
                    nodes.append(exit_node)
                    break
                if block_id == self._cfg.exit:
                    break
                if region.allowed is not None and block_id not in region.allowed:
                    nodes.append(self._goto(block_id, "jump leaves the enclosing construct"))
                    break
                if block_id in self._visited:
                    nodes.append(self._goto(block_id, "jump into already structured code"))
                    break
            first = False
            built, block_id = self._build_node(block_id, region)
            nodes.extend(built)
        return nodes

    def _build_node(self, block_id: int, region: _Region) -> Tuple[List[StructuredNode], Optional[int]]:
        self._step(block_id)
        block = self._cfg.block(block_id)
        loop = self._cfg.loops.get(block_id)
        if loop is not None and block_id != region.header:
            return self._build_loop(loop, region)
        terminator = block.terminator
        if terminator.kind == "iter_begin":
            return self._build_for(block_id, region)
        if terminator.kind == "iter_next":
            return [self._raw(block_id, "iterator advance outside its loop")], None

        self._visited.add(block_id)
        lifted = self._try_lift(block_id)
        if lifted is None:
            raw = self._raw(block_id, "block could not be lifted")
            follow = terminator.target if terminator.kind in ("jump", "fallthrough") else None
            return [raw], follow
        head = self._block_node(block_id, lifted.statements)
        if terminator.kind == "cond":
            return self._build_conditional(block_id, head, lifted, region)
        if terminator.kind == "return":
            return [head, ReturnNode(lifted.value)], None
        return [head], terminator.target

    # ------------------------------------------------------------------
    # conditionals
    # ------------------------------------------------------------------

    def _build_conditional(
        self,
        block_id: int,
        head: BlockNode,
        lifted: LiftedBlock,
        region: _Region,
    ) -> Tuple[List[StructuredNode], Optional[int]]:
        terminator = self._cfg.block(block_id).terminator
        true_target, false_target = terminator.true_target, terminator.false_target
        condition = lifted.value

        true_exit = self._special_arm(true_target, region)
        false_exit = self._special_arm(false_target, region)
        if true_exit is not None and false_exit is not None:
            return [head, IfNode(condition, [true_exit], [false_exit], block_id)], None
        if false_exit is not None:
            return [head, IfNode(ast.negate(condition), [false_exit], [], block_id)], true_target
        if true_exit is not None:
            return [head, IfNode(condition, [true_exit], [], block_id)], false_target

        join = terminator.join
        match = self._try_match(block_id, lifted, join, region)
        if match is not None:
            return [head, match], join
        if join is not None and join != self._cfg.exit and self._joins_inside(join, region):
            node = self._if_else(block_id, condition, true_target, false_target, join, region)
            return [head, *self._continue_early(node, join, region)], join

        guard = replace(region, stop=_NEVER)
        true_exits = self._abrupt_exits(true_target, region, false_target)
        false_exits = self._abrupt_exits(false_target, region, true_target)
        if false_exits is not None and (
            true_exits is None or ("continue" in true_exits and "continue" not in false_exits)
        ):
            body = self._build_block(false_target, guard)
            return [head, IfNode(ast.negate(condition), body, [], block_id)], true_target
        if true_exits is not None:
            body = self._build_block(true_target, guard)
            return [head, IfNode(condition, body, [], block_id)], false_target
        if join == self._cfg.exit:
            node = self._if_else(block_id, condition, true_target, false_target, join, region)
            return [head, node], join

        LOG.debug("conditional in block %d has no structured join", block_id)
        return [self._raw(block_id, "conditional without a join")], None

    def _if_else(
        self,
        block_id: int,
        condition: ast.Expr,
        true_target: int,
        false_target: int,
        join: int,
        region: _Region,
    ) -> IfNode:
        inner = replace(region, stop=join)
        then_branch = [] if true_target == join else self._build_block(true_target, inner)
        else_branch = [] if false_target == join else self._build_block(false_target, inner)
        if not then_branch and else_branch:
            condition = ast.negate(condition)
            then_branch, else_branch = else_branch, []
        return IfNode(condition, then_branch, else_branch, block_id)

    def _joins_inside(self, join: int, region: _Region) -> bool:
        # A join on the loop exit or the continue target is an early exit, not an if/else.
        if not self._in_region(join, region):
            return False
        return join == region.stop or self._exit_node(join, region) is None

    def _continue_early(self, node: IfNode, join: int, region: _Region) -> List[StructuredNode]:
        """Rewrite ``if c: <nothing> else: body`` before the loop advance as ``if c: continue``."""

        if region.loop is None or join != region.loop.continue_target:
            return [node]
        if _is_empty(node.then_branch) and node.else_branch and not _is_empty(node.else_branch):
            early = IfNode(node.condition, node.then_branch + [ContinueNode()], [], node.block_id)
            return [early, *node.else_branch]
        if _is_empty(node.else_branch) and node.else_branch and not _is_empty(node.then_branch):
            early = IfNode(ast.negate(node.condition), node.else_branch + [ContinueNode()], [], node.block_id)
            return [early, *node.then_branch]
        return [node]

    def _abrupt_exits(self, arm: int, region: _Region, other: int) -> Optional[Set[str]]:
        """How every forward path from ``arm`` leaves the region.

        Returns the exit kinds reached (``return``, ``break``, ``continue``),
        or ``None`` when some path falls through to ``other`` or the region
        stop instead.
        """

        if arm == other:
            return None
        cfg = self._cfg
        loop = region.loop
        exits: Set[str] = set()
        seen: Set[int] = set()
        worklist = [arm]
        while worklist:
            node = worklist.pop()
            if node in seen:
                continue
            seen.add(node)
            if node == region.stop or node == other:
                return None
            if node == cfg.exit:
                exits.add("return")
                continue
            if loop is not None and node == loop.exit:
                exits.add("break")
                continue
            if loop is not None and node == loop.continue_target:
                exits.add("continue")
                continue
            if region.allowed is not None and node not in region.allowed:
                return None
            if node in self._visited:
                return None
            successors = cfg.forward_successors(node)
            if not successors:
                # only a back edge leaves this block
                exits.add("continue")
            worklist.extend(successors)
        return exits

    # ------------------------------------------------------------------
    # match
    # ------------------------------------------------------------------

    @staticmethod
    def _match_subject(value: Optional[ast.Expr]) -> Optional[ast.Expr]:
        if not isinstance(value, ast.BinOp) or value.op != "EQ":
            return None
        if not isinstance(value.right, ast.Const) or isinstance(value.left, ast.Const):
            return None
        if not ast.is_pure(value.left):
            return None
        return value.left

    def _is_false_branch(self, block_id: int) -> bool:
        block = self._cfg.block(block_id)
        return self._cfg.instructions[block.end].flow == "branch_false"

    def _chain_test(self, candidate: int, previous: int, subject: ast.Expr, join: int, region: _Region) -> Optional[ast.Expr]:
        cfg = self._cfg
        if candidate in (join, cfg.exit) or candidate in self._visited or candidate in cfg.loops:
            return None
        if region.allowed is not None and candidate not in region.allowed:
            return None
        block = cfg.block(candidate)
        if block.terminator.kind != "cond" or block.predecessors != {previous}:
            return None
        if block.terminator.join != join or not self._is_false_branch(candidate):
            return None
        lifted = self._try_lift(candidate)
        if lifted is None or not lifted.is_pure_test or lifted.residue:
            return None
        if self._match_subject(lifted.value) != subject:
            return None
        return lifted.value.right

    def _try_match(
        self,
        block_id: int,
        lifted: LiftedBlock,
        join: Optional[int],
        region: _Region,
    ) -> Optional[MatchNode]:
        if not self.version.supports("match") or join is None:
            return None
        if not self._in_region(join, region):
            return None
        subject = self._match_subject(lifted.value)
        if subject is None or not self._is_false_branch(block_id):
            return None

        patterns: List[ast.Expr] = [lifted.value.right]
        starts: List[int] = [self._cfg.block(block_id).terminator.true_target]
        tests: List[int] = []
        current = block_id
        while True:
            candidate = self._cfg.block(current).terminator.false_target
            pattern = self._chain_test(candidate, current, subject, join, region)
            if pattern is None:
                break
            tests.append(candidate)
            patterns.append(pattern)
            starts.append(self._cfg.block(candidate).terminator.true_target)
            current = candidate
        if len(patterns) < self.options.match_min_cases:
            return None

        default_start = self._cfg.block(current).terminator.false_target
        self._visited.update(tests)
        inner = replace(region, stop=join)
        cases = [
            MatchCase(pattern, [] if start == join else self._build_block(start, inner))
            for pattern, start in zip(patterns, starts)
        ]
        default = None if default_start == join else self._build_block(default_start, inner)
        return MatchNode(
            subject=subject,
            cases=cases,
            default=default,
            tests=tuple(self._block_node(test) for test in tests),
            block_id=block_id,
        )

    # ------------------------------------------------------------------
    # loops
    # ------------------------------------------------------------------

    def _loop_exit(self, loop: LoopInfo) -> Optional[int]:
        cfg = self._cfg
        exits = sorted((node for node in loop.exits if node != cfg.exit), key=lambda node: cfg.block(node).start)
        if not exits:
            return cfg.exit if cfg.exit in loop.exits else None
        last_body = max(cfg.block(node).start for node in loop.body)
        for node in exits:
            if cfg.block(node).start > last_body:
                return node
        return exits[0]

    def _loop_blocks(self, loop: LoopInfo, exit_block: Optional[int]) -> FrozenSet[int]:
        """The loop body plus blocks only it reaches that leave early (``return``, ``break``)."""

        cfg = self._cfg
        owned = set(loop.body)
        changed = True
        while changed:
            changed = False
            frontier = {succ for node in owned for succ in cfg.forward_successors(node)} - owned
            for node in sorted(frontier):
                if node in (exit_block, cfg.exit) or node not in cfg.reachable or node in cfg.loops:
                    continue
                preds = {pred for pred in cfg.block(node).predecessors if pred in cfg.reachable}
                if preds <= owned:
                    owned.add(node)
                    changed = True
        return frozenset(owned)

    def _build_loop(self, loop: LoopInfo, region: _Region) -> Tuple[List[StructuredNode], Optional[int]]:
        cfg = self._cfg
        header_id = loop.header
        header = cfg.block(header_id)
        if not loop.reducible or any(cfg.block(latch).terminator.kind == "iter_next" for latch in loop.latches):
            LOG.debug("loop at block %d cannot be structured", header_id)
            return [self._raw(header_id, "irreducible loop")], None

        lifted = self._try_lift(header_id)
        terminator = header.terminator
        header_if = terminator.kind == "cond" and terminator.join is not None and terminator.join in loop.body
        if header_if:
            # The header's if/else rejoins inside the loop; the loop wraps it.
            LOG.debug("loop at block %d opens with an if/else", header_id)
        elif terminator.kind == "cond" and lifted is not None and not lifted.statements and not lifted.residue:
            true_target, false_target = terminator.true_target, terminator.false_target
            true_in, false_in = true_target in loop.body, false_target in loop.body
            if true_in != false_in:
                if true_in:
                    body_start, exit_block, condition = true_target, false_target, lifted.value
                else:
                    body_start, exit_block, condition = false_target, true_target, ast.negate(lifted.value)
                self._visited.add(header_id)
                inner = _Region(
                    allowed=self._loop_blocks(loop, exit_block),
                    loop=_LoopFrame(header_id, exit_block, header_id),
                    header=header_id,
                )
                body = [] if body_start == header_id else self._build_block(body_start, inner)
                node = WhileNode(condition, _strip_continue(body), header=self._block_node(header_id))
                return [node], exit_block

        exit_block = self._loop_exit(loop)
        inner = _Region(
            allowed=self._loop_blocks(loop, exit_block),
            loop=_LoopFrame(header_id, exit_block, header_id),
            header=header_id,
        )
        body = self._build_block(header_id, inner, entering=True)
        return [WhileNode(ast.BoolLit(True), _strip_continue(body))], exit_block

    def _for_latch(self, loop: Optional[LoopInfo], body: int, exit_block: int, inst: Instruction) -> Optional[int]:
        if loop is None or not loop.reducible or len(loop.latches) != 1:
            return None
        (latch,) = loop.latches
        block = self._cfg.block(latch)
        terminator = block.terminator
        if terminator.kind != "iter_next":
            return None
        if terminator.true_target != body or terminator.false_target != exit_block:
            return None
        advance = self._cfg.instructions[block.end]
        slots = (inst.operand("local", 0), inst.operand("local", 1))
        if (advance.operand("local", 0), advance.operand("local", 1)) != slots:
            return None
        return latch

    def _build_for(self, block_id: int, region: _Region) -> Tuple[List[StructuredNode], Optional[int]]:
        cfg = self._cfg
        block = cfg.block(block_id)
        begin = cfg.instructions[block.end]
        body_start = block.terminator.true_target
        exit_block = block.terminator.false_target
        loop = cfg.loops.get(body_start)
        latch = self._for_latch(loop, body_start, exit_block, begin)
        if latch is None or block_id in loop.body:
            LOG.debug("iterator loop at block %d has no matching advance", block_id)
            return [self._raw(block_id, "iterator loop without a matching advance")], None

        lifted = self._try_lift(block_id)
        latch_lifted = self._try_lift(latch)
        if lifted is None or latch_lifted is None:
            return [self._raw(block_id, "iterator setup could not be lifted")], None

        self._visited.update({block_id, latch})
        setup = self._block_node(block_id, lifted.statements)
        inner = _Region(
            stop=latch,
            allowed=self._loop_blocks(loop, exit_block),
            loop=_LoopFrame(body_start, exit_block, latch),
            header=body_start,
        )
        body = [] if body_start == latch else self._build_block(body_start, inner)
        latch_node = self._block_node(latch, latch_lifted.statements)
        node = ForNode(
            iterator=begin.operand("local", 0),
            variable=begin.operand("local", 1),
            iterable=lifted.value,
            body=_strip_continue(body),
            setup=setup,
            latch=latch_node,
        )
        return [node], exit_block

    # ------------------------------------------------------------------
    # leftovers and coverage
    # ------------------------------------------------------------------

    def _leftovers(self) -> List[StructuredNode]:
        nodes: List[StructuredNode] = []
        for block in self._cfg.real_blocks:
            if block.id in self._visited:
                continue
            reason = "unreachable" if block.id not in self._cfg.reachable else "unstructured"
            nodes.append(self._raw(block.id, reason))
        return nodes

    def _check_coverage(self, body: Sequence[StructuredNode]) -> None:
        index_for_offset = {inst.offset: index for index, inst in enumerate(self._cfg.instructions)}
        seen: Set[int] = set()
        for leaf in iter_leaves(body):
            for inst in leaf.instructions:
                if inst.offset in seen:
                    raise ReconstructError(
                        f"instruction 0x{inst.offset:04x} emitted twice",
                        self._cfg.block_for_instruction[index_for_offset[inst.offset]],
                        offset=inst.position,
                    )
                seen.add(inst.offset)
        for index, inst in enumerate(self._cfg.instructions):
            if inst.offset not in seen:
                raise ReconstructError(
                    f"instruction 0x{inst.offset:04x} missing from the structured tree",
                    self._cfg.block_for_instruction[index],
                    offset=inst.position,
                )


def _strip_continue(body: List[StructuredNode]) -> List[StructuredNode]:
    while body and isinstance(body[-1], ContinueNode):
        body.pop()
    return body


def _is_empty(nodes: Sequence[StructuredNode]) -> bool:
    return all(isinstance(node, BlockNode) and not node.statements for node in nodes)
