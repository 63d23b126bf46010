"""Control-flow graph construction for decoded functions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..exceptions import ReconstructError
from .disassembler import Instruction

__all__ = [
    "Edge",
    "Terminator",
    "BasicBlock",
    "LoopInfo",
    "CFG",
    "CFGBuilder",
]


@dataclass(frozen=True)
class Edge:
    """A possible transfer between two blocks.

    ``polarity`` is ``True``/``False`` for the taken/not-taken arm of a
    conditional transfer (for iterator instructions ``True`` means "has an
    element") and ``None`` for unconditional edges.
    """

    source: int
    target: int
    kind: str
    polarity: Optional[bool] = None


@dataclass
class Terminator:
    """Describes the terminating control-flow behaviour of a basic block."""

    kind: str
    instruction_index: Optional[int]
    true_target: Optional[int] = None
    false_target: Optional[int] = None
    target: Optional[int] = None
    join: Optional[int] = None


@dataclass
class BasicBlock:
    """A basic block in the reconstructed control-flow graph."""

    id: int
    start: int
    end: int
    instructions: List[int]
    successors: List[int] = field(default_factory=list)
    predecessors: Set[int] = field(default_factory=set)
    terminator: Optional[Terminator] = None
    linear_successor: Optional[int] = None
    dominators: Set[int] = field(default_factory=set)
    postdominators: Set[int] = field(default_factory=set)
    forward_postdominators: Set[int] = field(default_factory=set)
    edge_kinds: Dict[int, str] = field(default_factory=dict)
    virtual: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.instructions


@dataclass
class LoopInfo:
    """Metadata describing a natural loop discovered in the CFG."""

    header: int
    body: Set[int] = field(default_factory=set)
    latches: Set[int] = field(default_factory=set)
    exits: Set[int] = field(default_factory=set)
    reducible: bool = True
    back_edges: Set[Tuple[int, int]] = field(default_factory=set)

    def include_body(self, nodes: Iterable[int]) -> None:
        for node in nodes:
            self.body.add(node)

    def add_back_edge(self, tail: int, head: int) -> None:
        self.back_edges.add((tail, head))
        self.latches.add(tail)


@dataclass
class CFG:
    """Control-flow graph of one function.

    The last block is always a virtual, instruction-free exit block: return
    instructions, jumps to the end of the code stream and falling off the end
    all lead there.
    """

    blocks: List[BasicBlock]
    entry: int
    exit: int
    instructions: Sequence[Instruction]
    block_for_instruction: Dict[int, int]
    loops: Dict[int, LoopInfo]
    edges: List[Edge]
    reachable: Set[int]
    truncated: bool = False

    def block(self, block_id: int) -> BasicBlock:
        return self.blocks[block_id]

    @property
    def real_blocks(self) -> List[BasicBlock]:
        return [block for block in self.blocks if not block.virtual]

    @property
    def unreachable(self) -> List[int]:
        return [block.id for block in self.real_blocks if block.id not in self.reachable]

    def forward_successors(self, block_id: int) -> List[int]:
        block = self.blocks[block_id]
        return [succ for succ in block.successors if block.edge_kinds.get(succ) != "back"]

    def immediate_forward_postdominator(self, block_id: int) -> Optional[int]:
        """Return the nearest block every forward path from ``block_id`` reaches."""

        strict = self.blocks[block_id].forward_postdominators - {block_id}
        for candidate in strict:
            if self.blocks[candidate].forward_postdominators == strict:
                return candidate
        return None

    def instructions_of(self, block_id: int) -> List[Instruction]:
        return [self.instructions[index] for index in self.blocks[block_id].instructions]


class CFGBuilder:
    """Constructs a CFG with dominator, postdominator, and loop metadata."""

    def __init__(self, instructions: Sequence[Instruction], *, code_length: Optional[int] = None) -> None:
        self._instructions = list(instructions)
        if code_length is None:
            code_length = self._instructions[-1].end if self._instructions else 0
        self._code_length = code_length
        self._index_for_offset = {inst.offset: index for index, inst in enumerate(self._instructions)}
        self._decoded_end = self._instructions[-1].end if self._instructions else 0
        self._truncated = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build(self) -> CFG:
        block_starts = self._collect_block_starts()
        blocks, block_for_instruction = self._create_blocks(block_starts)
        edges = self._link_successors(blocks, block_for_instruction)
        reachable = self._compute_reachable(blocks)
        self._compute_dominators(blocks, reachable)
        self._classify_edges(blocks, reachable)
        self._compute_postdominators(blocks, reachable, attr="postdominators", forward=False)
        self._compute_postdominators(blocks, reachable, attr="forward_postdominators", forward=True)
        loops = self._discover_loops(blocks, reachable)
        exit_id = len(blocks) - 1
        cfg = CFG(
            blocks=blocks,
            entry=0,
            exit=exit_id,
            instructions=self._instructions,
            block_for_instruction=block_for_instruction,
            loops=loops,
            edges=edges,
            reachable=reachable,
            truncated=self._truncated,
        )
        self._compute_join_points(cfg)
        return cfg

    # ------------------------------------------------------------------
    # Block construction helpers
    # ------------------------------------------------------------------

    def _resolve_target(self, index: int, target: int) -> Optional[int]:
        """Map a jump target offset to an instruction index; ``None`` means exit."""

        if target in self._index_for_offset:
            return self._index_for_offset[target]
        if target == self._code_length:
            return None
        if target >= self._decoded_end and self._decoded_end < self._code_length:
            # Jump into the part of a partially decoded stream we never read.
            self._truncated = True
            return None
        raise ReconstructError(
            f"jump target {target} of instruction at 0x{self._instructions[index].offset:04x} "
            "is not an instruction boundary",
            0,
            offset=self._instructions[index].position,
        )

    def _collect_block_starts(self) -> List[int]:
        block_starts: Set[int] = {0} if self._instructions else set()
        for index, inst in enumerate(self._instructions):
            next_index = index + 1
            if inst.is_branch:
                target = inst.target
                if target is not None:
                    resolved = self._resolve_target(index, target)
                    if resolved is not None:
                        block_starts.add(resolved)
                if next_index < len(self._instructions):
                    block_starts.add(next_index)
        return sorted(block_starts)

    def _create_blocks(self, block_starts: Sequence[int]) -> Tuple[List[BasicBlock], Dict[int, int]]:
        block_for_instruction: Dict[int, int] = {}
        blocks: List[BasicBlock] = []
        for block_id, start in enumerate(block_starts):
            if block_id + 1 < len(block_starts):
                end = block_starts[block_id + 1] - 1
            else:
                end = len(self._instructions) - 1
            instructions = list(range(start, end + 1))
            for idx in instructions:
                block_for_instruction[idx] = block_id
            blocks.append(
                BasicBlock(
                    id=block_id,
                    start=start,
                    end=end,
                    instructions=instructions,
                    linear_successor=block_id + 1,
                )
            )
        exit_id = len(blocks)
        blocks.append(
            BasicBlock(
                id=exit_id,
                start=len(self._instructions),
                end=len(self._instructions) - 1,
                instructions=[],
                virtual=True,
            )
        )
        return blocks, block_for_instruction

    def _link_successors(self, blocks: List[BasicBlock], block_for_instruction: Dict[int, int]) -> List[Edge]:
        exit_id = len(blocks) - 1
        edges: List[Edge] = []

        def block_of(index: int, target: int) -> int:
            resolved = self._resolve_target(index, target)
            return exit_id if resolved is None else block_for_instruction[resolved]

        for block in blocks[:-1]:
            last = self._instructions[block.end]
            fallthrough = block.linear_successor if block.linear_successor is not None else exit_id
            flow = last.flow
            if flow == "jump":
                target = block_of(block.end, last.target)
                block.terminator = Terminator("jump", block.end, target=target)
                edges.append(Edge(block.id, target, "jump"))
            elif flow in ("branch_true", "branch_false"):
                taken = block_of(block.end, last.target)
                if flow == "branch_true":
                    true_target, false_target = taken, fallthrough
                else:
                    true_target, false_target = fallthrough, taken
                block.terminator = Terminator("cond", block.end, true_target=true_target, false_target=false_target)
                edges.append(Edge(block.id, true_target, "branch", True))
                edges.append(Edge(block.id, false_target, "branch", False))
            elif flow == "iter_begin":
                exit_target = block_of(block.end, last.target)
                block.terminator = Terminator(
                    "iter_begin", block.end, true_target=fallthrough, false_target=exit_target
                )
                edges.append(Edge(block.id, fallthrough, "iter_body", True))
                edges.append(Edge(block.id, exit_target, "iter_exit", False))
            elif flow == "iter_next":
                body = block_of(block.end, last.target)
                block.terminator = Terminator("iter_next", block.end, true_target=body, false_target=fallthrough)
                edges.append(Edge(block.id, body, "iter_body", True))
                edges.append(Edge(block.id, fallthrough, "iter_exit", False))
            elif flow == "return":
                block.terminator = Terminator("return", block.end, target=exit_id)
                edges.append(Edge(block.id, exit_id, "return"))
            else:
                block.terminator = Terminator("fallthrough", block.end, target=fallthrough)
                edges.append(Edge(block.id, fallthrough, "fallthrough"))

        blocks[-1].terminator = Terminator("exit", None)
        for edge in edges:
            source = blocks[edge.source]
            if edge.target not in source.successors:
                source.successors.append(edge.target)
            blocks[edge.target].predecessors.add(edge.source)
        return edges

    def _compute_reachable(self, blocks: List[BasicBlock]) -> Set[int]:
        if len(blocks) == 1:
            return {0}
        reachable: Set[int] = set()
        worklist = [0]
        while worklist:
            node = worklist.pop()
            if node in reachable:
                continue
            reachable.add(node)
            worklist.extend(blocks[node].successors)
        # The exit is reachable by definition; functions may loop forever.
        reachable.add(len(blocks) - 1)
        return reachable

    # ------------------------------------------------------------------
    # Dominator and postdominator computation
    # ------------------------------------------------------------------

    def _compute_dominators(self, blocks: List[BasicBlock], reachable: Set[int]) -> None:
        nodes = sorted(reachable)
        universe = set(nodes)
        for node in nodes:
            blocks[node].dominators = set(universe)
        blocks[0].dominators = {0}
        changed = True
        while changed:
            changed = False
            for node in nodes:
                if node == 0:
                    continue
                block = blocks[node]
                preds = [pred for pred in block.predecessors if pred in reachable]
                if not preds:
                    new_dom = {node}
                else:
                    intersection = set(universe)
                    for pred in preds:
                        intersection &= blocks[pred].dominators
                    new_dom = {node} | intersection
                if new_dom != block.dominators:
                    block.dominators = new_dom
                    changed = True

    def _classify_edges(self, blocks: List[BasicBlock], reachable: Set[int]) -> None:
        for block in blocks:
            for succ in block.successors:
                if block.id not in reachable:
                    kind = "unreachable"
                elif succ in block.dominators:
                    kind = "back"
                elif block.id in blocks[succ].dominators:
                    kind = "forward"
                elif blocks[succ].start <= block.start and not blocks[succ].virtual:
                    kind = "retreating"
                else:
                    kind = "cross"
                block.edge_kinds[succ] = kind

    def _compute_postdominators(
        self,
        blocks: List[BasicBlock],
        reachable: Set[int],
        *,
        attr: str,
        forward: bool,
    ) -> None:
        exit_id = len(blocks) - 1
        nodes = sorted(reachable)
        universe = set(nodes)

        def successors(node: int) -> List[int]:
            block = blocks[node]
            if forward:
                return [succ for succ in block.successors if block.edge_kinds.get(succ) not in ("back", "retreating")]
            return list(block.successors)

        for node in nodes:
            setattr(blocks[node], attr, set(universe))
        setattr(blocks[exit_id], attr, {exit_id})
        sinks = {node for node in nodes if node != exit_id and not successors(node)}
        for node in sinks:
            setattr(blocks[node], attr, {node})
        changed = True
        while changed:
            changed = False
            for node in reversed(nodes):
                if node == exit_id or node in sinks:
                    continue
                intersection = set(universe)
                for succ in successors(node):
                    intersection &= getattr(blocks[succ], attr)
                new_postdom = {node} | intersection
                if new_postdom != getattr(blocks[node], attr):
                    setattr(blocks[node], attr, new_postdom)
                    changed = True

        # Nodes that never reach a sink (endless loops) keep the universal set.
        for node in nodes:
            if getattr(blocks[node], attr) == universe and node != exit_id and len(universe) > 1:
                setattr(blocks[node], attr, {node})
        for block in blocks:
            if block.id not in reachable:
                setattr(block, attr, {block.id})

    # ------------------------------------------------------------------
    # Loop discovery
    # ------------------------------------------------------------------

    def _discover_loops(self, blocks: List[BasicBlock], reachable: Set[int]) -> Dict[int, LoopInfo]:
        loops: Dict[int, LoopInfo] = {}
        for block in blocks:
            if block.id not in reachable:
                continue
            for succ in block.successors:
                if block.edge_kinds.get(succ) == "back":
                    loop = loops.setdefault(succ, LoopInfo(header=succ))
                    loop.add_back_edge(block.id, succ)
                    loop.include_body(self._collect_natural_loop(blocks, succ, block.id, reachable))
                elif block.edge_kinds.get(succ) == "retreating":
                    # Target does not dominate the source: irreducible region.
                    loop = loops.setdefault(succ, LoopInfo(header=succ))
                    loop.add_back_edge(block.id, succ)
                    loop.include_body(self._collect_natural_loop(blocks, succ, block.id, reachable))
                    loop.reducible = False
        for loop in loops.values():
            loop.body.add(loop.header)
            for node in loop.body:
                if loop.header not in blocks[node].dominators:
                    loop.reducible = False
                for succ in blocks[node].successors:
                    if succ not in loop.body:
                        loop.exits.add(succ)
        return loops

    def _collect_natural_loop(
        self, blocks: Sequence[BasicBlock], header: int, latch: int, reachable: Set[int]
    ) -> Set[int]:
        body: Set[int] = {header, latch}
        worklist = [latch]
        while worklist:
            node = worklist.pop()
            if node == header:
                continue
            for pred in blocks[node].predecessors:
                if pred not in body and pred in reachable:
                    body.add(pred)
                    worklist.append(pred)
        return body

    def _compute_join_points(self, cfg: CFG) -> None:
        for block in cfg.blocks:
            terminator = block.terminator
            if terminator is None or terminator.kind != "cond" or block.id not in cfg.reachable:
                continue
            terminator.join = cfg.immediate_forward_postdominator(block.id)
