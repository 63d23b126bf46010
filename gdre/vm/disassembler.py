"""Instruction decoder for compiled script payloads.

Decoding is driven entirely by a :class:`~gdre.versions.BytecodeVersion`:
operand counts and widths come from the version's opcode table, so
instruction boundaries are always computed arithmetically and never guessed.
Every read is bounds-checked; the first field that cannot be read or
validated produces a :class:`~gdre.exceptions.DecodeError` carrying its
payload offset, and the instructions decoded up to that point are kept on
the function record (flagged incomplete) for diagnostics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ..exceptions import DecodeError
from ..io.binary import ByteReader
from ..io.container import RawScriptBinary
from ..versions import BytecodeVersion, OpSpec

LOGGER = logging.getLogger(__name__)

FLAG_LOCAL_NAMES = 0x01
FLAG_STATIC = 0x02


# ---------------------------------------------------------------------------
# Constant pool
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Constant:
    """One literal from a function's constant pool."""

    kind: str
    value: Any = None

    def as_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "value": self.value}


class ConstantPool(Sequence[Constant]):
    """Read-only, index addressed table of :class:`Constant` values."""

    __slots__ = ("_items",)

    def __init__(self, items: Sequence[Constant] = ()) -> None:
        self._items: Tuple[Constant, ...] = tuple(items)

    def __getitem__(self, index):  # type: ignore[override]
        return self._items[index]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Constant]:
        return iter(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ConstantPool):
            return self._items == other._items
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._items)

    def __repr__(self) -> str:
        return f"ConstantPool({list(self._items)!r})"

    def string(self, index: int) -> str:
        """Return the string constant at ``index`` (used for identifiers)."""

        constant = self._items[index]
        if constant.kind != "string":
            raise TypeError(f"constant {index} is a {constant.kind}, not a string")
        return constant.value

    @classmethod
    def of(cls, *values: Any) -> "ConstantPool":
        """Build a pool from plain Python values (strings, numbers, ``None``)."""

        items: List[Constant] = []
        for value in values:
            if isinstance(value, Constant):
                items.append(value)
            elif value is None:
                items.append(Constant("nil"))
            elif isinstance(value, bool):
                items.append(Constant("bool", value))
            elif isinstance(value, int):
                items.append(Constant("int", value))
            elif isinstance(value, float):
                items.append(Constant("float", value))
            elif isinstance(value, str):
                items.append(Constant("string", value))
            else:
                raise TypeError(f"cannot store {value!r} in a constant pool")
        return cls(items)

    def as_list(self) -> List[Dict[str, Any]]:
        return [constant.as_dict() for constant in self._items]


# ---------------------------------------------------------------------------
# Decoded records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FunctionHeader:
    """Per-function metadata preceding the constant pool."""

    index: int
    name: str
    argument_count: int
    local_count: int
    stack_size: int
    is_static: bool = False
    local_names: Tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.name or f"func_{self.index}"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.display_name,
            "argument_count": self.argument_count,
            "local_count": self.local_count,
            "stack_size": self.stack_size,
            "static": self.is_static,
            "local_names": list(self.local_names),
        }


@dataclass(frozen=True)
class Instruction:
    """Represents one decoded instruction.

    ``offset`` is relative to the start of the function's code stream (jump
    operands use the same coordinates); ``position`` is the absolute payload
    offset of the opcode byte.
    """

    offset: int
    opcode: int
    mnemonic: str
    operands: Tuple[int, ...]
    kinds: Tuple[str, ...]
    size: int
    stack_delta: int
    flow: str = "next"
    line: Optional[int] = None
    position: int = 0

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def target(self) -> Optional[int]:
        """Jump target in code coordinates, if the instruction has one."""

        if "jump" not in self.kinds:
            return None
        return self.operands[self.kinds.index("jump")]

    @property
    def is_branch(self) -> bool:
        return self.flow != "next"

    @property
    def is_conditional(self) -> bool:
        return self.flow in {"branch_true", "branch_false", "iter_begin", "iter_next"}

    def operand(self, kind: str, nth: int = 0) -> int:
        """Return the ``nth`` operand of ``kind`` (``ITER_*`` carry two locals)."""

        seen = 0
        for value, candidate in zip(self.operands, self.kinds):
            if candidate == kind:
                if seen == nth:
                    return value
                seen += 1
        raise KeyError(f"{self.mnemonic} has no operand {kind}#{nth}")

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "offset": self.offset,
            "opcode": self.opcode,
            "mnemonic": self.mnemonic,
            "operands": list(self.operands),
            "size": self.size,
            "stack_delta": self.stack_delta,
        }
        if self.line is not None:
            data["line"] = self.line
        return data


@dataclass
class DecodedFunction:
    """Decoded function record; ``error`` is set when decoding stopped early."""

    header: FunctionHeader
    constants: ConstantPool
    instructions: List[Instruction]
    code_offset: int
    code_length: int
    lines: Tuple[Tuple[int, int], ...] = ()
    error: Optional[DecodeError] = None

    @property
    def complete(self) -> bool:
        return self.error is None

    @property
    def name(self) -> str:
        return self.header.display_name

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "header": self.header.as_dict(),
            "constants": self.constants.as_list(),
            "instructions": [inst.as_dict() for inst in self.instructions],
            "code_offset": self.code_offset,
            "code_length": self.code_length,
            "complete": self.complete,
        }
        if self.error is not None:
            data["error"] = self.error.as_dict()
        return data


@dataclass
class DecodedUnit:
    """All functions decoded from one compiled script."""

    version: BytecodeVersion
    extends: str = ""
    class_name: str = ""
    function_count: int = 0
    functions: List[DecodedFunction] = field(default_factory=list)
    error: Optional[DecodeError] = None

    @property
    def complete(self) -> bool:
        return self.error is None and all(function.complete for function in self.functions)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "version": self.version.version_id,
            "extends": self.extends,
            "class_name": self.class_name,
            "function_count": self.function_count,
            "functions": [function.as_dict() for function in self.functions],
            "complete": self.complete,
        }
        if self.error is not None:
            data["error"] = self.error.as_dict()
        return data


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------


class Disassembler:
    """Decode payloads according to a :class:`BytecodeVersion`."""

    def __init__(self, version: BytecodeVersion) -> None:
        self.version = version
        self._widths = version.operand_widths

    # -- unit -------------------------------------------------------------
    def decode_unit(
        self,
        payload: bytes | RawScriptBinary,
        *,
        prefix_limit: Optional[int] = None,
        max_functions: Optional[int] = None,
    ) -> DecodedUnit:
        """Decode every function record in ``payload``.

        ``prefix_limit`` caps how many code bytes are decoded per function and
        ``max_functions`` how many records are visited; both exist so version
        probing stays bounded on hostile input.
        """

        if isinstance(payload, RawScriptBinary):
            payload = payload.payload
        reader = ByteReader(payload)
        unit = DecodedUnit(version=self.version)
        try:
            unit.function_count = reader.read_uint(self._widths["count"], "function count")
            unit.extends = reader.read_string("extends clause")
            if self.version.supports("class_name"):
                unit.class_name = reader.read_string("class name")
        except DecodeError as exc:
            unit.error = exc
            return unit

        limit = unit.function_count if max_functions is None else min(unit.function_count, max_functions)
        for index in range(limit):
            start = reader.offset
            try:
                function = self._decode_function(
                    reader,
                    payload,
                    index,
                    unit.function_count,
                    prefix_limit=prefix_limit,
                )
            except DecodeError as exc:
                LOGGER.debug("function %d framing broken at 0x%04x: %s", index, exc.offset or start, exc)
                unit.error = exc
                break
            unit.functions.append(function)
            if function.error is not None:
                LOGGER.debug("function %s decoded partially: %s", function.name, function.error)
                if reader.offset < function.code_offset + function.code_length:
                    # Code stream ran past the buffer; later records are unreachable.
                    unit.error = function.error or DecodeError("truncated code stream", len(payload))
                    break
        if unit.error is None and max_functions is None and prefix_limit is None and not reader.at_end():
            unit.error = DecodeError(f"{reader.remaining} trailing bytes after last function", reader.offset)
        return unit

    # -- function ---------------------------------------------------------
    def _decode_function(
        self,
        reader: ByteReader,
        payload: bytes,
        index: int,
        function_count: int,
        *,
        prefix_limit: Optional[int] = None,
    ) -> DecodedFunction:
        widths = self._widths
        name = reader.read_string("function name")
        arg_offset = reader.offset
        argument_count = reader.read_uint(1, "argument count")
        local_count = reader.read_uint(widths["local"], "local count")
        if argument_count > local_count:
            raise DecodeError(
                f"argument count {argument_count} exceeds local count {local_count}", arg_offset
            )
        stack_size = reader.read_uint(widths["count"], "stack size")
        flags_offset = reader.offset
        flags = reader.read_uint(1, "function flags")
        if flags & ~(FLAG_LOCAL_NAMES | FLAG_STATIC):
            raise DecodeError(f"unknown function flags 0x{flags:02x}", flags_offset)
        local_names: Tuple[str, ...] = ()
        if flags & FLAG_LOCAL_NAMES:
            local_names = tuple(reader.read_string("local name") for _ in range(local_count))
        header = FunctionHeader(
            index=index,
            name=name,
            argument_count=argument_count,
            local_count=local_count,
            stack_size=stack_size,
            is_static=bool(flags & FLAG_STATIC),
            local_names=local_names,
        )
        constants = self._decode_constants(reader, function_count)
        code_length = reader.read_uint(4, "code length")
        code_offset = reader.offset

        function = DecodedFunction(
            header=header,
            constants=constants,
            instructions=[],
            code_offset=code_offset,
            code_length=code_length,
        )
        try:
            function.instructions = self.decode_instructions(
                payload,
                code_offset,
                code_length,
                header=header,
                constants=constants,
                prefix_limit=prefix_limit,
            )
        except DecodeError as exc:
            function.instructions = list(exc.partial)
            function.error = exc
        if code_offset + code_length > len(payload):
            reader.offset = len(payload)
            return function
        reader.offset = code_offset + code_length
        if self.version.line_width:
            function.lines = self._decode_lines(reader, function)
            if function.error is None and function.lines:
                function.instructions = _apply_lines(function.instructions, function.lines)
        return function

    def _decode_constants(self, reader: ByteReader, function_count: int) -> ConstantPool:
        encoding = self.version.constants
        count = reader.read_uint(self._widths["const"], "constant count")
        items: List[Constant] = []
        for _ in range(count):
            start = reader.offset
            tag = reader.read_uint(1, "constant tag")
            kind = encoding.kind_for_tag(tag)
            if kind is None:
                raise DecodeError(f"unknown constant tag {tag}", start)
            if kind == "nil":
                items.append(Constant("nil"))
            elif kind == "bool":
                value_offset = reader.offset
                raw = reader.read_uint(1, "bool constant")
                if raw > 1:
                    raise DecodeError(f"invalid bool constant {raw}", value_offset)
                items.append(Constant("bool", bool(raw)))
            elif kind == "int":
                items.append(Constant("int", reader.read_int(encoding.int_width, "int constant")))
            elif kind == "float":
                items.append(Constant("float", reader.read_float(encoding.float_width, "float constant")))
            elif kind in ("string", "resource"):
                items.append(Constant(kind, reader.read_string(f"{kind} constant")))
            else:
                ref_offset = reader.offset
                ref = reader.read_uint(2, "sub-script reference")
                if ref >= function_count:
                    raise DecodeError(f"sub-script reference {ref} out of range", ref_offset)
                items.append(Constant("subscript", ref))
        return ConstantPool(items)

    def _decode_lines(self, reader: ByteReader, function: DecodedFunction) -> Tuple[Tuple[int, int], ...]:
        count = reader.read_uint(self._widths["count"], "line table size")
        boundaries = {inst.offset for inst in function.instructions}
        entries: List[Tuple[int, int]] = []
        for _ in range(count):
            entry_offset = reader.offset
            offset = reader.read_uint(self._widths["jump"], "line table offset")
            line = reader.read_uint(self.version.line_width, "line number")
            if function.error is None and offset not in boundaries:
                raise DecodeError(f"line table offset {offset} is not an instruction boundary", entry_offset)
            entries.append((offset, line))
        return tuple(entries)

    # -- instructions -----------------------------------------------------
    def decode_instructions(
        self,
        data: bytes,
        start: int,
        length: int,
        *,
        header: FunctionHeader,
        constants: ConstantPool,
        prefix_limit: Optional[int] = None,
    ) -> List[Instruction]:
        """Decode the code stream ``data[start:start + length]``.

        Raises :class:`DecodeError` with the instructions decoded so far as
        ``partial``.
        """

        version = self.version
        widths = self._widths
        code_end = start + length
        stop = code_end if prefix_limit is None else min(code_end, start + prefix_limit)
        reader = ByteReader(data, offset=start)
        instructions: List[Instruction] = []
        jump_sites: List[Tuple[int, int, int]] = []

        while reader.offset < stop:
            position = reader.offset
            try:
                opcode = reader.read_uint(widths["opcode"], "opcode", limit=code_end)
                spec = version.spec_for(opcode)
                if spec is None:
                    raise DecodeError(f"unknown opcode {opcode}", position)
                values: List[int] = []
                for kind in spec.operands:
                    operand_offset = reader.offset
                    value = reader.read_uint(widths[kind], f"{kind} operand of {spec.mnemonic}", limit=code_end)
                    self._check_operand(spec, kind, value, operand_offset, header, constants)
                    if kind == "jump":
                        jump_sites.append((len(instructions), value, operand_offset))
                    values.append(value)
            except DecodeError as exc:
                offset = exc.offset if exc.offset is not None else position
                raise DecodeError(exc.reason, offset, partial=instructions) from None
            instructions.append(
                Instruction(
                    offset=position - start,
                    opcode=opcode,
                    mnemonic=spec.mnemonic,
                    operands=tuple(values),
                    kinds=spec.operands,
                    size=reader.offset - position,
                    stack_delta=spec.stack_delta(values),
                    flow=spec.flow,
                    position=position,
                )
            )

        if prefix_limit is not None and stop < code_end:
            return instructions
        boundaries = {inst.offset for inst in instructions}
        boundaries.add(length)
        for index, target, operand_offset in jump_sites:
            if target not in boundaries:
                raise DecodeError(
                    f"jump target {target} is not an instruction boundary",
                    operand_offset,
                    partial=instructions[:index],
                )
        return instructions

    def _check_operand(
        self,
        spec: OpSpec,
        kind: str,
        value: int,
        offset: int,
        header: FunctionHeader,
        constants: ConstantPool,
    ) -> None:
        if kind == "const":
            if value >= len(constants):
                raise DecodeError(f"constant index {value} out of range ({len(constants)} constants)", offset)
        elif kind == "name":
            if value >= len(constants):
                raise DecodeError(f"name index {value} out of range ({len(constants)} constants)", offset)
            if constants[value].kind != "string":
                raise DecodeError(f"name index {value} does not reference a string", offset)
        elif kind == "local":
            if value >= header.local_count:
                raise DecodeError(f"local slot {value} out of range ({header.local_count} locals)", offset)
        elif kind == "builtin":
            if value >= len(self.version.builtins):
                raise DecodeError(
                    f"builtin index {value} out of range ({len(self.version.builtins)} builtins)", offset
                )


def _apply_lines(instructions: Sequence[Instruction], lines: Sequence[Tuple[int, int]]) -> List[Instruction]:
    ordered = sorted(lines)
    result: List[Instruction] = []
    cursor = 0
    current: Optional[int] = None
    for inst in instructions:
        while cursor < len(ordered) and ordered[cursor][0] <= inst.offset:
            current = ordered[cursor][1]
            cursor += 1
        result.append(replace(inst, line=current) if current is not None else inst)
    return result


def decode(raw: RawScriptBinary | bytes, version: BytecodeVersion) -> DecodedUnit:
    """Decode ``raw`` with ``version``; errors are recorded on the result."""

    return Disassembler(version).decode_unit(raw)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


def describe_operand(
    kind: str,
    value: int,
    constants: ConstantPool,
    version: BytecodeVersion,
) -> str:
    if kind in ("const", "name") and value < len(constants):
        constant = constants[value]
        if kind == "name":
            return f"{value} ({constant.value})"
        return f"{value} ({constant.kind}:{constant.value!r})"
    if kind == "builtin":
        return f"{value} ({version.builtin_name(value)})"
    if kind == "jump":
        return f"-> {value:04x}"
    if kind == "local":
        return f"local{value}"
    return str(value)


def format_listing(unit: DecodedUnit) -> str:
    """Return a human readable listing of ``unit``."""

    version = unit.version
    lines = [f"; bytecode {version.version_id} ({version.release}), {unit.function_count} function(s)"]
    if unit.extends:
        lines.append(f"; extends {unit.extends}")
    if unit.class_name:
        lines.append(f"; class_name {unit.class_name}")
    for function in unit.functions:
        header = function.header
        lines.append("")
        lines.append(
            f"func {header.display_name} args={header.argument_count} locals={header.local_count} "
            f"stack={header.stack_size}"
        )
        for index, constant in enumerate(function.constants):
            lines.append(f"  .const {index} {constant.kind} {constant.value!r}")
        for inst in function.instructions:
            operands = ", ".join(
                describe_operand(kind, value, function.constants, version)
                for kind, value in zip(inst.kinds, inst.operands)
            )
            line = f"  {inst.offset:04x}  {inst.mnemonic:<14} {operands}".rstrip()
            if inst.line is not None:
                line += f"    ; line {inst.line}"
            lines.append(line)
        if function.error is not None:
            lines.append(f"  ; incomplete: {function.error}")
    if unit.error is not None:
        lines.append("")
        lines.append(f"; unit error: {unit.error}")
    return "\n".join(lines) + "\n"


__all__ = [
    "Constant",
    "ConstantPool",
    "DecodedFunction",
    "DecodedUnit",
    "Disassembler",
    "FunctionHeader",
    "Instruction",
    "decode",
    "describe_operand",
    "format_listing",
]
