"""Encode functions and units with a version's encoding rules.

The assembler is the inverse of :mod:`gdre.vm.disassembler`: re-encoding a
decoded unit reproduces the original payload byte for byte.  It also offers
:class:`FunctionBuilder`, a small label-aware helper used to produce
fixtures for a specific bytecode version.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..io.binary import ByteWriter
from ..io.container import RawScriptBinary
from ..versions import BytecodeVersion
from .disassembler import (
    FLAG_LOCAL_NAMES,
    FLAG_STATIC,
    Constant,
    ConstantPool,
    DecodedFunction,
    DecodedUnit,
    FunctionHeader,
    Instruction,
)


@dataclass(frozen=True)
class Label:
    """Symbolic jump target resolved when a :class:`FunctionBuilder` is built."""

    name: str


Operand = Union[int, Label]


@dataclass
class FunctionRecord:
    """A function ready to be written into a unit payload."""

    header: FunctionHeader
    constants: ConstantPool
    code: bytes
    lines: Tuple[Tuple[int, int], ...] = ()


class Assembler:
    """Write payload structures for ``version``."""

    def __init__(self, version: BytecodeVersion) -> None:
        self.version = version
        self._widths = version.operand_widths

    # -- instructions -----------------------------------------------------
    def encode_instruction(self, mnemonic: str, operands: Sequence[int] = ()) -> bytes:
        opcode = self.version.opcode_for(mnemonic)
        spec = self.version.opcodes[opcode]
        if len(operands) != len(spec.operands):
            raise ValueError(f"{mnemonic} takes {len(spec.operands)} operand(s), got {len(operands)}")
        writer = ByteWriter()
        writer.write_uint(opcode, self._widths["opcode"])
        for kind, value in zip(spec.operands, operands):
            writer.write_uint(value, self._widths[kind])
        return writer.getvalue()

    def encode_instructions(self, instructions: Sequence[Instruction]) -> bytes:
        return b"".join(self.encode_instruction(inst.mnemonic, inst.operands) for inst in instructions)

    def instruction_size(self, mnemonic: str) -> int:
        return self.version.instruction_size(self.version.opcodes[self.version.opcode_for(mnemonic)])

    # -- constants ----------------------------------------------------------
    def _write_constant(self, writer: ByteWriter, constant: Constant) -> None:
        encoding = self.version.constants
        writer.write_uint(encoding.tags[constant.kind], 1)
        if constant.kind == "nil":
            return
        if constant.kind == "bool":
            writer.write_uint(1 if constant.value else 0, 1)
        elif constant.kind == "int":
            writer.write_int(constant.value, encoding.int_width)
        elif constant.kind == "float":
            writer.write_float(constant.value, encoding.float_width)
        elif constant.kind in ("string", "resource"):
            writer.write_string(constant.value)
        elif constant.kind == "subscript":
            writer.write_uint(constant.value, 2)
        else:
            raise ValueError(f"unknown constant kind {constant.kind!r}")

    # -- functions ----------------------------------------------------------
    def encode_function(self, record: FunctionRecord) -> bytes:
        header = record.header
        widths = self._widths
        writer = ByteWriter()
        writer.write_string(header.name)
        writer.write_uint(header.argument_count, 1)
        writer.write_uint(header.local_count, widths["local"])
        writer.write_uint(header.stack_size, widths["count"])
        flags = (FLAG_LOCAL_NAMES if header.local_names else 0) | (FLAG_STATIC if header.is_static else 0)
        writer.write_uint(flags, 1)
        if header.local_names:
            if len(header.local_names) != header.local_count:
                raise ValueError("local name table must cover every local slot")
            for name in header.local_names:
                writer.write_string(name)
        writer.write_uint(len(record.constants), widths["const"])
        for constant in record.constants:
            self._write_constant(writer, constant)
        writer.write_uint(len(record.code), 4)
        writer.write_bytes(record.code)
        if self.version.line_width:
            writer.write_uint(len(record.lines), widths["count"])
            for offset, line in record.lines:
                writer.write_uint(offset, widths["jump"])
                writer.write_uint(line, self.version.line_width)
        return writer.getvalue()

    def record_from_decoded(self, function: DecodedFunction) -> FunctionRecord:
        return FunctionRecord(
            header=function.header,
            constants=function.constants,
            code=self.encode_instructions(function.instructions),
            lines=function.lines,
        )

    # -- units ----------------------------------------------------------------
    def encode_unit(
        self,
        functions: Sequence[FunctionRecord],
        *,
        extends: str = "",
        class_name: str = "",
    ) -> bytes:
        writer = ByteWriter()
        writer.write_uint(len(functions), self._widths["count"])
        writer.write_string(extends)
        if self.version.supports("class_name"):
            writer.write_string(class_name)
        elif class_name:
            raise ValueError(f"{self.version.version_id} cannot record a class name")
        for record in functions:
            writer.write_bytes(self.encode_function(record))
        return writer.getvalue()

    def reencode(self, unit: DecodedUnit) -> bytes:
        """Re-encode a decoded unit; the inverse of ``Disassembler.decode_unit``."""

        if not unit.complete:
            raise ValueError("cannot re-encode an incomplete unit")
        records = [self.record_from_decoded(function) for function in unit.functions]
        return self.encode_unit(records, extends=unit.extends, class_name=unit.class_name)

    def build_binary(
        self,
        functions: Sequence[FunctionRecord],
        *,
        extends: str = "",
        class_name: str = "",
        name: str = "<script>",
    ) -> RawScriptBinary:
        return RawScriptBinary(
            version_tag=self.version.tag.encode("ascii"),
            payload=self.encode_unit(functions, extends=extends, class_name=class_name),
            format_version=self.version.bytecode_format,
            name=name,
        )


class FunctionBuilder:
    """Assemble one function by mnemonic.

    Jump operands may be :class:`Label` objects created with :meth:`label`;
    instruction sizes are fixed per opcode so labels resolve in one pass::

        fb = FunctionBuilder(version, "get_answer")
        fb.emit("LOAD_CONST", fb.const(42))
        fb.emit("RETURN")
    """

    def __init__(
        self,
        version: BytecodeVersion,
        name: str = "",
        *,
        arguments: int = 0,
        locals: int = 0,
        local_names: Sequence[str] = (),
        static: bool = False,
        index: int = 0,
    ) -> None:
        self.version = version
        self.name = name
        self.arguments = arguments
        self.locals = max(locals, arguments, len(local_names))
        self.local_names = tuple(local_names)
        self.static = static
        self.index = index
        self._assembler = Assembler(version)
        self._constants: List[Constant] = []
        self._items: List[Tuple[str, Tuple[Operand, ...], Optional[int]]] = []
        self._labels: Dict[str, int] = {}
        self._size = 0

    @property
    def offset(self) -> int:
        """Code offset of the next emitted instruction."""

        return self._size

    def constant(self, constant: Constant) -> int:
        if constant in self._constants:
            return self._constants.index(constant)
        self._constants.append(constant)
        return len(self._constants) - 1

    def const(self, value: Any) -> int:
        """Return the pool index for a plain Python literal."""

        return self.constant(ConstantPool.of(value)[0])

    def name_ref(self, identifier: str) -> int:
        return self.constant(Constant("string", identifier))

    def resource(self, path: str) -> int:
        return self.constant(Constant("resource", path))

    def subscript(self, function_index: int) -> int:
        return self.constant(Constant("subscript", function_index))

    def builtin(self, name: str) -> int:
        return self.version.builtin_index(name)

    def local(self, slot: int) -> int:
        self.locals = max(self.locals, slot + 1)
        return slot

    def label(self, name: str) -> Label:
        if name in self._labels:
            raise ValueError(f"label {name!r} defined twice")
        self._labels[name] = self._size
        return Label(name)

    def emit(self, mnemonic: str, *operands: Operand, line: Optional[int] = None) -> "FunctionBuilder":
        spec = self.version.opcodes[self.version.opcode_for(mnemonic)]
        if len(operands) != len(spec.operands):
            raise ValueError(f"{mnemonic} takes {len(spec.operands)} operand(s), got {len(operands)}")
        for kind, value in zip(spec.operands, operands):
            if kind == "local" and isinstance(value, int):
                self.local(value)
        self._items.append((mnemonic, tuple(operands), line))
        self._size += self.version.instruction_size(spec)
        return self

    def _resolve(self, value: Operand) -> int:
        if isinstance(value, Label):
            try:
                return self._labels[value.name]
            except KeyError:
                raise ValueError(f"undefined label {value.name!r}") from None
        return value

    def build(self) -> FunctionRecord:
        code = bytearray()
        lines: List[Tuple[int, int]] = []
        depth = 0
        deepest = 0
        for mnemonic, operands, line in self._items:
            resolved = [self._resolve(value) for value in operands]
            if line is not None:
                lines.append((len(code), line))
            code += self._assembler.encode_instruction(mnemonic, resolved)
            spec = self.version.opcodes[self.version.opcode_for(mnemonic)]
            depth = max(depth + spec.stack_delta(resolved), 0)
            deepest = max(deepest, depth)
        header = FunctionHeader(
            index=self.index,
            name=self.name,
            argument_count=self.arguments,
            local_count=self.locals,
            stack_size=deepest,
            is_static=self.static,
            local_names=self.local_names,
        )
        return FunctionRecord(
            header=header,
            constants=ConstantPool(self._constants),
            code=bytes(code),
            lines=tuple(lines) if self.version.line_width else (),
        )


@dataclass
class UnitBuilder:
    """Collect :class:`FunctionBuilder` instances into a compiled unit."""

    version: BytecodeVersion
    extends: str = ""
    class_name: str = ""
    functions: List[FunctionBuilder] = field(default_factory=list)

    def function(self, name: str = "", **kwargs: Any) -> FunctionBuilder:
        builder = FunctionBuilder(self.version, name, index=len(self.functions), **kwargs)
        self.functions.append(builder)
        return builder

    def payload(self) -> bytes:
        records = [builder.build() for builder in self.functions]
        return Assembler(self.version).encode_unit(records, extends=self.extends, class_name=self.class_name)

    def binary(self, name: str = "<script>") -> RawScriptBinary:
        records = [builder.build() for builder in self.functions]
        return Assembler(self.version).build_binary(
            records, extends=self.extends, class_name=self.class_name, name=name
        )


__all__ = ["Assembler", "FunctionBuilder", "FunctionRecord", "Label", "UnitBuilder"]
