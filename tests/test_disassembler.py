import pytest

from gdre.exceptions import DecodeError
from gdre.vm.assembler import Assembler, FunctionRecord
from gdre.vm.disassembler import (
    ConstantPool,
    Disassembler,
    FunctionHeader,
    decode,
    format_listing,
)


def _answer_unit(unit_builder, version_id="703004f"):
    unit = unit_builder(version_id)
    fn = unit.function("get_answer")
    fn.emit("LOAD_CONST", fn.const(42))
    fn.emit("RETURN")
    return unit


def test_decodes_load_const_return(unit_builder, old_version):
    raw = _answer_unit(unit_builder).binary()
    assert raw.version_tag == b"V_703004f"
    unit = decode(raw, old_version)
    assert unit.complete
    (function,) = unit.functions
    assert [inst.mnemonic for inst in function.instructions] == ["LOAD_CONST", "RETURN"]
    assert function.constants[0].value == 42
    first, second = function.instructions
    assert first.offset == 0 and first.size == 3
    assert second.offset == 3 and second.flow == "return"
    assert first.stack_delta == 1 and second.stack_delta == -1


def test_decoding_is_deterministic(unit_builder, old_version):
    raw = _answer_unit(unit_builder).binary()
    first = decode(raw, old_version)
    second = decode(raw, old_version)
    assert first.functions[0].instructions == second.functions[0].instructions


def test_truncated_operand_reports_exact_offset(unit_builder, old_version):
    raw = _answer_unit(unit_builder).binary()
    code_offset = decode(raw, old_version).functions[0].code_offset
    # Cut inside the two-byte constant operand of LOAD_CONST.
    truncated = raw.payload[: code_offset + 2]
    unit = Disassembler(old_version).decode_unit(truncated)
    assert not unit.complete
    assert unit.error is not None
    assert unit.error.offset == code_offset + 1
    function = unit.functions[0]
    assert function.error.offset == code_offset + 1
    assert function.instructions == []


def test_partial_instructions_are_kept(unit_builder, old_version):
    unit = unit_builder()
    fn = unit.function("f")
    fn.emit("LOAD_CONST", fn.const(1))
    fn.emit("POP")
    fn.emit("LOAD_CONST", fn.const(2))
    fn.emit("RETURN")
    raw = unit.binary()
    code_offset = decode(raw, old_version).functions[0].code_offset
    truncated = raw.payload[: code_offset + 5]
    function = Disassembler(old_version).decode_unit(truncated).functions[0]
    assert [inst.mnemonic for inst in function.instructions] == ["LOAD_CONST", "POP"]
    assert function.error.partial == tuple(function.instructions)


def test_constant_index_out_of_range_is_contained(unit_builder, old_version):
    unit = unit_builder()
    bad = unit.function("bad")
    bad.emit("LOAD_CONST", 5)
    bad.emit("RETURN")
    good = unit.function("good")
    good.emit("LOAD_CONST", good.const(None))
    good.emit("RETURN")
    decoded = decode(unit.binary(), old_version)
    assert decoded.error is None
    first, second = decoded.functions
    assert "constant index 5 out of range" in first.error.reason
    assert first.error.offset == first.code_offset + 1
    assert second.complete


def test_unknown_opcode_and_bad_local(old_version):
    assembler = Assembler(old_version)
    header = FunctionHeader(index=0, name="f", argument_count=0, local_count=0, stack_size=0)
    record = FunctionRecord(header=header, constants=ConstantPool(), code=b"\xff")
    payload = assembler.encode_unit([record])
    function = Disassembler(old_version).decode_unit(payload).functions[0]
    assert "unknown opcode 255" in function.error.reason
    assert function.error.offset == function.code_offset

    code = assembler.encode_instruction("LOAD_LOCAL", [3])
    payload = assembler.encode_unit([FunctionRecord(header=header, constants=ConstantPool(), code=code)])
    function = Disassembler(old_version).decode_unit(payload).functions[0]
    assert "local slot 3 out of range" in function.error.reason


def test_name_operand_must_reference_string(old_version):
    assembler = Assembler(old_version)
    header = FunctionHeader(index=0, name="f", argument_count=0, local_count=0, stack_size=0)
    code = assembler.encode_instruction("LOAD_GLOBAL", [0])
    record = FunctionRecord(header=header, constants=ConstantPool.of(3), code=code)
    function = Disassembler(old_version).decode_unit(assembler.encode_unit([record])).functions[0]
    assert "does not reference a string" in function.error.reason


def test_misaligned_jump_target(unit_builder, old_version):
    unit = unit_builder()
    fn = unit.function("f")
    fn.emit("JUMP", 1)
    fn.emit("LOAD_CONST", fn.const(None))
    fn.emit("RETURN")
    function = decode(unit.binary(), old_version).functions[0]
    assert "not an instruction boundary" in function.error.reason
    assert function.error.partial == ()


def test_jump_to_code_end_is_valid(unit_builder, old_version):
    unit = unit_builder()
    fn = unit.function("f")
    end = fn.offset + 3
    fn.emit("JUMP", end)
    function = decode(unit.binary(), old_version).functions[0]
    assert function.complete
    assert function.instructions[0].target == function.code_length


def test_builtin_index_out_of_range(unit_builder, old_version):
    unit = unit_builder()
    fn = unit.function("f")
    fn.emit("CALL_BUILTIN", len(old_version.builtins), 0)
    fn.emit("RETURN")
    function = decode(unit.binary(), old_version).functions[0]
    assert "builtin index" in function.error.reason


def test_trailing_bytes_are_reported(unit_builder, old_version):
    raw = _answer_unit(unit_builder).binary()
    unit = Disassembler(old_version).decode_unit(raw.payload + b"\x00\x00")
    assert unit.error is not None
    assert "trailing bytes" in unit.error.reason
    assert unit.functions[0].complete


def test_line_table_is_applied(unit_builder, modern_version):
    unit = unit_builder("5565f55", class_name="Answer")
    fn = unit.function("f")
    fn.emit("LOAD_CONST", fn.const(1), line=3)
    fn.emit("POP")
    fn.emit("LOAD_CONST", fn.const(None), line=4)
    fn.emit("RETURN")
    decoded = decode(unit.binary(), modern_version)
    assert decoded.class_name == "Answer"
    lines = [inst.line for inst in decoded.functions[0].instructions]
    assert lines == [3, 3, 4, 4]


def test_local_names_and_static_flag(unit_builder, modern_version):
    unit = unit_builder("5565f55")
    fn = unit.function("helper", arguments=1, local_names=("value", "total"), static=True)
    fn.emit("LOAD_LOCAL", 0)
    fn.emit("RETURN")
    header = decode(unit.binary(), modern_version).functions[0].header
    assert header.is_static
    assert header.local_names == ("value", "total")
    assert header.local_count == 2


def test_format_listing_mentions_operands(unit_builder, old_version):
    unit = unit_builder(extends="Node")
    fn = unit.function("ready")
    fn.emit("LOAD_CONST", fn.const("hi"))
    fn.emit("CALL_BUILTIN", fn.builtin("print"), 1)
    fn.emit("POP")
    fn.emit("LOAD_CONST", fn.const(None))
    fn.emit("RETURN")
    listing = format_listing(decode(unit.binary(), old_version))
    assert "; extends Node" in listing
    assert "func ready" in listing
    assert "CALL_BUILTIN" in listing
    assert "(print)" in listing
    assert "string:'hi'" in listing


def test_header_framing_error_stops_unit(old_version):
    unit = Disassembler(old_version).decode_unit(b"\x01")
    assert isinstance(unit.error, DecodeError)
    assert unit.error.offset == 0
    assert unit.functions == []


def test_prefix_limit_bounds_decoding(unit_builder, old_version):
    unit = unit_builder()
    fn = unit.function("f")
    for _ in range(4):
        fn.emit("LOAD_CONST", fn.const(1))
        fn.emit("POP")
    fn.emit("LOAD_CONST", fn.const(None))
    fn.emit("RETURN")
    decoded = Disassembler(old_version).decode_unit(unit.payload(), prefix_limit=4)
    function = decoded.functions[0]
    assert [inst.mnemonic for inst in function.instructions] == ["LOAD_CONST", "POP"]
    assert decoded.error is None


def test_reencoding_fails_on_incomplete_unit(unit_builder, old_version):
    raw = _answer_unit(unit_builder).binary()
    unit = Disassembler(old_version).decode_unit(raw.payload[:-1])
    with pytest.raises(ValueError):
        Assembler(old_version).reencode(unit)
