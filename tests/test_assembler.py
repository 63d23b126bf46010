import pytest

from gdre.vm.assembler import Assembler, FunctionBuilder, Label, UnitBuilder
from gdre.vm.disassembler import Disassembler, decode


def _label_after(builder, *mnemonics):
    """Return the offset reached after emitting ``mnemonics`` from here."""

    assembler = Assembler(builder.version)
    return builder.offset + sum(assembler.instruction_size(mnemonic) for mnemonic in mnemonics)


def _simple_loop(version):
    unit = UnitBuilder(version)
    fn = unit.function("loop", arguments=1)
    fn.emit("LOAD_LOCAL", 0)
    fn.emit("ITER_BEGIN", fn.local(1), fn.local(2), _label_after(fn, "ITER_BEGIN", "ITER_NEXT"))
    fn.emit("ITER_NEXT", 1, 2, fn.offset)
    fn.emit("LOAD_CONST", fn.const(None))
    fn.emit("RETURN")
    return unit


@pytest.mark.parametrize("version_id", ["703004f", "5565f55", "f3f05dc"])
def test_reencode_reproduces_payload(registry, version_id):
    version = registry.get(version_id)
    class_name = "Sample" if version.supports("class_name") else ""
    unit = UnitBuilder(version, extends="Node2D", class_name=class_name)
    fn = unit.function("_ready", arguments=1, local_names=("delta", "total"), static=True)
    fn.emit("LOAD_CONST", fn.const(None), line=1)
    fn.emit("STORE_LOCAL", 1)
    fn.emit("LOAD_CONST", fn.const(True), line=2)
    fn.emit("LOAD_CONST", fn.const(-7))
    fn.emit("LOAD_CONST", fn.const(0.5))
    fn.emit("LOAD_CONST", fn.const("text"))
    fn.emit("LOAD_CONST", fn.resource("res://icon.png"))
    fn.emit("LOAD_CONST", fn.subscript(1))
    fn.emit("MAKE_ARRAY", 6)
    fn.emit("POP")
    fn.emit("LOAD_LOCAL", 1)
    fn.emit("JUMP_IF_FALSE", fn.offset + Assembler(version).instruction_size("JUMP_IF_FALSE"))
    fn.emit("LOAD_LOCAL", 0, line=3)
    fn.emit("RETURN")
    helper = unit.function("helper")
    helper.emit("LOAD_GLOBAL", helper.name_ref("Vector2"))
    helper.emit("CALL_BUILTIN", helper.builtin("print"), 1)
    helper.emit("RETURN")

    payload = unit.payload()
    decoded = Disassembler(version).decode_unit(payload)
    assert decoded.complete, decoded.error
    assert Assembler(version).reencode(decoded) == payload

    kinds = [constant.kind for constant in decoded.functions[0].constants]
    assert kinds == ["nil", "bool", "int", "float", "string", "resource", "subscript"]
    assert decoded.functions[0].header.is_static
    if version.line_width:
        assert decoded.functions[0].lines == ((0, 1), (_offset_of(decoded, 2), 2), (_offset_of(decoded, 12), 3))
    else:
        assert decoded.functions[0].lines == ()


def _offset_of(decoded, position):
    return decoded.functions[0].instructions[position].offset


def test_loops_roundtrip(old_version, modern_version):
    for version in (old_version, modern_version):
        payload = _simple_loop(version).payload()
        decoded = Disassembler(version).decode_unit(payload)
        assert decoded.complete
        iter_begin = decoded.functions[0].instructions[1]
        assert iter_begin.operand("local", 1) == 2
        assert Assembler(version).reencode(decoded) == payload


def test_builder_labels_resolve(old_version):
    fb = FunctionBuilder(old_version, "f", arguments=1)
    fb.emit("LOAD_LOCAL", 0)
    skip = fb.offset + Assembler(old_version).instruction_size("JUMP_IF_FALSE")
    fb.emit("JUMP_IF_FALSE", Label("end"))
    fb.label("end")
    fb.emit("LOAD_CONST", fb.const(None))
    fb.emit("RETURN")
    record = fb.build()
    function = Disassembler(old_version).decode_unit(Assembler(old_version).encode_unit([record])).functions[0]
    assert function.instructions[1].target == skip
    assert record.header.stack_size == 1


def test_builder_rejects_bad_input(old_version):
    fb = FunctionBuilder(old_version, "f")
    with pytest.raises(ValueError):
        fb.emit("LOAD_CONST")
    fb.label("here")
    with pytest.raises(ValueError):
        fb.label("here")
    fb.emit("JUMP", Label("nowhere"))
    with pytest.raises(ValueError):
        fb.build()
    with pytest.raises(KeyError):
        fb.emit("IS")


def test_class_name_requires_feature(old_version):
    with pytest.raises(ValueError):
        UnitBuilder(old_version, class_name="Player").payload()


def test_constants_are_deduplicated(old_version):
    fb = FunctionBuilder(old_version, "f")
    assert fb.const(1) == fb.const(1)
    assert fb.const(1) != fb.const(True)
    assert fb.name_ref("x") == fb.const("x")
    assert fb.resource("x") != fb.const("x")


def test_build_binary_carries_version_tag(modern_version):
    unit = UnitBuilder(modern_version)
    fn = unit.function("f")
    fn.emit("LOAD_CONST", fn.const(None))
    fn.emit("RETURN")
    raw = unit.binary("f.gdc")
    assert raw.tag_text == modern_version.tag
    assert raw.format_version == modern_version.bytecode_format
    assert decode(raw, modern_version).complete
