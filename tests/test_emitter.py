import math

import pytest

from gdre import script_ast as ast
from gdre.pretty import gdscript
from gdre.pretty.gdscript import (
    NameTable,
    Provenance,
    RAW_MARKER,
    SourceEmitter,
    escape_string,
    format_float,
)
from gdre.vm.assembler import Label
from gdre.vm.disassembler import Constant, ConstantPool, FunctionHeader, decode
from gdre.vm.reconstruct_controlflow import BlockNode, ReconstructOptions, reconstruct


def _render(unit_builder, build, version_id="703004f", name="f", options=None, **kwargs):
    unit = unit_builder(version_id)
    fn = unit.function(name, **kwargs)
    build(fn)
    function = decode(unit.binary(), unit.version).functions[0]
    structured = reconstruct(function.instructions, unit.version, options=options, code_length=function.code_length)
    return SourceEmitter(unit.version).emit_function(function.header, function.constants, structured)


def _expression(version, expr, *constants):
    pool = ConstantPool.of(*constants)
    body = [BlockNode(0, (), [ast.ExprStatement(expr)])]
    return SourceEmitter(version).emit(body, pool).strip()


def _header(name="f", arguments=0, local_count=0, local_names=(), static=False):
    return FunctionHeader(
        index=0,
        name=name,
        argument_count=arguments,
        local_count=max(local_count, arguments),
        stack_size=0,
        is_static=static,
        local_names=tuple(local_names),
    )


def test_return_constant(unit_builder):
    def build(fn):
        fn.emit("LOAD_CONST", fn.const(42))
        fn.emit("RETURN")

    assert _render(unit_builder, build, name="get_answer") == "func get_answer():\n\treturn 42\n"


def test_if_else_hoists_branch_locals(unit_builder):
    def build(fn):
        fn.emit("LOAD_LOCAL", 0)
        fn.emit("JUMP_IF_FALSE", Label("else"))
        fn.emit("LOAD_CONST", fn.const(1))
        fn.emit("STORE_LOCAL", 1)
        fn.emit("JUMP", Label("end"))
        fn.label("else")
        fn.emit("LOAD_CONST", fn.const(2))
        fn.emit("STORE_LOCAL", 1)
        fn.label("end")
        fn.emit("LOAD_LOCAL", 1)
        fn.emit("RETURN")

    source = _render(unit_builder, build, arguments=1)
    assert source == (
        "func f(arg0):\n"
        "\tvar local1\n"
        "\tif arg0:\n"
        "\t\tlocal1 = 1\n"
        "\telse:\n"
        "\t\tlocal1 = 2\n"
        "\treturn local1\n"
    )
    assert RAW_MARKER not in source


def test_top_level_assignment_declares_inline(unit_builder):
    def build(fn):
        fn.emit("LOAD_CONST", fn.const(5))
        fn.emit("STORE_LOCAL", 0)
        fn.emit("LOAD_LOCAL", 0)
        fn.emit("LOAD_CONST", fn.const(2))
        fn.emit("MUL")
        fn.emit("STORE_LOCAL", 0)
        fn.emit("LOAD_CONST", fn.const(None))
        fn.emit("RETURN")

    source = _render(unit_builder, build, local_names=("speed",))
    assert source == "func f():\n\tvar speed = 5\n\tspeed = speed * 2\n"


def test_empty_body_renders_pass(unit_builder):
    def build(fn):
        fn.emit("LOAD_CONST", fn.const(None))
        fn.emit("RETURN")

    assert _render(unit_builder, build, static=True) == "static func f():\n\tpass\n"


def test_loops_render(unit_builder):
    def build(fn):
        fn.emit("LOAD_LOCAL", 0)
        fn.emit("ITER_BEGIN", 1, 2, Label("end"))
        fn.label("body")
        fn.emit("LOAD_LOCAL", 2)
        fn.emit("CALL_BUILTIN", fn.builtin("print"), 1)
        fn.emit("POP")
        fn.emit("ITER_NEXT", 1, 2, Label("body"))
        fn.label("end")
        fn.emit("LOAD_CONST", fn.const(None))
        fn.emit("RETURN")

    source = _render(unit_builder, build, arguments=1, local_names=("items", "it", "item"))
    assert source == "func f(items):\n\tfor item in items:\n\t\tprint(item)\n"


def test_early_exits_inside_loops_render(unit_builder):
    def while_return(fn):
        fn.label("top")
        fn.emit("LOAD_LOCAL", 0)
        fn.emit("JUMP_IF_FALSE", Label("end"))
        fn.emit("LOAD_LOCAL", 0)
        fn.emit("LOAD_CONST", fn.const(7))
        fn.emit("EQ")
        fn.emit("JUMP_IF_FALSE", Label("step"))
        fn.emit("LOAD_CONST", fn.const(1))
        fn.emit("RETURN")
        fn.label("step")
        fn.emit("LOAD_LOCAL", 0)
        fn.emit("CALL_BUILTIN", fn.builtin("print"), 1)
        fn.emit("POP")
        fn.emit("JUMP", Label("top"))
        fn.label("end")
        fn.emit("LOAD_CONST", fn.const(None))
        fn.emit("RETURN")

    def for_continue(fn):
        fn.emit("LOAD_LOCAL", 0)
        fn.emit("ITER_BEGIN", 1, 2, Label("end"))
        fn.label("body")
        fn.emit("LOAD_LOCAL", 2)
        fn.emit("LOAD_CONST", fn.const(7))
        fn.emit("EQ")
        fn.emit("JUMP_IF_FALSE", Label("work"))
        fn.emit("JUMP", Label("next"))
        fn.label("work")
        fn.emit("LOAD_LOCAL", 2)
        fn.emit("CALL_BUILTIN", fn.builtin("print"), 1)
        fn.emit("POP")
        fn.label("next")
        fn.emit("ITER_NEXT", 1, 2, Label("body"))
        fn.label("end")
        fn.emit("LOAD_CONST", fn.const(None))
        fn.emit("RETURN")

    source = _render(unit_builder, while_return, arguments=1)
    assert "\twhile arg0:\n\t\tif arg0 == 7:\n\t\t\treturn 1\n\t\tprint(arg0)\n" in source
    assert RAW_MARKER not in source

    source = _render(unit_builder, for_continue, arguments=1, local_names=("items", "it", "item"))
    assert "\tfor item in items:\n\t\tif item == 7:\n\t\t\tcontinue\n\t\tprint(item)\n" in source
    assert RAW_MARKER not in source


def _chain(fn):
    for position, (value, text) in enumerate([(1, "a"), (2, "b"), (3, "c")]):
        fn.emit("LOAD_LOCAL", 0)
        fn.emit("LOAD_CONST", fn.const(value))
        fn.emit("EQ")
        fn.emit("JUMP_IF_FALSE", Label(f"next{position}"))
        fn.emit("LOAD_CONST", fn.const(text))
        fn.emit("CALL_BUILTIN", fn.builtin("print"), 1)
        fn.emit("POP")
        fn.emit("JUMP", Label("end"))
        fn.label(f"next{position}")
    fn.emit("LOAD_CONST", fn.const("d"))
    fn.emit("CALL_BUILTIN", fn.builtin("print"), 1)
    fn.emit("POP")
    fn.label("end")
    fn.emit("LOAD_CONST", fn.const(None))
    fn.emit("RETURN")


def test_match_uses_version_wildcard(unit_builder):
    modern = _render(unit_builder, _chain, version_id="5565f55", arguments=1)
    assert "\tmatch arg0:\n\t\t1:\n\t\t\tprint(\"a\")\n" in modern
    assert "\t\t_:\n\t\t\tprint(\"d\")\n" in modern

    early = _render(unit_builder, _chain, version_id="f8a7c46", arguments=1)
    assert "\t\tvar _:\n" in early


def test_equality_chain_without_match_uses_elif(unit_builder):
    source = _render(unit_builder, _chain, arguments=1)
    assert "match" not in source
    assert "\tif arg0 == 1:\n" in source
    assert "\telif arg0 == 2:\n" in source
    assert "\telif arg0 == 3:\n" in source
    assert "\telse:\n\t\tprint(\"d\")\n" in source

    fewer = _render(
        unit_builder, _chain, version_id="5565f55", options=ReconstructOptions(match_min_cases=4), arguments=1
    )
    assert "match" not in fewer


def test_unreachable_code_is_commented(unit_builder):
    def build(fn):
        fn.emit("JUMP", Label("end"))
        fn.emit("LOAD_CONST", fn.const(7))
        fn.emit("POP")
        fn.label("end")
        fn.emit("LOAD_CONST", fn.const(None))
        fn.emit("RETURN")

    source = _render(unit_builder, build)
    assert f"\t{RAW_MARKER} low-confidence block_1 (unreachable)\n" in source
    assert "\t# label block_1:\n\t# 7\n\t# goto block_2\n" in source
    assert "\t# label block_2:\n" in source


@pytest.mark.parametrize(
    "version_id, value, expected",
    [
        ("5565f55", float("nan"), "NAN"),
        ("5565f55", float("-inf"), "-INF"),
        ("5565f55", math.pi, "PI"),
        ("5565f55", math.tau, "TAU"),
        ("703004f", float("nan"), "(0.0 / 0.0)"),
        ("703004f", float("inf"), "(1.0 / 0.0)"),
        ("703004f", math.pi, repr(math.pi)),
        ("6174585", math.pi, "PI"),
        ("703004f", 1.0, "1.0"),
        ("703004f", 1e20, "1.0e+20"),
        ("703004f", -0.25, "-0.25"),
    ],
)
def test_format_float(registry, version_id, value, expected):
    assert format_float(value, registry.get(version_id)) == expected


def test_escape_string():
    assert escape_string('say "hi"\n') == '"say \\"hi\\"\\n"'
    assert escape_string("tab\there") == '"tab\\there"'
    assert escape_string("\x01") == '"\\u0001"'
    assert escape_string("ünï") == '"ünï"'


def test_name_table_uses_valid_names():
    header = _header(arguments=2, local_count=5, local_names=("delta", "", "var", "total", "total"))
    names = NameTable(header)
    assert names.arguments() == ["delta", "arg1"]
    assert [names.name(slot) for slot in range(5)] == ["delta", "arg1", "local2", "total", "total_2"]
    assert names.name(9) == "local9"


def test_dollar_shorthand_depends_on_version(registry, modern_version, old_version):
    call = ast.MethodCall(ast.SelfRef(), 0, (ast.Const(1),))
    assert _expression(modern_version, call, "get_node", "Sprite/Body") == "$Sprite/Body"
    assert _expression(modern_version, call, "get_node", "My Node") == '$"My Node"'
    assert _expression(old_version, call, "get_node", "Sprite") == 'self.get_node("Sprite")'
    self_call = ast.SelfCall(0, (ast.Const(1),))
    assert _expression(old_version, self_call, "get_node", "Sprite") == 'get_node("Sprite")'


def test_literals_and_precedence(old_version):
    pool = ConstantPool(
        [
            Constant("resource", "res://icon.png"),
            Constant("subscript", 1),
            Constant("int", 2),
            Constant("bool", False),
        ]
    )
    emitter = SourceEmitter(old_version)
    body = [
        BlockNode(
            0,
            (),
            [
                ast.ExprStatement(ast.Const(0)),
                ast.ExprStatement(ast.Const(1)),
                ast.ExprStatement(ast.BinOp("MUL", ast.BinOp("ADD", ast.Local(0), ast.Local(1)), ast.Const(2))),
                ast.ExprStatement(ast.BinOp("SUB", ast.Local(0), ast.BinOp("SUB", ast.Local(1), ast.Const(2)))),
                ast.ExprStatement(ast.UnaryOp("NOT", ast.BinOp("AND", ast.Local(0), ast.Const(3)))),
                ast.ExprStatement(ast.Index(ast.Local(0), ast.Const(2)), residue=True),
            ],
        )
    ]
    header = _header(arguments=2)
    lines = emitter.emit(body, pool, header=header, function_names=["_ready", "Inner"]).splitlines()
    assert lines == [
        'preload("res://icon.png")',
        "Inner",
        "(arg0 + arg1) * 2",
        "arg0 - (arg1 - 2)",
        "not (arg0 and false)",
        f"arg0[2]  {RAW_MARKER} value left on the stack",
    ]


def test_failure_stub(old_version):
    stub = SourceEmitter(old_version).emit_failure(_header(name="broken", arguments=1), "stack underflow")
    assert stub == f"{RAW_MARKER} failed to decompile broken: stack underflow\nfunc broken(arg0):\n\tpass\n"


def test_unit_with_provenance(old_version):
    provenance = Provenance.for_unit("player.gdc", old_version, detection="exact", notes=["2 functions"])
    rendered = provenance.render()
    assert rendered[0].startswith("# PROVENANCE: player.gdc: decompiled from V_703004f")
    assert rendered[1:] == ["# detection: exact", "# 2 functions"]
    source = SourceEmitter(old_version).emit_unit(
        ["func a():\n\tpass\n", "func b():\n\tpass\n"], extends="Node", provenance=provenance
    )
    lines = source.splitlines()
    assert lines[:3] == rendered
    assert lines[3] == "extends Node"
    assert source.endswith("func a():\n\tpass\n\nfunc b():\n\tpass\n")


def test_module_level_emit(old_version):
    body = [BlockNode(0, (), [ast.Assign(ast.Local(0), ast.Const(0))])]
    assert gdscript.emit(body, ConstantPool.of(3), old_version) == "var local0 = 3\n"
