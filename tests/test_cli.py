import json
from dataclasses import replace

import pytest

from gdre.cli import main
from gdre.crypto import encrypt_script, parse_key
from gdre.detect import candidate_ids, detect
from gdre.versions import DEFAULT_REGISTRY

ANSWER_SOURCE = "func get_answer():\n\treturn 42\n"


def _answer(unit_builder, name="answer.gdc"):
    unit = unit_builder()
    fn = unit.function("get_answer")
    fn.emit("LOAD_CONST", fn.const(42))
    fn.emit("RETURN")
    return unit.binary(name)


@pytest.fixture
def compiled(tmp_path, unit_builder):
    path = tmp_path / "answer.gdc"
    path.write_bytes(_answer(unit_builder).to_bytes())
    return path


def test_versions_listing(capsys):
    assert main(["versions"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == len(list(DEFAULT_REGISTRY))
    assert any(line.startswith("703004f ") for line in lines)


def test_versions_json_with_tables(capsys):
    assert main(["versions", "--json", "--tables"]) == 0
    data = json.loads(capsys.readouterr().out)
    by_id = {entry["version"]: entry for entry in data}
    assert by_id["5565f55"]["bytecode"] == 13
    assert "opcodes" in by_id["703004f"]
    assert "match" in by_id["5565f55"]["features"]


def test_decompile_writes_source_next_to_input(compiled, capsys):
    assert main(["decompile", str(compiled)]) == 0
    assert compiled.with_suffix(".gd").read_text(encoding="utf-8") == ANSWER_SOURCE
    out = capsys.readouterr().out
    assert out.startswith("Units: 1 (Ok 1)\n")
    assert f"  -> {compiled.with_suffix('.gd')}" in out


def test_decompile_to_stdout(compiled, capsys):
    assert main(["decompile", str(compiled), "--stdout"]) == 0
    assert capsys.readouterr().out == ANSWER_SOURCE
    assert not compiled.with_suffix(".gd").exists()


def test_decompile_explicit_output_and_report(compiled, tmp_path, capsys):
    target = tmp_path / "out" / "renamed.gd"
    report = tmp_path / "report.json"
    assert main(["decompile", str(compiled), "-o", str(target), "--report", str(report), "--json"]) == 0
    assert target.read_text(encoding="utf-8") == ANSWER_SOURCE
    printed = json.loads(capsys.readouterr().out)
    written = json.loads(report.read_text(encoding="utf-8"))
    assert printed["ok"] and written["ok"]
    assert written["outputs"] == {"answer.gdc": str(target)}


def test_decompile_directory_batch(tmp_path, unit_builder, capsys):
    scripts = tmp_path / "scripts"
    (scripts / "enemies").mkdir(parents=True)
    (scripts / "player.gdc").write_bytes(_answer(unit_builder, "player.gdc").to_bytes())
    (scripts / "enemies" / "slime.gdc").write_bytes(_answer(unit_builder, "slime.gdc").to_bytes())
    (scripts / "notes.txt").write_text("not a script", encoding="utf-8")
    out = tmp_path / "out"
    assert main(["decompile", str(scripts), "-o", str(out), "--jobs", "2"]) == 0
    assert sorted(path.name for path in out.iterdir()) == ["player.gd", "slime.gd"]
    assert capsys.readouterr().out.startswith("Units: 2 (Ok 2)\n")


def test_bytecode_override(tmp_path, unit_builder, capsys):
    path = tmp_path / "odd.gdc"
    path.write_bytes(replace(_answer(unit_builder), version_tag=b"V_deadbee").to_bytes())
    assert main(["decompile", str(path), "--stdout"]) == 1
    assert capsys.readouterr().out == ""
    assert main(["decompile", str(path), "--stdout", "--bytecode", "703004f"]) == 0
    assert capsys.readouterr().out == ANSWER_SOURCE


def test_encrypted_script_needs_key(tmp_path, unit_builder, script_key, capsys):
    path = tmp_path / "answer.gde"
    path.write_bytes(encrypt_script(_answer(unit_builder).to_bytes(), parse_key(script_key)))

    assert main(["decompile", str(path)]) == 1
    out = capsys.readouterr().out
    assert "Errors:" in out
    assert "script is encrypted, pass --key" in out

    assert main(["decompile", str(path), "--key", script_key]) == 0
    out = capsys.readouterr().out
    assert "Script key: 0x0011... (len=66)" in out
    assert script_key not in out
    assert (tmp_path / "answer.gd").read_text(encoding="utf-8") == ANSWER_SOURCE


def test_invalid_key_and_options_are_usage_errors(compiled, tmp_path):
    assert main(["decompile", str(compiled), "--key", "abcd"]) == 2
    config = tmp_path / "options.json"
    config.write_text("[1, 2]", encoding="utf-8")
    assert main(["decompile", str(compiled), "--config", str(config)]) == 2
    assert main(["decompile", str(compiled), "--jobs", "0"]) == 2


def test_missing_input_is_a_usage_error(tmp_path):
    assert main(["decompile", str(tmp_path / "missing.gdc")]) == 2


def test_detect_reports_versions(compiled, tmp_path, unit_builder, capsys):
    assert main(["detect", str(compiled)]) == 0
    assert capsys.readouterr().out == f"{compiled}: exact V_703004f 1.0 dev (703004f / 2014-06-16 / Bytecode version: 2)\n"
    odd = tmp_path / "odd.gdc"
    odd.write_bytes(replace(_answer(unit_builder), version_tag=b"V_deadbee").to_bytes())
    assert main(["detect", str(odd), "--json"]) == 1
    (entry,) = json.loads(capsys.readouterr().out)
    assert entry["file"] == str(odd)
    assert entry["status"] == "unknown"
    assert entry["version"] is None


def test_detect_heuristic_with_preference(tmp_path, unit_builder, capsys):
    odd = tmp_path / "odd.gdc"
    odd.write_bytes(replace(_answer(unit_builder), version_tag=b"V_deadbee").to_bytes())
    assert main(["detect", str(odd), "--heuristic"]) == 1
    out = capsys.readouterr().out
    assert "ambiguous" in out
    tied = candidate_ids(detect(replace(_answer(unit_builder), version_tag=b"V_deadbee"), heuristic=True))
    assert len(tied) > 1
    assert f"\n  candidates: {', '.join(tied)}\n" in out
    assert main(["detect", str(odd), "--heuristic", "--prefer", "703004f", "--json"]) == 0
    (entry,) = json.loads(capsys.readouterr().out)
    assert (entry["status"], entry["version"]) == ("heuristic", "703004f")


def test_disasm_listing(compiled, tmp_path, capsys):
    assert main(["disasm", str(compiled)]) == 0
    out = capsys.readouterr().out
    assert out.startswith("; bytecode 703004f")
    assert "LOAD_CONST" in out and "RETURN" in out

    truncated = tmp_path / "short.gdc"
    truncated.write_bytes(compiled.read_bytes()[:-1])
    assert main(["disasm", str(truncated), "--json"]) == 1
    assert json.loads(capsys.readouterr().out)["complete"] is False

    assert main(["disasm", str(tmp_path / "missing.gdc")]) == 2


def test_debug_log_captures_run(compiled, tmp_path):
    log_path = tmp_path / "debug.log"
    assert main(["--debug-log", str(log_path), "decompile", str(compiled), "--stdout"]) == 0
    trace = log_path.read_text(encoding="utf-8")
    assert "gdre.decompiler" in trace
    assert "1 ok, 0 incomplete, 0 failed" in trace
