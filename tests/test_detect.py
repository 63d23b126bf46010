from dataclasses import replace

import pytest

from gdre.detect import DetectionStatus, VersionDetector, candidate_ids, detect
from gdre.exceptions import AmbiguousVersionError, UnknownVersionError

FORMAT_TWO = ["8c1731b", "31ce3c5", "703004f", "8cab401"]


def _plain_binary(unit_builder, version_id="703004f"):
    unit = unit_builder(version_id)
    fn = unit.function("f", arguments=1)
    fn.emit("LOAD_LOCAL", 0)
    fn.emit("LOAD_CONST", fn.const(2))
    fn.emit("MUL")
    fn.emit("RETURN")
    return unit.binary("plain.gdc")


def _retagged(raw, tag=b"V_deadbee"):
    return replace(raw, version_tag=tag)


def test_exact_match(unit_builder):
    match = detect(_plain_binary(unit_builder))
    assert match.status is DetectionStatus.EXACT
    assert match.version.version_id == "703004f"
    assert match.confidence == 1.0
    assert match.require() is match.version


def test_unknown_tag_without_heuristics(unit_builder):
    match = detect(_retagged(_plain_binary(unit_builder)))
    assert match.status is DetectionStatus.UNKNOWN
    assert not match.ok
    assert match.tag == "V_deadbee"
    with pytest.raises(UnknownVersionError):
        match.require()


def test_heuristic_reports_ambiguity(unit_builder):
    match = detect(_retagged(_plain_binary(unit_builder)), heuristic=True)
    assert match.status is DetectionStatus.AMBIGUOUS
    assert candidate_ids(match) == FORMAT_TWO
    assert set(match.scores) == set(FORMAT_TWO)
    with pytest.raises(AmbiguousVersionError) as excinfo:
        match.require()
    assert excinfo.value.as_dict()["candidates"] == FORMAT_TWO


def test_preference_resolves_ambiguity(unit_builder):
    match = detect(_retagged(_plain_binary(unit_builder)), heuristic=True, prefer="V_703004f")
    assert match.status is DetectionStatus.HEURISTIC
    assert match.version.version_id == "703004f"
    assert match.confidence == 1.0


def test_preference_outside_leaders_is_ignored(unit_builder):
    raw = _retagged(_plain_binary(unit_builder))
    assert detect(raw, heuristic=True, prefer="5565f55").status is DetectionStatus.AMBIGUOUS
    assert detect(raw, heuristic=True, prefer="not a version").status is DetectionStatus.AMBIGUOUS


def test_legal_opcodes_break_ties(unit_builder):
    unit = unit_builder("8cab401")
    fn = unit.function("gen")
    fn.emit("YIELD", 0)
    fn.emit("RETURN")
    match = detect(_retagged(unit.binary()), heuristic=True)
    assert match.status is DetectionStatus.HEURISTIC
    assert match.version.version_id == "8cab401"
    assert match.scores["703004f"] < match.scores["8cab401"]


def test_garbage_payload_is_unknown(unit_builder):
    raw = _retagged(_plain_binary(unit_builder))
    raw = replace(raw, payload=b"\x01\x00\xff\xff\xff\xff")
    match = detect(raw, heuristic=True)
    assert match.status is DetectionStatus.UNKNOWN
    assert all(score == 0.0 for score in match.scores.values())


def test_score_is_bounded(unit_builder, old_version, modern_version):
    detector = VersionDetector()
    raw = _plain_binary(unit_builder)
    assert detector.score(raw.payload, old_version) == 1.0
    assert detector.score(b"", old_version) == 0.0
    assert 0.0 <= detector.score(raw.payload, modern_version) < 1.0


def test_as_dict_lists_candidates(unit_builder):
    data = detect(_retagged(_plain_binary(unit_builder)), heuristic=True).as_dict()
    assert data["status"] == "ambiguous"
    assert data["version"] is None
    assert data["candidates"] == FORMAT_TWO
