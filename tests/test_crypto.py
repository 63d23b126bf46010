import pytest

from gdre.crypto import ENVELOPE_MAGIC, KEY_SIZE, decrypt_script, encrypt_script, is_encrypted, parse_key
from gdre.decompiler import decompile
from gdre.exceptions import EncryptedScriptError


def _compiled(unit_builder) -> bytes:
    unit = unit_builder()
    fn = unit.function("get_answer")
    fn.emit("LOAD_CONST", fn.const(42))
    fn.emit("RETURN")
    return unit.binary("answer.gdc").to_bytes()


def test_parse_key_accepts_prefixed_hex(script_key):
    key = parse_key(script_key)
    assert len(key) == KEY_SIZE
    assert key[:4] == bytes.fromhex("00112233")
    assert parse_key(script_key[2:].upper()) == key
    assert parse_key(key) is key


@pytest.mark.parametrize("text, message", [("0xzz" + "0" * 62, "not valid hexadecimal"), ("abcd", "256 bits")])
def test_parse_key_errors(text, message):
    with pytest.raises(EncryptedScriptError, match=message):
        parse_key(text)


@pytest.mark.parametrize("engine_major", [3, 4])
def test_envelope_round_trip(unit_builder, engine_major, script_key):
    plain = _compiled(unit_builder)
    key = parse_key(script_key)
    blob = encrypt_script(plain, key, engine_major=engine_major, iv=b"\x01" * 16)
    assert is_encrypted(blob)
    assert not is_encrypted(plain)
    assert blob[:4] == ENVELOPE_MAGIC
    opened = decrypt_script(blob, key, engine_major=engine_major)
    assert opened == plain
    assert decompile(opened, name="answer.gdc").source == "func get_answer():\n\treturn 42\n"


def test_engine_four_stores_iv(script_key):
    key = parse_key(script_key)
    blob = encrypt_script(b"payload", key, engine_major=4, iv=b"\x07" * 16)
    assert blob[32:48] == b"\x07" * 16
    assert len(blob) == 48 + 16
    with pytest.raises(EncryptedScriptError, match="IV must be 16 bytes"):
        encrypt_script(b"payload", key, engine_major=4, iv=b"\x00")


def test_wrong_key_is_detected(unit_builder, script_key):
    blob = encrypt_script(_compiled(unit_builder), parse_key(script_key))
    wrong = bytes(KEY_SIZE)
    with pytest.raises(EncryptedScriptError, match="MD5 mismatch") as excinfo:
        decrypt_script(blob, wrong)
    assert excinfo.value.offset == 32


def test_wrong_engine_is_detected(script_key):
    key = parse_key(script_key)
    blob = encrypt_script(b"some compiled bytes", key, engine_major=4)
    with pytest.raises(EncryptedScriptError, match="MD5 mismatch"):
        decrypt_script(blob, key, engine_major=3)


def test_bad_magic_and_truncation(script_key):
    key = parse_key(script_key)
    with pytest.raises(EncryptedScriptError) as excinfo:
        decrypt_script(b"GDSC" + bytes(40), key)
    assert excinfo.value.offset == 0

    blob = encrypt_script(b"some compiled bytes", key)
    with pytest.raises(EncryptedScriptError, match="truncated encrypted script") as excinfo:
        decrypt_script(blob[:30], key)
    assert excinfo.value.offset == 24

    with pytest.raises(EncryptedScriptError, match="truncated encrypted script"):
        decrypt_script(blob[:-1], key)


def test_key_length_is_checked():
    with pytest.raises(EncryptedScriptError, match="32 bytes"):
        encrypt_script(b"data", b"short")
    with pytest.raises(EncryptedScriptError, match="32 bytes"):
        decrypt_script(ENVELOPE_MAGIC, b"short")
