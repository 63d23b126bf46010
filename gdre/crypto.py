"""Open and produce the engine's encrypted script envelope (``.gde`` files).

Layout (little-endian)::

    "GDEC" | u32 mode | 16-byte MD5 of the plain data | u64 plain length
    [16-byte IV, engine 4 only] | AES-256 ciphertext padded to 16 bytes

Engine 3 encrypts each 16-byte block independently (ECB); engine 4 uses CFB
with the stored IV.
"""

from __future__ import annotations

import binascii
import logging
import os
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Hash import MD5

from .exceptions import DecodeError, EncryptedScriptError
from .io.binary import ByteReader, ByteWriter

LOG = logging.getLogger(__name__)

ENVELOPE_MAGIC = b"GDEC"
MODE_AES256 = 1
KEY_SIZE = 32
BLOCK_SIZE = 16


def parse_key(text: str | bytes) -> bytes:
    """Decode a 256-bit key written as 64 hexadecimal digits."""

    if isinstance(text, bytes):
        if len(text) == KEY_SIZE:
            return text
        text = text.decode("ascii", "replace")
    cleaned = text.strip().lower()
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    try:
        key = binascii.unhexlify(cleaned)
    except (binascii.Error, ValueError) as exc:
        raise EncryptedScriptError(f"script key is not valid hexadecimal: {exc}") from None
    if len(key) != KEY_SIZE:
        raise EncryptedScriptError(f"script key must be {KEY_SIZE * 8} bits, got {len(key) * 8}")
    return key


def is_encrypted(blob: bytes) -> bool:
    return blob[:4] == ENVELOPE_MAGIC


def _cipher(key: bytes, engine_major: int, iv: Optional[bytes]):
    if engine_major >= 4:
        return AES.new(key, AES.MODE_CFB, iv=iv, segment_size=128)
    return AES.new(key, AES.MODE_ECB)


def _padded(length: int) -> int:
    return (length + BLOCK_SIZE - 1) // BLOCK_SIZE * BLOCK_SIZE


def decrypt_script(blob: bytes, key: bytes, *, engine_major: int = 3) -> bytes:
    """Return the plain compiled script stored in ``blob``."""

    if len(key) != KEY_SIZE:
        raise EncryptedScriptError(f"script key must be {KEY_SIZE} bytes")
    reader = ByteReader(blob)
    try:
        magic = reader.read_bytes(4, "envelope magic")
        if magic != ENVELOPE_MAGIC:
            raise EncryptedScriptError(f"not an encrypted script (magic {magic!r})", offset=0)
        mode = reader.read_uint(4, "envelope mode")
        if mode != MODE_AES256:
            raise EncryptedScriptError(f"unsupported envelope mode {mode}", offset=4)
        digest = reader.read_bytes(16, "envelope digest")
        length = reader.read_uint(8, "envelope length")
        iv = reader.read_bytes(BLOCK_SIZE, "envelope IV") if engine_major >= 4 else None
        data_offset = reader.offset
        ciphertext = reader.read_bytes(_padded(length), "encrypted data")
    except DecodeError as exc:
        raise EncryptedScriptError(f"truncated encrypted script: {exc.reason}", offset=exc.offset) from None

    plain = _cipher(key, engine_major, iv).decrypt(ciphertext)[:length]
    if MD5.new(plain).digest() != digest:
        raise EncryptedScriptError("MD5 mismatch after decryption (wrong key or engine version?)", offset=data_offset)
    LOG.debug("decrypted %d byte script (engine %d)", length, engine_major)
    return plain


def encrypt_script(
    data: bytes,
    key: bytes,
    *,
    engine_major: int = 3,
    iv: Optional[bytes] = None,
) -> bytes:
    """Wrap ``data`` in an encrypted envelope readable by :func:`decrypt_script`."""

    if len(key) != KEY_SIZE:
        raise EncryptedScriptError(f"script key must be {KEY_SIZE} bytes")
    writer = ByteWriter()
    writer.write_bytes(ENVELOPE_MAGIC)
    writer.write_uint(MODE_AES256, 4)
    writer.write_bytes(MD5.new(data).digest())
    writer.write_uint(len(data), 8)
    if engine_major >= 4:
        iv = iv if iv is not None else os.urandom(BLOCK_SIZE)
        if len(iv) != BLOCK_SIZE:
            raise EncryptedScriptError(f"IV must be {BLOCK_SIZE} bytes")
        writer.write_bytes(iv)
    padded = data + b"\x00" * (_padded(len(data)) - len(data))
    writer.write_bytes(_cipher(key, engine_major, iv).encrypt(padded))
    return writer.getvalue()


__all__ = [
    "ENVELOPE_MAGIC",
    "KEY_SIZE",
    "MODE_AES256",
    "decrypt_script",
    "encrypt_script",
    "is_encrypted",
    "parse_key",
]
