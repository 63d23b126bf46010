"""Binary containers, byte-level helpers and atomic output writers."""

from .binary import ByteReader, ByteWriter
from .container import MAGIC, RawScriptBinary, looks_like_script
from .writer import write_json, write_text

__all__ = [
    "ByteReader",
    "ByteWriter",
    "MAGIC",
    "RawScriptBinary",
    "looks_like_script",
    "write_json",
    "write_text",
]
