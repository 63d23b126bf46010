"""Compiled script container: header tag plus opaque payload."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..exceptions import DecodeError
from .binary import ByteReader, ByteWriter

MAGIC = b"GDSC"


@dataclass(frozen=True)
class RawScriptBinary:
    """A compiled unit as handed over by the archive reader.

    ``version_tag`` is the compiler tag from the header (``b"V_703004f"``),
    ``payload`` the function records that follow it.  ``format_version`` is
    the bytecode format number from the header when known.
    """

    version_tag: bytes
    payload: bytes
    format_version: Optional[int] = None
    name: str = "<script>"

    @classmethod
    def from_bytes(cls, blob: bytes, *, name: str = "<script>") -> "RawScriptBinary":
        reader = ByteReader(blob)
        magic = reader.read_bytes(4, "magic")
        if magic != MAGIC:
            raise DecodeError(f"bad magic {magic!r}", 0)
        format_version = reader.read_uint(4, "format version")
        tag_length = reader.read_uint(1, "tag length")
        tag = reader.read_bytes(tag_length, "version tag")
        return cls(version_tag=tag, payload=bytes(blob[reader.offset:]), format_version=format_version, name=name)

    def to_bytes(self) -> bytes:
        writer = ByteWriter()
        writer.write_bytes(MAGIC)
        writer.write_uint(self.format_version or 0, 4)
        writer.write_uint(len(self.version_tag), 1)
        writer.write_bytes(self.version_tag)
        writer.write_bytes(self.payload)
        return writer.getvalue()

    @property
    def tag_text(self) -> str:
        return self.version_tag.decode("ascii", "replace")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version_tag": self.tag_text,
            "format_version": self.format_version,
            "payload_size": len(self.payload),
        }


def looks_like_script(blob: bytes) -> bool:
    """Return ``True`` when ``blob`` starts with the compiled script magic."""

    return blob[:4] == MAGIC


__all__ = ["MAGIC", "RawScriptBinary", "looks_like_script"]
