"""Bounds-checked little-endian readers and writers for compiled scripts."""

from __future__ import annotations

import struct
from typing import Optional

from ..exceptions import DecodeError

_FLOAT_FORMATS = {4: "<f", 8: "<d"}


class ByteReader:
    """Sequential reader over an immutable buffer.

    Every read is checked against the end of the buffer (or a narrower
    ``limit``) and fails with a :class:`DecodeError` carrying the offset at
    which the field started.
    """

    __slots__ = ("_view", "offset", "limit")

    def __init__(self, data: bytes, *, offset: int = 0, limit: Optional[int] = None) -> None:
        self._view = memoryview(data)
        self.offset = offset
        self.limit = len(self._view) if limit is None else min(limit, len(self._view))

    def __len__(self) -> int:
        return len(self._view)

    @property
    def remaining(self) -> int:
        return max(self.limit - self.offset, 0)

    def at_end(self) -> bool:
        return self.offset >= self.limit

    def _take(self, size: int, what: str, limit: Optional[int] = None) -> memoryview:
        if size < 0:
            raise DecodeError(f"negative length for {what}", self.offset)
        end = self.offset + size
        bound = self.limit if limit is None else min(limit, self.limit)
        if end > bound:
            raise DecodeError(f"truncated {what}", self.offset)
        chunk = self._view[self.offset:end]
        self.offset = end
        return chunk

    def read_bytes(self, size: int, what: str = "bytes", *, limit: Optional[int] = None) -> bytes:
        return bytes(self._take(size, what, limit))

    def read_uint(self, width: int, what: str = "integer", *, limit: Optional[int] = None) -> int:
        return int.from_bytes(self._take(width, what, limit), "little", signed=False)

    def read_int(self, width: int, what: str = "integer", *, limit: Optional[int] = None) -> int:
        return int.from_bytes(self._take(width, what, limit), "little", signed=True)

    def read_float(self, width: int, what: str = "float") -> float:
        fmt = _FLOAT_FORMATS.get(width)
        if fmt is None:
            raise DecodeError(f"unsupported float width {width}", self.offset)
        return struct.unpack(fmt, self._take(width, what))[0]

    def read_string(self, what: str = "string") -> str:
        start = self.offset
        size = self.read_uint(4, f"{what} length")
        raw = self._take(size, what)
        try:
            return bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError(f"{what} is not valid UTF-8", start) from None


class ByteWriter:
    """Append-only counterpart of :class:`ByteReader`."""

    __slots__ = ("_buffer",)

    def __init__(self) -> None:
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def getvalue(self) -> bytes:
        return bytes(self._buffer)

    def write_bytes(self, data: bytes) -> None:
        self._buffer += data

    def write_uint(self, value: int, width: int) -> None:
        try:
            self._buffer += int(value).to_bytes(width, "little", signed=False)
        except OverflowError:
            raise ValueError(f"value {value} does not fit in {width} unsigned bytes") from None

    def write_int(self, value: int, width: int) -> None:
        try:
            self._buffer += int(value).to_bytes(width, "little", signed=True)
        except OverflowError:
            raise ValueError(f"value {value} does not fit in {width} signed bytes") from None

    def write_float(self, value: float, width: int) -> None:
        fmt = _FLOAT_FORMATS.get(width)
        if fmt is None:
            raise ValueError(f"unsupported float width {width}")
        self._buffer += struct.pack(fmt, value)

    def write_string(self, value: str) -> None:
        encoded = value.encode("utf-8")
        self.write_uint(len(encoded), 4)
        self._buffer += encoded


__all__ = ["ByteReader", "ByteWriter"]
