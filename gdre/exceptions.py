"""Custom exception hierarchy for the decompiler."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence, Tuple


class DecompilerError(Exception):
    """Base class for all decompilation related errors."""

    kind = "DecompilerError"

    def __init__(
        self,
        message: str,
        *,
        offset: Optional[int] = None,
        block_id: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset
        self.block_id = block_id

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.offset is not None:
            data["byte_offset"] = self.offset
        if self.block_id is not None:
            data["block_id"] = self.block_id
        return data


class RegistryError(DecompilerError):
    """Raised when the bytecode version registry data cannot be resolved."""

    kind = "RegistryError"


class UnknownVersionError(DecompilerError):
    """Raised when a header tag names no registered bytecode version."""

    kind = "UnknownVersion"

    def __init__(self, tag: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"unknown bytecode version {tag!r}")
        self.tag = tag

    def as_dict(self) -> Dict[str, Any]:
        data = super().as_dict()
        data["tag"] = self.tag
        return data


class AmbiguousVersionError(DecompilerError):
    """Raised when heuristic detection cannot separate two or more versions."""

    kind = "AmbiguousVersion"

    def __init__(self, tag: str, candidates: Sequence[str]) -> None:
        names = ", ".join(candidates)
        super().__init__(f"bytecode version {tag!r} is ambiguous between {names}")
        self.tag = tag
        self.candidates: Tuple[str, ...] = tuple(candidates)

    def as_dict(self) -> Dict[str, Any]:
        data = super().as_dict()
        data["tag"] = self.tag
        data["candidates"] = list(self.candidates)
        return data


class DecodeError(DecompilerError):
    """Raised when a byte stream cannot be decoded.

    ``offset`` is the payload offset of the field that could not be read or
    validated.  ``partial`` carries the instructions decoded before the
    failure for diagnostic use.
    """

    kind = "DecodeError"

    def __init__(self, message: str, offset: int, *, partial: Sequence[Any] = ()) -> None:
        super().__init__(f"{message} at offset 0x{offset:04x}", offset=offset)
        self.reason = message
        self.partial = tuple(partial)


class ReconstructError(DecompilerError):
    """Raised when a control-flow graph violates a structural invariant."""

    kind = "ReconstructError"

    def __init__(self, message: str, block_id: int, *, offset: Optional[int] = None) -> None:
        super().__init__(f"{message} (block {block_id})", offset=offset, block_id=block_id)
        self.reason = message


class UnsupportedConstructError(DecompilerError):
    """Raised when bytecode implies a construct its version cannot express."""

    kind = "UnsupportedConstruct"

    def __init__(
        self,
        mnemonic: str,
        feature: str,
        *,
        offset: Optional[int] = None,
        block_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            f"{mnemonic} requires feature {feature!r} which this version lacks",
            offset=offset,
            block_id=block_id,
        )
        self.mnemonic = mnemonic
        self.feature = feature


class EncryptedScriptError(DecompilerError):
    """Raised when an encrypted script envelope cannot be opened."""

    kind = "EncryptedScriptError"


class CancelledError(DecompilerError):
    """Raised when a caller abandons a unit between pipeline stages."""

    kind = "Cancelled"


__all__ = [
    "AmbiguousVersionError",
    "CancelledError",
    "DecodeError",
    "DecompilerError",
    "EncryptedScriptError",
    "ReconstructError",
    "RegistryError",
    "UnknownVersionError",
    "UnsupportedConstructError",
]
