"""Decompiler for compiled GDScript bytecode across engine releases."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

__version__ = "0.4.0"

if TYPE_CHECKING:  # pragma: no cover - used only for type checkers
    from gdre.decompiler import (
        CancellationToken,
        DecompileResult,
        FunctionResult,
        FunctionStatus,
        ScriptDecompiler,
        decompile,
    )
    from gdre.detect import DetectionStatus, VersionDetector, VersionMatch, detect
    from gdre.io.container import RawScriptBinary
    from gdre.options import DecompilerOptions, load_options
    from gdre.report import DecompileReport
    from gdre.versions import DEFAULT_REGISTRY, BytecodeVersion, VersionRegistry, get_version

_EXPORTS = {
    "CancellationToken": "gdre.decompiler",
    "DecompileResult": "gdre.decompiler",
    "FunctionResult": "gdre.decompiler",
    "FunctionStatus": "gdre.decompiler",
    "ScriptDecompiler": "gdre.decompiler",
    "decompile": "gdre.decompiler",
    "DetectionStatus": "gdre.detect",
    "VersionDetector": "gdre.detect",
    "VersionMatch": "gdre.detect",
    "detect": "gdre.detect",
    "RawScriptBinary": "gdre.io.container",
    "DecompilerOptions": "gdre.options",
    "load_options": "gdre.options",
    "DecompileReport": "gdre.report",
    "DEFAULT_REGISTRY": "gdre.versions",
    "BytecodeVersion": "gdre.versions",
    "VersionRegistry": "gdre.versions",
    "get_version": "gdre.versions",
}

__all__ = sorted(_EXPORTS) + ["__version__"]


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module), name)
