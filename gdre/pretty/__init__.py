"""Helpers for rendering reconstructed functions as script source."""

from .gdscript import (
    KEYWORDS,
    RAW_MARKER,
    NameTable,
    Provenance,
    SourceEmitter,
    emit,
    escape_string,
    format_float,
    function_display_name,
)

__all__ = [
    "KEYWORDS",
    "RAW_MARKER",
    "NameTable",
    "Provenance",
    "SourceEmitter",
    "emit",
    "escape_string",
    "format_float",
    "function_display_name",
]
