"""Atomic filesystem writes for decompiled sources and reports."""

from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Callable, TextIO


def _as_fs_path(path: str | os.PathLike[str]) -> str:
    return os.fspath(path)


def _ensure_directory(path: str) -> str:
    directory = os.path.dirname(path)
    if not directory:
        directory = "."
    os.makedirs(directory, exist_ok=True)
    return directory


def _atomic_write_text(
    path: str | os.PathLike[str],
    writer: Callable[[TextIO], None],
    *,
    encoding: str = "utf-8",
) -> None:
    target = _as_fs_path(path)
    directory = _ensure_directory(target)
    fd, temp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".partial", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="\n") as handle:
            writer(handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
    except BaseException:
        try:
            os.unlink(temp_path)
        except FileNotFoundError:
            pass
        raise


def write_text(path: str | os.PathLike[str], content: str, *, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``content`` without leaving partial files behind."""

    _atomic_write_text(path, lambda handle: handle.write(content), encoding=encoding)


def write_json(
    path: str | os.PathLike[str],
    obj: Any,
    *,
    encoding: str = "utf-8",
    sort_keys: bool = False,
) -> None:
    """Serialise ``obj`` as pretty JSON at ``path``."""

    def _writer(handle: TextIO) -> None:
        json.dump(obj, handle, ensure_ascii=False, indent=2, sort_keys=sort_keys)
        handle.write("\n")

    _atomic_write_text(path, _writer, encoding=encoding)


__all__ = ["write_json", "write_text"]
