"""Structured batch report helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .decompiler import DecompileResult, FunctionStatus
from .io.writer import write_json, write_text


def _mask_script_key(value: str | None) -> str | None:
    """Return the first six characters of the key followed by an ellipsis."""

    if not value:
        return None
    prefix = value[:6]
    return f"{prefix}... (len={len(value)})"


@dataclass
class DecompileReport:
    """Summarises one batch of decompiled units for maintainers."""

    results: List[DecompileResult] = field(default_factory=list)
    script_key_used: str | None = None
    duration: float = 0.0
    outputs: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def add(self, result: DecompileResult, output: Optional[Path] = None) -> None:
        self.results.append(result)
        if output is not None:
            self.outputs[result.unit_name] = str(output)

    @property
    def ok(self) -> bool:
        return not self.errors and all(result.ok for result in self.results)

    def function_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in FunctionStatus}
        for result in self.results:
            for key, value in result.counts().items():
                counts[key] += value
        return counts

    def unit_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for result in self.results:
            counts[result.status] = counts.get(result.status, 0) + 1
        return counts

    def masked_script_key(self) -> str | None:
        return _mask_script_key(self.script_key_used)

    def to_text(self) -> str:
        """Format the report as a human-readable summary."""

        lines: List[str] = []
        units = self.unit_counts()
        functions = self.function_counts()
        unit_line = f"Units: {len(self.results)}"
        if units:
            unit_line += " (" + ", ".join(f"{key} {value}" for key, value in sorted(units.items())) + ")"
        lines.append(unit_line)
        lines.append(
            "Functions: "
            + ", ".join(f"{key} {value}" for key, value in functions.items())
        )
        masked_key = self.masked_script_key()
        if masked_key:
            lines.append(f"Script key: {masked_key}")
        lines.append(f"Elapsed: {self.duration:.2f}s")
        for result in self.results:
            lines.append("")
            lines.append(result.to_text())
            output = self.outputs.get(result.unit_name)
            if output:
                lines.append(f"  -> {output}")
        if self.errors:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"  - {error}" for error in self.errors)
        return "\n".join(lines)

    def to_json(self) -> Dict[str, object]:
        """Return a JSON-serialisable representation with masked secrets."""

        return {
            "ok": self.ok,
            "script_key_used": self.masked_script_key(),
            "duration": round(self.duration, 6),
            "units": self.unit_counts(),
            "functions": self.function_counts(),
            "results": [result.as_dict(include_source=False) for result in self.results],
            "outputs": dict(self.outputs),
            "errors": list(self.errors),
        }

    def write(self, path: str | Path) -> Path:
        """Write the report to ``path``; ``.json`` selects the JSON form."""

        target = Path(path)
        if target.suffix.lower() == ".json":
            write_json(target, self.to_json())
        else:
            write_text(target, self.to_text() + "\n")
        return target


__all__ = ["DecompileReport"]
