"""Tunable settings for the decompiler pipeline."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .detect import DEFAULT_MIN_SCORE, DEFAULT_PREFIX_LIMIT, DEFAULT_PROBE_FUNCTIONS
from .vm.reconstruct_controlflow import DEFAULT_MATCH_MIN_CASES, ReconstructOptions

LOG = logging.getLogger(__name__)

DEFAULT_RAW_BLOCK_LIMIT = 0.5


@dataclass(frozen=True)
class DecompilerOptions:
    """Settings shared by every unit a :class:`~gdre.decompiler.ScriptDecompiler` processes.

    ``raw_block_limit`` is the share of a function's instructions that may be
    left in raw blocks before the function is reported ``Incomplete`` instead
    of ``Ok``; ``match_min_cases`` is the number of equality tests a chain
    needs before it is rendered as ``match``.
    """

    heuristic: bool = False
    prefix_limit: int = DEFAULT_PREFIX_LIMIT
    probe_functions: int = DEFAULT_PROBE_FUNCTIONS
    min_score: float = DEFAULT_MIN_SCORE
    prefer: Optional[str] = None
    jobs: int = 1
    match_min_cases: int = DEFAULT_MATCH_MIN_CASES
    raw_block_limit: float = DEFAULT_RAW_BLOCK_LIMIT
    max_steps: Optional[int] = None
    indent: str = "\t"
    provenance_header: bool = False

    def __post_init__(self) -> None:
        if self.prefix_limit <= 0:
            raise ValueError("prefix_limit must be positive")
        if self.probe_functions <= 0:
            raise ValueError("probe_functions must be positive")
        if self.jobs < 1:
            raise ValueError("jobs must be at least 1")
        if self.match_min_cases < 2:
            raise ValueError("match_min_cases must be at least 2")
        if not 0.0 <= self.raw_block_limit <= 1.0:
            raise ValueError("raw_block_limit must be between 0 and 1")
        if not 0.0 <= self.min_score <= 1.0:
            raise ValueError("min_score must be between 0 and 1")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DecompilerOptions":
        known = {item.name for item in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = key.replace("-", "_")
            if name not in known:
                LOG.warning("ignoring unknown option %r", key)
                continue
            values[name] = value
        return cls(**values)

    def merged(self, **overrides: Any) -> "DecompilerOptions":
        """Return a copy with every non-``None`` override applied."""

        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes) if changes else self

    def reconstruct_options(self) -> ReconstructOptions:
        return ReconstructOptions(match_min_cases=self.match_min_cases, max_steps=self.max_steps)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_options(path: Optional[str | Path] = None, **overrides: Any) -> DecompilerOptions:
    """Load options from a JSON object file and apply ``overrides``."""

    options = DecompilerOptions()
    if path is not None:
        config_path = Path(path)
        with config_path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, Mapping):
            raise ValueError(f"{config_path}: options file must contain a JSON object")
        options = DecompilerOptions.from_mapping(data)
        LOG.debug("loaded options from %s", config_path)
    return options.merged(**overrides)


__all__ = ["DEFAULT_RAW_BLOCK_LIMIT", "DecompilerOptions", "load_options"]
