"""Identify which registered bytecode version produced a compiled script."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .exceptions import AmbiguousVersionError, UnknownVersionError
from .io.container import RawScriptBinary
from .versions import DEFAULT_REGISTRY, BytecodeVersion, VersionRegistry, normalise_version_id
from .vm.disassembler import Disassembler

LOG = logging.getLogger(__name__)

DEFAULT_PREFIX_LIMIT = 512
DEFAULT_PROBE_FUNCTIONS = 8
DEFAULT_MIN_SCORE = 0.75
_TIE_EPSILON = 1e-9


class DetectionStatus(str, Enum):
    """Outcome categories of :meth:`VersionDetector.detect`."""

    EXACT = "exact"
    HEURISTIC = "heuristic"
    AMBIGUOUS = "ambiguous"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class VersionMatch:
    """Result of version detection.

    ``version`` is set for exact and heuristic matches.  Ambiguous results
    list every equally scoring candidate in registry order; the caller may
    resolve them with :meth:`VersionDetector.detect` ``prefer=...``.
    """

    status: DetectionStatus
    tag: str
    version: Optional[BytecodeVersion] = None
    candidates: Tuple[BytecodeVersion, ...] = ()
    scores: Dict[str, float] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.version is not None

    @property
    def confidence(self) -> float:
        if self.status is DetectionStatus.EXACT:
            return 1.0
        if self.version is not None:
            return self.scores.get(self.version.version_id, 0.0)
        return 0.0

    def require(self) -> BytecodeVersion:
        """Return the matched version or raise the matching taxonomy error."""

        if self.version is not None:
            return self.version
        if self.status is DetectionStatus.AMBIGUOUS:
            raise AmbiguousVersionError(self.tag, [candidate.version_id for candidate in self.candidates])
        raise UnknownVersionError(self.tag)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status.value,
            "tag": self.tag,
            "version": self.version.version_id if self.version else None,
            "confidence": round(self.confidence, 4),
        }
        if self.candidates:
            data["candidates"] = [candidate.version_id for candidate in self.candidates]
        if self.scores:
            data["scores"] = {key: round(value, 4) for key, value in self.scores.items()}
        return data


class VersionDetector:
    """Exact tag lookup with an opt-in, bounded heuristic fallback.

    The heuristic decodes at most ``probe_functions`` function records and
    ``prefix_limit`` code bytes of each with every candidate version and
    scores how much of that prefix decodes cleanly.  Its cost is therefore
    bounded by ``versions x prefix`` regardless of the input.
    """

    def __init__(
        self,
        registry: Optional[VersionRegistry] = None,
        *,
        prefix_limit: int = DEFAULT_PREFIX_LIMIT,
        probe_functions: int = DEFAULT_PROBE_FUNCTIONS,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> None:
        self.registry = registry or DEFAULT_REGISTRY
        self.prefix_limit = prefix_limit
        self.probe_functions = probe_functions
        self.min_score = min_score

    def detect(
        self,
        raw: RawScriptBinary,
        *,
        heuristic: bool = False,
        prefer: Optional[str] = None,
    ) -> VersionMatch:
        tag = raw.tag_text
        try:
            version = self.registry.lookup(raw.version_tag)
        except ValueError:
            version = None
        if version is not None:
            LOG.debug("%s: exact bytecode match %s", raw.name, version.version_id)
            return VersionMatch(DetectionStatus.EXACT, tag, version, (version,))
        if not heuristic:
            LOG.debug("%s: tag %r not registered and heuristics disabled", raw.name, tag)
            return VersionMatch(DetectionStatus.UNKNOWN, tag)
        return self._detect_heuristic(raw, tag, prefer)

    def _candidates(self, raw: RawScriptBinary) -> List[BytecodeVersion]:
        if raw.format_version:
            narrowed = self.registry.by_bytecode_format(raw.format_version)
            if narrowed:
                return narrowed
        return list(self.registry)

    def _detect_heuristic(self, raw: RawScriptBinary, tag: str, prefer: Optional[str]) -> VersionMatch:
        scores: Dict[str, float] = {}
        by_id: Dict[str, BytecodeVersion] = {}
        for candidate in self._candidates(raw):
            score = self.score(raw.payload, candidate)
            scores[candidate.version_id] = score
            by_id[candidate.version_id] = candidate
        if not scores:
            return VersionMatch(DetectionStatus.UNKNOWN, tag)

        best = max(scores.values())
        if best < self.min_score:
            LOG.info("%s: heuristic detection inconclusive (best score %.2f)", raw.name, best)
            return VersionMatch(DetectionStatus.UNKNOWN, tag, scores=scores)
        leaders = tuple(by_id[key] for key, value in scores.items() if best - value <= _TIE_EPSILON)
        if len(leaders) == 1:
            LOG.info("%s: heuristically matched %s (score %.2f)", raw.name, leaders[0].version_id, best)
            return VersionMatch(DetectionStatus.HEURISTIC, tag, leaders[0], leaders, scores)

        wanted: Optional[str] = None
        if prefer is not None:
            try:
                wanted = normalise_version_id(prefer)
            except ValueError:
                LOG.warning("%s: ignoring malformed preferred version %r", raw.name, prefer)
        if wanted is not None:
            for candidate in leaders:
                if candidate.version_id == wanted:
                    LOG.info("%s: ambiguity resolved to %s by caller preference", raw.name, wanted)
                    return VersionMatch(DetectionStatus.HEURISTIC, tag, candidate, leaders, scores)
        LOG.warning(
            "%s: %d bytecode versions score equally (%s)",
            raw.name,
            len(leaders),
            ", ".join(candidate.version_id for candidate in leaders),
        )
        return VersionMatch(DetectionStatus.AMBIGUOUS, tag, None, leaders, scores)

    def score(self, payload: bytes, version: BytecodeVersion) -> float:
        """Return the fraction of the probed prefix that decodes under ``version``.

        A unit whose header cannot be read scores zero.  Each probed function
        contributes one point when its prefix decodes cleanly and only uses
        opcodes legal for ``version``; partially decoded functions contribute
        the share of instructions read before the failure, halved.
        """

        unit = Disassembler(version).decode_unit(
            payload,
            prefix_limit=self.prefix_limit,
            max_functions=self.probe_functions,
        )
        if unit.error is not None and not unit.functions:
            return 0.0
        probed = min(unit.function_count, self.probe_functions)
        if probed == 0:
            return 1.0 if unit.error is None else 0.0

        total = 0.0
        for function in unit.functions:
            count = len(function.instructions)
            illegal = sum(1 for inst in function.instructions if not version.is_legal(inst.mnemonic))
            if function.error is None and not illegal:
                total += 1.0
                continue
            clean = count - illegal
            total += 0.5 * clean / (count + 1)
        return total / probed


def detect(
    raw: RawScriptBinary,
    *,
    heuristic: bool = False,
    prefer: Optional[str] = None,
    registry: Optional[VersionRegistry] = None,
) -> VersionMatch:
    """Convenience wrapper around :class:`VersionDetector`."""

    return VersionDetector(registry).detect(raw, heuristic=heuristic, prefer=prefer)


def candidate_ids(match: VersionMatch) -> Sequence[str]:
    return [candidate.version_id for candidate in match.candidates]


__all__ = [
    "DetectionStatus",
    "VersionDetector",
    "VersionMatch",
    "candidate_ids",
    "detect",
]
