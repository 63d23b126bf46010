"""High level entry point: compiled script bytes in, GDScript source out."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from .detect import DetectionStatus, VersionDetector
from .exceptions import (
    AmbiguousVersionError,
    CancelledError,
    DecodeError,
    DecompilerError,
    UnknownVersionError,
)
from .io.container import RawScriptBinary
from .options import DecompilerOptions
from .pretty.gdscript import Provenance, SourceEmitter
from .utils import run_parallel
from .versions import DEFAULT_REGISTRY, BytecodeVersion, VersionRegistry
from .vm.disassembler import DecodedFunction, DecodedUnit, Disassembler
from .vm.reconstruct_controlflow import ControlFlowReconstructor, StructuredFunction

LOG = logging.getLogger(__name__)

ScriptInput = Union[RawScriptBinary, bytes]


class FunctionStatus(str, Enum):
    OK = "Ok"
    INCOMPLETE = "Incomplete"
    FAILED = "Failed"


class CancellationToken:
    """Cooperative cancellation checked between pipeline stages."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise CancelledError(f"cancelled before {stage}")


@dataclass
class FunctionResult:
    """Outcome for one function of a unit."""

    name: str
    index: int
    status: FunctionStatus
    source: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    confidence: float = 0.0
    instruction_count: int = 0
    raw_blocks: int = 0
    unreachable: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is FunctionStatus.OK

    def as_dict(self, *, include_source: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "index": self.index,
            "status": self.status.value,
            "confidence": self.confidence,
            "instruction_count": self.instruction_count,
            "raw_blocks": self.raw_blocks,
        }
        if self.unreachable:
            data["unreachable_blocks"] = list(self.unreachable)
        if self.error is not None:
            data["error"] = dict(self.error)
        if include_source and self.source is not None:
            data["source"] = self.source
        return data


@dataclass
class DecompileResult:
    """Everything recovered from one compiled unit."""

    unit_name: str
    version_id: Optional[str] = None
    detection: Optional[Dict[str, Any]] = None
    functions: List[FunctionResult] = field(default_factory=list)
    source: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    cancelled: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled and all(fn.ok for fn in self.functions)

    @property
    def status(self) -> str:
        if self.cancelled:
            return "Cancelled"
        if self.source is None:
            return "Failed"
        if self.ok:
            return "Ok"
        return "Incomplete"

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in FunctionStatus}
        for function in self.functions:
            counts[function.status.value] += 1
        return counts

    def as_dict(self, *, include_source: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "unit": self.unit_name,
            "status": self.status,
            "version": self.version_id,
            "functions": [fn.as_dict(include_source=include_source) for fn in self.functions],
            "counts": self.counts(),
            "duration": round(self.duration, 6),
        }
        if self.detection is not None:
            data["detection"] = self.detection
        if self.error is not None:
            data["error"] = dict(self.error)
        if self.warnings:
            data["warnings"] = list(self.warnings)
        if include_source and self.source is not None:
            data["source"] = self.source
        return data

    def to_json(self, *, include_source: bool = True, indent: int = 2) -> str:
        return json.dumps(self.as_dict(include_source=include_source), indent=indent, ensure_ascii=False)

    def to_text(self) -> str:
        lines = [f"{self.unit_name}: {self.status} ({self.version_id or 'no version'})"]
        if self.error is not None:
            offset = self.error.get("byte_offset")
            where = f" at 0x{offset:04x}" if offset is not None else ""
            lines.append(f"  error: {self.error['kind']}{where}: {self.error['message']}")
        for function in self.functions:
            line = f"  {function.index:3d} {function.name}: {function.status.value}"
            if function.status is not FunctionStatus.FAILED:
                line += f" (confidence {function.confidence:.2f})"
            if function.error is not None:
                line += f" - {function.error['kind']}: {function.error['message']}"
            lines.append(line)
        lines.extend(f"  warning: {warning}" for warning in self.warnings)
        return "\n".join(lines)


@dataclass
class _FunctionWork:
    function: DecodedFunction
    result: FunctionResult
    structured: Optional[StructuredFunction] = None


class ScriptDecompiler:
    """Run detection, decoding, reconstruction and emission for compiled units.

    Instances hold only immutable configuration, so one decompiler can serve
    many worker threads at once (see :meth:`decompile_many`).
    """

    def __init__(
        self,
        registry: Optional[VersionRegistry] = None,
        options: Optional[DecompilerOptions] = None,
    ) -> None:
        self.registry = registry or DEFAULT_REGISTRY
        self.options = options or DecompilerOptions()
        self.detector = VersionDetector(
            self.registry,
            prefix_limit=self.options.prefix_limit,
            probe_functions=self.options.probe_functions,
            min_score=self.options.min_score,
        )

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def decompile(
        self,
        raw: ScriptInput,
        *,
        name: Optional[str] = None,
        version: Optional[Union[str, BytecodeVersion]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> DecompileResult:
        started = time.perf_counter()
        result = DecompileResult(unit_name=name or getattr(raw, "name", "<script>"))
        try:
            self._run(raw, result, version, cancel)
        except CancelledError as exc:
            LOG.info("%s: %s", result.unit_name, exc.message)
            result.cancelled = True
            result.source = None
            result.error = exc.as_dict()
        except (UnknownVersionError, AmbiguousVersionError) as exc:
            LOG.error("%s: %s", result.unit_name, exc)
            result.error = exc.as_dict()
            result.source = None
        except DecodeError as exc:
            LOG.error("%s: unreadable container: %s", result.unit_name, exc)
            result.error = exc.as_dict()
            result.source = None
        result.duration = time.perf_counter() - started
        return result

    def decompile_many(
        self,
        items: Sequence[ScriptInput],
        *,
        jobs: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[DecompileResult]:
        """Decompile independent units in parallel, one worker per unit."""

        workers = jobs or self.options.jobs
        results, duration = run_parallel(
            list(items),
            lambda item: self.decompile(item, cancel=cancel),
            jobs=workers,
        )
        LOG.info("decompiled %d unit(s) in %.3fs with %d worker(s)", len(results), duration, workers)
        return results

    # ------------------------------------------------------------------
    # pipeline
    # ------------------------------------------------------------------

    def _run(
        self,
        raw: ScriptInput,
        result: DecompileResult,
        version: Optional[Union[str, BytecodeVersion]],
        cancel: Optional[CancellationToken],
    ) -> None:
        self._checkpoint(cancel, "detection")
        if not isinstance(raw, RawScriptBinary):
            raw = RawScriptBinary.from_bytes(bytes(raw), name=result.unit_name)
        bytecode_version = self._resolve_version(raw, version, result)
        result.version_id = bytecode_version.version_id

        self._checkpoint(cancel, "decoding")
        unit = Disassembler(bytecode_version).decode_unit(raw.payload)
        if unit.error is not None:
            LOG.warning("%s: %s", result.unit_name, unit.error)
            result.error = unit.error.as_dict()

        self._checkpoint(cancel, "reconstruction")
        reconstructor = ControlFlowReconstructor(bytecode_version, self.options.reconstruct_options())
        work = [self._reconstruct_function(function, reconstructor, result) for function in unit.functions]

        self._checkpoint(cancel, "emission")
        emitter = SourceEmitter(bytecode_version, indent=self.options.indent)
        function_names = [function.name for function in unit.functions]
        sources = [self._emit_function(item, emitter, function_names) for item in work]
        result.functions = [item.result for item in work]
        result.functions.extend(self._missing_functions(unit))
        result.source = emitter.emit_unit(
            sources,
            extends=unit.extends,
            class_name=unit.class_name,
            provenance=self._provenance(result, bytecode_version) if self.options.provenance_header else None,
        )
        counts = result.counts()
        LOG.info(
            "%s: %d ok, %d incomplete, %d failed (%s)",
            result.unit_name,
            counts["Ok"],
            counts["Incomplete"],
            counts["Failed"],
            bytecode_version.version_id,
        )

    @staticmethod
    def _checkpoint(cancel: Optional[CancellationToken], stage: str) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled(stage)

    def _resolve_version(
        self,
        raw: RawScriptBinary,
        version: Optional[Union[str, BytecodeVersion]],
        result: DecompileResult,
    ) -> BytecodeVersion:
        if isinstance(version, BytecodeVersion):
            return version
        if version is not None:
            return self.registry.get(version)
        match = self.detector.detect(raw, heuristic=self.options.heuristic, prefer=self.options.prefer)
        result.detection = match.as_dict()
        resolved = match.require()
        if match.status is DetectionStatus.HEURISTIC:
            warning = (
                f"version {resolved.version_id} chosen heuristically for tag {match.tag!r} "
                f"(score {match.confidence:.2f})"
            )
            LOG.warning("%s: %s", result.unit_name, warning)
            result.warnings.append(warning)
        return resolved

    def _reconstruct_function(
        self,
        function: DecodedFunction,
        reconstructor: ControlFlowReconstructor,
        unit_result: DecompileResult,
    ) -> _FunctionWork:
        result = FunctionResult(
            name=function.name,
            index=function.header.index,
            status=FunctionStatus.OK,
            instruction_count=len(function.instructions),
        )
        work = _FunctionWork(function, result)
        if function.error is not None:
            result.status = FunctionStatus.INCOMPLETE
            result.error = function.error.as_dict()
        try:
            structured = reconstructor.reconstruct(function.instructions, code_length=function.code_length)
        except DecompilerError as exc:
            LOG.warning("%s: %s failed: %s", unit_result.unit_name, function.name, exc)
            result.status = FunctionStatus.FAILED
            result.error = exc.as_dict()
            return work

        work.structured = structured
        result.confidence = structured.confidence
        result.raw_blocks = structured.raw_blocks
        result.unreachable = list(structured.unreachable)
        if structured.unreachable:
            unit_result.warnings.append(
                f"{function.name}: unreachable blocks {structured.unreachable} (possible version misdetection)"
            )
        if structured.low_confidence:
            LOG.warning(
                "%s: %s has %d raw block(s), %d stack residue value(s)",
                unit_result.unit_name,
                function.name,
                structured.raw_blocks,
                structured.residue,
            )
        if result.status is FunctionStatus.OK and structured.raw_ratio > self.options.raw_block_limit:
            result.status = FunctionStatus.INCOMPLETE
        elif result.status is FunctionStatus.OK and structured.raw_transfers:
            # a return or jump left in a comment changes what the source does
            result.status = FunctionStatus.INCOMPLETE
        return work

    def _emit_function(self, work: _FunctionWork, emitter: SourceEmitter, function_names: Sequence[str]) -> str:
        function = work.function
        result = work.result
        if work.structured is None:
            message = result.error["message"] if result.error else "unknown failure"
            return emitter.emit_failure(function.header, message)
        try:
            source = emitter.emit_function(
                function.header,
                function.constants,
                work.structured,
                function_names=function_names,
            )
        except (LookupError, TypeError, ValueError) as exc:
            LOG.warning("%s could not be rendered: %s", function.name, exc)
            result.status = FunctionStatus.FAILED
            result.error = {"kind": "EmitError", "message": str(exc)}
            return emitter.emit_failure(function.header, str(exc))
        result.source = source
        return source

    @staticmethod
    def _missing_functions(unit: DecodedUnit) -> List[FunctionResult]:
        if unit.error is None:
            return []
        missing = []
        for index in range(len(unit.functions), unit.function_count):
            missing.append(
                FunctionResult(
                    name=f"func_{index}",
                    index=index,
                    status=FunctionStatus.FAILED,
                    error=unit.error.as_dict(),
                )
            )
        return missing

    @staticmethod
    def _provenance(result: DecompileResult, version: BytecodeVersion) -> Provenance:
        detection = None
        if result.detection is not None:
            detection = f"{result.detection['status']} (confidence {result.detection['confidence']})"
        return Provenance.for_unit(result.unit_name, version, detection=detection, notes=result.warnings)


def decompile(
    raw: ScriptInput,
    *,
    registry: Optional[VersionRegistry] = None,
    options: Optional[DecompilerOptions] = None,
    **kwargs: Any,
) -> DecompileResult:
    """Convenience wrapper around :meth:`ScriptDecompiler.decompile`."""

    return ScriptDecompiler(registry, options).decompile(raw, **kwargs)


__all__ = [
    "CancellationToken",
    "DecompileResult",
    "FunctionResult",
    "FunctionStatus",
    "ScriptDecompiler",
    "decompile",
]
