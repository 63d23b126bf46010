"""Command line entry point for the decompiler."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence

from . import __version__
from .crypto import decrypt_script, is_encrypted, parse_key
from .decompiler import DecompileResult, ScriptDecompiler
from .detect import VersionDetector, candidate_ids
from .exceptions import DecodeError, EncryptedScriptError, UnknownVersionError
from .io.container import RawScriptBinary
from .io.writer import write_text
from .logging_config import close_debug_logger, configure_debug_file_logger
from .options import DecompilerOptions, load_options
from .report import DecompileReport
from .utils import create_output_path, setup_logging
from .versions import DEFAULT_REGISTRY
from .vm.disassembler import Disassembler, format_listing

LOG = logging.getLogger(__name__)

SCRIPT_SUFFIXES = (".gdc", ".gde")

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_USAGE = 2


class InputError(Exception):
    """Raised when an input file cannot be turned into a compiled unit."""


# ---------------------------------------------------------------------------
# Input handling
# ---------------------------------------------------------------------------


def _gather_inputs(target: Path) -> List[Path]:
    if target.is_dir():
        return sorted(path for path in target.rglob("*") if path.suffix.lower() in SCRIPT_SUFFIXES)
    if target.exists():
        return [target]
    raise FileNotFoundError(target)


def _collect(paths: Sequence[str]) -> List[Path]:
    gathered: List[Path] = []
    for raw in paths:
        found = _gather_inputs(Path(raw))
        if not found:
            LOG.warning("no compiled scripts found under %s", raw)
        gathered.extend(found)
    return sorted(set(gathered))


def _load_raw(path: Path, key: Optional[bytes], engine_major: int) -> RawScriptBinary:
    blob = path.read_bytes()
    if is_encrypted(blob):
        if key is None:
            raise InputError(f"{path}: script is encrypted, pass --key")
        try:
            blob = decrypt_script(blob, key, engine_major=engine_major)
        except EncryptedScriptError as exc:
            raise InputError(f"{path}: {exc}") from None
    try:
        return RawScriptBinary.from_bytes(blob, name=path.name)
    except DecodeError as exc:
        raise InputError(f"{path}: not a compiled script ({exc})") from None


def _output_target(source: Path, output: Optional[Path], batch: bool) -> Path:
    if output is None:
        return create_output_path(source)
    if batch or output.is_dir() or output.suffix == "":
        return create_output_path(source, directory=output)
    return output


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


def _options_from_args(args: argparse.Namespace) -> DecompilerOptions:
    return load_options(
        args.config,
        heuristic=True if args.heuristic else None,
        prefer=args.prefer,
        jobs=args.jobs,
        match_min_cases=getattr(args, "match_min_cases", None),
        raw_block_limit=getattr(args, "raw_block_limit", None),
        provenance_header=True if getattr(args, "provenance", False) else None,
    )


def _cmd_decompile(args: argparse.Namespace, options: DecompilerOptions, key: Optional[bytes]) -> int:
    inputs = _collect(args.inputs)
    if not inputs:
        LOG.warning("no input files discovered")
        return EXIT_OK

    report = DecompileReport(script_key_used=args.key)
    loaded: List[Path] = []
    raws: List[RawScriptBinary] = []
    for path in inputs:
        try:
            raws.append(_load_raw(path, key, args.engine_major))
        except InputError as exc:
            LOG.error("%s", exc)
            report.errors.append(str(exc))
            continue
        loaded.append(path)

    decompiler = ScriptDecompiler(DEFAULT_REGISTRY, options)
    started = time.perf_counter()
    if args.bytecode:
        results = [decompiler.decompile(raw, version=args.bytecode) for raw in raws]
    else:
        results = decompiler.decompile_many(raws)
    report.duration = time.perf_counter() - started

    output = Path(args.output) if args.output else None
    batch = len(raws) > 1
    for path, result in zip(loaded, results):
        target: Optional[Path] = None
        if result.source is not None:
            if args.stdout:
                sys.stdout.write(result.source)
            else:
                target = _output_target(path, output, batch)
                write_text(target, result.source)
                LOG.info("wrote %s (%s)", target, result.status)
        report.add(result, target)

    if args.report:
        report.write(args.report)
        LOG.info("report written to %s", args.report)
    if args.json:
        print(json.dumps(report.to_json(), indent=2))
    elif not args.stdout:
        print(report.to_text())
    return EXIT_OK if report.ok else EXIT_PARTIAL


def _cmd_detect(args: argparse.Namespace, options: DecompilerOptions, key: Optional[bytes]) -> int:
    detector = VersionDetector(
        DEFAULT_REGISTRY,
        prefix_limit=options.prefix_limit,
        probe_functions=options.probe_functions,
        min_score=options.min_score,
    )
    exit_code = EXIT_OK
    payload = []
    for path in _collect(args.inputs):
        try:
            raw = _load_raw(path, key, args.engine_major)
        except InputError as exc:
            LOG.error("%s", exc)
            exit_code = EXIT_PARTIAL
            continue
        match = detector.detect(raw, heuristic=options.heuristic, prefer=options.prefer)
        if not match.ok:
            exit_code = EXIT_PARTIAL
        entry = {"file": str(path), **match.as_dict()}
        payload.append(entry)
        if not args.json:
            label = match.version.label if match.version is not None else "-"
            print(f"{path}: {match.status.value} {match.tag} {label}")
            if match.candidates and match.version is None:
                print("  candidates: " + ", ".join(candidate_ids(match)))
    if args.json:
        print(json.dumps(payload, indent=2))
    return exit_code


def _cmd_disasm(args: argparse.Namespace, options: DecompilerOptions, key: Optional[bytes]) -> int:
    try:
        raw = _load_raw(Path(args.path), key, args.engine_major)
    except (InputError, FileNotFoundError) as exc:
        LOG.error("%s", exc)
        return EXIT_USAGE
    try:
        version = DEFAULT_REGISTRY.get(args.bytecode or raw.version_tag)
    except UnknownVersionError as exc:
        LOG.error("%s: %s", raw.name, exc)
        return EXIT_PARTIAL
    unit = Disassembler(version).decode_unit(raw.payload)
    if args.json:
        print(json.dumps(unit.as_dict(), indent=2))
    else:
        sys.stdout.write(format_listing(unit))
    return EXIT_OK if unit.complete else EXIT_PARTIAL


def _cmd_versions(args: argparse.Namespace, options: DecompilerOptions, key: Optional[bytes]) -> int:
    versions = list(DEFAULT_REGISTRY)
    if args.json:
        print(json.dumps([version.as_dict(include_tables=args.tables) for version in versions], indent=2))
        return EXIT_OK
    for version in versions:
        print(f"{version.version_id}  {version.release:<12} {version.date}  bytecode {version.bytecode_format:>2}  {version.summary}")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_input_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--key", help="256-bit script encryption key (64 hex digits) for .gde files")
    parser.add_argument(
        "--engine-major",
        type=int,
        default=3,
        help="engine major version used to encrypt .gde files (default: 3)",
    )


def _add_detection_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--heuristic",
        action="store_true",
        help="score registered versions when the header tag is unknown",
    )
    parser.add_argument("--prefer", help="version id chosen when heuristic candidates tie")
    parser.add_argument("--config", help="JSON file with decompiler options")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gdre", description="Decompile compiled GDScript bytecode")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--debug-log", metavar="PATH", help="write a debug trace of the run to PATH")
    sub = parser.add_subparsers(dest="command", required=True)

    decompile = sub.add_parser("decompile", help="decompile compiled scripts to GDScript source")
    decompile.add_argument("inputs", nargs="+", help="compiled scripts or directories containing them")
    decompile.add_argument("-o", "--output", help="output file, or directory for several inputs")
    decompile.add_argument("--stdout", action="store_true", help="print sources instead of writing files")
    decompile.add_argument("--bytecode", help="force a bytecode version instead of detecting it")
    decompile.add_argument("--jobs", type=int, help="decompile inputs in parallel using N workers")
    decompile.add_argument("--match-min-cases", type=int, help="equality tests needed to render a match")
    decompile.add_argument(
        "--raw-block-limit",
        type=float,
        help="share of raw instructions above which a function is reported Incomplete",
    )
    decompile.add_argument("--provenance", action="store_true", help="prefix sources with a provenance header")
    decompile.add_argument("--report", help="write a batch report (.json or text) to this path")
    decompile.add_argument("--json", action="store_true", help="print the batch report as JSON")
    _add_detection_flags(decompile)
    _add_input_flags(decompile)
    decompile.set_defaults(handler=_cmd_decompile)

    detect = sub.add_parser("detect", help="report the bytecode version of compiled scripts")
    detect.add_argument("inputs", nargs="+")
    detect.add_argument("--json", action="store_true")
    detect.set_defaults(jobs=None)
    _add_detection_flags(detect)
    _add_input_flags(detect)
    detect.set_defaults(handler=_cmd_detect)

    disasm = sub.add_parser("disasm", help="print an instruction listing")
    disasm.add_argument("path")
    disasm.add_argument("--bytecode", help="override the version tag from the header")
    disasm.add_argument("--json", action="store_true")
    disasm.set_defaults(heuristic=False, prefer=None, config=None, jobs=None)
    _add_input_flags(disasm)
    disasm.set_defaults(handler=_cmd_disasm)

    versions = sub.add_parser("versions", help="list registered bytecode versions")
    versions.add_argument("--json", action="store_true")
    versions.add_argument("--tables", action="store_true", help="include opcode and builtin tables in JSON")
    versions.set_defaults(heuristic=False, prefer=None, config=None, jobs=None, key=None, engine_major=3)
    versions.set_defaults(handler=_cmd_versions)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    debug_logger: Optional[logging.Logger] = None
    if args.debug_log:
        debug_logger = configure_debug_file_logger("gdre", Path(args.debug_log))

    try:
        try:
            options = _options_from_args(args)
        except (OSError, ValueError) as exc:
            LOG.error("invalid options: %s", exc)
            return EXIT_USAGE
        key: Optional[bytes] = None
        if args.key:
            try:
                key = parse_key(args.key)
            except EncryptedScriptError as exc:
                LOG.error("%s", exc)
                return EXIT_USAGE
        try:
            return args.handler(args, options, key)
        except FileNotFoundError as exc:
            LOG.error("input %s not found", exc.args[0] if exc.args else exc)
            return EXIT_USAGE
    finally:
        if debug_logger is not None:
            close_debug_logger(debug_logger)


__all__ = ["build_parser", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI wrapper
    raise SystemExit(main())
