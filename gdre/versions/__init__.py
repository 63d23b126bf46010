"""Registry of historical bytecode versions.

Every compiler release that changed the binary encoding is described by a
:class:`BytecodeVersion`.  The descriptors are built from ``registry.json``
which records a handful of *eras* (full opcode numberings, operand widths and
constant encodings) and a chain of per-commit deltas on top of them.  The
registry is resolved once at import time and never mutated afterwards; use
:meth:`VersionRegistry.with_versions` or :func:`build_registry` to obtain a
new registry with additional entries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from ..exceptions import RegistryError, UnknownVersionError

_REGISTRY_PATH = Path(__file__).with_name("registry.json")

OPERAND_KINDS = ("const", "local", "name", "builtin", "argc", "count", "jump")
FLOW_KINDS = ("next", "jump", "branch_true", "branch_false", "iter_begin", "iter_next", "return")
CONSTANT_KINDS = ("nil", "bool", "int", "float", "string", "resource", "subscript")


@dataclass(frozen=True)
class OpSpec:
    """Description of one instruction: operand kinds, stack effect and flow."""

    mnemonic: str
    operands: Tuple[str, ...] = ()
    pops: int = 0
    pushes: int = 0
    variadic: Tuple[Tuple[str, int], ...] = ()
    flow: str = "next"

    def stack_pops(self, operands: Sequence[int]) -> int:
        """Return how many values the instruction pops for ``operands``."""

        total = self.pops
        for kind, factor in self.variadic:
            total += operands[self.operands.index(kind)] * factor
        return total

    def stack_delta(self, operands: Sequence[int]) -> int:
        return self.pushes - self.stack_pops(operands)

    @property
    def is_branch(self) -> bool:
        return self.flow != "next"

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "mnemonic": self.mnemonic,
            "operands": list(self.operands),
            "pops": self.pops,
            "pushes": self.pushes,
            "flow": self.flow,
        }
        if self.variadic:
            data["variadic"] = dict(self.variadic)
        return data


@dataclass(frozen=True)
class ConstantEncoding:
    """How literal values are laid out in a function's constant pool."""

    int_width: int
    float_width: int
    tags: Mapping[str, int]

    def kind_for_tag(self, tag: int) -> Optional[str]:
        for kind, value in self.tags.items():
            if value == tag:
                return kind
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "int_width": self.int_width,
            "float_width": self.float_width,
            "tags": dict(self.tags),
        }


@dataclass(frozen=True)
class BytecodeVersion:
    """Immutable descriptor for one bytecode dialect."""

    version_id: str
    release: str
    date: str
    bytecode_format: int
    era: str
    engine_major: int
    variant_major: int
    summary: str
    opcodes: Mapping[int, OpSpec]
    operand_widths: Mapping[str, int]
    constants: ConstantEncoding
    line_width: int
    builtins: Tuple[str, ...]
    features: frozenset
    gated_opcodes: Mapping[str, str]
    _by_mnemonic: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}), repr=False, compare=False)

    def __hash__(self) -> int:
        return hash(self.version_id)

    @property
    def tag(self) -> str:
        """Header tag written by the compiler, e.g. ``V_703004f``."""

        return f"V_{self.version_id}"

    @property
    def commit(self) -> int:
        return int(self.version_id, 16)

    @property
    def label(self) -> str:
        return f"{self.release} ({self.version_id} / {self.date} / Bytecode version: {self.bytecode_format})"

    def supports(self, feature: str) -> bool:
        return feature in self.features

    def spec_for(self, opcode: int) -> Optional[OpSpec]:
        return self.opcodes.get(opcode)

    def opcode_for(self, mnemonic: str) -> int:
        try:
            return self._by_mnemonic[mnemonic]
        except KeyError:
            raise KeyError(f"{mnemonic} is not encodable in {self.version_id}") from None

    def has_mnemonic(self, mnemonic: str) -> bool:
        return mnemonic in self._by_mnemonic

    def required_feature(self, mnemonic: str) -> Optional[str]:
        return self.gated_opcodes.get(mnemonic)

    def is_legal(self, mnemonic: str) -> bool:
        """Return ``True`` when ``mnemonic`` may appear in this version's output."""

        feature = self.gated_opcodes.get(mnemonic)
        return feature is None or feature in self.features

    def width(self, kind: str) -> int:
        return self.operand_widths[kind]

    def instruction_size(self, spec: OpSpec) -> int:
        return self.operand_widths["opcode"] + sum(self.operand_widths[kind] for kind in spec.operands)

    def builtin_name(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.builtins):
            return self.builtins[index]
        return None

    def builtin_index(self, name: str) -> int:
        return self.builtins.index(name)

    def as_dict(self, *, include_tables: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "version": self.version_id,
            "tag": self.tag,
            "release": self.release,
            "date": self.date,
            "bytecode": self.bytecode_format,
            "era": self.era,
            "engine_major": self.engine_major,
            "summary": self.summary,
            "features": sorted(self.features),
            "builtin_count": len(self.builtins),
        }
        if include_tables:
            data["opcodes"] = {str(code): spec.mnemonic for code, spec in sorted(self.opcodes.items())}
            data["operand_widths"] = dict(self.operand_widths)
            data["constants"] = self.constants.as_dict()
            data["line_width"] = self.line_width
            data["builtins"] = list(self.builtins)
        return data


# ---------------------------------------------------------------------------
# Version tags
# ---------------------------------------------------------------------------


VersionKey = Union[str, bytes, int, BytecodeVersion]


def normalise_version_id(value: VersionKey) -> str:
    """Return the canonical seven digit hex id for ``value``.

    Accepts ``"V_703004f"``, ``"703004f"``, ``"0x703004f"``, ``0x703004f``
    and the byte string forms of the textual variants.
    """

    if isinstance(value, BytecodeVersion):
        return value.version_id
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"invalid version id {value!r}")
        return f"{value:07x}"
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            value = bytes(value).decode("ascii")
        except UnicodeDecodeError:
            raise ValueError(f"invalid version tag {bytes(value)!r}") from None
    text = value.strip().lower()
    for prefix in ("v_", "0x"):
        if text.startswith(prefix):
            text = text[len(prefix):]
            break
    if not text or len(text) > 7:
        raise ValueError(f"invalid version tag {value!r}")
    try:
        int(text, 16)
    except ValueError:
        raise ValueError(f"invalid version tag {value!r}") from None
    return text.rjust(7, "0")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class VersionRegistry:
    """Ordered, read-only collection of :class:`BytecodeVersion` entries."""

    def __init__(self, versions: Iterable[BytecodeVersion], *, source: Optional[Mapping[str, Any]] = None) -> None:
        entries: Dict[str, BytecodeVersion] = {}
        for version in versions:
            if version.version_id in entries:
                raise RegistryError(f"duplicate bytecode version {version.version_id}")
            entries[version.version_id] = version
        self._entries: Mapping[str, BytecodeVersion] = MappingProxyType(entries)
        self._source = source

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[BytecodeVersion]:
        return iter(self._entries.values())

    def __contains__(self, key: object) -> bool:
        try:
            return self.lookup(key) is not None  # type: ignore[arg-type]
        except ValueError:
            return False

    @property
    def version_ids(self) -> Tuple[str, ...]:
        return tuple(self._entries)

    def lookup(self, key: VersionKey) -> Optional[BytecodeVersion]:
        """Return the descriptor for ``key`` or ``None`` when it is not registered."""

        return self._entries.get(normalise_version_id(key))

    def get(self, key: VersionKey) -> BytecodeVersion:
        """Return the descriptor for ``key`` raising :class:`UnknownVersionError`."""

        try:
            version = self.lookup(key)
        except ValueError:
            version = None
        if version is None:
            raise UnknownVersionError(str(key if not isinstance(key, bytes) else key.decode("ascii", "replace")))
        return version

    def by_bytecode_format(self, bytecode_format: int) -> List[BytecodeVersion]:
        return [version for version in self if version.bytecode_format == bytecode_format]

    def with_versions(self, entries: Sequence[Mapping[str, Any]]) -> "VersionRegistry":
        """Return a new registry that also contains the raw ``entries``."""

        if self._source is None:
            raise RegistryError("registry was not built from data and cannot be extended")
        data = dict(self._source)
        data["versions"] = list(self._source.get("versions", [])) + list(entries)
        return build_registry(data)


def _require(mapping: Mapping[str, Any], key: str, context: str) -> Any:
    try:
        return mapping[key]
    except KeyError:
        raise RegistryError(f"{context}: missing {key!r}") from None


def _build_instruction_specs(data: Mapping[str, Any]) -> Dict[str, OpSpec]:
    specs: Dict[str, OpSpec] = {}
    for mnemonic, raw in _require(data, "instructions", "registry").items():
        operands = tuple(raw.get("operands", ()))
        for kind in operands:
            if kind not in OPERAND_KINDS:
                raise RegistryError(f"instruction {mnemonic}: unknown operand kind {kind!r}")
        variadic = tuple(sorted((raw.get("variadic") or {}).items()))
        for kind, _factor in variadic:
            if kind not in operands:
                raise RegistryError(f"instruction {mnemonic}: variadic operand {kind!r} is not an operand")
        flow = raw.get("flow", "next")
        if flow not in FLOW_KINDS:
            raise RegistryError(f"instruction {mnemonic}: unknown flow {flow!r}")
        specs[mnemonic] = OpSpec(
            mnemonic=mnemonic,
            operands=operands,
            pops=int(raw.get("pops", 0)),
            pushes=int(raw.get("pushes", 0)),
            variadic=variadic,
            flow=flow,
        )
    return specs


def _apply_builtin_delta(builtins: List[str], delta: Mapping[str, Any], context: str) -> List[str]:
    result = list(builtins)
    for name in delta.get("remove", ()):
        if name not in result:
            raise RegistryError(f"{context}: cannot remove unknown builtin {name!r}")
        result.remove(name)
    for old, new in (delta.get("rename") or {}).items():
        if old not in result:
            raise RegistryError(f"{context}: cannot rename unknown builtin {old!r}")
        result[result.index(old)] = new
    for item in delta.get("insert", ()):
        name = item["name"]
        if name in result:
            raise RegistryError(f"{context}: builtin {name!r} already present")
        after = item.get("after")
        if after is None:
            result.append(name)
            continue
        if after not in result:
            raise RegistryError(f"{context}: cannot insert {name!r} after unknown builtin {after!r}")
        result.insert(result.index(after) + 1, name)
    return result


def _apply_feature_delta(features: set, delta: Mapping[str, Any], known: Mapping[str, Any], context: str) -> set:
    result = set(features)
    for name in list(delta.get("add", ())) + list(delta.get("remove", ())):
        if name not in known:
            raise RegistryError(f"{context}: unknown feature {name!r}")
    result.update(delta.get("add", ()))
    result.difference_update(delta.get("remove", ()))
    return result


def build_registry(data: Mapping[str, Any]) -> VersionRegistry:
    """Resolve raw registry ``data`` into a :class:`VersionRegistry`."""

    specs = _build_instruction_specs(data)
    known_features = _require(data, "features", "registry")
    gated = dict(data.get("gated_opcodes", {}))
    for mnemonic, feature in gated.items():
        if mnemonic not in specs:
            raise RegistryError(f"gated opcode {mnemonic!r} is not a known instruction")
        if feature not in known_features:
            raise RegistryError(f"gated opcode {mnemonic!r} names unknown feature {feature!r}")
    eras = _require(data, "eras", "registry")
    raw_versions: List[Mapping[str, Any]] = list(_require(data, "versions", "registry"))

    by_commit: Dict[str, Mapping[str, Any]] = {}
    for raw in raw_versions:
        commit = normalise_version_id(_require(raw, "commit", "version entry"))
        if commit in by_commit:
            raise RegistryError(f"duplicate bytecode version {commit}")
        by_commit[commit] = raw

    # Resolved state per commit: (era, builtins, features).
    resolved: Dict[str, Tuple[str, List[str], set]] = {}

    def resolve(commit: str, chain: Tuple[str, ...] = ()) -> Tuple[str, List[str], set]:
        if commit in resolved:
            return resolved[commit]
        if commit in chain:
            raise RegistryError(f"version {commit}: cyclic base chain {' -> '.join(chain + (commit,))}")
        raw = by_commit.get(commit)
        if raw is None:
            raise RegistryError(f"version {chain[-1] if chain else commit}: unknown base {commit}")
        context = f"version {commit}"
        base = raw.get("base")
        if base is None:
            era = _require(raw, "era", context)
            if era not in eras:
                raise RegistryError(f"{context}: unknown era {era!r}")
            builtins = list(eras[era].get("builtins", ()))
            features: set = set()
        else:
            base_era, builtins, features = resolve(normalise_version_id(base), chain + (commit,))
            era = raw.get("era", base_era)
            if era not in eras:
                raise RegistryError(f"{context}: unknown era {era!r}")
        builtins = _apply_builtin_delta(builtins, raw.get("builtins") or {}, context)
        features = _apply_feature_delta(features, raw.get("features") or {}, known_features, context)
        resolved[commit] = (era, builtins, features)
        return resolved[commit]

    era_tables: Dict[str, Tuple[Mapping[int, OpSpec], Mapping[str, int]]] = {}
    for name, era in eras.items():
        table: Dict[int, OpSpec] = {}
        by_mnemonic: Dict[str, int] = {}
        for code, mnemonic in enumerate(_require(era, "opcodes", f"era {name}")):
            if mnemonic is None:
                continue
            if mnemonic not in specs:
                raise RegistryError(f"era {name}: unknown instruction {mnemonic!r}")
            if mnemonic in by_mnemonic:
                raise RegistryError(f"era {name}: instruction {mnemonic!r} numbered twice")
            table[code] = specs[mnemonic]
            by_mnemonic[mnemonic] = code
        widths = _require(era, "operand_widths", f"era {name}")
        for kind in ("opcode",) + OPERAND_KINDS:
            if int(widths.get(kind, 0)) not in (1, 2, 4, 8):
                raise RegistryError(f"era {name}: invalid width for {kind!r}")
        if len(table) and max(table) >= 1 << (8 * int(widths["opcode"])):
            raise RegistryError(f"era {name}: opcode numbering exceeds opcode width")
        era_tables[name] = (MappingProxyType(table), MappingProxyType(by_mnemonic))

    versions: List[BytecodeVersion] = []
    for commit, raw in by_commit.items():
        era_name, builtins, features = resolve(commit)
        era = eras[era_name]
        table, by_mnemonic = era_tables[era_name]
        constants = _require(era, "constants", f"era {era_name}")
        tags = dict(_require(era, "constant_tags", f"era {era_name}"))
        for kind in CONSTANT_KINDS:
            if kind not in tags:
                raise RegistryError(f"era {era_name}: missing constant tag for {kind!r}")
        versions.append(
            BytecodeVersion(
                version_id=commit,
                release=raw.get("release", ""),
                date=raw.get("date", ""),
                bytecode_format=int(_require(raw, "bytecode", f"version {commit}")),
                era=era_name,
                engine_major=int(era.get("engine_major", 0)),
                variant_major=int(era.get("variant_major", 0)),
                summary=raw.get("summary", ""),
                opcodes=table,
                operand_widths=MappingProxyType({k: int(v) for k, v in era["operand_widths"].items()}),
                constants=ConstantEncoding(
                    int_width=int(constants["int_width"]),
                    float_width=int(constants["float_width"]),
                    tags=MappingProxyType(tags),
                ),
                line_width=int(era.get("line_width", 0)),
                builtins=tuple(builtins),
                features=frozenset(features),
                gated_opcodes=MappingProxyType(gated),
                _by_mnemonic=by_mnemonic,
            )
        )
    return VersionRegistry(versions, source=data)


def load_registry(path: Optional[Path] = None) -> VersionRegistry:
    """Load and resolve the registry stored at ``path`` (``registry.json`` by default)."""

    target = path or _REGISTRY_PATH
    try:
        data = json.loads(Path(target).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise RegistryError(f"cannot read registry {target}: {exc}") from exc
    return build_registry(data)


DEFAULT_REGISTRY = load_registry()


def lookup(key: VersionKey) -> Optional[BytecodeVersion]:
    """Return the default registry's entry for ``key`` or ``None``."""

    return DEFAULT_REGISTRY.lookup(key)


def get_version(key: VersionKey) -> BytecodeVersion:
    return DEFAULT_REGISTRY.get(key)


def iter_versions() -> Iterator[BytecodeVersion]:
    """Yield registered versions in registry order (oldest first)."""

    return iter(DEFAULT_REGISTRY)


__all__ = [
    "BytecodeVersion",
    "ConstantEncoding",
    "DEFAULT_REGISTRY",
    "OpSpec",
    "VersionRegistry",
    "build_registry",
    "get_version",
    "iter_versions",
    "load_registry",
    "lookup",
    "normalise_version_id",
]
