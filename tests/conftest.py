"""Test configuration ensuring the project source tree is importable."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

ROOT = Path(__file__).resolve().parent.parent

root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)
else:
    idx = sys.path.index(root_str)
    if idx != 0:
        sys.path.insert(0, sys.path.pop(idx))

from gdre.versions import DEFAULT_REGISTRY, BytecodeVersion, VersionRegistry  # noqa: E402
from gdre.vm.assembler import UnitBuilder  # noqa: E402

# 1.0-dev: no line table, 2-byte jumps, no match/class_name.
OLD_VERSION = "703004f"
# 3.2.0 release: match, wildcard, dollar, INF/NAN/PI/TAU, class_name, is/as.
MODERN_VERSION = "5565f55"

SCRIPT_KEY = "0x" + "00112233445566778899aabbccddeeff" * 2


@pytest.fixture(scope="session")
def registry() -> VersionRegistry:
    return DEFAULT_REGISTRY


@pytest.fixture(scope="session")
def old_version(registry) -> BytecodeVersion:
    return registry.get(OLD_VERSION)


@pytest.fixture(scope="session")
def modern_version(registry) -> BytecodeVersion:
    return registry.get(MODERN_VERSION)


@pytest.fixture
def unit_builder(registry) -> Callable[..., UnitBuilder]:
    """Return a factory creating :class:`UnitBuilder` objects for a version id."""

    def factory(version_id: str = OLD_VERSION, **kwargs) -> UnitBuilder:
        return UnitBuilder(registry.get(version_id), **kwargs)

    return factory


@pytest.fixture
def script_key() -> str:
    return SCRIPT_KEY
