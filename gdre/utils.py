"""Shared helpers: console logging, output paths and the unit worker pool."""

from __future__ import annotations

import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")
R = TypeVar("R")

LOG = logging.getLogger(__name__)

CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure console logging for the ``gdre`` command line.

    The root logger gets a stderr handler only if nothing configured one
    before; the ``gdre`` package level is applied on every call so
    ``--verbose`` works inside a host application too.
    """

    logging.basicConfig(format=CONSOLE_FORMAT, stream=sys.stderr)
    package = logging.getLogger("gdre")
    package.setLevel(level)
    return package


def create_output_path(input_path: str | Path, suffix: str = ".gd", directory: Optional[Path] = None) -> Path:
    """Return a deterministic source path for the compiled script ``input_path``."""

    path = Path(input_path)
    target = (directory or path.parent) / (path.stem + suffix)
    LOG.debug("output for %s goes to %s", input_path, target)
    return target


def run_parallel(
    items: Sequence[T],
    worker: Callable[[T], R],
    *,
    jobs: int = 1,
    timer: Callable[[], float] | None = None,
) -> Tuple[List[R], float]:
    """Apply ``worker`` to every item on up to ``jobs`` threads.

    Returns ``(results, seconds)`` with results in input order.  A worker
    exception is re-raised here once the pool has shut down.
    """

    if not items:
        return [], 0.0
    clock = timer or time.perf_counter
    started = clock()
    workers = min(jobs, len(items))
    if workers <= 1:
        results = [worker(item) for item in items]
    else:
        LOG.debug("running %d item(s) on %d thread(s)", len(items), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gdre-unit") as pool:
            results = list(pool.map(worker, items))
    return results, clock() - started


__all__ = ["CONSOLE_FORMAT", "create_output_path", "run_parallel", "setup_logging"]
