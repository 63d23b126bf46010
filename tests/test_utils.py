import logging
import time
from pathlib import Path

import pytest

from gdre.logging_config import DebugTraceHandler, close_debug_logger, configure_debug_file_logger
from gdre.utils import create_output_path, run_parallel, setup_logging


def test_run_parallel_keeps_input_order():
    items = [5, 1, 4, 2, 3]

    def worker(value):
        time.sleep(value / 1000)
        return value * 10

    results, duration = run_parallel(items, worker, jobs=3)
    assert results == [50, 10, 40, 20, 30]
    assert duration >= 0.0


def test_run_parallel_empty_and_serial():
    assert run_parallel([], lambda item: item, jobs=4) == ([], 0.0)
    ticks = iter([10.0, 12.5])
    results, duration = run_parallel(["a", "b"], str.upper, timer=lambda: next(ticks))
    assert results == ["A", "B"]
    assert duration == 2.5


def test_run_parallel_propagates_errors():
    def worker(value):
        if value == 2:
            raise RuntimeError("boom")
        return value

    with pytest.raises(RuntimeError, match="boom"):
        run_parallel([1, 2, 3], worker, jobs=2)


def test_create_output_path(tmp_path):
    assert create_output_path(Path("scripts/player.gdc")) == Path("scripts/player.gd")
    assert create_output_path("enemy.gde", directory=tmp_path) == tmp_path / "enemy.gd"
    assert create_output_path("enemy.gdc", suffix=".txt") == Path("enemy.txt")


def test_debug_file_logger_replaces_previous_trace(tmp_path):
    path = tmp_path / "logs" / "debug.log"
    logger = configure_debug_file_logger("gdre.test_debug", path)
    logger.debug("first run")
    logger = configure_debug_file_logger("gdre.test_debug", path)
    logger.info("second run")
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], DebugTraceHandler)
    close_debug_logger(logger)
    assert logger.handlers == []
    assert path.read_text(encoding="utf-8") == "INFO gdre.test_debug: second run\n"


def test_debug_file_logger_keeps_foreign_handlers(tmp_path):
    logger = logging.getLogger("gdre.test_foreign")
    foreign = logging.NullHandler()
    logger.addHandler(foreign)
    try:
        configure_debug_file_logger("gdre.test_foreign", tmp_path / "trace.log", formatter=logging.Formatter("%(message)s"))
        logger.warning("kept")
        close_debug_logger(logger)
        assert logger.handlers == [foreign]
        assert (tmp_path / "trace.log").read_text(encoding="utf-8") == "kept\n"
    finally:
        logger.removeHandler(foreign)


def test_debug_file_logger_honours_level(tmp_path):
    path = tmp_path / "quiet.log"
    logger = configure_debug_file_logger("gdre.test_level", path, level=logging.INFO)
    try:
        logger.debug("hidden")
        logger.info("shown")
    finally:
        close_debug_logger(logger)
    assert path.read_text(encoding="utf-8") == "INFO gdre.test_level: shown\n"


def test_setup_logging_sets_package_level():
    package = logging.getLogger("gdre")
    previous = package.level
    try:
        assert setup_logging(logging.DEBUG) is package
        assert package.level == logging.DEBUG
        setup_logging(logging.WARNING)
        assert package.getEffectiveLevel() == logging.WARNING
    finally:
        package.setLevel(previous)


def test_run_parallel_with_more_jobs_than_items():
    seen = []

    def worker(value):
        seen.append(value)
        return value + 1

    results, _ = run_parallel([1, 2], worker, jobs=8)
    assert results == [2, 3]
    assert sorted(seen) == [1, 2]
