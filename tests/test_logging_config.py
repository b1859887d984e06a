"""Tests for opencoder.core.logging_config."""
from __future__ import annotations

import logging
import os
import time

import pytest

from opencoder.core import logging_config
from opencoder.core.logging_config import (
    activity_logger,
    cleanup_old_logs,
    set_cycle_log,
    setup_logging,
)


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved = list(root.handlers)
    saved_level = root.level
    logging_config._log_dir = None
    logging_config._cycle_handler = None
    yield
    for handler in list(root.handlers) + list(activity_logger.handlers):
        handler.close()
    root.handlers[:] = saved
    root.setLevel(saved_level)
    activity_logger.handlers.clear()
    activity_logger.propagate = True
    logging_config._log_dir = None
    logging_config._cycle_handler = None


def test_setup_writes_main_log(tmp_path, restore_logging):
    log_dir = str(tmp_path / "logs")
    setup_logging(log_dir, "debug")
    logging.getLogger("opencoder.test").info("hello from test")
    activity_logger.info("activity line")
    for handler in logging.getLogger().handlers:
        handler.flush()

    with open(os.path.join(log_dir, "main.log"), encoding="utf-8") as f:
        content = f.read()
    assert "hello from test" in content
    assert "activity line" in content
    assert logging_config.get_log_dir() == log_dir


def test_set_cycle_log_switches_files(tmp_path, restore_logging):
    setup_logging(str(tmp_path / "logs"))
    first = set_cycle_log(1)
    activity_logger.info("in cycle one")
    second = set_cycle_log(2)
    activity_logger.info("in cycle two")
    for handler in activity_logger.handlers:
        handler.flush()

    assert first.endswith("cycle_001.log")
    assert second.endswith("cycle_002.log")
    with open(first, encoding="utf-8") as f:
        assert "in cycle one" in f.read()
    with open(second, encoding="utf-8") as f:
        text = f.read()
    assert "in cycle two" in text
    assert "in cycle one" not in text


def test_set_cycle_log_before_setup(restore_logging):
    assert set_cycle_log(1) is None


def test_cleanup_old_logs(tmp_path):
    old = tmp_path / "cycle_001.log"
    new = tmp_path / "cycle_002.log"
    old.write_text("old", encoding="utf-8")
    new.write_text("new", encoding="utf-8")
    stale = time.time() - 40 * 24 * 60 * 60
    os.utime(old, (stale, stale))

    assert cleanup_old_logs(str(tmp_path), 30) == 1
    assert not old.exists()
    assert new.exists()
    assert cleanup_old_logs(str(tmp_path), 0) == 0
    assert cleanup_old_logs(str(tmp_path / "missing"), 30) == 0
