"""Centralized logging configuration for opencoder.

Sets up Python's logging system to write to both stdout and a rotating
main log inside the project workspace.  Also provides a dedicated
activity logger that mirrors everything the console shows, plus an
optional per-cycle log file.

Log directory structure::

    .opencode/opencoder/
    ├── alerts.jsonl              # Append-only error/alert record
    └── logs/
        ├── main.log              # All logger output (rotating)
        └── cycles/
            └── cycle_001.log     # Activity for a single cycle
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import time
from typing import Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None
_cycle_handler: Optional[logging.Handler] = None

# Console mirror: everything shown on screen, untruncated
activity_logger = logging.getLogger("opencoder._activity")

_FORMAT = logging.Formatter(
    "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
_ACTIVITY_FORMAT = logging.Formatter("[%(asctime)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


def get_log_dir() -> Optional[str]:
    """Return the configured log directory (None before setup)."""
    return _log_dir


def setup_logging(log_dir: str, log_level: str = "info") -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir, _cycle_handler
    _log_dir = log_dir
    _cycle_handler = None

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    # ── Root logger: stdout + rotating file ──────────────────
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Clear any existing handlers (avoid duplicate output on re-init)
    root.handlers.clear()

    # Stdout only carries warnings from library code; the console logger
    # renders normal progress itself.
    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(max(level, logging.WARNING))
    stdout_handler.setFormatter(_FORMAT)
    root.addHandler(stdout_handler)

    main_log_path = os.path.join(log_dir, "main.log")
    file_handler = logging.handlers.RotatingFileHandler(
        main_log_path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)  # Capture everything to file
    file_handler.setFormatter(_FORMAT)
    root.addHandler(file_handler)

    # ── Activity logger (shares main.log, no propagation) ────
    activity_logger.setLevel(logging.INFO)
    activity_logger.propagate = False
    activity_logger.handlers.clear()
    activity_logger.addHandler(file_handler)

    logging.getLogger("opencoder").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def get_cycle_log_dir() -> Optional[str]:
    if not _log_dir:
        return None
    return os.path.join(_log_dir, "cycles")


def set_cycle_log(cycle: int) -> Optional[str]:
    """Route activity for *cycle* into ``cycles/cycle_NNN.log`` as well.

    Replaces the handler of the previous cycle.  Returns the log path, or
    None when logging has not been set up.
    """
    global _cycle_handler
    cycle_dir = get_cycle_log_dir()
    if cycle_dir is None:
        return None
    os.makedirs(cycle_dir, exist_ok=True)
    path = os.path.join(cycle_dir, f"cycle_{cycle:03d}.log")

    if _cycle_handler is not None:
        if getattr(_cycle_handler, "baseFilename", None) == os.path.abspath(path):
            return path
        activity_logger.removeHandler(_cycle_handler)
        _cycle_handler.close()

    handler = logging.FileHandler(path, encoding="utf-8", delay=True)
    handler.setFormatter(_ACTIVITY_FORMAT)
    activity_logger.addHandler(handler)
    _cycle_handler = handler
    return path


def cleanup_old_logs(cycle_log_dir: str, days: int) -> int:
    """Delete cycle logs older than *days*.  Returns the number removed."""
    if days <= 0 or not os.path.isdir(cycle_log_dir):
        return 0
    cutoff = time.time() - days * 24 * 60 * 60
    removed = 0
    for name in os.listdir(cycle_log_dir):
        path = os.path.join(cycle_log_dir, name)
        try:
            if os.path.isfile(path) and os.path.getmtime(path) < cutoff:
                os.remove(path)
                removed += 1
        except OSError:
            pass
    return removed
