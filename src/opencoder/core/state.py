"""Persisted cycle state.

``state.json`` is rewritten in full after every mutation so a crash loses at
most the step in flight.  Loading never fails: a missing or corrupt file
yields defaults, and individual invalid fields are replaced one by one
while valid siblings are kept.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import os
from typing import Any, Dict, Literal, Optional

logger = logging.getLogger("opencoder.state")

Phase = Literal["init", "plan", "build", "eval"]
PHASES = ("init", "plan", "build", "eval")

_OPTIONAL_STR_FIELDS = (
    "session_id",
    "current_idea_path",
    "current_idea_filename",
    "last_error_time",
    "cycle_start_time",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RuntimeState:
    cycle: int = 1
    phase: Phase = "init"
    task_index: int = 0
    session_id: Optional[str] = None
    last_update: str = ""
    current_idea_path: Optional[str] = None
    current_idea_filename: Optional[str] = None
    retry_count: int = 0
    last_error_time: Optional[str] = None
    cycle_start_time: Optional[str] = None
    # Runtime only, never persisted
    total_tasks: int = 0
    current_task_num: int = 0
    current_task_desc: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Persisted fields only."""
        return {
            "cycle": self.cycle,
            "phase": self.phase,
            "task_index": self.task_index,
            "session_id": self.session_id,
            "last_update": self.last_update,
            "current_idea_path": self.current_idea_path,
            "current_idea_filename": self.current_idea_filename,
            "retry_count": self.retry_count,
            "last_error_time": self.last_error_time,
            "cycle_start_time": self.cycle_start_time,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any], source: str = "state") -> RuntimeState:
        state = cls()

        cycle = d.get("cycle")
        if _is_int(cycle) and cycle >= 1:
            state.cycle = cycle
        elif cycle is not None:
            logger.warning("Invalid cycle in %s (expected positive integer, got %r); using default", source, cycle)

        phase = d.get("phase")
        if phase in PHASES:
            state.phase = phase
        elif phase is not None:
            logger.warning("Invalid phase in %s (got %r, expected one of %s); using default", source, phase, ", ".join(PHASES))

        task_index = d.get("task_index")
        if _is_int(task_index) and task_index >= 0:
            state.task_index = task_index
        elif task_index is not None:
            logger.warning("Invalid task_index in %s (got %r); using default", source, task_index)

        retry_count = d.get("retry_count")
        if _is_int(retry_count) and retry_count >= 0:
            state.retry_count = retry_count
        elif retry_count is not None:
            logger.warning("Invalid retry_count in %s (got %r); using default", source, retry_count)

        last_update = d.get("last_update")
        if isinstance(last_update, str):
            state.last_update = last_update

        for name in _OPTIONAL_STR_FIELDS:
            value = d.get(name)
            if isinstance(value, str):
                setattr(state, name, value)
        return state


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def load_state(path: str) -> RuntimeState:
    if not os.path.exists(path):
        return RuntimeState()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except ValueError as exc:
        logger.warning("Failed to parse %s (invalid JSON, file may be corrupted); using default state: %s", path, exc)
        return RuntimeState()
    except OSError as exc:
        logger.warning("Failed to read %s; using default state: %s", path, exc)
        return RuntimeState()
    if not isinstance(data, dict):
        logger.warning("Unexpected content in %s (not an object); using default state", path)
        return RuntimeState()
    return RuntimeState.from_dict(data, source=path)


def save_state(path: str, state: RuntimeState) -> None:
    """Write the whole record atomically, refreshing ``last_update``."""
    state.last_update = _now_iso()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(state.to_dict(), f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def reset_state() -> RuntimeState:
    return RuntimeState(last_update=_now_iso())


def new_cycle_state(state: RuntimeState) -> RuntimeState:
    """State for the cycle after *state*: next number, phase ``plan``."""
    return RuntimeState(
        cycle=state.cycle + 1,
        phase="plan",
        last_update=state.last_update,
    )
