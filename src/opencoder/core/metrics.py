"""Cumulative run metrics.

Every ``record_*`` function is pure: it returns an updated copy and never
mutates its argument.  Persistence goes through :func:`load_metrics` and
:func:`save_metrics` (``.opencode/opencoder/metrics.json``).
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
import json
import logging
import math
import os
from typing import Any, Optional

logger = logging.getLogger("opencoder.metrics")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Metrics:
    cycles_completed: int = 0
    cycles_timed_out: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    total_retries: int = 0
    ideas_processed: int = 0
    total_cycle_duration_ms: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    first_run_time: Optional[str] = None
    last_activity_time: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Any) -> Metrics:
        """Build from parsed JSON, defaulting each invalid field separately."""
        if not isinstance(d, dict):
            return cls(last_activity_time=_now_iso())
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = d.get(f.name)
            if f.name == "total_cost_usd":
                if _is_number(raw) and math.isfinite(raw) and raw >= 0:
                    values[f.name] = float(raw)
            elif f.name == "first_run_time":
                if isinstance(raw, str) and raw:
                    values[f.name] = raw
            elif f.name == "last_activity_time":
                values[f.name] = raw if isinstance(raw, str) and raw else _now_iso()
            elif _is_number(raw) and math.isfinite(raw) and raw >= 0:
                values[f.name] = int(raw)
            elif raw is not None:
                logger.warning("Ignoring invalid metrics field %s=%r", f.name, raw)
        values.setdefault("last_activity_time", _now_iso())
        return cls(**values)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ── Persistence ──────────────────────────────────────────────

def load_metrics(path: str) -> Metrics:
    if not os.path.exists(path):
        return Metrics(last_activity_time=_now_iso())
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load metrics from %s, using defaults: %s", path, exc)
        return Metrics(last_activity_time=_now_iso())
    return Metrics.from_dict(data)


def save_metrics(path: str, metrics: Metrics) -> Metrics:
    """Persist *metrics* atomically and return the saved record."""
    now = _now_iso()
    saved = replace(
        metrics,
        last_activity_time=now,
        first_run_time=metrics.first_run_time or now,
    )
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(saved.to_dict(), f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    return saved


def reset_metrics() -> Metrics:
    now = _now_iso()
    return Metrics(first_run_time=now, last_activity_time=now)


# ── Recording ────────────────────────────────────────────────

def record_cycle_completed(metrics: Metrics, duration_ms: int) -> Metrics:
    return replace(
        metrics,
        cycles_completed=metrics.cycles_completed + 1,
        total_cycle_duration_ms=metrics.total_cycle_duration_ms + duration_ms,
    )


def record_cycle_timeout(metrics: Metrics) -> Metrics:
    return replace(metrics, cycles_timed_out=metrics.cycles_timed_out + 1)


def record_task_completed(metrics: Metrics) -> Metrics:
    return replace(metrics, tasks_completed=metrics.tasks_completed + 1)


def record_task_failed(metrics: Metrics) -> Metrics:
    return replace(metrics, tasks_failed=metrics.tasks_failed + 1)


def record_task_skipped(metrics: Metrics) -> Metrics:
    return replace(metrics, tasks_skipped=metrics.tasks_skipped + 1)


def record_retry(metrics: Metrics) -> Metrics:
    return replace(metrics, total_retries=metrics.total_retries + 1)


def record_idea_processed(metrics: Metrics) -> Metrics:
    return replace(metrics, ideas_processed=metrics.ideas_processed + 1)


def record_token_usage(
    metrics: Metrics,
    input_tokens: int,
    output_tokens: int,
    cost_usd: float,
) -> Metrics:
    return replace(
        metrics,
        total_input_tokens=metrics.total_input_tokens + input_tokens,
        total_output_tokens=metrics.total_output_tokens + output_tokens,
        total_cost_usd=metrics.total_cost_usd + cost_usd,
    )


# ── Derived statistics ───────────────────────────────────────

def average_cycle_duration(metrics: Metrics) -> int:
    """Mean cycle duration in ms (0 when no cycle has completed)."""
    if metrics.cycles_completed == 0:
        return 0
    return int(metrics.total_cycle_duration_ms / metrics.cycles_completed + 0.5)


def task_success_rate(metrics: Metrics) -> int:
    """Completed share of all finished tasks, as a percentage."""
    total = metrics.tasks_completed + metrics.tasks_failed + metrics.tasks_skipped
    if total == 0:
        return 100
    return int(metrics.tasks_completed / total * 100 + 0.5)


def format_duration(ms: float) -> str:
    seconds = int(ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_metrics_summary(metrics: Metrics) -> str:
    avg = average_cycle_duration(metrics)
    lines = [
        f"Cycles: {metrics.cycles_completed} completed, {metrics.cycles_timed_out} timed out",
        (
            f"Tasks: {metrics.tasks_completed} completed, {metrics.tasks_failed} failed, "
            f"{metrics.tasks_skipped} skipped ({task_success_rate(metrics)}% success)"
        ),
        f"Retries: {metrics.total_retries} total",
        f"Ideas: {metrics.ideas_processed} processed",
        f"Avg cycle duration: {format_duration(avg) if avg > 0 else 'N/A'}",
        (
            f"Tokens: {metrics.total_input_tokens} in, {metrics.total_output_tokens} out "
            f"(~${metrics.total_cost_usd:.4f})"
        ),
    ]
    if metrics.first_run_time:
        lines.append(f"First run: {metrics.first_run_time}")
    return "\n".join(lines)
