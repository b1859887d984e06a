from __future__ import annotations

from datetime import datetime, timezone
import json
import os
from typing import Any, Dict, List

from opencoder.core.logging_config import activity_logger


def record_alert(
    alerts_path: str,
    level: str,
    message: str,
    **payload: Any,
) -> None:
    """Append one alert record to the durable alerts file.

    The file is append-only JSONL so operational failures stay inspectable
    even if console output is lost.  Write errors are swallowed: an alert
    must never take the loop down.
    """
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "message": message,
    }
    if payload:
        record["payload"] = payload
    line = json.dumps(record, default=str)
    try:
        os.makedirs(os.path.dirname(alerts_path) or ".", exist_ok=True)
        with open(alerts_path, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")
            handle.flush()
    except OSError:
        pass
    # Mirror to the activity log
    activity_logger.info("[%s] %s", level.upper(), message)


def read_alerts(alerts_path: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Return the last *limit* alert records (malformed lines are skipped)."""
    if not os.path.exists(alerts_path):
        return []
    records: List[Dict[str, Any]] = []
    with open(alerts_path, "r", encoding="utf-8") as handle:
        for raw in handle:
            raw = raw.strip()
            if not raw:
                continue
            try:
                item = json.loads(raw)
            except ValueError:
                continue
            if isinstance(item, dict):
                records.append(item)
    return records[-limit:]
