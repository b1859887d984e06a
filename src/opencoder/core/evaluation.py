"""Interpretation of the eval-phase response."""
from __future__ import annotations

import re
from typing import Literal, Optional

EvalResult = Literal["COMPLETE", "NEEDS_WORK"]

_IN_CODE_BLOCK = re.compile(r"```[\s\S]*?(COMPLETE|NEEDS_WORK)[\s\S]*?```", re.IGNORECASE)
_REASON = re.compile(r"Reason:\s*(.+?)(?:\n|$)", re.IGNORECASE)


def parse_eval(response: str) -> EvalResult:
    """Return the verdict; anything unclear counts as ``NEEDS_WORK``."""
    text = response.strip().upper()
    if text.startswith("COMPLETE") or "\nCOMPLETE" in text:
        return "COMPLETE"
    if text.startswith("NEEDS_WORK") or "\nNEEDS_WORK" in text:
        return "NEEDS_WORK"
    m = _IN_CODE_BLOCK.search(response)
    if m and m.group(1).upper() == "COMPLETE":
        return "COMPLETE"
    return "NEEDS_WORK"


def extract_eval_reason(response: str) -> Optional[str]:
    m = _REASON.search(response)
    if m:
        return m.group(1).strip()
    return None
