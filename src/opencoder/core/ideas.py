"""Idea queue.

Users drop ``*.md`` files into ``.opencode/opencoder/ideas/``; the planning
phase picks one of them instead of inventing its own work.  Consumed ideas
are moved to ``ideas/history/`` when their cycle completes.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import os
import re
import shutil
from typing import List, Optional

logger = logging.getLogger("opencoder.ideas")

MAX_IDEA_LENGTH = 8192

_SELECTION = re.compile(r"SELECTED_IDEA:\s*(\d+)", re.IGNORECASE)
_HEADER_PREFIX = re.compile(r"^#+\s*")


@dataclass(frozen=True)
class Idea:
    path: str
    filename: str
    content: str


def _idea_files(ideas_dir: str) -> List[str]:
    if not os.path.isdir(ideas_dir):
        return []
    return sorted(
        name for name in os.listdir(ideas_dir)
        if name.endswith(".md") and os.path.isfile(os.path.join(ideas_dir, name))
    )


def load_all_ideas(ideas_dir: str) -> List[Idea]:
    """Load every non-empty ``*.md`` idea, sorted by filename."""
    ideas: List[Idea] = []
    for filename in _idea_files(ideas_dir):
        path = os.path.join(ideas_dir, filename)
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Skipping unreadable idea %s: %s", filename, exc)
            continue
        if not content.strip():
            continue
        ideas.append(Idea(path=path, filename=filename, content=content[:MAX_IDEA_LENGTH]))
    return ideas


def get_idea_summary(content: str) -> str:
    trimmed = content.strip()
    for line in trimmed.split("\n"):
        clean = _HEADER_PREFIX.sub("", line).strip()
        if clean:
            return f"{clean[:100]}..." if len(clean) > 100 else clean
    return f"{trimmed[:100]}..." if len(trimmed) > 100 else trimmed


def format_ideas_for_selection(ideas: List[Idea]) -> str:
    sections = []
    for i, idea in enumerate(ideas, start=1):
        sections.append(
            f"## Idea {i}: {idea.filename}\n\n"
            f"Summary: {get_idea_summary(idea.content)}\n\n"
            f"Full content:\n```\n{idea.content}\n```\n"
        )
    return "\n".join(sections)


def parse_idea_selection(response: str) -> Optional[int]:
    """Map ``SELECTED_IDEA: n`` to a 0-based index (None when absent or 0)."""
    m = _SELECTION.search(response)
    if not m:
        return None
    selected = int(m.group(1))
    if selected > 0:
        return selected - 1
    return None


def remove_idea(idea_path: str) -> bool:
    try:
        os.remove(idea_path)
        return True
    except OSError as exc:
        logger.debug("Could not remove idea %s: %s", idea_path, exc)
        return False


def archive_idea(idea_path: str, history_dir: str) -> bool:
    """Move a consumed idea into *history_dir* with a timestamp prefix."""
    if not os.path.isfile(idea_path):
        return False
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    target = os.path.join(history_dir, f"{stamp}_{os.path.basename(idea_path)}")
    try:
        os.makedirs(history_dir, exist_ok=True)
        shutil.move(idea_path, target)
    except OSError as exc:
        logger.warning("Could not archive idea %s: %s", idea_path, exc)
        return remove_idea(idea_path)
    logger.info("Archived idea %s -> %s", idea_path, target)
    return True


def count_ideas(ideas_dir: str) -> int:
    return len(_idea_files(ideas_dir))


def cleanup_empty_ideas(ideas_dir: str) -> int:
    """Delete empty or unreadable idea files.  Returns the number removed."""
    removed = 0
    for filename in _idea_files(ideas_dir):
        path = os.path.join(ideas_dir, filename)
        try:
            with open(path, "r", encoding="utf-8") as f:
                empty = not f.read().strip()
        except (OSError, UnicodeDecodeError):
            empty = True
        if empty and remove_idea(path):
            removed += 1
    return removed
