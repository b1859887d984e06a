"""Git helpers used at task and cycle boundaries.

Every helper runs ``git -C <dir> ...`` and reports failure through its
return value; nothing here raises for a git problem.
"""
from __future__ import annotations

import logging
import re
import subprocess

logger = logging.getLogger("opencoder.git")

GIT_TIMEOUT = 60  # seconds

# Checked in order; the first keyword family found in the task wins.
_COMMIT_PREFIXES: list[tuple[str, tuple[str, ...]]] = [
    ("fix", ("fix", "bug", "resolve", "issue")),
    ("test", ("test", "spec", "coverage")),
    ("docs", ("docs", "documentation", "readme", "comment")),
    ("refactor", ("refactor", "rewrite", "restructure", "reorganize", "cleanup", "clean up")),
    ("perf", ("perf", "performance", "optimize", "speed")),
    ("chore", ("chore", "dependency", "dependencies", "upgrade", "bump")),
    ("ci", ("ci", "workflow", "pipeline")),
    ("build", ("build", "compile", "bundle")),
    ("style", ("style", "format", "lint")),
    ("refactor", ("improve",)),
]


def _run_git(repo_dir: str, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    """Run a git command in the given repo directory."""
    cmd = ["git", "-C", repo_dir] + list(args)
    return subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        check=check,
        timeout=GIT_TIMEOUT,
    )


def is_git_repo(repo_dir: str) -> bool:
    try:
        result = _run_git(repo_dir, "rev-parse", "--is-inside-work-tree", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


def has_changes(repo_dir: str) -> bool:
    """True when the working tree has staged, unstaged or untracked changes."""
    try:
        result = _run_git(repo_dir, "status", "--porcelain")
        return bool(result.stdout.strip())
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        return False


def has_unpushed_commits(repo_dir: str) -> bool:
    """True when HEAD is ahead of its upstream.  No upstream means False."""
    try:
        branch = _run_git(repo_dir, "rev-parse", "--abbrev-ref", "HEAD").stdout.strip()
        upstream = _run_git(repo_dir, "rev-parse", "--abbrev-ref", f"{branch}@{{upstream}}", check=False)
        if upstream.returncode != 0:
            return False
        count = _run_git(repo_dir, "rev-list", "--count", f"{branch}@{{upstream}}..HEAD").stdout.strip()
        return int(count or "0") > 0
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError, ValueError):
        return False


def commit_changes(repo_dir: str, message: str, signoff: bool = False) -> bool:
    """Stage everything and commit.  Returns True on success."""
    try:
        _run_git(repo_dir, "add", "-A")
        args = ["commit", "-m", message]
        if signoff:
            args.insert(1, "-s")
        _run_git(repo_dir, *args)
    except subprocess.CalledProcessError as exc:
        logger.error("Failed to commit changes: %s", (exc.stderr or exc.stdout or str(exc)).strip())
        return False
    except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
        logger.error("Failed to commit changes: %s", exc)
        return False
    logger.info("Committed: %s", message)
    return True


def push_changes(repo_dir: str) -> bool:
    try:
        _run_git(repo_dir, "push")
    except subprocess.CalledProcessError as exc:
        logger.error("Failed to push changes: %s", (exc.stderr or exc.stdout or str(exc)).strip())
        return False
    except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
        logger.error("Failed to push changes: %s", exc)
        return False
    logger.info("Pushed changes to remote")
    return True


def generate_commit_message(task_description: str) -> str:
    """Prefix *task_description* with a conventional-commit type."""
    lowered = task_description.lower()
    for prefix, keywords in _COMMIT_PREFIXES:
        if any(re.search(rf"\b{re.escape(k)}", lowered) for k in keywords):
            return f"{prefix}: {task_description}"
    return f"feat: {task_description}"
