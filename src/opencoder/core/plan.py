"""Plan document parsing and mutation.

A plan is a markdown document produced by the planning phase.  Tasks are
recognised per line in a fixed priority order:

1. checkbox     ``- [ ] text`` / ``- [x] text``
2. numbered     ``1. text`` (done: ``1. [DONE] text``)
3. step header  ``### Step 1: text`` (done: ``### Step 1: [DONE] text``)
4. bullet       ``- text`` / ``* text`` (done: ``- [DONE] text``)

A non-empty plan with none of these degrades to a single ``fallback`` task
covering the whole document; completing it prepends a ``[COMPLETED]`` line.

Mutation never edits in place: :func:`mark_task_complete` returns a new
string so a snapshot handed to a caller stays valid.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import List, Literal, Optional

logger = logging.getLogger("opencoder.plan")

TaskFormat = Literal["checkbox", "numbered", "step-header", "bullet", "fallback"]

COMPLETED_MARKER = "[COMPLETED]"
FULL_PLAN_PREFIX = "[FULL PLAN]"

_CHECKBOX_OPEN = re.compile(r"^- \[ \] (.+)$")
_CHECKBOX_DONE = re.compile(r"^- \[[xX]\] (.+)$")
_CHECKBOX_ANY = re.compile(r"^- \[[ xX]\]")
_NUMBERED = re.compile(r"^\d+\.\s+(.+)$")
_STEP_HEADER = re.compile(r"^#{1,4}\s*(?:Step|Task)\s*\d*[:.]\s*(.+)$", re.IGNORECASE)
_BULLET = re.compile(r"^[-*]\s+(.+)$")
_DONE_MARKER = re.compile(r"^\[DONE\]\s*")

# Rewrites used by mark_task_complete, applied to the raw (unstripped) line
_MARK_CHECKBOX = re.compile(r"^(\s*)- \[ \]")
_MARK_NUMBERED = re.compile(r"^(\s*)(\d+\.\s+)")
_MARK_STEP_HEADER = re.compile(r"^(\s*#{1,4}\s*(?:Step|Task)\s*\d*[:.]\s*)", re.IGNORECASE)
_MARK_BULLET = re.compile(r"^(\s*[-*]\s+)")

_CODE_BLOCK = re.compile(r"```(?:markdown)?\n?([\s\S]*?)```")


class PlanValidationError(ValueError):
    pass


@dataclass(frozen=True)
class Task:
    line_number: int        # 1-based line of the task marker
    description: str
    completed: bool
    format: TaskFormat


@dataclass(frozen=True)
class PlanValidation:
    valid: bool
    error: Optional[str] = None


def _split_done(desc: str) -> tuple[str, bool]:
    desc = desc.strip()
    if _DONE_MARKER.match(desc):
        return _DONE_MARKER.sub("", desc, count=1), True
    return desc, False


def _parse_line(line: str, line_number: int) -> Optional[Task]:
    m = _CHECKBOX_DONE.match(line)
    if m:
        return Task(line_number, m.group(1).strip(), True, "checkbox")
    m = _CHECKBOX_OPEN.match(line)
    if m:
        return Task(line_number, m.group(1).strip(), False, "checkbox")
    m = _NUMBERED.match(line)
    if m:
        desc, done = _split_done(m.group(1))
        return Task(line_number, desc, done, "numbered")
    m = _STEP_HEADER.match(line)
    if m:
        desc, done = _split_done(m.group(1))
        return Task(line_number, desc, done, "step-header")
    # Markdown headers and malformed checkboxes are never bullets
    if line.startswith("#") or _CHECKBOX_ANY.match(line):
        return None
    m = _BULLET.match(line)
    if m:
        desc, done = _split_done(m.group(1))
        return Task(line_number, desc, done, "bullet")
    return None


def _fallback_task(plan: str) -> Task:
    if plan.lstrip().startswith(COMPLETED_MARKER):
        return Task(1, f"{FULL_PLAN_PREFIX} Completed", True, "fallback")
    summary = "Execute plan"
    for raw in plan.split("\n"):
        stripped = raw.strip()
        if stripped and not stripped.startswith("#") and len(stripped) > 10:
            summary = stripped[:100]
            break
    suffix = "..." if len(summary) >= 100 else ""
    return Task(1, f"{FULL_PLAN_PREFIX} {summary}{suffix}", False, "fallback")


def get_tasks(plan: str) -> List[Task]:
    """Return every task in *plan* in document order.

    Non-empty documents always yield at least one task.
    """
    tasks: List[Task] = []
    for index, raw in enumerate(plan.split("\n")):
        line = raw.strip()
        if not line or line == COMPLETED_MARKER:
            continue
        task = _parse_line(line, index + 1)
        if task is not None:
            tasks.append(task)
    if not tasks and plan.strip():
        tasks.append(_fallback_task(plan))
    return tasks


def get_uncompleted_tasks(plan: str) -> List[Task]:
    return [t for t in get_tasks(plan) if not t.completed]


def mark_task_complete(plan: str, line_number: int) -> str:
    """Return a copy of *plan* with the task at *line_number* marked done.

    Line numbers that do not address an open task leave the text unchanged,
    which also makes repeated calls idempotent.
    """
    target = next((t for t in get_tasks(plan) if t.line_number == line_number), None)
    if target is None or target.completed:
        return plan
    if target.format == "fallback":
        return f"{COMPLETED_MARKER}\n{plan}"

    lines = plan.split("\n")
    index = line_number - 1
    line = lines[index]
    if target.format == "checkbox":
        lines[index] = _MARK_CHECKBOX.sub(r"\1- [x]", line, count=1)
    elif target.format == "numbered":
        lines[index] = _MARK_NUMBERED.sub(r"\1\2[DONE] ", line, count=1)
    elif target.format == "step-header":
        lines[index] = _MARK_STEP_HEADER.sub(r"\1[DONE] ", line, count=1)
    else:
        lines[index] = _MARK_BULLET.sub(r"\1[DONE] ", line, count=1)
    return "\n".join(lines)


def validate_plan(plan: str) -> PlanValidation:
    if not plan.strip():
        return PlanValidation(False, "Plan is empty")
    tasks = get_tasks(plan)
    if not tasks:
        return PlanValidation(False, "Plan is empty")
    if all(t.completed for t in tasks):
        return PlanValidation(False, "All tasks are already completed")
    return PlanValidation(True)


def require_valid_plan(plan: str) -> str:
    """Return *plan* unchanged or raise :class:`PlanValidationError`."""
    result = validate_plan(plan)
    if not result.valid:
        raise PlanValidationError(result.error or "Invalid plan")
    return plan


def extract_plan_from_response(response: str) -> str:
    """Strip the code fence the agent usually wraps its plan in."""
    m = _CODE_BLOCK.search(response)
    if m and m.group(1):
        return m.group(1).strip()
    return response.strip()


# ── Prompts ──────────────────────────────────────────────────

_PLAN_FORMAT = """\
```markdown
# Plan: [Descriptive Title]
Created: [ISO timestamp]
Cycle: {cycle}{source}

## Context
[2-3 sentences on the current focus]

## Tasks
- [ ] Task 1: Specific, actionable description
- [ ] Task 2: Specific, actionable description
...
- [ ] Run project linting and tests to ensure everything passes

## Notes
[Dependencies or other considerations]
```"""


def plan_prompt(cycle: int, hint: Optional[str] = None) -> str:
    hint_section = f"\n\nUser hint for this cycle: {hint}" if hint else ""
    return (
        "You are an autonomous development agent working on a software project. "
        f"This is cycle {cycle} of continuous development.\n\n"
        f"Analyze the current state of the project and create a development plan.{hint_section}\n\n"
        "## Instructions\n\n"
        "1. Explore the project structure and existing code\n"
        "2. Identify the most impactful improvements or features\n"
        "3. Create a focused plan of 3-7 specific, actionable tasks\n"
        "4. Always finish with a task that runs linting and tests\n\n"
        "## Plan Format\n\n"
        f"{_PLAN_FORMAT.format(cycle=cycle, source='')}\n\n"
        "Tasks must be completable without user interaction. Now create your plan."
    )


def idea_plan_prompt(idea_content: str, idea_filename: str, cycle: int) -> str:
    plan_format = _PLAN_FORMAT.format(cycle=cycle, source=f"\nSource: {idea_filename}")
    return (
        "You are an autonomous development agent working on a software project. "
        f"This is cycle {cycle} of continuous development.\n\n"
        "## Idea to Implement\n\n"
        f"**Source**: {idea_filename}\n\n"
        f"{idea_content}\n\n"
        "## Instructions\n\n"
        "1. Understand what the idea asks for\n"
        "2. Explore the relevant parts of the codebase\n"
        "3. Break it down into 3-7 specific, actionable tasks\n"
        "4. Always finish with a task that runs linting and tests\n\n"
        "## Plan Format\n\n"
        f"{plan_format}\n\n"
        "Now create your plan to implement this idea."
    )


def task_prompt(task: str, cycle: int, task_num: int, total_tasks: int) -> str:
    return (
        f"You are an autonomous development agent. This is cycle {cycle}, "
        f"task {task_num} of {total_tasks}.\n\n"
        f"## Current Task\n{task}\n\n"
        "## Instructions\n\n"
        "1. Complete this task fully and autonomously\n"
        "2. Make all necessary code changes, following existing conventions\n"
        "3. If the task involves tests or linting, run them and fix any issues\n"
        "4. Do not stop until the task is done or you hit an unresolvable blocker\n\n"
        "Begin working on the task now."
    )


def eval_prompt(cycle: int, plan: str) -> str:
    return (
        f"You are evaluating cycle {cycle} of an autonomous development session.\n\n"
        f"## Current Plan\n```markdown\n{plan}\n```\n\n"
        "## Instructions\n\n"
        "Review the work done in this cycle: are all tasks complete, were the "
        "changes implemented correctly, and do the tests pass?\n\n"
        "## Response Format\n\n"
        "Respond with exactly one of:\n\n"
        "```\nCOMPLETE\nReason: [what was accomplished]\n```\n\n"
        "```\nNEEDS_WORK\nReason: [what still needs to be done]\n```\n\n"
        "Evaluate the cycle now."
    )


def idea_selection_prompt(ideas_formatted: str) -> str:
    return (
        "You are an autonomous development agent selecting the next idea to work on.\n\n"
        f"## Available Ideas\n\n{ideas_formatted}\n\n"
        "## Selection Criteria\n\n"
        "1. Quick wins first\n"
        "2. Prerequisites of other ideas before their dependents\n"
        "3. Bug fixes > small features > documentation > refactoring > large features\n\n"
        "## Response Format\n\n"
        "```\nSELECTED_IDEA: <number>\nREASON: <one sentence>\n```\n\n"
        "Select the best idea now."
    )
