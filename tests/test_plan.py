"""Tests for opencoder.core.plan."""
from __future__ import annotations

import pytest

from opencoder.core.plan import (
    PlanValidationError,
    eval_prompt,
    extract_plan_from_response,
    get_tasks,
    get_uncompleted_tasks,
    idea_plan_prompt,
    mark_task_complete,
    plan_prompt,
    require_valid_plan,
    task_prompt,
    validate_plan,
)


CHECKBOX_PLAN = """# Plan: Improve things
Cycle: 1

## Tasks
- [ ] Add a parser
- [x] Write docs
- [X] Set up CI
- [ ] Run tests
"""


# ── get_tasks ────────────────────────────────────────────────

class TestGetTasks:
    def test_checkbox_tasks_in_order(self):
        tasks = get_tasks(CHECKBOX_PLAN)
        assert [t.description for t in tasks] == ["Add a parser", "Write docs", "Set up CI", "Run tests"]
        assert [t.completed for t in tasks] == [False, True, True, False]
        assert [t.line_number for t in tasks] == [5, 6, 7, 8]
        assert all(t.format == "checkbox" for t in tasks)

    def test_numbered_with_done_marker(self):
        tasks = get_tasks("1. First\n2. [DONE] Second\n10. Tenth")
        assert [(t.description, t.completed) for t in tasks] == [
            ("First", False),
            ("Second", True),
            ("Tenth", False),
        ]
        assert tasks[2].line_number == 3
        assert tasks[0].format == "numbered"

    def test_step_headers(self):
        plan = "### Step 1: Scaffold\n## Task 2. Wire it up\n#### step 3: [DONE] Ship"
        tasks = get_tasks(plan)
        assert [(t.description, t.completed, t.format) for t in tasks] == [
            ("Scaffold", False, "step-header"),
            ("Wire it up", False, "step-header"),
            ("Ship", True, "step-header"),
        ]

    def test_plain_bullets_skip_headers(self):
        plan = "## Tasks\n- do one\n* do two\n- [DONE] did three"
        tasks = get_tasks(plan)
        assert [(t.description, t.completed) for t in tasks] == [
            ("do one", False),
            ("do two", False),
            ("did three", True),
        ]
        assert all(t.format == "bullet" for t in tasks)

    def test_indented_lines_are_recognised(self):
        tasks = get_tasks("  - [ ] nested checkbox\n    1. nested number")
        assert [t.format for t in tasks] == ["checkbox", "numbered"]

    def test_mixed_styles_follow_priority(self):
        plan = "- [ ] box\n1. numbered\n- bullet"
        assert [t.format for t in get_tasks(plan)] == ["checkbox", "numbered", "bullet"]

    def test_empty_checkbox_is_not_a_bullet(self):
        # "- [ ]" without text is neither a checkbox task nor a bullet
        tasks = get_tasks("- [ ]\n- real bullet")
        assert [t.description for t in tasks] == ["real bullet"]

    def test_fallback_single_task(self):
        plan = "# Heading\nshort\nRefactor the storage layer to use transactions everywhere"
        tasks = get_tasks(plan)
        assert len(tasks) == 1
        assert tasks[0].format == "fallback"
        assert tasks[0].line_number == 1
        assert tasks[0].completed is False
        assert tasks[0].description == (
            "[FULL PLAN] Refactor the storage layer to use transactions everywhere"
        )

    def test_fallback_truncates_long_summary(self):
        tasks = get_tasks("x" * 150)
        assert tasks[0].description == f"[FULL PLAN] {'x' * 100}..."

    def test_fallback_default_summary(self):
        assert get_tasks("tiny")[0].description == "[FULL PLAN] Execute plan"

    def test_completed_fallback(self):
        tasks = get_tasks("[COMPLETED]\nJust some free text describing work")
        assert len(tasks) == 1
        assert tasks[0].completed is True
        assert tasks[0].description == "[FULL PLAN] Completed"

    def test_completed_marker_line_is_skipped(self):
        tasks = get_tasks("[COMPLETED]\n- [ ] still open")
        assert [t.description for t in tasks] == ["still open"]

    @pytest.mark.parametrize("plan", ["", "   \n\n  "])
    def test_empty_plan_has_no_tasks(self, plan):
        assert get_tasks(plan) == []

    @pytest.mark.parametrize(
        "plan",
        ["free text only", "- [ ] a", "1. a", "### Step 1: a", "* a", "# only a header"],
    )
    def test_non_empty_plan_always_has_tasks(self, plan):
        assert get_tasks(plan)

    def test_get_uncompleted_tasks(self):
        assert [t.description for t in get_uncompleted_tasks(CHECKBOX_PLAN)] == ["Add a parser", "Run tests"]


# ── mark_task_complete ───────────────────────────────────────

class TestMarkTaskComplete:
    def test_checkbox(self):
        updated = mark_task_complete(CHECKBOX_PLAN, 5)
        assert "- [x] Add a parser" in updated
        assert get_tasks(updated)[0].completed is True
        # Original string is untouched
        assert "- [ ] Add a parser" in CHECKBOX_PLAN

    def test_checkbox_keeps_indentation(self):
        assert mark_task_complete("  - [ ] nested", 1) == "  - [x] nested"

    def test_numbered(self):
        assert mark_task_complete("1. First\n2. Second", 2) == "1. First\n2. [DONE] Second"

    def test_step_header(self):
        assert mark_task_complete("### Step 1: Build it", 1) == "### Step 1: [DONE] Build it"

    def test_bullet(self):
        assert mark_task_complete("## Tasks\n* do it", 2) == "## Tasks\n* [DONE] do it"

    def test_fallback_prepends_marker(self):
        plan = "Rewrite everything in a nicer way please"
        updated = mark_task_complete(plan, 1)
        assert updated == f"[COMPLETED]\n{plan}"
        assert get_tasks(updated)[0].completed is True

    @pytest.mark.parametrize(
        "plan,line",
        [
            (CHECKBOX_PLAN, 5),
            ("1. a\n2. b", 1),
            ("### Step 1: a", 1),
            ("- a", 1),
            ("Rewrite everything in a nicer way please", 1),
        ],
    )
    def test_idempotent(self, plan, line):
        once = mark_task_complete(plan, line)
        assert mark_task_complete(once, line) == once

    @pytest.mark.parametrize("line", [0, -1, 2, 3, 99])
    def test_non_task_lines_are_noops(self, line):
        plan = "## Tasks\n\nsome context\n- [ ] real"
        assert mark_task_complete(plan, line) == plan

    def test_header_line_is_noop(self):
        assert mark_task_complete(CHECKBOX_PLAN, 1) == CHECKBOX_PLAN


# ── validate_plan ────────────────────────────────────────────

class TestValidatePlan:
    def test_empty(self):
        result = validate_plan("")
        assert result.valid is False
        assert result.error == "Plan is empty"

    def test_all_completed(self):
        result = validate_plan("- [x] done")
        assert result.valid is False
        assert result.error == "All tasks are already completed"

    def test_free_text_is_valid(self):
        assert validate_plan("free text only").valid is True

    def test_open_tasks_are_valid(self):
        result = validate_plan(CHECKBOX_PLAN)
        assert result.valid is True
        assert result.error is None

    def test_require_valid_plan_raises(self):
        with pytest.raises(PlanValidationError, match="Plan is empty"):
            require_valid_plan("  ")
        assert require_valid_plan("- [ ] a") == "- [ ] a"


# ── extraction and prompts ───────────────────────────────────

def test_extract_plan_from_markdown_fence():
    response = "Here is the plan:\n```markdown\n# Plan\n- [ ] a\n```\nGood luck"
    assert extract_plan_from_response(response) == "# Plan\n- [ ] a"


def test_extract_plan_from_plain_fence():
    assert extract_plan_from_response("```\n- [ ] a\n```") == "- [ ] a"


def test_extract_plan_without_fence():
    assert extract_plan_from_response("  - [ ] a\n") == "- [ ] a"


def test_plan_prompt_includes_cycle_and_hint():
    prompt = plan_prompt(3, "focus on tests")
    assert "cycle 3" in prompt
    assert "Cycle: 3" in prompt
    assert "User hint for this cycle: focus on tests" in prompt
    assert "User hint" not in plan_prompt(3)


def test_idea_plan_prompt_names_source():
    prompt = idea_plan_prompt("Add dark mode", "dark.md", 2)
    assert "Add dark mode" in prompt
    assert "Source: dark.md" in prompt


def test_task_and_eval_prompts():
    assert "task 2 of 5" in task_prompt("Do it", 1, 2, 5)
    prompt = eval_prompt(4, "- [x] a")
    assert "- [x] a" in prompt
    assert "COMPLETE" in prompt and "NEEDS_WORK" in prompt
