"""Cycle orchestrator: the plan → build → eval loop.

One cycle::

    plan   ask the agent for a task list (optionally from a queued idea)
    build  run each open task through the agent, commit after each success
    eval   ask the agent whether the plan's goal is met
           COMPLETE   -> archive plan and idea, push, next cycle
           NEEDS_WORK -> back to build from the first task

Every step ends with a full ``state.json`` save, so a restart resumes at the
step that was in flight.  Agent failures are retried with jittered
exponential backoff; exhausted retries are recorded and the loop moves on.
Shutdown is cooperative and checked between steps, tasks and waits; a
running agent process is never interrupted.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
import random
import shutil
import signal
import sys
import threading
from typing import Any, Callable, Optional, TypeVar

from opencoder import __version__
from opencoder.core.config import Paths, Settings
from opencoder.core.console import ConsoleLogger
from opencoder.core.evaluation import extract_eval_reason, parse_eval
from opencoder.core.events import Event, SessionStats, interpret
from opencoder.core.ideas import (
    Idea,
    archive_idea,
    cleanup_empty_ideas,
    format_ideas_for_selection,
    load_all_ideas,
    parse_idea_selection,
)
from opencoder.core.logging_config import cleanup_old_logs, set_cycle_log
from opencoder.core.metrics import (
    Metrics,
    load_metrics,
    record_cycle_completed,
    record_cycle_timeout,
    record_idea_processed,
    record_retry,
    record_task_completed,
    record_task_failed,
    record_task_skipped,
    record_token_usage,
    save_metrics,
)
from opencoder.core.plan import (
    extract_plan_from_response,
    eval_prompt,
    get_tasks,
    get_uncompleted_tasks,
    idea_plan_prompt,
    idea_selection_prompt,
    mark_task_complete,
    plan_prompt,
    require_valid_plan,
    task_prompt,
)
from opencoder.core.state import RuntimeState, load_state, new_cycle_state, save_state
from opencoder.integrations import git as git_ops
from opencoder.integrations.opencode_cli import AgentResult, OpencodeCli, OpencodeCliError

logger = logging.getLogger("opencoder.loop")

T = TypeVar("T")

MAX_BACKOFF_MS = 300_000
BACKOFF_JITTER = 0.2
FORCE_EXIT_CODE = 130


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ── Shutdown ─────────────────────────────────────────────────

class ShutdownController:
    """Two-stage stop flag shared by the signal handlers and the loop."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._requests = 0

    def request(self) -> int:
        """Register a stop request and return how many have been made."""
        with self._lock:
            self._requests += 1
            self._event.set()
            return self._requests

    @property
    def is_requested(self) -> bool:
        return self._event.is_set()

    @property
    def is_forced(self) -> bool:
        return self._requests >= 2

    def reset(self) -> None:
        with self._lock:
            self._requests = 0
            self._event.clear()

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; returns True if a stop was requested."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


def install_signal_handlers(controller: ShutdownController, console: ConsoleLogger) -> None:
    """First SIGINT/SIGTERM stops gracefully, the second exits immediately."""

    def _handle(signum: int, _frame: Any) -> None:
        name = signal.Signals(signum).name
        count = controller.request()
        if count == 1:
            console.say(f"\n{name} received. Finishing current operation...")
            console.say("Press Ctrl+C again to force quit.")
            return
        console.say("\nForce quit!")
        sys.exit(FORCE_EXIT_CODE)

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


# ── Policy helpers ───────────────────────────────────────────

def calculate_backoff(
    attempt: int,
    base_seconds: float,
    rand: Callable[[], float] = random.random,
) -> int:
    """Delay in ms before retry *attempt* (1-based), with up to 20% jitter on top."""
    attempt = max(attempt, 1)
    delay = min(MAX_BACKOFF_MS, base_seconds * 1000 * 2 ** (attempt - 1))
    jitter = rand() * BACKOFF_JITTER * delay
    return int(delay + jitter)


def cycle_elapsed_ms(state: RuntimeState, now: Optional[datetime] = None) -> int:
    started = _parse_iso(state.cycle_start_time)
    if started is None:
        return 0
    now = now or _now()
    return max(0, int((now - started).total_seconds() * 1000))


def is_cycle_timed_out(
    state: RuntimeState,
    timeout_minutes: int,
    now: Optional[datetime] = None,
) -> bool:
    """True when the cycle has run longer than *timeout_minutes* (0 disables)."""
    if timeout_minutes <= 0 or not state.cycle_start_time:
        return False
    if _parse_iso(state.cycle_start_time) is None:
        return False
    return cycle_elapsed_ms(state, now) > timeout_minutes * 60 * 1000


def archive_plan(paths: Paths, cycle: int) -> Optional[str]:
    """Move the current plan into ``history/``.  Returns the archive path."""
    if not os.path.exists(paths.current_plan):
        return None
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    base = os.path.join(paths.history_dir, f"plan_{stamp}_cycle{cycle}")
    target = f"{base}.md"
    n = 1
    while os.path.exists(target):
        target = f"{base}_{n}.md"
        n += 1
    os.makedirs(paths.history_dir, exist_ok=True)
    shutil.move(paths.current_plan, target)
    logger.info("Plan archived to %s", target)
    return target


def _read_text(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return None


def _write_text_atomic(path: str, text: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


# ── Orchestrator ─────────────────────────────────────────────

class CycleOrchestrator:
    """Owns the phase state machine.  Single-threaded; one agent call at a time.

    Collaborators are injectable: *agent* needs ``run_prompt(prompt, model,
    title, on_event=..., session_id=...)``, *git* the helpers of
    :mod:`opencoder.integrations.git`, and *sleep* takes seconds and returns
    True when the wait was cut short by a stop request.
    """

    def __init__(
        self,
        settings: Settings,
        agent: Any = None,
        console: Optional[ConsoleLogger] = None,
        shutdown: Optional[ShutdownController] = None,
        git: Any = None,
        sleep: Optional[Callable[[float], bool]] = None,
        clock: Callable[[], datetime] = _now,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.settings = settings
        self.paths = settings.paths
        self.console = console or ConsoleLogger(self.paths.alerts_file, verbose=settings.verbose)
        self.agent = agent or OpencodeCli(
            executable=settings.opencode_path,
            workspace_dir=settings.project_dir,
            timeout=settings.agent_timeout,
        )
        self.shutdown = shutdown or ShutdownController()
        self.git = git or git_ops
        self._sleep = sleep or self.shutdown.wait
        self._clock = clock
        self._rand = rand
        self.state = RuntimeState()
        self.metrics = Metrics()

    # ── persistence ──────────────────────────────────────────

    def _save_state(self) -> None:
        save_state(self.paths.state_file, self.state)

    def _save_metrics(self) -> None:
        self.metrics = save_metrics(self.paths.metrics_file, self.metrics)

    def _alert(self, message: str, **payload: Any) -> None:
        self.console.alert(message, cycle=self.state.cycle, phase=self.state.phase, **payload)

    # ── main loop ────────────────────────────────────────────

    def load(self) -> None:
        self.paths.ensure_directories()
        self.state = load_state(self.paths.state_file)
        self.metrics = load_metrics(self.paths.metrics_file)

    def run(self) -> None:
        self.load()
        self._log_startup()
        removed = cleanup_old_logs(self.paths.cycle_log_dir, self.settings.log_retention)
        if removed:
            self.console.log_verbose(f"Cleaned up {removed} old log files")
        removed = cleanup_empty_ideas(self.paths.ideas_dir)
        if removed:
            self.console.log_verbose(f"Removed {removed} empty idea files")
        s = self.settings
        if (s.auto_commit or s.auto_push) and not self.git.is_git_repo(s.project_dir):
            self.console.warn(f"{s.project_dir} is not a git repository, commits and pushes will fail")

        try:
            while not self.shutdown.is_requested:
                set_cycle_log(self.state.cycle)
                self.step()
        finally:
            self.console.stop_spinner()
            self._save_state()
            self.console.say("Opencoder stopped.")

    def step(self) -> None:
        """Run one unit of work for the current phase, then persist state."""
        if self._check_timeout():
            return
        phase = self.state.phase
        try:
            if phase in ("init", "plan"):
                self.run_plan_phase()
            elif phase == "build":
                self.run_build_phase()
            elif phase == "eval":
                self.run_eval_phase()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in %s phase", phase)
            self.console.log_error(f"Error in {phase} phase: {exc}")
            if not self.shutdown.is_requested:
                self.console.say(f"Retrying in {self.settings.backoff_base} seconds...")
                self._sleep(self.settings.backoff_base)
        self._save_state()

    def _log_startup(self) -> None:
        s = self.settings
        self.console.say(f"\nOpencoder v{__version__}")
        self.console.say(f"Project: {s.project_dir}")
        self.console.say(f"Plan model: {s.plan_model}")
        self.console.say(f"Build model: {s.build_model}")
        if s.user_hint:
            self.console.say(f"Hint: {s.user_hint}")
        if self.state.phase == "init":
            self.console.say("Starting fresh")
        else:
            self.console.say(f"Resuming from cycle {self.state.cycle}, phase: {self.state.phase}")
        self.console.say("")

    # ── retry ────────────────────────────────────────────────

    def with_retry(self, label: str, operation: Callable[[], T]) -> Optional[T]:
        """Run *operation* with up to ``max_retries`` retries.

        Returns None when every attempt failed or a stop was requested
        during a backoff wait.
        """
        attempts = self.settings.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                result = operation()
            except Exception as exc:  # noqa: BLE001
                self.state.retry_count += 1
                self.state.last_error_time = self._clock().isoformat()
                self.metrics = record_retry(self.metrics)
                self._save_metrics()
                self._save_state()
                logger.warning("%s failed (attempt %d/%d): %s", label, attempt, attempts, exc)
                self.console.log_error(f"{label} failed (attempt {attempt}/{attempts}): {exc}")
                if attempt >= attempts:
                    break
                if self.shutdown.is_requested:
                    return None
                delay_ms = calculate_backoff(attempt, self.settings.backoff_base, self._rand)
                self.console.say(f"Retrying in {delay_ms / 1000:.1f}s...")
                if self._sleep(delay_ms / 1000):
                    return None
                continue
            self.state.retry_count = 0
            return result
        self._alert(f"{label} failed after {attempts} attempts", label=label, attempts=attempts)
        return None

    # ── agent ────────────────────────────────────────────────

    def _invoke(self, prompt: str, model: str, title: str, session_id: Optional[str] = None) -> AgentResult:
        stats = SessionStats()

        def on_event(event: Event) -> None:
            interpret(event, self.console, stats.apply)

        self.console.start_spinner(f"{title}...")
        try:
            result = self.agent.run_prompt(
                prompt,
                model,
                title,
                on_event=on_event,
                session_id=session_id,
            )
        except OpencodeCliError:
            # Drop the session so the next attempt starts a fresh one
            if session_id and self.state.session_id == session_id:
                self.state.session_id = None
            raise
        finally:
            self.console.stop_spinner()
            # Failed attempts still consumed tokens
            self._record_usage(title, model, stats)
        if result.session_id:
            self.state.session_id = result.session_id
        return result

    def _record_usage(self, title: str, model: str, stats: SessionStats) -> None:
        if not (stats.input_tokens or stats.output_tokens):
            return
        cost = stats.cost(model)
        self.metrics = record_token_usage(self.metrics, stats.input_tokens, stats.output_tokens, cost)
        self._save_metrics()
        self.console.log_verbose(
            f"{title}: {stats.tool_calls} tool calls, {len(stats.files_modified)} files, "
            f"{stats.input_tokens} in / {stats.output_tokens} out tokens (~${cost:.4f})"
        )

    # ── plan ─────────────────────────────────────────────────

    def _select_idea(self, ideas: list[Idea]) -> Optional[Idea]:
        self.console.info(f"Found {len(ideas)} idea(s) in queue")
        if len(ideas) == 1:
            self.console.say(f"Using idea: {ideas[0].filename}")
            return ideas[0]
        prompt = idea_selection_prompt(format_ideas_for_selection(ideas))
        title = f"Cycle {self.state.cycle} idea selection"
        response = self.with_retry(
            "Idea selection",
            lambda: self._invoke(prompt, self.settings.plan_model, title),
        )
        index = parse_idea_selection(response.text) if response is not None else None
        if index is not None and index < len(ideas):
            self.console.success(f"Selected idea: {ideas[index].filename}")
            return ideas[index]
        self.console.warn("Could not parse idea selection, falling back to autonomous plan")
        return None

    def run_plan_phase(self) -> None:
        state = self.state
        state.phase = "plan"
        if not state.cycle_start_time:
            state.cycle_start_time = self._clock().isoformat()
        self.console.phase("Planning", f"cycle {state.cycle}")

        ideas = load_all_ideas(self.paths.ideas_dir)
        idea = self._select_idea(ideas) if ideas else None
        if self.shutdown.is_requested:
            return
        if idea is not None:
            prompt = idea_plan_prompt(idea.content, idea.filename, state.cycle)
            state.current_idea_path = idea.path
            state.current_idea_filename = idea.filename
        else:
            prompt = plan_prompt(state.cycle, self.settings.user_hint)
            state.current_idea_path = None
            state.current_idea_filename = None

        title = f"Cycle {state.cycle} plan"

        def attempt() -> str:
            result = self._invoke(prompt, self.settings.plan_model, title)
            return require_valid_plan(extract_plan_from_response(result.text))

        plan = self.with_retry("Planning", attempt)
        if plan is None:
            if not self.shutdown.is_requested:
                self._sleep(self.settings.backoff_base)
            return

        _write_text_atomic(self.paths.current_plan, plan)
        tasks = get_tasks(plan)
        self.console.success(f"Plan created with {len(tasks)} tasks")
        state.phase = "build"
        state.task_index = 0
        state.total_tasks = len(tasks)

    # ── build ────────────────────────────────────────────────

    def run_build_phase(self) -> None:
        state = self.state
        plan = _read_text(self.paths.current_plan)
        if plan is None:
            self.console.log_error("No plan file found, returning to plan phase")
            state.phase = "plan"
            return

        tasks = get_tasks(plan)
        state.total_tasks = len(tasks)
        index, task = next(
            ((i, t) for i, t in enumerate(tasks) if i >= state.task_index and not t.completed),
            (None, None),
        )
        if index is None or task is None:
            self.console.success("All tasks completed!")
            state.phase = "eval"
            return

        state.task_index = index
        state.current_task_num = index + 1
        state.current_task_desc = task.description
        self.console.phase("Building", f"task {index + 1}/{len(tasks)}: {task.description}")
        if self.shutdown.is_requested:
            return

        prompt = task_prompt(task.description, state.cycle, index + 1, len(tasks))
        title = f"Cycle {state.cycle} task {index + 1}"
        result = self.with_retry(
            f"Task {index + 1}",
            lambda: self._invoke(prompt, self.settings.build_model, title, session_id=state.session_id),
        )

        if result is not None:
            current = _read_text(self.paths.current_plan) or plan
            _write_text_atomic(self.paths.current_plan, mark_task_complete(current, task.line_number))
            self.metrics = record_task_completed(self.metrics)
            self._save_metrics()
            self.console.success(f"Task {index + 1}/{len(tasks)} complete")
            self._commit_task(task.description)
        elif self.shutdown.is_requested:
            return
        else:
            self.metrics = record_task_failed(self.metrics)
            self._save_metrics()
            self.console.log_error(f"Task {index + 1} failed, moving on: {task.description}")

        state.task_index = index + 1
        state.current_task_desc = ""
        pause = self.settings.task_pause_seconds
        if pause > 0 and not self.shutdown.is_requested:
            self._sleep(pause)

    def _commit_task(self, description: str) -> None:
        if not self.settings.auto_commit:
            return
        project = self.settings.project_dir
        if not self.git.has_changes(project):
            return
        message = self.git.generate_commit_message(description)
        if self.git.commit_changes(project, message, self.settings.commit_signoff):
            self.console.step("Committed", message)
        else:
            self.console.log_error(f"Failed to commit changes: {message}")

    # ── eval ─────────────────────────────────────────────────

    def run_eval_phase(self) -> None:
        state = self.state
        plan = _read_text(self.paths.current_plan)
        if plan is None:
            self.console.log_error("No plan file found for evaluation")
            state.phase = "plan"
            return

        self.console.phase("Evaluating", f"cycle {state.cycle}")
        title = f"Cycle {state.cycle} eval"
        result = self.with_retry(
            "Evaluation",
            lambda: self._invoke(
                eval_prompt(state.cycle, plan),
                self.settings.plan_model,
                title,
                session_id=state.session_id,
            ),
        )
        if result is None:
            if not self.shutdown.is_requested:
                self._sleep(self.settings.backoff_base)
            return

        verdict = parse_eval(result.text)
        reason = extract_eval_reason(result.text)
        if verdict == "COMPLETE":
            self.console.success(f"Cycle {state.cycle} complete!")
            if reason:
                self.console.say(f"Reason: {reason}")
            self._complete_cycle()
            return

        self.console.warn("Cycle needs more work, continuing build...")
        if reason:
            self.console.say(f"Reason: {reason}")
        if not get_uncompleted_tasks(plan):
            # Give the build phase something to do with the feedback
            feedback = reason or "Finish the remaining work for this plan"
            _write_text_atomic(
                self.paths.current_plan,
                f"{plan.rstrip()}\n- [ ] Address evaluation feedback: {feedback}\n",
            )
        state.phase = "build"
        state.task_index = 0

    def _complete_cycle(self) -> None:
        state = self.state
        duration_ms = cycle_elapsed_ms(state, self._clock())
        archive_plan(self.paths, state.cycle)
        if state.current_idea_path and archive_idea(state.current_idea_path, self.paths.ideas_history_dir):
            self.metrics = record_idea_processed(self.metrics)
        self.metrics = record_cycle_completed(self.metrics, duration_ms)
        self._save_metrics()

        if self.settings.auto_push and self.git.has_unpushed_commits(self.settings.project_dir):
            if self.git.push_changes(self.settings.project_dir):
                self.console.step("Pushed", "changes to remote")
            else:
                self.console.log_error("Failed to push changes")

        self.state = new_cycle_state(state)

    # ── timeout ──────────────────────────────────────────────

    def _check_timeout(self) -> bool:
        """Abort the cycle if it ran past its limit.  Returns True if it did."""
        state = self.state
        limit = self.settings.cycle_timeout_minutes
        now = self._clock()
        if not is_cycle_timed_out(state, limit, now):
            return False

        elapsed_min = cycle_elapsed_ms(state, now) // 60000
        self._alert(
            f"Cycle {state.cycle} timed out after {elapsed_min} minutes (limit {limit}); starting a new cycle",
            elapsed_minutes=elapsed_min,
        )
        plan = _read_text(self.paths.current_plan)
        skipped = get_uncompleted_tasks(plan) if plan else []
        for _ in skipped:
            self.metrics = record_task_skipped(self.metrics)
        self.metrics = record_cycle_timeout(self.metrics)
        self._save_metrics()
        if skipped:
            self.console.warn(f"Skipped {len(skipped)} unfinished task(s)")
        archive_plan(self.paths, state.cycle)
        self.state = new_cycle_state(state)
        self._save_state()
        return True
