"""Console output for the loop.

:class:`ConsoleLogger` renders progress with ``typer`` colours and mirrors
every message, untruncated, to the activity logger (``logs/main.log`` and
the current cycle log).  Errors and alerts also go to ``alerts.jsonl``.

The spinner runs on its own daemon thread.  It only writes frames to the
terminal and is always stopped before anything else is printed.
"""
from __future__ import annotations

import json
import sys
import threading
from typing import Any, Optional

import typer

from opencoder.core.alerts import record_alert
from opencoder.core.logging_config import activity_logger

CLEAR_LINE = "\r\x1b[K"
SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")
SPINNER_INTERVAL = 0.08  # seconds


def _clip(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


class Spinner:
    """Cancellable background ticker."""

    def __init__(self, interval: float = SPINNER_INTERVAL) -> None:
        self.interval = interval
        self._message = ""
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self, message: str) -> None:
        self.stop()
        self._message = message
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="opencoder-spinner", daemon=True)
        self._thread.start()

    def update(self, message: str) -> None:
        self._message = message

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        thread.join(timeout=1)
        self._thread = None
        with self._lock:
            typer.echo(CLEAR_LINE, nl=False)

    def _run(self) -> None:
        index = 0
        while not self._stop.is_set():
            frame = SPINNER_FRAMES[index % len(SPINNER_FRAMES)]
            with self._lock:
                typer.echo(f"{CLEAR_LINE}{typer.style(frame, fg=typer.colors.CYAN)} {self._message}", nl=False)
            index += 1
            self._stop.wait(self.interval)


class ConsoleLogger:
    """Event logger used by the orchestrator and the event interpreter."""

    def __init__(
        self,
        alerts_path: Optional[str] = None,
        verbose: bool = False,
        spinner: Optional[bool] = None,
    ) -> None:
        self.alerts_path = alerts_path
        self.verbose = verbose
        if spinner is None:
            spinner = sys.stdout.isatty()
        self._spinner: Optional[Spinner] = Spinner() if spinner else None

    # ── plain messages ───────────────────────────────────────

    def log(self, message: str) -> None:
        """File only."""
        activity_logger.info(message)

    def say(self, message: str) -> None:
        typer.echo(message)
        activity_logger.info(message)

    def info(self, message: str) -> None:
        typer.secho(message, fg=typer.colors.BLUE)
        activity_logger.info(message)

    def success(self, message: str) -> None:
        typer.secho(message, fg=typer.colors.GREEN)
        activity_logger.info(message)

    def warn(self, message: str) -> None:
        typer.secho(f"[WARN] {message}", fg=typer.colors.YELLOW)
        activity_logger.info("[WARN] %s", message)

    def log_error(self, message: str) -> None:
        self.stop_spinner()
        typer.secho(f"[ERROR] {message}", fg=typer.colors.RED, err=True)
        if self.alerts_path:
            record_alert(self.alerts_path, "error", message)
        else:
            activity_logger.info("[ERROR] %s", message)

    def alert(self, message: str, **payload: Any) -> None:
        self.stop_spinner()
        typer.secho(f"[ALERT] {message}", fg=typer.colors.RED, bold=True, err=True)
        if self.alerts_path:
            record_alert(self.alerts_path, "alert", message, **payload)
        else:
            activity_logger.info("[ALERT] %s", message)

    def log_verbose(self, message: str) -> None:
        if self.verbose:
            typer.secho(f"[VERBOSE] {message}", dim=True)
        activity_logger.info("[VERBOSE] %s", message)

    # ── structure ────────────────────────────────────────────

    def header(self, title: str, char: str = "=") -> None:
        line = char * 60
        self.say(f"\n{line}")
        self.say(title)
        self.say(line)

    def phase(self, name: str, detail: str = "") -> None:
        self.stop_spinner()
        suffix = f" {typer.style(detail, dim=True)}" if detail else ""
        typer.echo(f"{typer.style('● ' + name, fg=typer.colors.CYAN, bold=True)}{suffix}")
        activity_logger.info("[PHASE] %s %s", name, detail)

    def step(self, action: str, detail: str = "") -> None:
        self.stop_spinner()
        typer.secho(f"  ◦ {action} {detail}".rstrip(), fg=typer.colors.BLUE)
        activity_logger.info("[STEP] %s %s", action, detail)

    def file_change(self, action: str, path: str) -> None:
        self.stop_spinner()
        short = f"...{path[-57:]}" if len(path) > 60 else path
        typer.secho(f"  ✓ {action}: {short}", fg=typer.colors.GREEN)
        activity_logger.info("[FILE] %s: %s", action, path)

    # ── agent stream ─────────────────────────────────────────

    def stream(self, text: str) -> None:
        typer.echo(text, nl=False)
        activity_logger.info(text)

    def stream_end(self) -> None:
        typer.echo("")

    def tool_call(self, name: str, tool_input: Any = None) -> None:
        self.stop_spinner()
        detail = self._format_tool_input(tool_input)
        typer.echo(
            typer.style(f"🔧 {name}", fg=typer.colors.CYAN, bold=True)
            + typer.style(_clip(detail, 80), dim=True)
        )
        activity_logger.info("[TOOL] %s%s", name, detail)

    @staticmethod
    def _format_tool_input(tool_input: Any) -> str:
        if not tool_input:
            return ""
        if isinstance(tool_input, str):
            return f" {tool_input}"
        if isinstance(tool_input, dict):
            for key in ("filePath", "path", "pattern", "command"):
                if key in tool_input:
                    return f" {tool_input[key]}"
            if "query" in tool_input:
                return f' "{tool_input["query"]}"'
        try:
            return f" {json.dumps(tool_input)}"
        except (TypeError, ValueError):
            return f" {tool_input!r}"

    def tool_result(self, output: str) -> None:
        limit = 200 if self.verbose else 100
        first_line = _clip(output, limit).split("\n")[0]
        typer.secho(f"  → {first_line}", fg=typer.colors.BRIGHT_BLACK)
        activity_logger.info("[RESULT] %s", output)

    def thinking(self, text: str) -> None:
        self.stop_spinner()
        first_line = text.split("\n")[0]
        typer.secho(f"💭 {_clip(first_line, 150)}", fg=typer.colors.MAGENTA)
        activity_logger.info("[THINKING] %s", text)

    def tokens(self, input_tokens: float, output_tokens: float) -> None:
        msg = f"[TOKENS] in: {input_tokens}, out: {output_tokens}"
        if self.verbose:
            typer.secho(msg, dim=True)
        activity_logger.info(msg)

    # ── spinner ──────────────────────────────────────────────

    def start_spinner(self, message: str) -> None:
        activity_logger.debug("[SPINNER] %s", message)
        if self._spinner is not None:
            self._spinner.start(message)

    def stop_spinner(self) -> None:
        if self._spinner is not None:
            self._spinner.stop()
