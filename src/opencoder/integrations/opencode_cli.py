from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import shutil
import subprocess
import sys
import threading
import time
from typing import Callable, Optional

from opencoder.core.events import (
    Event,
    TextDelta,
    event_from_dict,
    parse_json_object,
)

logger = logging.getLogger("opencoder.opencode_cli")

DEFAULT_TIMEOUT = 3600  # seconds (1 hour)


class OpencodeCliError(RuntimeError):
    pass


@dataclass
class AgentResult:
    """Outcome of one ``opencode run`` invocation."""
    text: str
    session_id: Optional[str] = None
    exit_code: int = 0
    duration_s: float = 0.0


class OpencodeCli:
    """Adapter that runs the ``opencode`` CLI once per prompt.

    Output is requested as newline-delimited JSON events.  Each line is
    decoded and handed to *on_event* in arrival order; lines that are not
    JSON objects are kept as raw output and used as the response when the
    stream carried no text events.
    """

    def __init__(
        self,
        executable: Optional[str] = None,
        workspace_dir: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        self.executable = executable or os.getenv("OPENCODER_OPENCODE_PATH", "opencode")
        self.workspace_dir = workspace_dir
        self.timeout = timeout

    # ── internal helpers ──────────────────────────────────────

    def _resolve_executable(self) -> str:
        path = shutil.which(self.executable)
        if not path:
            raise OpencodeCliError(f"opencode CLI not found on PATH ({self.executable})")
        return path

    def build_command(
        self,
        prompt: str,
        model: str,
        title: str,
        session_id: Optional[str] = None,
    ) -> list[str]:
        cmd = [self._resolve_executable(), "run", "--model", model, "--title", title, "--format", "json"]
        if session_id:
            cmd.extend(["--session", session_id])
        cmd.append(prompt)
        return cmd

    def _make_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.setdefault("TERM", "dumb")
        env["NO_COLOR"] = "1"
        return env

    # ── public API ────────────────────────────────────────────

    def run_prompt(
        self,
        prompt: str,
        model: str,
        title: str,
        on_event: Optional[Callable[[Event], None]] = None,
        session_id: Optional[str] = None,
    ) -> AgentResult:
        """Run *prompt* to completion and return the collected result.

        Raises :class:`OpencodeCliError` when the executable is missing, the
        process exits non-zero, the timeout elapses, or the response is empty.
        """
        cmd = self.build_command(prompt, model, title, session_id=session_id)
        logger.info("opencode run: model=%s title=%r session=%s (%d chars)", model, title, session_id, len(prompt))
        try:
            process = subprocess.Popen(
                cmd,
                cwd=self.workspace_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self._make_env(),
                encoding="utf-8",
                errors="replace",
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP if sys.platform == "win32" else 0,
                # Own session: a terminal Ctrl+C does not reach the agent
                start_new_session=sys.platform != "win32",
            )
        except FileNotFoundError as exc:
            raise OpencodeCliError(f"opencode CLI not found: {exc}") from exc

        # Timer also covers a process that never prints
        timed_out = threading.Event()

        def _on_timeout() -> None:
            timed_out.set()
            process.kill()

        watchdog = threading.Timer(self.timeout, _on_timeout)
        watchdog.daemon = True
        watchdog.start()

        text_parts: list[str] = []
        raw_lines: list[str] = []
        result = AgentResult(text="")
        start_time = time.monotonic()
        try:
            assert process.stdout is not None
            for line in process.stdout:
                if time.monotonic() - start_time > self.timeout:
                    process.kill()
                    timed_out.set()
                    break
                self._handle_line(line, result, text_parts, raw_lines, on_event)
            process.wait(timeout=10)
        except OpencodeCliError:
            raise
        except Exception as exc:
            raise OpencodeCliError(f"opencode CLI error: {exc}") from exc
        finally:
            watchdog.cancel()
            # Also reached on SystemExit from a forced quit
            if process.poll() is None:
                process.kill()
                process.wait()

        result.duration_s = time.monotonic() - start_time
        if timed_out.is_set():
            raise OpencodeCliError(f"opencode CLI timed out after {self.timeout}s")

        result.exit_code = process.returncode
        raw_output = "".join(raw_lines).strip()
        if process.returncode != 0:
            detail = f": {raw_output[-500:]}" if raw_output else ""
            raise OpencodeCliError(f"opencode CLI failed with exit code {process.returncode}{detail}")

        result.text = "".join(text_parts).strip() or raw_output
        if not result.text:
            raise OpencodeCliError("Empty response from opencode")
        logger.info("%s → complete (%d chars, %.1fs)", title, len(result.text), result.duration_s)
        return result

    @staticmethod
    def _handle_line(
        line: str,
        result: AgentResult,
        text_parts: list[str],
        raw_lines: list[str],
        on_event: Optional[Callable[[Event], None]],
    ) -> None:
        obj = parse_json_object(line)
        if obj is None:
            if line.strip():
                raw_lines.append(line)
                logger.debug("opencode | %s", line.rstrip())
            return

        props = obj.get("properties")
        if isinstance(props, dict) and isinstance(props.get("sessionID"), str):
            result.session_id = props["sessionID"]

        event = event_from_dict(obj)
        if isinstance(event, TextDelta) and event.text:
            text_parts.append(event.text)

        if on_event is not None:
            on_event(event)

    def version(self) -> str:
        """Return opencode CLI version string."""
        exe = self._resolve_executable()
        try:
            result = subprocess.run(
                [exe, "--version"],
                capture_output=True,
                text=True,
                timeout=15,
                encoding="utf-8",
                errors="replace",
            )
            return result.stdout.strip()
        except Exception as exc:
            raise OpencodeCliError(f"failed to get version: {exc}") from exc
