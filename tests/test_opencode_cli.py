from __future__ import annotations

import json
import os
import sys
import time

import pytest

from opencoder.core.events import FileChange, TextDelta, ToolStart
from opencoder.integrations.opencode_cli import OpencodeCli, OpencodeCliError


def _scripted(cli: OpencodeCli, script: str) -> list:
    """Replace the opencode command with a python one-liner; returns captured args."""
    captured: list = []

    def build_command(prompt, model, title, session_id=None):
        captured.append((prompt, model, title, session_id))
        return [sys.executable, "-c", script]

    cli.build_command = build_command  # type: ignore[method-assign]
    return captured


def _emit(*events) -> str:
    lines = [json.dumps(e) if isinstance(e, dict) else e for e in events]
    return "import sys\n" + "".join(f"print({line!r})\n" for line in lines) + "sys.stdout.flush()\n"


def test_build_command_shape(monkeypatch) -> None:
    monkeypatch.setattr("shutil.which", lambda exe: f"/usr/bin/{exe}")
    cli = OpencodeCli(executable="opencode")
    cmd = cli.build_command("do it", "anthropic/claude", "Cycle 1 task 1", session_id="ses_1")
    assert cmd == [
        "/usr/bin/opencode", "run",
        "--model", "anthropic/claude",
        "--title", "Cycle 1 task 1",
        "--format", "json",
        "--session", "ses_1",
        "do it",
    ]
    assert "--session" not in cli.build_command("x", "a/b", "t")


def test_missing_executable(monkeypatch) -> None:
    monkeypatch.setattr("shutil.which", lambda exe: None)
    with pytest.raises(OpencodeCliError, match="not found"):
        OpencodeCli(executable="nope").run_prompt("x", "a/b", "t")


def test_json_stream_is_collected(tmp_path) -> None:
    cli = OpencodeCli(workspace_dir=str(tmp_path), timeout=30)
    _scripted(cli, _emit(
        {"type": "session.status", "properties": {"status": "busy", "sessionID": "ses_abc"}},
        {"type": "message.part.tool.start", "properties": {"name": "edit", "input": {"filePath": "a.py"}}},
        {"type": "file.edited", "properties": {"path": "a.py"}},
        {"type": "file.edited", "properties": {"path": "a.py"}},
        {"type": "message.part.text", "properties": {"text": "Hello "}},
        {"type": "message.part.text", "properties": {"text": "world"}},
        {"type": "message.complete", "properties": {"usage": {"input": 100, "output": 20}}},
    ))
    seen = []
    result = cli.run_prompt("p", "a/b", "t", on_event=seen.append)

    assert result.text == "Hello world"
    assert result.session_id == "ses_abc"
    assert result.exit_code == 0
    assert len(seen) == 7
    assert isinstance(seen[1], ToolStart)
    assert isinstance(seen[2], FileChange)
    assert isinstance(seen[4], TextDelta)


def test_plain_output_used_when_no_text_events(tmp_path) -> None:
    cli = OpencodeCli(workspace_dir=str(tmp_path), timeout=30)
    _scripted(cli, _emit("plain answer", {"type": "session.complete"}))
    assert cli.run_prompt("p", "a/b", "t").text == "plain answer"


def test_session_id_passed_through(tmp_path) -> None:
    cli = OpencodeCli(workspace_dir=str(tmp_path), timeout=30)
    captured = _scripted(cli, _emit("ok"))
    cli.run_prompt("p", "a/b", "t", session_id="ses_1")
    assert captured == [("p", "a/b", "t", "ses_1")]


def test_nonzero_exit_raises(tmp_path) -> None:
    cli = OpencodeCli(workspace_dir=str(tmp_path), timeout=30)
    _scripted(cli, "import sys; print('model not found'); sys.exit(3)")
    with pytest.raises(OpencodeCliError, match="exit code 3: model not found"):
        cli.run_prompt("p", "a/b", "t")


def test_empty_response_raises(tmp_path) -> None:
    cli = OpencodeCli(workspace_dir=str(tmp_path), timeout=30)
    _scripted(cli, _emit({"type": "session.complete"}))
    with pytest.raises(OpencodeCliError, match="Empty response"):
        cli.run_prompt("p", "a/b", "t")


def test_silent_process_times_out(tmp_path) -> None:
    cli = OpencodeCli(workspace_dir=str(tmp_path), timeout=1)
    _scripted(cli, "import time; time.sleep(10)")

    start = time.monotonic()
    with pytest.raises(OpencodeCliError, match="timed out"):
        cli.run_prompt("p", "a/b", "t")
    assert time.monotonic() - start < 5, "silent subprocess should be killed promptly on timeout"


@pytest.mark.skipif(sys.platform == "win32", reason="uses os.kill(pid, 0) to check liveness")
def test_forced_exit_kills_agent_process(tmp_path) -> None:
    pid_file = tmp_path / "agent.pid"
    cli = OpencodeCli(workspace_dir=str(tmp_path), timeout=60)
    _scripted(cli, (
        "import json, os, time\n"
        f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
        "print(json.dumps({'type': 'session.status', 'properties': {'status': 'busy'}}), flush=True)\n"
        "time.sleep(30)\n"
    ))

    def force_quit(event) -> None:
        raise SystemExit(130)

    with pytest.raises(SystemExit):
        cli.run_prompt("p", "a/b", "t", on_event=force_quit)

    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
