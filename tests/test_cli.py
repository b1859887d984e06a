from __future__ import annotations

import os

import pytest
from typer.testing import CliRunner

from opencoder import __version__
from opencoder.cli import app
from opencoder.core.config import Paths
from opencoder.core.metrics import Metrics, load_metrics, record_task_completed, save_metrics
from opencoder.core.state import RuntimeState, save_state

runner = CliRunner()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("OPENCODER_"):
            monkeypatch.delenv(key, raising=False)


def test_version(monkeypatch) -> None:
    monkeypatch.setattr("shutil.which", lambda exe: None)
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"opencoder {__version__}" in result.output
    assert "opencode: not found" in result.output


def test_status_without_workspace(tmp_path) -> None:
    result = runner.invoke(app, ["status", "--project", str(tmp_path)])
    assert result.exit_code == 1
    assert "No opencoder workspace" in result.output


def test_status_shows_state_and_metrics(tmp_path) -> None:
    paths = Paths.for_project(str(tmp_path))
    paths.ensure_directories()
    save_state(paths.state_file, RuntimeState(cycle=3, phase="build", task_index=1))
    save_metrics(paths.metrics_file, record_task_completed(Metrics()))
    with open(os.path.join(paths.ideas_dir, "idea.md"), "w", encoding="utf-8") as f:
        f.write("An idea")

    result = runner.invoke(app, ["status", "--project", str(tmp_path)])
    assert result.exit_code == 0
    assert "Cycle 3, phase: build" in result.output
    assert "Next task index: 1" in result.output
    assert "Ideas queued: 1" in result.output
    assert "Tasks: 1 completed" in result.output


def test_reset_metrics(tmp_path) -> None:
    paths = Paths.for_project(str(tmp_path))
    save_metrics(paths.metrics_file, record_task_completed(Metrics()))

    result = runner.invoke(app, ["reset-metrics", "--project", str(tmp_path), "--yes"])
    assert result.exit_code == 0
    assert load_metrics(paths.metrics_file).tasks_completed == 0


def test_reset_metrics_cancelled(tmp_path) -> None:
    paths = Paths.for_project(str(tmp_path))
    save_metrics(paths.metrics_file, record_task_completed(Metrics()))

    result = runner.invoke(app, ["reset-metrics", "--project", str(tmp_path)], input="n\n")
    assert result.exit_code == 0
    assert "Cancelled" in result.output
    assert load_metrics(paths.metrics_file).tasks_completed == 1


def test_run_without_models_fails(tmp_path) -> None:
    result = runner.invoke(app, ["run", "--project", str(tmp_path)])
    assert result.exit_code == 1
    assert not os.path.exists(Paths.for_project(str(tmp_path)).opencoder_dir)


def test_run_with_bad_model_format_fails(tmp_path) -> None:
    result = runner.invoke(app, ["run", "--project", str(tmp_path), "--model", "nomodel"])
    assert result.exit_code == 1


def test_reset_state_archives_plan(tmp_path) -> None:
    paths = Paths.for_project(str(tmp_path))
    paths.ensure_directories()
    save_state(paths.state_file, RuntimeState(cycle=4, phase="build", task_index=2))
    with open(paths.current_plan, "w", encoding="utf-8") as f:
        f.write("- [ ] leftover\n")

    result = runner.invoke(app, ["reset-state", "--project", str(tmp_path), "--yes"])
    assert result.exit_code == 0
    assert not os.path.exists(paths.current_plan)
    assert os.listdir(paths.history_dir)[0].endswith("_cycle4.md")
    with open(paths.state_file, encoding="utf-8") as f:
        assert '"cycle": 1' in f.read()
