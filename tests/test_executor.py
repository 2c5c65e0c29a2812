"""Tests for the execution driver and its no-op detection."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from conftest import FakeBackend, run_git, write_file
from sprint_agents.errors import NoOpExecution
from sprint_agents.executor import ExecutionDriver
from sprint_agents.models import AcceptanceCriterion, Sandbox, Story, Task

TASK = Task(id="T-7", title="Add health endpoint", description="Expose GET /health")


def _sandbox(root: Path) -> Sandbox:
    return Sandbox(id="task-T-7", task_id="T-7", branch="task/T-7-add-health-endpoint", root=root, run_dir=root.parent / "run")


def test_execute_reports_changed_files(repo: Path):
    backend = FakeBackend([write_file("app/health.py", "def health():\n    return 'ok'\n")])
    driver = ExecutionDriver(backend)
    criteria = [AcceptanceCriterion(id="AC-1", given="the service", when="GET /health", then="200 OK")]

    transcript = driver.execute(_sandbox(repo), TASK, Story(id="S-1", title="Ops"), criteria, role="dev")

    assert transcript.changed_files == ["app/health.py"]
    assert transcript.backend == "fake"
    prompt = backend.prompts[0]
    assert "T-7" in prompt and "Expose GET /health" in prompt
    assert "AC-1: Given the service, When GET /health, Then 200 OK" in prompt
    assert "task/T-7-add-health-endpoint" in prompt


def test_backend_that_changes_nothing_is_a_no_op(repo: Path):
    driver = ExecutionDriver(FakeBackend([None]))
    with pytest.raises(NoOpExecution):
        driver.execute(_sandbox(repo), TASK, None, [])


def test_pre_existing_dirt_does_not_count(repo: Path):
    (repo / "leftover.txt").write_text("old\n")
    driver = ExecutionDriver(FakeBackend([None]))
    with pytest.raises(NoOpExecution):
        driver.execute(_sandbox(repo), TASK, None, [])


def test_backend_commits_count_as_changes(repo: Path):
    def _commit(workdir: Path) -> None:
        (workdir / "done.txt").write_text("done\n")
        run_git(workdir, "add", "-A")
        run_git(workdir, "commit", "-m", "agent did it")

    transcript = ExecutionDriver(FakeBackend([_commit])).execute(_sandbox(repo), TASK, None, [])
    assert transcript.changed_files == ["done.txt"]


def test_run_prompt_without_required_changes(repo: Path):
    transcript = ExecutionDriver(FakeBackend([None])).run_prompt(_sandbox(repo), "look around", label="inspect")
    assert transcript.changed_files == []


def test_role_guidance_in_prompt(repo: Path):
    backend = FakeBackend([write_file("tests/test_x.py")])
    ExecutionDriver(backend).execute(_sandbox(repo), TASK, None, [], role="qa")
    assert "QA agent" in backend.prompts[0]
