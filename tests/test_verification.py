"""Tests for the bounded verify/fix loop."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from conftest import FakeBackend, run_git, write_file
from sprint_agents.executor import ExecutionDriver
from sprint_agents.models import Sandbox, Task, VerificationKind
from sprint_agents.verification import VerificationLoop

TASK = Task(id="T-9", title="Make tests pass")
# Passes once the backend has written `fixed.txt`.
TEST_COMMAND = "test -f fixed.txt || { echo 'tests/test_app.py::test_home FAILED'; exit 1; }"


def _sandbox(tmp_path: Path) -> Sandbox:
    root = tmp_path / "work"
    root.mkdir()
    run_git(root, "init", "-b", "main")
    return Sandbox(id="sb", task_id="T-9", branch="task/T-9", root=root, run_dir=tmp_path / "run")


def _loop(backend: FakeBackend, **kwargs) -> VerificationLoop:
    kwargs.setdefault("test_command", TEST_COMMAND)
    kwargs.setdefault("max_fix_retries", 3)
    return VerificationLoop(ExecutionDriver(backend), **kwargs)


def test_passes_first_time(tmp_path: Path):
    sandbox = _sandbox(tmp_path)
    (sandbox.root / "fixed.txt").write_text("ok\n")
    backend = FakeBackend()

    outcome = _loop(backend).run(sandbox, TASK)

    assert outcome.passed
    assert outcome.attempts == 1
    assert backend.prompts == []
    assert (sandbox.run_dir / "verify-1-test.log").exists()


def test_fix_then_pass(tmp_path: Path):
    sandbox = _sandbox(tmp_path)
    backend = FakeBackend([write_file("fixed.txt")])

    outcome = _loop(backend).run(sandbox, TASK)

    assert outcome.tests_passed and outcome.quality_passed
    assert outcome.attempts == 2
    assert len(backend.prompts) == 1
    assert "Attempt 1/3" in backend.prompts[0]
    assert "tests/test_app.py::test_home" in backend.prompts[0]


def test_attempts_never_exceed_budget(tmp_path: Path):
    sandbox = _sandbox(tmp_path)
    backend = FakeBackend()

    outcome = _loop(backend, max_fix_retries=3).run(sandbox, TASK)

    assert not outcome.tests_passed
    assert outcome.needs_review
    assert outcome.attempts == 3
    # Fixes are requested between passes only: 3 passes, 2 fixes.
    assert len(backend.prompts) == 2
    assert [result.attempt for result in outcome.results] == [1, 2, 3]


def test_single_attempt_budget_never_fixes(tmp_path: Path):
    backend = FakeBackend()
    outcome = _loop(backend, max_fix_retries=1).run(_sandbox(tmp_path), TASK)
    assert outcome.attempts == 1
    assert backend.prompts == []


def test_quality_checks_only_after_tests_pass(tmp_path: Path):
    sandbox = _sandbox(tmp_path)
    marker = tmp_path / "quality-ran"
    backend = FakeBackend()

    outcome = _loop(backend, max_fix_retries=1, quality_commands=[f"touch {marker}"]).run(sandbox, TASK)

    assert not outcome.tests_passed
    assert not marker.exists()
    assert [result.kind for result in outcome.results] == [VerificationKind.TEST]


def test_quality_failure_is_fixed(tmp_path: Path):
    sandbox = _sandbox(tmp_path)
    (sandbox.root / "fixed.txt").write_text("ok\n")
    backend = FakeBackend([write_file("formatted.txt")])
    quality = ["true", "test -f formatted.txt || { echo 'would reformat app.py'; exit 1; }"]

    outcome = _loop(backend, quality_commands=quality).run(sandbox, TASK)

    assert outcome.passed
    assert outcome.attempts == 2
    assert "quality checks" in backend.prompts[0]
    assert "would reformat app.py" in backend.prompts[0]
    assert (sandbox.run_dir / "verify-1-quality_check-1.log").exists()


def test_quality_still_failing_keeps_tests_result(tmp_path: Path):
    sandbox = _sandbox(tmp_path)
    (sandbox.root / "fixed.txt").write_text("ok\n")

    outcome = _loop(FakeBackend(), max_fix_retries=2, quality_commands=["exit 1"]).run(sandbox, TASK)

    assert outcome.tests_passed
    assert not outcome.quality_passed
    assert outcome.attempts == 2


def test_missing_test_command_counts_as_passing(tmp_path: Path):
    outcome = _loop(FakeBackend(), test_command=None).run(_sandbox(tmp_path), TASK)
    assert outcome.passed
    assert outcome.results[0].error_detail == "no test command configured"


def test_passes_is_a_single_pass(tmp_path: Path):
    sandbox = _sandbox(tmp_path)
    backend = FakeBackend([write_file("fixed.txt")])
    loop = _loop(backend)
    assert loop.passes(sandbox) is False
    assert backend.prompts == []
