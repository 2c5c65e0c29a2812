"""Tests for backlog models and structured events."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from sprint_agents.models import (
    AcceptanceCriterion,
    ChangeRequestStatus,
    IterationFinished,
    IterationOutcome,
    IterationResult,
    Recommendation,
    Sandbox,
    SandboxState,
    SchedulerMode,
    Task,
    TaskStatus,
    WorkerSession,
)


def test_task_accepts_camel_case_payloads():
    task = Task.from_dict({"id": 7, "title": "Fix", "storyId": 3, "agentRole": "dev", "status": "InProgress"})
    assert task.id == "7"
    assert task.story_id == "3"
    assert task.role == "dev"
    assert task.status is TaskStatus.IN_PROGRESS
    assert task.to_dict()["status"] == "inprogress"


def test_unknown_task_status_falls_back_to_available():
    assert Task.from_dict({"id": "x", "status": "weird"}).status is TaskStatus.AVAILABLE


def test_recommendation_with_nested_task_and_bad_score():
    rec = Recommendation.from_dict({"task": {"id": "T-1", "title": "A"}, "score": "high", "reason": "r"})
    assert rec.task.id == "T-1"
    assert rec.score == 0.0
    assert rec.reason == "r"


def test_acceptance_criterion_summary():
    ac = AcceptanceCriterion.from_dict({"acId": "AC-1", "given": "a user", "whenClause": "x", "thenClause": "ok"})
    assert ac.when == "x"
    assert ac.summary() == "AC-1: a user → ok"


def test_sandbox_dict_roundtrip_keeps_paths_and_pid(tmp_path: Path):
    sandbox = Sandbox(
        id="sb-1",
        task_id="T-1",
        branch="task/T-1-x",
        root=tmp_path / "wt",
        state=SandboxState.ACTIVE,
        run_dir=tmp_path / "run",
        owner_pid=42,
    )
    restored = Sandbox.from_dict(sandbox.to_dict())
    assert restored == sandbox
    assert restored.is_live


def test_sandbox_unknown_state_is_treated_as_destroyed(tmp_path: Path):
    restored = Sandbox.from_dict({"id": "sb", "task_id": "T", "root": str(tmp_path), "state": "zombie"})
    assert restored.state is SandboxState.DESTROYED
    assert not restored.is_live


def test_event_to_dict_serializes_enums():
    data = IterationFinished(role="dev", outcome=IterationOutcome.NO_WORK).to_dict()
    assert data == {"event_type": "iteration_finished", "role": "dev", "outcome": "no_work", "task_id": None}


def test_iteration_without_task_is_not_a_claim():
    assert IterationResult(role="dev", outcome=IterationOutcome.COMPLETED, task_id="T-1").claimed
    assert not IterationResult(role="dev", outcome=IterationOutcome.FAILED).claimed
    assert not IterationResult(role="dev", outcome=IterationOutcome.NO_WORK, task_id="T-1").claimed


def test_worker_session_exhaustion():
    session = WorkerSession(role="dev", mode=SchedulerMode.ROUND_ROBIN, poll_interval=0, max_iterations=2)
    session.iterations = 2
    assert session.exhausted
    assert not WorkerSession(role="dev", mode=SchedulerMode.PARALLEL, poll_interval=0).exhausted


def test_only_merged_and_abandoned_are_terminal():
    terminal = {status for status in ChangeRequestStatus if status.terminal}
    assert terminal == {ChangeRequestStatus.MERGED, ChangeRequestStatus.ABANDONED}
