"""Tests for optimistic claiming."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from sprint_agents.claims import ClaimManager, ClaimStatus
from sprint_agents.errors import TaskSourceError
from sprint_agents.models import AcceptanceCriterion, Recommendation, Story, Task, TaskStatus
from sprint_agents.task_source import TaskSource


class StubSource(TaskSource):
    def __init__(self, taken: Optional[set[str]] = None, fail_release: bool = False) -> None:
        self.taken = set(taken or ())
        self.fail_release = fail_release
        self.claimed: list[str] = []
        self.released: list[str] = []

    def list_recommended(self, role, sprint_id, limit):
        return []

    def claim(self, task_id: str) -> bool:
        self.claimed.append(task_id)
        if task_id in self.taken:
            return False
        self.taken.add(task_id)
        return True

    def release(self, task_id: str) -> None:
        if self.fail_release:
            raise TaskSourceError("backlog down", status_code=503)
        self.released.append(task_id)
        self.taken.discard(task_id)

    def start_work(self, task_id: str) -> None:
        pass

    def mark_complete(self, task_id: str) -> None:
        pass

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        pass

    def get_story(self, story_id: str) -> Story:
        return Story(id=story_id)

    def get_acceptance_criteria(self, story_id: str) -> list[AcceptanceCriterion]:
        return []


def _rec(task_id: str) -> Recommendation:
    return Recommendation(task=Task(id=task_id, title=f"Task {task_id}"))


def test_claim_outcomes():
    manager = ClaimManager(StubSource(taken={"T-2"}))
    assert manager.claim("T-1").status is ClaimStatus.OWNED
    outcome = manager.claim("T-2")
    assert outcome.status is ClaimStatus.CONFLICT
    assert not outcome.owned


def test_claim_first_falls_through_conflicts_and_skips():
    source = StubSource(taken={"T-1"})
    manager = ClaimManager(source)

    winner = manager.claim_first([_rec("T-1"), _rec("T-2"), _rec("T-3")], skip={"T-2"})

    assert winner is not None and winner.task.id == "T-3"
    assert source.claimed == ["T-1", "T-3"]


def test_claim_first_returns_none_when_everything_is_taken():
    manager = ClaimManager(StubSource(taken={"T-1", "T-2"}))
    assert manager.claim_first([_rec("T-1"), _rec("T-2")]) is None


def test_release_is_best_effort():
    assert ClaimManager(StubSource()).release("T-1") is True
    assert ClaimManager(StubSource(fail_release=True)).release("T-1") is False
