"""Tests for Round-Robin and Parallel scheduling."""

from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Optional

from rich.console import Console

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from sprint_agents.cancellation import CancelToken
from sprint_agents.models import IterationOutcome, IterationResult, SchedulerMode, WorkerSession
from sprint_agents.scheduler import Scheduler, print_summary

ROLES = ("dev", "qa", "devops", "documenter", "po")


class ScriptedPipeline:
    """Returns scripted outcomes per role, then `default`."""

    def __init__(
        self,
        script: Optional[dict[str, list[IterationOutcome]]] = None,
        default: IterationOutcome = IterationOutcome.NO_WORK,
    ) -> None:
        self.script = {role: list(outcomes) for role, outcomes in (script or {}).items()}
        self.default = default
        self.visits: list[str] = []
        self.threads: set[str] = set()
        self._lock = threading.Lock()

    def run_iteration(self, session: WorkerSession) -> IterationResult:
        with self._lock:
            self.visits.append(session.role)
            self.threads.add(threading.current_thread().name)
            outcomes = self.script.get(session.role) or []
            outcome = outcomes.pop(0) if outcomes else self.default
        task_id = f"{session.role}-{session.iterations}"
        if outcome is IterationOutcome.COMPLETED:
            session.completed.append(task_id)
        return IterationResult(session.role, outcome, task_id=task_id)


def _scheduler(pipeline, roles=ROLES, **kwargs) -> Scheduler:
    kwargs.setdefault("poll_interval", 0.001)
    kwargs.setdefault("success_pause", 0.001)
    return Scheduler(pipeline, roles=roles, **kwargs)


class TestRoundRobin:
    def test_stops_after_two_idle_rounds(self):
        pipeline = ScriptedPipeline()

        sessions = _scheduler(pipeline).run()

        assert pipeline.visits == list(ROLES) * 2
        assert [session.iterations for session in sessions] == [2] * len(ROLES)

    def test_fixed_order_and_claims_reset_the_idle_count(self):
        pipeline = ScriptedPipeline({"dev": [IterationOutcome.COMPLETED, IterationOutcome.COMPLETED]})

        sessions = _scheduler(pipeline, roles=("dev", "qa")).run()

        assert pipeline.visits == ["dev", "qa", "dev", "qa", "dev", "qa", "dev"]
        assert sessions[0].completed == ["dev-0", "dev-1"]

    def test_failures_count_as_claims(self):
        pipeline = ScriptedPipeline({"qa": [IterationOutcome.FAILED]})
        _scheduler(pipeline, roles=("dev", "qa")).run()
        assert pipeline.visits == ["dev", "qa", "dev", "qa", "dev", "qa"]

    def test_max_iterations_per_role(self):
        pipeline = ScriptedPipeline(default=IterationOutcome.COMPLETED)

        sessions = _scheduler(pipeline, roles=("dev", "qa"), max_iterations=2).run()

        assert pipeline.visits == ["dev", "qa", "dev", "qa"]
        assert all(session.exhausted for session in sessions)

    def test_cancel_stops_between_visits(self):
        token = CancelToken()

        class CancellingPipeline(ScriptedPipeline):
            def run_iteration(self, session: WorkerSession) -> IterationResult:
                token.cancel("test")
                return super().run_iteration(session)

        pipeline = CancellingPipeline(default=IterationOutcome.COMPLETED)
        _scheduler(pipeline, cancel=token).run()

        assert pipeline.visits == ["dev"]

    def test_crashing_iteration_does_not_stop_the_loop(self):
        class CrashingPipeline(ScriptedPipeline):
            def run_iteration(self, session: WorkerSession) -> IterationResult:
                if session.role == "dev":
                    self.visits.append("dev")
                    raise RuntimeError("boom")
                return super().run_iteration(session)

        pipeline = CrashingPipeline()
        sessions = _scheduler(pipeline, roles=("dev", "qa")).run()

        assert pipeline.visits == ["dev", "qa", "dev", "qa"]
        assert sessions[0].iterations == 2

    def test_skip_lists_do_not_survive_a_restart(self):
        class SkippingPipeline(ScriptedPipeline):
            def run_iteration(self, session: WorkerSession) -> IterationResult:
                session.skip("T-1")
                return super().run_iteration(session)

        scheduler = _scheduler(SkippingPipeline(), roles=("dev",))
        first = scheduler.run()
        assert first[0].is_skipped("T-1")

        scheduler.pipeline = ScriptedPipeline()
        second = scheduler.run()
        assert second[0] is not first[0]
        assert not second[0].is_skipped("T-1")


class TestParallel:
    def test_each_role_runs_on_its_own_worker(self):
        pipeline = ScriptedPipeline()

        sessions = _scheduler(pipeline, roles=("dev", "qa", "po"), mode=SchedulerMode.PARALLEL, max_iterations=3).run()

        assert [session.iterations for session in sessions] == [3, 3, 3]
        assert sorted(pipeline.visits) == sorted(["dev", "qa", "po"] * 3)
        assert all(name.startswith("agent") for name in pipeline.threads)

    def test_cancel_stops_all_workers(self):
        token = CancelToken()
        pipeline = ScriptedPipeline()
        timer = threading.Timer(0.2, token.cancel, kwargs={"reason": "test"})
        timer.start()
        try:
            sessions = _scheduler(
                pipeline, roles=("dev", "qa"), mode=SchedulerMode.PARALLEL, poll_interval=0.01, cancel=token
            ).run()
        finally:
            timer.cancel()

        assert token.cancelled
        assert all(session.iterations >= 1 for session in sessions)


def test_print_summary_lists_every_role():
    sessions = [
        WorkerSession(role="dev", mode=SchedulerMode.ROUND_ROBIN, poll_interval=1, iterations=3, completed=["T-1"]),
        WorkerSession(role="qa", mode=SchedulerMode.ROUND_ROBIN, poll_interval=1, iterations=2, failed=["T-2"]),
    ]
    sessions[1].skip("T-2")
    console = Console(record=True, width=120)

    print_summary(sessions, console)

    text = console.export_text()
    assert "Agent Session Summary" in text
    assert "dev" in text and "T-1" in text
    assert "qa" in text and "T-2" in text
