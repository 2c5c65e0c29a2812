"""Run worker roles in Round-Robin (serial) or Parallel mode.

Round-Robin visits every role in a fixed order, one bounded iteration per
visit, on a single thread. It stops once ``2 * len(roles)`` consecutive
visits have claimed nothing. Parallel mode runs one polling loop per role on
a thread pool until the cancel token fires (or every role has used up
``max_iterations``).
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional, Protocol, Sequence

from loguru import logger
from rich.console import Console
from rich.table import Table

from .cancellation import CancelToken
from .constants import SUCCESS_PAUSE_SECONDS
from .models import IterationOutcome, IterationResult, SchedulerMode, WorkerSession


class IterationRunner(Protocol):
    def run_iteration(self, session: WorkerSession) -> IterationResult:
        ...


class Scheduler:
    def __init__(
        self,
        pipeline: IterationRunner,
        *,
        roles: Sequence[str],
        mode: SchedulerMode = SchedulerMode.ROUND_ROBIN,
        poll_interval: float = 30.0,
        max_iterations: int = 0,
        success_pause: float = SUCCESS_PAUSE_SECONDS,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        if not roles:
            raise ValueError("Scheduler needs at least one role")
        self.pipeline = pipeline
        self.roles = tuple(roles)
        self.mode = mode
        self.poll_interval = poll_interval
        self.max_iterations = max_iterations
        self.success_pause = success_pause
        self.cancel = cancel or CancelToken()
        self.sessions: list[WorkerSession] = []

    def _new_sessions(self) -> list[WorkerSession]:
        # Fresh sessions per run, so skip-lists never carry over.
        return [
            WorkerSession(
                role=role,
                mode=self.mode,
                poll_interval=self.poll_interval,
                max_iterations=self.max_iterations,
            )
            for role in self.roles
        ]

    def run(self) -> list[WorkerSession]:
        self.sessions = self._new_sessions()
        logger.info("Starting {} scheduler for roles: {}", self.mode.value, ", ".join(self.roles))
        if self.mode is SchedulerMode.PARALLEL:
            self._run_parallel(self.sessions)
        else:
            self._run_round_robin(self.sessions)
        return self.sessions

    def _iterate(self, session: WorkerSession) -> IterationResult:
        try:
            result = self.pipeline.run_iteration(session)
        except Exception as exc:
            # Counts as a visit without a claim.
            logger.exception("Iteration for role {} crashed", session.role)
            result = IterationResult(session.role, IterationOutcome.FAILED, error=str(exc))
        session.iterations += 1
        return result

    def _run_round_robin(self, sessions: list[WorkerSession]) -> None:
        idle_limit = 2 * len(sessions)
        idle_visits = 0
        while not self.cancel.cancelled:
            active = [session for session in sessions if not session.exhausted]
            if not active:
                logger.info("Every role reached its iteration limit")
                return
            for session in active:
                if self.cancel.cancelled:
                    return
                result = self._iterate(session)
                if result.claimed:
                    idle_visits = 0
                    continue
                idle_visits += 1
                if idle_visits >= idle_limit:
                    logger.info("No task claimed in {} consecutive visits; no more work", idle_visits)
                    return
                if self.cancel.wait(self.poll_interval):
                    return

    def _poll_loop(self, session: WorkerSession) -> WorkerSession:
        with logger.contextualize(role=session.role):
            logger.info("Worker loop for {} started", session.role)
            while not self.cancel.cancelled and not session.exhausted:
                result = self._iterate(session)
                pause = self.success_pause if result.claimed else session.poll_interval
                if self.cancel.wait(pause):
                    break
            logger.info("Worker loop for {} stopped after {} iteration(s)", session.role, session.iterations)
        return session

    def _run_parallel(self, sessions: list[WorkerSession]) -> None:
        with ThreadPoolExecutor(max_workers=len(sessions), thread_name_prefix="agent") as executor:
            futures = {executor.submit(self._poll_loop, session): session for session in sessions}
            for future in as_completed(futures):
                session = futures[future]
                try:
                    future.result()
                except Exception:
                    logger.exception("Worker loop for {} crashed", session.role)


def print_summary(sessions: Sequence[WorkerSession], console: Optional[Console] = None) -> None:
    console = console or Console(stderr=True)
    table = Table(title="Agent Session Summary", show_header=True)
    table.add_column("Role", style="cyan")
    table.add_column("Iterations", justify="right")
    table.add_column("Completed", style="green")
    table.add_column("Failed", style="red")
    table.add_column("Skipped", style="yellow")
    for session in sessions:
        table.add_row(
            session.role,
            str(session.iterations),
            ", ".join(session.completed) or "-",
            ", ".join(session.failed) or "-",
            ", ".join(sorted(session.skip_list)) or "-",
        )
    console.print(table)
