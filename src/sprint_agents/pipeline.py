"""One worker iteration: claim a task and carry it through execute, verify and publish."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Optional

from loguru import logger

from .cancellation import CancelToken
from .claims import ClaimManager
from .constants import ERROR_TYPE_UNEXPECTED
from .errors import Cancelled, TaskFailure, TaskSourceError
from .executor import ExecutionDriver
from .io_utils import _append_event
from .models import (
    AcceptanceCriterion,
    ChangeRequestPublished,
    Event,
    IterationFinished,
    IterationOutcome,
    IterationResult,
    IterationState,
    Recommendation,
    SandboxDestroyed,
    Story,
    TaskClaimed,
    TaskFailed,
    TaskStatus,
    WorkerSession,
)
from .publisher import ChangePublisher
from .sandbox import SandboxManager
from .task_source import TaskSource
from .utils import _now_iso
from .verification import VerificationLoop


class TaskPipeline:
    """Compose the collaborators for one claim-to-publish pass.

    The pipeline holds no per-role state; everything session-specific lives
    on the :class:`WorkerSession` passed in, so one instance can serve every
    worker thread.
    """

    def __init__(
        self,
        *,
        source: TaskSource,
        claims: ClaimManager,
        sandboxes: SandboxManager,
        driver: ExecutionDriver,
        verifier: VerificationLoop,
        publisher: ChangePublisher,
        sprint_id: Optional[str] = None,
        recommendation_limit: int = 5,
        report_roles: tuple[str, ...] = (),
        await_approval: bool = False,
        approval_timeout: float = 3600.0,
        runs_dir: Optional[Path] = None,
        events_path: Optional[Path] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.source = source
        self.claims = claims
        self.sandboxes = sandboxes
        self.driver = driver
        self.verifier = verifier
        self.publisher = publisher
        self.sprint_id = sprint_id
        self.recommendation_limit = recommendation_limit
        self.report_roles = tuple(report_roles)
        self.await_approval = await_approval
        self.approval_timeout = approval_timeout
        self.runs_dir = runs_dir
        self.events_path = events_path
        self.cancel = cancel

    def _emit(self, event: Event) -> None:
        if self.events_path is None:
            return
        try:
            _append_event(self.events_path, event.to_dict())
        except OSError as exc:
            logger.warning("Could not append to event log: {}", exc)

    def _finish(self, result: IterationResult) -> IterationResult:
        self._emit(IterationFinished(role=result.role, outcome=result.outcome, task_id=result.task_id))
        return result

    def run_iteration(self, session: WorkerSession) -> IterationResult:
        role = session.role
        states = [IterationState.IDLE, IterationState.CLAIMING]
        with logger.contextualize(role=role):
            try:
                candidates = self.source.list_recommended(role, self.sprint_id, self.recommendation_limit)
            except TaskSourceError as exc:
                logger.error("Could not fetch recommendations for {}: {}", role, exc)
                states.append(IterationState.CLAIM_FAILED)
                return self._finish(IterationResult(role, IterationOutcome.NO_WORK, error=str(exc), states=states))

            if role in self.report_roles:
                for rec in candidates:
                    logger.info("[{}] {:.2f} {} {} - {}", role, rec.score, rec.task.id, rec.task.title, rec.reason)
                states.append(IterationState.CLAIM_FAILED)
                return self._finish(IterationResult(role, IterationOutcome.REPORTED, states=states))

            if not candidates:
                logger.info("No recommended tasks for role {}", role)
                states.append(IterationState.CLAIM_FAILED)
                return self._finish(IterationResult(role, IterationOutcome.NO_WORK, states=states))
            fresh = [rec for rec in candidates if not session.is_skipped(rec.task.id)]
            if not fresh:
                logger.info("All {} candidate(s) for {} are in this session's skip-list", len(candidates), role)
                states.append(IterationState.CLAIM_FAILED)
                return self._finish(IterationResult(role, IterationOutcome.ALL_SKIPPED, states=states))

            try:
                claimed = self.claims.claim_first(fresh, skip=session.skip_list)
            except TaskSourceError as exc:
                logger.error("Claim request failed: {}", exc)
                claimed = None
            if claimed is None:
                states.append(IterationState.CLAIM_FAILED)
                return self._finish(IterationResult(role, IterationOutcome.CLAIM_CONFLICT, states=states))

            states.append(IterationState.CLAIMED)
            self._emit(
                TaskClaimed(
                    role=role,
                    task_id=claimed.task.id,
                    title=claimed.task.title,
                    score=claimed.score,
                    reason=claimed.reason,
                )
            )
            return self._finish(self.process(session, claimed, states))

    def _load_story(self, story_id: Optional[str]) -> tuple[Optional[Story], list[AcceptanceCriterion]]:
        if not story_id:
            return None, []
        try:
            return self.source.get_story(story_id), self.source.get_acceptance_criteria(story_id)
        except TaskSourceError as exc:
            logger.warning("Could not load story {}: {}", story_id, exc)
            return None, []

    def _run_dir(self, role: str, task_id: str) -> Optional[Path]:
        if self.runs_dir is None:
            return None
        stamp = _now_iso().replace(":", "").replace("-", "")[:15]
        run_dir = self.runs_dir / f"{stamp}-{role}-{task_id}-{uuid.uuid4().hex[:6]}"
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    def process(
        self,
        session: WorkerSession,
        claimed: Recommendation,
        states: Optional[list[IterationState]] = None,
    ) -> IterationResult:
        """Carry an owned task to Done; failures release it and skip it for this session."""
        task = claimed.task
        role = session.role
        states = states if states is not None else [IterationState.CLAIMED]
        branch = self.sandboxes.branch_name(task)
        try:
            existing = self.publisher.find_existing(branch)
            if existing is not None:
                self.source.mark_complete(task.id)
                session.completed.append(task.id)
                states.append(IterationState.DONE)
                self._emit(
                    ChangeRequestPublished(
                        role=role, task_id=task.id, branch=branch, url=existing.url, needs_review=False, existing=True
                    )
                )
                return IterationResult(role, IterationOutcome.ALREADY_PUBLISHED, task.id, existing, states=states)

            try:
                self.source.start_work(task.id)
            except TaskSourceError as exc:
                logger.warning("Could not mark {} as {}: {}", task.id, TaskStatus.IN_PROGRESS.value, exc)
            story, criteria = self._load_story(task.story_id)

            active = None
            try:
                with self.sandboxes.session(task, role=role, run_dir=self._run_dir(role, task.id)) as sandbox:
                    active = sandbox
                    states.append(IterationState.EXECUTING)
                    self.driver.execute(sandbox, task, story, criteria, role=role)
                    states.append(IterationState.VERIFYING)
                    outcome = self.verifier.run(sandbox, task)
                    states.append(IterationState.PUBLISHING)
                    change_request = self.publisher.publish(
                        sandbox,
                        task,
                        outcome.tests_passed,
                        outcome.quality_passed,
                        story=story,
                        criteria=criteria,
                        attempts=outcome.attempts,
                    )
                    self._emit(
                        ChangeRequestPublished(
                            role=role,
                            task_id=task.id,
                            branch=branch,
                            url=change_request.url,
                            needs_review=change_request.needs_review,
                            existing=change_request.existing,
                            tests_passed=outcome.tests_passed,
                            quality_passed=outcome.quality_passed,
                            attempts=outcome.attempts,
                        )
                    )
                    if self.await_approval and not (
                        change_request.needs_review or change_request.existing or change_request.conflicts_resolved
                    ):
                        change_request = self.publisher.await_approval(change_request, self.approval_timeout)
                        change_request = self.publisher.merge(change_request)
            finally:
                if active is not None:
                    self._emit(
                        SandboxDestroyed(
                            sandbox_id=active.id, task_id=task.id, branch=active.branch, removed=active.removed
                        )
                    )
            self.source.mark_complete(task.id)
        except Cancelled:
            logger.warning("Task {} interrupted; releasing it", task.id)
            self.claims.release(task.id)
            return IterationResult(role, IterationOutcome.CANCELLED, task.id, error="cancelled", states=states)
        except TaskFailure as exc:
            return self._fail(session, task.id, exc.error_type, str(exc), exc.release_claim, states)
        except Exception as exc:
            logger.exception("Unexpected error while processing task {}", task.id)
            return self._fail(session, task.id, ERROR_TYPE_UNEXPECTED, str(exc), True, states)

        session.completed.append(task.id)
        states.append(IterationState.DONE)
        logger.success("Task {} done: {}", task.id, change_request.url)
        return IterationResult(role, IterationOutcome.COMPLETED, task.id, change_request, states=states)

    def _fail(
        self,
        session: WorkerSession,
        task_id: str,
        error_type: str,
        detail: str,
        release: bool,
        states: list[IterationState],
    ) -> IterationResult:
        logger.error("Task {} failed ({}): {}", task_id, error_type, detail)
        released = self.claims.release(task_id) if release else False
        session.skip(task_id)
        session.failed.append(task_id)
        self._emit(
            TaskFailed(role=session.role, task_id=task_id, error_type=error_type, error_detail=detail, released=released)
        )
        return IterationResult(session.role, IterationOutcome.FAILED, task_id, error=detail, states=states)
