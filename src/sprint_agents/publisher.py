"""Commit, push and open the change request for a finished task.

Publishing is idempotent per branch: an open change request for the task's
deterministic branch is returned as-is and nothing is re-run. A push that
is rejected because the remote advanced is integrated and retried exactly
once. Conflicts from that integration are handed to the backend; afterwards
the merged tree is checked for leftover markers and verified once more, and
the change request is flagged for review if that re-check fails.
"""

from __future__ import annotations

import re
import time
from typing import Callable, Optional, Sequence

from loguru import logger

from .cancellation import CancelToken
from .change_requests import ChangeRequestHost
from .constants import (
    CHANGE_REQUEST_TITLE_PREFIX,
    DEFAULT_APPROVAL_POLL_SECONDS,
    DEFAULT_COMMIT_SCOPE,
    FAILED_CHECK_STATES,
    PASSED_CHECK_STATES,
    REVIEW_NEEDED_PREFIX,
)
from .errors import (
    ApprovalTimeout,
    Cancelled,
    ChangeRequestRejected,
    CommandError,
    MergeConflictUnresolved,
    NoOpExecution,
    PushFailed,
    PushRejected,
)
from .executor import ExecutionDriver
from .git_utils import (
    _files_with_conflict_markers,
    _git_add_all,
    _git_commit_all,
    _git_commit_merge,
    _git_commits_ahead,
    _git_conflicted_files,
    _git_files_changed_since,
    _git_has_unmerged_paths,
    _git_merge_abort,
    _git_merge_in_progress,
    _git_pull,
    _git_push,
)
from .models import AcceptanceCriterion, ChangeRequest, ChangeRequestStatus, Sandbox, Story, Task
from .prompts import build_conflict_prompt

_TYPE_RULES = (
    (re.compile(r"test", re.I), "test"),
    (re.compile(r"fix|bug", re.I), "fix"),
    (re.compile(r"refactor", re.I), "refactor"),
    (re.compile(r"doc", re.I), "docs"),
)
_SCOPE_RE = re.compile(r"services/([A-Za-z0-9_.-]+)")


def commit_type(title: str) -> str:
    for pattern, kind in _TYPE_RULES:
        if pattern.search(title or ""):
            return kind
    return "feat"


def commit_scope(description: str, default: str = DEFAULT_COMMIT_SCOPE) -> str:
    match = _SCOPE_RE.search(description or "")
    return match.group(1) if match else default


def build_commit_message(
    task: Task,
    story: Optional[Story],
    criteria: Sequence[AcceptanceCriterion],
    default_scope: str = DEFAULT_COMMIT_SCOPE,
) -> str:
    lines = [f"{commit_type(task.title)}({commit_scope(task.description, default_scope)}): {task.title.lower()}"]
    if task.description:
        lines.extend(["", task.description.strip()])
    if criteria:
        lines.extend(["", "Acceptance Criteria:"])
        lines.extend(f"- {ac.summary()}" for ac in criteria)
    lines.append("")
    lines.append(f"Task-ID: {task.id}")
    story_id = story.id if story is not None else task.story_id
    if story_id:
        lines.append(f"Story-ID: {story_id}")
    return "\n".join(lines) + "\n"


def build_title(task: Task, needs_review: bool) -> str:
    title = f"{CHANGE_REQUEST_TITLE_PREFIX}{task.title}"
    return f"{REVIEW_NEEDED_PREFIX}{title}" if needs_review else title


def _box(checked: bool) -> str:
    return "[x]" if checked else "[ ]"


def build_body(
    task: Task,
    story: Optional[Story],
    criteria: Sequence[AcceptanceCriterion],
    *,
    tests_passed: bool,
    quality_passed: bool,
    changed_files: Sequence[str] = (),
    role: Optional[str] = None,
    attempts: int = 0,
    conflicts_resolved: bool = False,
    integration_verified: bool = True,
) -> str:
    sections = ["## Task Details", "", f"- **Task ID**: {task.id}"]
    if story is not None:
        sections.append(f"- **Story**: {story.id} {story.title}".rstrip())
    elif task.story_id:
        sections.append(f"- **Story ID**: {task.story_id}")
    if role:
        sections.append(f"- **Role**: {role}")
    if task.description:
        sections.extend(["", task.description.strip()])

    if not (tests_passed and quality_passed):
        failing = []
        if not tests_passed:
            failing.append("tests")
        if not quality_passed:
            failing.append("quality checks")
        sections.extend(
            [
                "",
                "## ⚠️ Verification Incomplete",
                "",
                f"Automated {' and '.join(failing)} still failed after {attempts} attempt(s). "
                "Manual review and fixes are required before merging.",
            ]
        )
    if conflicts_resolved:
        sections.extend(
            [
                "",
                "## ⚠️ Conflicts Resolved Automatically",
                "",
                "The branch was integrated with newer remote commits and the merge conflicts were resolved "
                "by the agent. "
                + (
                    "Verification passed on the merged tree, but check the resolution by hand."
                    if integration_verified
                    else "Verification FAILED on the merged tree."
                ),
            ]
        )

    sections.extend(["", "## Changes", ""])
    if changed_files:
        sections.extend(f"- `{path}`" for path in changed_files)
    else:
        sections.append("- (see diff)")

    sections.extend(["", "## Acceptance Criteria", ""])
    if criteria:
        sections.extend(f"- [ ] {ac.id}: Given {ac.given}, When {ac.when}, Then {ac.then}" for ac in criteria)
    else:
        sections.append("- (none recorded)")

    sections.extend(
        [
            "",
            "## Testing",
            "",
            f"- {_box(tests_passed)} Unit tests pass",
            f"- {_box(tests_passed)} Integration tests pass",
            f"- {_box(quality_passed)} Code quality checks pass",
            "",
            "## Review Checklist",
            "",
            "- [ ] Code follows project conventions",
            "- [ ] Acceptance criteria are met",
            "- [ ] No unrelated changes",
        ]
    )
    return "\n".join(sections) + "\n"


class ChangePublisher:
    def __init__(
        self,
        host: ChangeRequestHost,
        *,
        base_branch: str,
        remote: str = "origin",
        reviewers: Sequence[str] = (),
        auto_merge: bool = False,
        commit_scope: str = DEFAULT_COMMIT_SCOPE,
        resolver: Optional[ExecutionDriver] = None,
        recheck: Optional[Callable[[Sandbox], bool]] = None,
        approval_poll_interval: float = DEFAULT_APPROVAL_POLL_SECONDS,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.host = host
        self.base_branch = base_branch
        self.remote = remote
        self.reviewers = tuple(reviewers)
        self.auto_merge = auto_merge
        self.commit_scope = commit_scope
        self.resolver = resolver
        self.recheck = recheck
        self.approval_poll_interval = approval_poll_interval
        self.cancel = cancel

    def find_existing(self, branch: str) -> Optional[ChangeRequest]:
        existing = self.host.find_open(branch)
        if existing is not None:
            logger.info("Branch {} already has an open change request: {}", branch, existing.url)
        return existing

    def publish(
        self,
        sandbox: Sandbox,
        task: Task,
        tests_passed: bool,
        quality_passed: bool,
        *,
        story: Optional[Story] = None,
        criteria: Sequence[AcceptanceCriterion] = (),
        attempts: int = 0,
    ) -> ChangeRequest:
        """Commit, push and open (or return the existing) change request.

        Raises:
            NoOpExecution: Nothing to commit and no commits on the branch.
            PushFailed: Push still failing after one integrate-and-retry.
            MergeConflictUnresolved: Integration left conflicts behind.
        """
        existing = self.find_existing(sandbox.branch)
        if existing is not None:
            return existing

        root = sandbox.root
        base_ref = sandbox.base_ref or self.base_branch
        message = build_commit_message(task, story, criteria, self.commit_scope)
        if not _git_commit_all(root, message):
            if not _git_commits_ahead(root, base_ref, sandbox.branch):
                raise NoOpExecution(f"Nothing to publish on {sandbox.branch}")
            logger.info("No new changes to commit on {}; publishing existing commits", sandbox.branch)

        conflicts_resolved = self.push(sandbox)
        integration_verified = True
        if conflicts_resolved and self.recheck is not None:
            integration_verified = self.recheck(sandbox)
            if not integration_verified:
                logger.warning("Verification failed after automatic conflict resolution on {}", sandbox.branch)
        needs_review = not (tests_passed and quality_passed) or not integration_verified

        body = build_body(
            task,
            story,
            criteria,
            tests_passed=tests_passed,
            quality_passed=quality_passed,
            changed_files=_git_files_changed_since(root, base_ref),
            role=sandbox.role,
            attempts=attempts,
            conflicts_resolved=conflicts_resolved,
            integration_verified=integration_verified,
        )
        change_request = self.host.create(
            branch=sandbox.branch,
            base=self.base_branch,
            title=build_title(task, needs_review),
            body=body,
            reviewers=self.reviewers,
        )
        change_request.needs_review = needs_review
        change_request.conflicts_resolved = conflicts_resolved
        sandbox.published = True
        return change_request

    def push(self, sandbox: Sandbox) -> bool:
        """Push the task branch; return True if conflicts had to be resolved on the way."""
        try:
            _git_push(sandbox.root, self.remote, sandbox.branch, cancel=self.cancel)
            return False
        except PushRejected:
            logger.warning("Push of {} rejected; integrating remote changes and retrying once", sandbox.branch)
            resolved = self.integrate(sandbox)
            try:
                _git_push(sandbox.root, self.remote, sandbox.branch, cancel=self.cancel)
            except CommandError as exc:
                raise PushFailed(f"Push of {sandbox.branch} failed after integration: {exc}") from exc
            return resolved
        except CommandError as exc:
            raise PushFailed(f"Push of {sandbox.branch} failed: {exc}") from exc

    def integrate(self, sandbox: Sandbox) -> bool:
        """Merge the remote branch into the sandbox; return True if conflicts were resolved."""
        root = sandbox.root
        pulled = _git_pull(root, self.remote, sandbox.branch, cancel=self.cancel)
        if pulled.cancelled:
            raise Cancelled(f"Cancelled while integrating {sandbox.branch}")
        if pulled.ok:
            return False
        conflicted = _git_conflicted_files(root)
        if not conflicted:
            if _git_merge_in_progress(root):
                _git_merge_abort(root)
            raise MergeConflictUnresolved(f"Integration of {sandbox.branch} failed: {pulled.tail(500).strip()}")
        if self.resolver is None:
            _git_merge_abort(root)
            raise MergeConflictUnresolved(f"Conflicts in {', '.join(conflicted)} and no resolver configured")

        logger.warning("Conflicts in {}; asking the backend to resolve them", ", ".join(conflicted))
        self.resolver.run_prompt(sandbox, build_conflict_prompt(sandbox.branch, conflicted), label="resolve-conflicts")
        leftover = _files_with_conflict_markers(root, conflicted)
        if leftover:
            _git_merge_abort(root)
            raise MergeConflictUnresolved(f"Conflict markers remain in {', '.join(leftover)}")
        _git_add_all(root)
        if _git_has_unmerged_paths(root):
            _git_merge_abort(root)
            raise MergeConflictUnresolved(f"Unmerged paths remain on {sandbox.branch}")
        if _git_merge_in_progress(root):
            _git_commit_merge(root)
        logger.info("Resolved integration conflicts on {}", sandbox.branch)
        return True

    def await_approval(self, change_request: ChangeRequest, timeout: float) -> ChangeRequest:
        """Poll checks and reviews until approved-and-passing.

        Raises:
            ChangeRequestRejected: A check failed or changes were requested.
            ApprovalTimeout: Not approved within `timeout` seconds.
            Cancelled: The cancel token fired while waiting.
        """
        deadline = time.monotonic() + timeout
        logger.info("Waiting up to {:.0f}s for approval of {}", timeout, change_request.url or change_request.branch)
        while True:
            states = self.host.check_states(change_request)
            failed = [state for state in states if state in FAILED_CHECK_STATES]
            if failed:
                change_request.status = ChangeRequestStatus.CHANGES_REQUESTED
                raise ChangeRequestRejected(f"Checks failed on {change_request.url}: {', '.join(failed)}")
            decision = self.host.review_decision(change_request)
            if decision == "CHANGES_REQUESTED":
                change_request.status = ChangeRequestStatus.CHANGES_REQUESTED
                raise ChangeRequestRejected(f"Changes requested on {change_request.url}")
            checks_passed = all(state in PASSED_CHECK_STATES for state in states)
            if checks_passed and decision == "APPROVED":
                change_request.status = ChangeRequestStatus.APPROVED
                logger.success("Change request {} approved", change_request.url)
                return change_request
            change_request.status = ChangeRequestStatus.OPEN if checks_passed else ChangeRequestStatus.CHECKS_PENDING

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ApprovalTimeout(f"No approval for {change_request.url} within {timeout:.0f}s")
            pause = min(self.approval_poll_interval, remaining)
            if self.cancel is not None:
                self.cancel.sleep(pause)
            else:
                time.sleep(pause)

    def merge(self, change_request: ChangeRequest) -> ChangeRequest:
        if not self.auto_merge or change_request.status.terminal:
            return change_request
        self.host.merge(change_request)
        change_request.status = ChangeRequestStatus.MERGED
        logger.success("Merged {}", change_request.url)
        return change_request
