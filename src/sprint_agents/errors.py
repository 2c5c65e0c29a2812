"""Exception types raised by the orchestrator.

Per-task failures derive from :class:`TaskFailure` and carry an ``error_type``
string that lands in the event log. Anything else that escapes a task is
treated the same way by the pipeline, but only :class:`ConfigError` (and
task-source failures during start-up) stop the process.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from .constants import (
    ERROR_TYPE_APPROVAL_TIMEOUT,
    ERROR_TYPE_BACKEND,
    ERROR_TYPE_CR_REJECTED,
    ERROR_TYPE_MERGE_CONFLICT,
    ERROR_TYPE_NO_OP,
    ERROR_TYPE_PUSH_FAILED,
    ERROR_TYPE_SANDBOX_BUSY,
    ERROR_TYPE_UNEXPECTED,
    ERROR_TYPE_WORKSPACE_DIRTY,
)

if TYPE_CHECKING:
    from .process import CommandResult


class SprintAgentsError(Exception):
    """Base class for orchestrator errors."""


class ConfigError(SprintAgentsError):
    """Invalid or conflicting configuration; fatal at start-up."""


class TaskSourceError(SprintAgentsError):
    """The task source could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Cancelled(SprintAgentsError):
    """A cancellable wait observed a cancellation request."""


class CommandError(SprintAgentsError):
    """An external command exited unsuccessfully."""

    def __init__(self, message: str, result: Optional["CommandResult"] = None) -> None:
        super().__init__(message)
        self.result = result


class CommandTimeout(CommandError):
    """An external command exceeded its timeout and was terminated."""


class PushRejected(CommandError):
    """The remote branch advanced and refused a fast-forward push."""


class TaskFailure(SprintAgentsError):
    """A failure that ends work on one task but not the worker loop."""

    error_type = ERROR_TYPE_UNEXPECTED
    release_claim = True


class NoOpExecution(TaskFailure):
    error_type = ERROR_TYPE_NO_OP


class WorkspaceDirty(TaskFailure):
    error_type = ERROR_TYPE_WORKSPACE_DIRTY


class SandboxBusy(TaskFailure):
    error_type = ERROR_TYPE_SANDBOX_BUSY


class BackendError(TaskFailure):
    error_type = ERROR_TYPE_BACKEND


class PushFailed(TaskFailure):
    error_type = ERROR_TYPE_PUSH_FAILED


class MergeConflictUnresolved(TaskFailure):
    error_type = ERROR_TYPE_MERGE_CONFLICT


class ChangeRequestRejected(TaskFailure):
    """Reviewers or checks rejected the change request."""

    error_type = ERROR_TYPE_CR_REJECTED
    release_claim = False


class ApprovalTimeout(TaskFailure):
    error_type = ERROR_TYPE_APPROVAL_TIMEOUT
    release_claim = False
