"""Define backlog, sandbox, change-request and session models plus structured events."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, cast

from .utils import _now_iso


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Enum:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


def _first(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


class TaskStatus(str, Enum):
    """Lifecycle status of a backlog task as reported by the task source."""

    AVAILABLE = "available"
    OWNED = "owned"
    IN_PROGRESS = "inprogress"
    COMPLETED = "completed"


@dataclass
class Task:
    """A claimable unit of work."""

    id: str
    title: str
    description: str = ""
    role: Optional[str] = None
    story_id: Optional[str] = None
    status: TaskStatus = TaskStatus.AVAILABLE
    owner_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        status = _coerce_enum(TaskStatus, data.get("status", "available"), TaskStatus.AVAILABLE)
        story_id = _first(data, "story_id", "storyId")
        owner_id = _first(data, "owner_id", "ownerUserId", "owner")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            role=_first(data, "role", "agent_role", "agentRole"),
            story_id=str(story_id) if story_id is not None else None,
            status=cast(TaskStatus, status),
            owner_id=str(owner_id) if owner_id is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class Story:
    id: str
    title: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Story":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
        )


@dataclass
class AcceptanceCriterion:
    """A Given/When/Then acceptance criterion attached to a story."""

    id: str
    given: str
    when: str
    then: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AcceptanceCriterion":
        return cls(
            id=str(_first(data, "ac_id", "acId", "id", default="")),
            given=str(data.get("given") or ""),
            when=str(_first(data, "when", "whenClause", "when_clause", default="")),
            then=str(_first(data, "then", "thenClause", "then_clause", default="")),
        )

    def summary(self) -> str:
        return f"{self.id}: {self.given} → {self.then}"


@dataclass
class Recommendation:
    """A ranked candidate task returned by the task source."""

    task: Task
    score: float = 0.0
    reason: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recommendation":
        raw_task = data.get("task") if isinstance(data.get("task"), dict) else data
        try:
            score = float(data.get("score") or 0.0)
        except (TypeError, ValueError):
            score = 0.0
        return cls(task=Task.from_dict(raw_task), score=score, reason=str(data.get("reason") or ""))


class SandboxState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    CLEANING = "cleaning"
    DESTROYED = "destroyed"


@dataclass
class Sandbox:
    """An isolated working directory plus the exclusive branch for one task."""

    id: str
    task_id: str
    branch: str
    root: Path
    state: SandboxState = SandboxState.CREATED
    role: Optional[str] = None
    in_place: bool = False
    base_ref: Optional[str] = None
    previous_branch: Optional[str] = None
    run_dir: Optional[Path] = None
    owner_pid: Optional[int] = None
    created_at: str = field(default_factory=_now_iso)
    published: bool = False
    removed: bool = False

    @property
    def is_live(self) -> bool:
        return self.state in (SandboxState.CREATED, SandboxState.ACTIVE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "branch": self.branch,
            "root": str(self.root),
            "state": self.state.value,
            "role": self.role,
            "in_place": self.in_place,
            "base_ref": self.base_ref,
            "previous_branch": self.previous_branch,
            "run_dir": str(self.run_dir) if self.run_dir else None,
            "owner_pid": self.owner_pid,
            "created_at": self.created_at,
            "published": self.published,
            "removed": self.removed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Sandbox":
        state = _coerce_enum(SandboxState, data.get("state"), SandboxState.DESTROYED)
        run_dir = data.get("run_dir")
        owner_pid = data.get("owner_pid")
        return cls(
            id=str(data["id"]),
            task_id=str(data["task_id"]),
            branch=str(data.get("branch") or ""),
            root=Path(str(data.get("root") or ".")),
            state=cast(SandboxState, state),
            role=data.get("role"),
            in_place=bool(data.get("in_place", False)),
            base_ref=data.get("base_ref"),
            previous_branch=data.get("previous_branch"),
            run_dir=Path(run_dir) if run_dir else None,
            owner_pid=int(owner_pid) if owner_pid is not None else None,
            created_at=str(data.get("created_at") or _now_iso()),
            published=bool(data.get("published", False)),
            removed=bool(data.get("removed", False)),
        )


class ChangeRequestStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    CHECKS_PENDING = "checks_pending"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    MERGED = "merged"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (ChangeRequestStatus.MERGED, ChangeRequestStatus.ABANDONED)


@dataclass
class ChangeRequest:
    """A reviewable proposal of the commits on a task branch."""

    branch: str
    base: str
    title: str
    body: str = ""
    status: ChangeRequestStatus = ChangeRequestStatus.OPEN
    url: Optional[str] = None
    number: Optional[int] = None
    needs_review: bool = False
    existing: bool = False
    conflicts_resolved: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data.pop("body", None)
        return data


class SchedulerMode(str, Enum):
    ROUND_ROBIN = "serial"
    PARALLEL = "parallel"


class BackendKind(str, Enum):
    """Code-generation backend selected once at start-up."""

    CLAUDE_CLI = "claude-cli"
    CLAUDE_API = "claude-api"
    CODEX_CLI = "codex-cli"


class SandboxStrategy(str, Enum):
    WORKTREE = "worktree"
    IN_PLACE = "inplace"


class DirtyWorkspacePolicy(str, Enum):
    """What to do with uncommitted leftovers found before creating a sandbox."""

    STASH = "stash"
    COMMIT = "commit"
    DELEGATE = "delegate"
    FAIL = "fail"


class VerificationKind(str, Enum):
    TEST = "test"
    QUALITY_CHECK = "quality_check"


@dataclass
class VerificationResult:
    kind: VerificationKind
    passed: bool
    error_detail: str = ""
    attempt: int = 1
    command: Optional[str] = None
    log_path: Optional[str] = None


@dataclass
class VerificationOutcome:
    """Aggregate of a bounded verify/fix loop for one task."""

    tests_passed: bool
    quality_passed: bool
    attempts: int
    results: list[VerificationResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.tests_passed and self.quality_passed

    @property
    def needs_review(self) -> bool:
        return not self.passed


@dataclass
class Transcript:
    """Free-text backend output plus the files it actually changed."""

    backend: str
    text: str
    changed_files: list[str] = field(default_factory=list)
    runtime_seconds: float = 0.0


class IterationState(str, Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    CLAIM_FAILED = "claim_failed"
    CLAIMED = "claimed"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    PUBLISHING = "publishing"
    DONE = "done"


class IterationOutcome(str, Enum):
    COMPLETED = "completed"
    ALREADY_PUBLISHED = "already_published"
    NO_WORK = "no_work"
    ALL_SKIPPED = "all_skipped"
    CLAIM_CONFLICT = "claim_conflict"
    REPORTED = "reported"
    FAILED = "failed"
    CANCELLED = "cancelled"


_CLAIMED_OUTCOMES = {
    IterationOutcome.COMPLETED,
    IterationOutcome.ALREADY_PUBLISHED,
    IterationOutcome.FAILED,
}


@dataclass
class IterationResult:
    role: str
    outcome: IterationOutcome
    task_id: Optional[str] = None
    change_request: Optional[ChangeRequest] = None
    error: Optional[str] = None
    states: list[IterationState] = field(default_factory=list)

    @property
    def claimed(self) -> bool:
        return self.task_id is not None and self.outcome in _CLAIMED_OUTCOMES


@dataclass
class WorkerSession:
    """Per-role scheduler state; the skip-list never leaves this object."""

    role: str
    mode: SchedulerMode
    poll_interval: float
    max_iterations: int = 0
    skip_list: set[str] = field(default_factory=set)
    iterations: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=_now_iso)

    def skip(self, task_id: str) -> None:
        self.skip_list.add(task_id)

    def is_skipped(self, task_id: str) -> bool:
        return task_id in self.skip_list

    @property
    def exhausted(self) -> bool:
        return bool(self.max_iterations) and self.iterations >= self.max_iterations


@dataclass
class Event:
    """Base class for structured events written to the event log."""

    event_type: str = field(init=False, default="event")

    def to_dict(self) -> dict[str, Any]:
        def _serialize(value: Any) -> Any:
            if isinstance(value, Enum):
                return value.value
            if isinstance(value, Path):
                return str(value)
            if isinstance(value, list):
                return [_serialize(item) for item in value]
            if isinstance(value, dict):
                return {key: _serialize(val) for key, val in value.items()}
            return value

        data = cast(dict[str, Any], _serialize(asdict(self)))
        data["event_type"] = self.event_type
        return data


@dataclass
class TaskClaimed(Event):
    role: str
    task_id: str
    title: str
    score: float = 0.0
    reason: str = ""
    event_type: str = field(init=False, default="task_claimed")


@dataclass
class TaskFailed(Event):
    role: str
    task_id: str
    error_type: str
    error_detail: str
    released: bool
    event_type: str = field(init=False, default="task_failed")


@dataclass
class ChangeRequestPublished(Event):
    role: str
    task_id: str
    branch: str
    url: Optional[str]
    needs_review: bool
    existing: bool
    tests_passed: bool = True
    quality_passed: bool = True
    attempts: int = 0
    event_type: str = field(init=False, default="change_request_published")


@dataclass
class SandboxDestroyed(Event):
    sandbox_id: str
    task_id: str
    branch: str
    removed: bool
    event_type: str = field(init=False, default="sandbox_destroyed")


@dataclass
class IterationFinished(Event):
    role: str
    outcome: IterationOutcome
    task_id: Optional[str] = None
    event_type: str = field(init=False, default="iteration_finished")
