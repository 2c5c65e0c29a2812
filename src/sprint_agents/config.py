"""Resolve the run configuration once, from CLI overrides, env vars and `.sprint_agents/config.yaml`.

Precedence is CLI override > environment > config file > built-in default.
The result is an immutable :class:`RunnerConfig`; nothing else in the
package reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, TypeVar

from .constants import (
    CONFIG_FILE_NAME,
    DEFAULT_API_BASE,
    DEFAULT_APPROVAL_POLL_SECONDS,
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    DEFAULT_BACKEND_TIMEOUT_SECONDS,
    DEFAULT_BASE_BRANCH,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_COMMIT_SCOPE,
    DEFAULT_MAX_FIX_RETRIES,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_RECOMMENDATION_LIMIT,
    DEFAULT_RECOVERY_INTERVAL_SECONDS,
    DEFAULT_REMOTE,
    DEFAULT_REPORT_ROLES,
    DEFAULT_ROLES,
    EVENTS_FILE_NAME,
    LOGS_DIR_NAME,
    RUNS_DIR_NAME,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error
from .models import BackendKind, DirtyWorkspacePolicy, SandboxStrategy, SchedulerMode
from .utils import _split_list

E = TypeVar("E", bound=Enum)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

_LEGACY_BACKEND_TOGGLES = {
    "USE_CLAUDE_CLI": BackendKind.CLAUDE_CLI,
    "USE_CLAUDE_API": BackendKind.CLAUDE_API,
    "USE_CODEX_CLI": BackendKind.CODEX_CLI,
}


@dataclass(frozen=True)
class RunnerConfig:
    """Fully resolved settings for one orchestrator run."""

    project_dir: Path
    api_base: str = DEFAULT_API_BASE
    api_key: Optional[str] = None
    sprint_id: Optional[str] = None
    roles: tuple[str, ...] = DEFAULT_ROLES
    report_roles: tuple[str, ...] = DEFAULT_REPORT_ROLES
    mode: SchedulerMode = SchedulerMode.ROUND_ROBIN
    backend: BackendKind = BackendKind.CLAUDE_CLI
    backend_command: Optional[str] = None
    backend_model: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_fix_retries: int = DEFAULT_MAX_FIX_RETRIES
    base_branch: str = DEFAULT_BASE_BRANCH
    remote: str = DEFAULT_REMOTE
    reviewers: tuple[str, ...] = ()
    auto_merge: bool = False
    await_approval: bool = False
    approval_timeout: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    approval_poll_interval: float = DEFAULT_APPROVAL_POLL_SECONDS
    recommendation_limit: int = DEFAULT_RECOMMENDATION_LIMIT
    test_command: Optional[str] = None
    quality_commands: tuple[str, ...] = ()
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS
    backend_timeout: float = DEFAULT_BACKEND_TIMEOUT_SECONDS
    sandbox_strategy: SandboxStrategy = SandboxStrategy.WORKTREE
    dirty_policy: DirtyWorkspacePolicy = DirtyWorkspacePolicy.STASH
    recovery_interval: float = DEFAULT_RECOVERY_INTERVAL_SECONDS
    commit_scope: str = DEFAULT_COMMIT_SCOPE
    backlog_file: Optional[Path] = None

    @property
    def state_dir(self) -> Path:
        return self.project_dir / STATE_DIR_NAME

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / RUNS_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / LOGS_DIR_NAME

    @property
    def events_path(self) -> Path:
        return self.state_dir / EVENTS_FILE_NAME

    @property
    def working_roles(self) -> tuple[str, ...]:
        return tuple(role for role in self.roles if role not in self.report_roles)


def load_config_file(project_dir: Path) -> dict[str, Any]:
    """Load `.sprint_agents/config.yaml`; a missing file yields `{}`.

    Raises:
        ConfigError: If the file exists but cannot be parsed.
    """
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE_NAME
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigError(f"Invalid config file: {err}")
    return data


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _as_int(value: Any, name: str) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def _as_enum(enum_cls: type[E], value: Any, name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower()
    for member in enum_cls:
        if text in (member.value, member.name.lower()):
            return member
    allowed = ", ".join(member.value for member in enum_cls)
    raise ConfigError(f"{name} must be one of: {allowed} (got {value!r})")


class _Resolver:
    def __init__(self, overrides: Mapping[str, Any], environ: Mapping[str, str], file_config: dict[str, Any]):
        self.overrides = overrides
        self.environ = environ
        self.file_config = file_config

    def pick(
        self,
        key: str,
        env: Optional[str],
        path: tuple[str, ...],
        default: Any,
        convert: Optional[Callable[[Any, str], Any]] = None,
    ) -> Any:
        label = env or key
        raw: Any = None
        if self.overrides.get(key) is not None:
            raw = self.overrides[key]
        elif env and self.environ.get(env, "").strip():
            raw = self.environ[env]
        else:
            raw = _get_nested(self.file_config, *path)
        if raw is None:
            return default
        return convert(raw, label) if convert else raw


def _resolve_backend(resolver: _Resolver) -> BackendKind:
    explicit = resolver.pick("backend", "AGENT_BACKEND", ("backend", "kind"), None)
    if explicit is not None:
        return _as_enum(BackendKind, explicit, "backend")
    enabled = [
        kind
        for env_name, kind in _LEGACY_BACKEND_TOGGLES.items()
        if _as_bool(resolver.environ.get(env_name, "false"), env_name)
    ]
    if len(enabled) > 1:
        names = ", ".join(kind.value for kind in enabled)
        raise ConfigError(f"Only one backend may be enabled, got: {names}")
    if enabled:
        return enabled[0]
    return BackendKind.CLAUDE_CLI


def resolve_config(
    project_dir: Path,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunnerConfig:
    """Build and validate the run configuration.

    Args:
        project_dir: Repository the agents work on.
        overrides: Values from the CLI keyed by `RunnerConfig` field name.
            `None` values are ignored.
        environ: Environment mapping, defaults to `os.environ`.

    Returns:
        The resolved `RunnerConfig`.

    Raises:
        ConfigError: On unknown values, conflicting backend toggles or
            missing credentials.
    """
    project_dir = Path(project_dir).resolve()
    overrides = dict(overrides or {})
    environ = os.environ if environ is None else environ
    r = _Resolver(overrides, environ, load_config_file(project_dir))

    roles = _split_list(r.pick("roles", "AGENT_ROLES", ("roles",), DEFAULT_ROLES))
    if not roles:
        raise ConfigError("At least one agent role is required")
    report_roles = _split_list(r.pick("report_roles", "REPORT_ROLES", ("report_roles",), DEFAULT_REPORT_ROLES))

    backlog_raw = r.pick("backlog_file", "BACKLOG_FILE", ("backlog_file",), None)
    backlog_file = None
    if backlog_raw:
        backlog_file = Path(str(backlog_raw))
        if not backlog_file.is_absolute():
            backlog_file = project_dir / backlog_file

    auto_merge = r.pick("auto_merge", "GIT_AUTO_MERGE", ("git", "auto_merge"), False, _as_bool)
    config = RunnerConfig(
        project_dir=project_dir,
        api_base=str(r.pick("api_base", "SPRINT_AGENTS_API_BASE", ("api", "base"), DEFAULT_API_BASE)).rstrip("/"),
        api_key=r.pick("api_key", "SPRINT_AGENTS_API_KEY", ("api", "key"), None),
        sprint_id=r.pick("sprint_id", "SPRINT_AGENTS_SPRINT_ID", ("sprint_id",), None),
        roles=roles,
        report_roles=report_roles,
        mode=r.pick("mode", "SCHEDULER_MODE", ("mode",), SchedulerMode.ROUND_ROBIN, lambda v, n: _as_enum(SchedulerMode, v, n)),
        backend=_resolve_backend(r),
        backend_command=r.pick("backend_command", "AGENT_BACKEND_COMMAND", ("backend", "command"), None),
        backend_model=r.pick("backend_model", "AGENT_MODEL", ("backend", "model"), None),
        anthropic_api_key=r.pick("anthropic_api_key", "ANTHROPIC_API_KEY", ("backend", "api_key"), None),
        poll_interval=r.pick("poll_interval", "POLL_INTERVAL", ("poll_interval",), DEFAULT_POLL_INTERVAL_SECONDS, _as_float),
        max_iterations=r.pick("max_iterations", "MAX_ITERATIONS", ("max_iterations",), DEFAULT_MAX_ITERATIONS, _as_int),
        max_fix_retries=r.pick(
            "max_fix_retries", "MAX_FIX_RETRIES", ("verify", "max_fix_retries"), DEFAULT_MAX_FIX_RETRIES, _as_int
        ),
        base_branch=str(r.pick("base_branch", "GIT_PR_BASE_BRANCH", ("git", "base_branch"), DEFAULT_BASE_BRANCH)),
        remote=str(r.pick("remote", "GIT_REMOTE", ("git", "remote"), DEFAULT_REMOTE)),
        reviewers=_split_list(r.pick("reviewers", "GIT_PR_REVIEWERS", ("git", "reviewers"), ())),
        auto_merge=auto_merge,
        await_approval=r.pick("await_approval", "GIT_AWAIT_APPROVAL", ("git", "await_approval"), auto_merge, _as_bool),
        approval_timeout=r.pick(
            "approval_timeout", "APPROVAL_TIMEOUT", ("git", "approval_timeout"), DEFAULT_APPROVAL_TIMEOUT_SECONDS, _as_float
        ),
        approval_poll_interval=r.pick(
            "approval_poll_interval",
            "APPROVAL_POLL_INTERVAL",
            ("git", "approval_poll_interval"),
            DEFAULT_APPROVAL_POLL_SECONDS,
            _as_float,
        ),
        recommendation_limit=r.pick(
            "recommendation_limit", "RECOMMENDATION_LIMIT", ("recommendation_limit",), DEFAULT_RECOMMENDATION_LIMIT, _as_int
        ),
        test_command=r.pick("test_command", "TEST_COMMAND", ("verify", "test_command"), None),
        quality_commands=_split_list(
            r.pick("quality_commands", "QUALITY_COMMANDS", ("verify", "quality_commands"), ()), separators=";"
        ),
        command_timeout=r.pick(
            "command_timeout", "COMMAND_TIMEOUT", ("verify", "timeout"), DEFAULT_COMMAND_TIMEOUT_SECONDS, _as_float
        ),
        backend_timeout=r.pick(
            "backend_timeout", "BACKEND_TIMEOUT", ("backend", "timeout"), DEFAULT_BACKEND_TIMEOUT_SECONDS, _as_float
        ),
        sandbox_strategy=r.pick(
            "sandbox_strategy",
            "SANDBOX_STRATEGY",
            ("sandbox", "strategy"),
            SandboxStrategy.WORKTREE,
            lambda v, n: _as_enum(SandboxStrategy, v, n),
        ),
        dirty_policy=r.pick(
            "dirty_policy",
            "DIRTY_WORKSPACE_POLICY",
            ("sandbox", "dirty_policy"),
            DirtyWorkspacePolicy.STASH,
            lambda v, n: _as_enum(DirtyWorkspacePolicy, v, n),
        ),
        recovery_interval=r.pick(
            "recovery_interval", "RECOVERY_INTERVAL", ("recovery_interval",), DEFAULT_RECOVERY_INTERVAL_SECONDS, _as_float
        ),
        commit_scope=str(r.pick("commit_scope", "COMMIT_SCOPE", ("git", "commit_scope"), DEFAULT_COMMIT_SCOPE)),
        backlog_file=backlog_file,
    )
    _validate(config)
    return config


def _validate(config: RunnerConfig) -> None:
    if config.poll_interval <= 0:
        raise ConfigError("POLL_INTERVAL must be positive")
    if config.max_fix_retries < 1:
        raise ConfigError("MAX_FIX_RETRIES must be at least 1")
    if config.max_iterations < 0:
        raise ConfigError("MAX_ITERATIONS must be zero (unbounded) or positive")
    if config.recommendation_limit < 1:
        raise ConfigError("RECOMMENDATION_LIMIT must be at least 1")
    if config.approval_poll_interval <= 0 or config.approval_timeout <= 0:
        raise ConfigError("Approval timeout and poll interval must be positive")
    if config.backend is BackendKind.CLAUDE_API and not config.anthropic_api_key:
        raise ConfigError("The claude-api backend requires ANTHROPIC_API_KEY")
    if config.backlog_file is None and not config.api_key:
        raise ConfigError("SPRINT_AGENTS_API_KEY is required unless a backlog file is used")
    if config.backlog_file is not None and not config.backlog_file.exists():
        raise ConfigError(f"Backlog file not found: {config.backlog_file}")
    if (
        config.mode is SchedulerMode.PARALLEL
        and config.sandbox_strategy is SandboxStrategy.IN_PLACE
        and len(config.working_roles) > 1
    ):
        raise ConfigError("Parallel mode needs the worktree sandbox strategy when several roles write code")
