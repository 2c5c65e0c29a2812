"""Command line entry point: `sprint-agents run|status|sweep`."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .backends import CodeGenBackend, build_backend
from .cancellation import CancelToken, install_signal_handlers, restore_signal_handlers
from .change_requests import ChangeRequestHost, GitHubCliHost
from .claims import ClaimManager
from .config import RunnerConfig, resolve_config
from .constants import SANDBOXES_DIR_NAME, STATE_DIR_NAME
from .errors import ConfigError, TaskSourceError
from .executor import ExecutionDriver
from .git_utils import _git_is_repo
from .logging_utils import configure_logging, pretty
from .models import BackendKind, DirtyWorkspacePolicy, SandboxStrategy, SchedulerMode
from .pipeline import TaskPipeline
from .publisher import ChangePublisher
from .recovery import RecoverySweep
from .sandbox import SandboxManager, SandboxRegistry
from .scheduler import Scheduler, print_summary
from .task_source import TaskSource, build_task_source
from .verification import VerificationLoop

_LOG_LEVELS = ["trace", "debug", "info", "success", "warning", "error"]


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Repository the agents work on (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=_LOG_LEVELS,
        default=None,
        help="Logging level (default: info)",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Shortcut for --log-level debug")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Shortcut for --log-level warning")


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sprint-agents run",
        description="Sprint Agents - claim backlog tasks and turn them into reviewed pull requests",
    )
    _add_common_arguments(parser)
    parser.add_argument("--sprint-id", type=str, default=None, help="Sprint to work on (default: auto-detect)")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in SchedulerMode],
        default=None,
        help="serial = round-robin over roles, parallel = one loop per role (default: serial)",
    )
    parser.add_argument(
        "--backend",
        choices=[kind.value for kind in BackendKind],
        default=None,
        help="Code-generation backend (default: claude-cli)",
    )
    parser.add_argument("--roles", type=str, default=None, help="Comma-separated roles (default: dev,qa,devops,documenter,po)")
    parser.add_argument("--backlog-file", type=Path, default=None, help="Use a local YAML backlog instead of the API")
    parser.add_argument("--max-iterations", type=int, default=None, help="Iterations per role, 0 = unbounded")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds to wait when no task was claimed")
    parser.add_argument("--test-command", type=str, default=None, help="Test command run inside each sandbox")
    parser.add_argument(
        "--sandbox-strategy",
        choices=[strategy.value for strategy in SandboxStrategy],
        default=None,
        help="worktree = one git worktree per task, inplace = reuse the project checkout",
    )
    parser.add_argument(
        "--auto-merge",
        default=None,
        action=argparse.BooleanOptionalAction,
        help="Wait for approval and squash-merge passing pull requests",
    )
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sprint-agents status",
        description="Sprint Agents - show sandboxes recorded in .sprint_agents",
    )
    _add_common_arguments(parser)
    parser.add_argument("--json", action="store_true", help="Output JSON")
    return parser


def _build_sweep_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sprint-agents sweep",
        description="Sprint Agents - terminate orphaned test runners and remove stale sandboxes",
    )
    _add_common_arguments(parser)
    return parser


def _resolve_log_level(args: argparse.Namespace) -> str:
    if args.verbose:
        return "DEBUG"
    if args.quiet:
        return "WARNING"
    return (args.log_level or "info").upper()


def _overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "sprint_id": args.sprint_id,
        "mode": args.mode,
        "backend": args.backend,
        "roles": args.roles,
        "backlog_file": args.backlog_file,
        "max_iterations": args.max_iterations,
        "poll_interval": args.poll_interval,
        "test_command": args.test_command,
        "sandbox_strategy": args.sandbox_strategy,
        "auto_merge": args.auto_merge,
    }


def _resolve_sprint(config: RunnerConfig, source: TaskSource) -> str:
    if config.sprint_id:
        return config.sprint_id
    sprint_id = source.detect_active_sprint()
    if not sprint_id:
        raise ConfigError("No sprint id given and no active sprint could be detected")
    return sprint_id


def run_agents(
    config: RunnerConfig,
    *,
    cancel: Optional[CancelToken] = None,
    source: Optional[TaskSource] = None,
    backend: Optional[CodeGenBackend] = None,
    host: Optional[ChangeRequestHost] = None,
) -> int:
    """Wire every component from `config` and run the scheduler to completion.

    Returns:
        0 once the scheduler stops (no more work, iteration limit or signal),
        1 for configuration or start-up failures.
    """
    cancel = cancel or CancelToken()
    try:
        if not _git_is_repo(config.project_dir):
            raise ConfigError(f"{config.project_dir} is not a git repository")
        source = source or build_task_source(config)
        sprint_id = _resolve_sprint(config, source)
        backend = backend or build_backend(config)
    except (ConfigError, TaskSourceError) as exc:
        logger.error("Cannot start: {}", exc)
        if source is not None:
            source.close()
        return 1
    logger.info("Working on sprint {} with backend {}", sprint_id, backend.name)

    driver = ExecutionDriver(backend, cancel=cancel)
    registry = SandboxRegistry(config.state_dir)
    sandboxes = SandboxManager(
        config.project_dir,
        state_dir=config.state_dir,
        registry=registry,
        base_branch=config.base_branch,
        remote=config.remote,
        strategy=config.sandbox_strategy,
        dirty_policy=config.dirty_policy,
        cleaner=driver.clean_workspace if config.dirty_policy is DirtyWorkspacePolicy.DELEGATE else None,
        cancel=cancel,
    )
    verifier = VerificationLoop(
        driver,
        test_command=config.test_command,
        quality_commands=config.quality_commands,
        max_fix_retries=config.max_fix_retries,
        timeout=config.command_timeout,
        cancel=cancel,
    )
    publisher = ChangePublisher(
        host or GitHubCliHost(config.project_dir, cancel=cancel),
        base_branch=config.base_branch,
        remote=config.remote,
        reviewers=config.reviewers,
        auto_merge=config.auto_merge,
        commit_scope=config.commit_scope,
        resolver=driver,
        recheck=verifier.passes,
        approval_poll_interval=config.approval_poll_interval,
        cancel=cancel,
    )
    pipeline = TaskPipeline(
        source=source,
        claims=ClaimManager(source),
        sandboxes=sandboxes,
        driver=driver,
        verifier=verifier,
        publisher=publisher,
        sprint_id=sprint_id,
        recommendation_limit=config.recommendation_limit,
        report_roles=config.report_roles,
        await_approval=config.await_approval,
        approval_timeout=config.approval_timeout,
        runs_dir=config.runs_dir,
        events_path=config.events_path,
        cancel=cancel,
    )
    scheduler = Scheduler(
        pipeline,
        roles=config.roles,
        mode=config.mode,
        poll_interval=config.poll_interval,
        max_iterations=config.max_iterations,
        cancel=cancel,
    )
    sweep = RecoverySweep(
        config.project_dir,
        registry,
        sandboxes.sandboxes_dir,
        interval=config.recovery_interval,
        cancel=cancel,
    )

    _safe_sweep(sweep)
    sweep.start()
    try:
        sessions = scheduler.run()
    finally:
        sweep.stop()
        _safe_sweep(sweep)
        source.close()
    if cancel.cancelled:
        logger.warning("Stopped: {}", cancel.reason)
    print_summary(sessions)
    return 0


def _safe_sweep(sweep: RecoverySweep) -> None:
    try:
        sweep.sweep()
    except Exception:
        logger.exception("Recovery sweep failed")


def _status_command(project_dir: Path, *, as_json: bool = False) -> int:
    project_dir = project_dir.resolve()
    state_dir = project_dir / STATE_DIR_NAME
    sandboxes = SandboxRegistry(state_dir).entries() if state_dir.exists() else []
    if as_json:
        sys.stdout.write(pretty({"sandboxes": [sb.to_dict() for sb in sandboxes]}) + "\n")
        return 0
    console = Console()
    if not sandboxes:
        console.print(f"No sandboxes recorded under {state_dir}")
        return 0
    table = Table(title="Sandboxes", show_header=True)
    table.add_column("Task", style="cyan")
    table.add_column("Branch")
    table.add_column("State", style="bold")
    table.add_column("Role")
    table.add_column("PID", justify="right")
    table.add_column("Root")
    for sb in sandboxes:
        table.add_row(sb.task_id, sb.branch, sb.state.value, sb.role or "-", str(sb.owner_pid or "-"), str(sb.root))
    console.print(table)
    return 0


def _sweep_command(project_dir: Path) -> int:
    project_dir = project_dir.resolve()
    if not _git_is_repo(project_dir):
        logger.error("{} is not a git repository", project_dir)
        return 1
    state_dir = project_dir / STATE_DIR_NAME
    sweep = RecoverySweep(project_dir, SandboxRegistry(state_dir), state_dir / SANDBOXES_DIR_NAME)
    report = sweep.sweep()
    logger.info(
        "Sweep finished: {} process(es) terminated, {} sandbox(es) removed",
        len(report.terminated),
        len(report.removed),
    )
    return 0


def _run_command(args: argparse.Namespace, level: str) -> int:
    try:
        config = resolve_config(args.project_dir, _overrides_from_args(args))
    except ConfigError as exc:
        logger.error("Configuration error: {}", exc)
        return 1
    configure_logging(level, log_dir=config.logs_dir, roles=config.roles)
    cancel = CancelToken()
    previous = install_signal_handlers(cancel)
    try:
        return run_agents(config, cancel=cancel)
    finally:
        restore_signal_handlers(previous)


def main(argv: list[str] | None = None) -> None:
    """Run the `sprint-agents` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always, carrying the process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    command = "run"
    if argv and argv[0] in ("run", "status", "sweep"):
        command = argv.pop(0)
    if command == "status":
        args = _build_status_parser().parse_args(argv)
        configure_logging(_resolve_log_level(args))
        raise SystemExit(_status_command(args.project_dir, as_json=bool(args.json)))
    if command == "sweep":
        args = _build_sweep_parser().parse_args(argv)
        configure_logging(_resolve_log_level(args))
        raise SystemExit(_sweep_command(args.project_dir))
    args = _build_run_parser().parse_args(argv)
    level = _resolve_log_level(args)
    configure_logging(level)
    raise SystemExit(_run_command(args, level))


if __name__ == "__main__":
    main()
