"""Periodic and at-exit cleanup of what crashed or interrupted workers leave behind."""

from __future__ import annotations

import os
import re
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import psutil
from loguru import logger

from .cancellation import CancelToken
from .constants import DEFAULT_RECOVERY_INTERVAL_SECONDS, TERMINATE_GRACE_SECONDS, TEST_RUNNER_PATTERNS
from .git_coordinator import get_git_coordinator
from .git_utils import _git_has_changes, _git_stash_push, _git_worktree_paths, _git_worktree_prune, _git_worktree_remove
from .models import Sandbox, SandboxState
from .sandbox import SandboxRegistry, _pid_alive


@dataclass
class SweepReport:
    terminated: list[int] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.terminated and not self.removed


def _is_within(path: Optional[str], root: Path) -> bool:
    if not path:
        return False
    try:
        Path(path).resolve().relative_to(root)
        return True
    except ValueError:
        return False


class RecoverySweep:
    """Terminate orphaned test runners and remove stale sandboxes.

    A process is a candidate only if its command line matches a test-runner
    pattern and its working directory is inside the project. It is spared
    while any of its ancestors owns a live sandbox. Running the sweep with
    nothing to clean is a no-op.
    """

    def __init__(
        self,
        project_dir: Path,
        registry: SandboxRegistry,
        sandboxes_dir: Path,
        *,
        patterns: Sequence[str] = TEST_RUNNER_PATTERNS,
        interval: float = DEFAULT_RECOVERY_INTERVAL_SECONDS,
        grace_seconds: float = TERMINATE_GRACE_SECONDS,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.registry = registry
        self.sandboxes_dir = sandboxes_dir
        self.patterns = [re.compile(pattern) for pattern in patterns]
        self.interval = interval
        self.grace_seconds = grace_seconds
        self.cancel = cancel
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()

    def find_orphaned_processes(self) -> list[psutil.Process]:
        owners = self.registry.live_owner_pids()
        me = os.getpid()
        orphans: list[psutil.Process] = []
        for proc in psutil.process_iter(["pid", "cmdline", "cwd"]):
            try:
                if proc.pid == me:
                    continue
                cmd = " ".join(proc.info.get("cmdline") or [])
                if not cmd or not any(pattern.search(cmd) for pattern in self.patterns):
                    continue
                if not _is_within(proc.info.get("cwd"), self.project_dir):
                    continue
                lineage = {parent.pid for parent in proc.parents()}
                if lineage & owners:
                    continue
                orphans.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return orphans

    def terminate(self, processes: Sequence[psutil.Process]) -> list[int]:
        targets: list[psutil.Process] = []
        for proc in processes:
            try:
                targets.extend(proc.children(recursive=True))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
            targets.append(proc)
        for proc in targets:
            try:
                proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        _, alive = psutil.wait_procs(targets, timeout=self.grace_seconds)
        for proc in alive:
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        pids = [proc.pid for proc in processes]
        if pids:
            logger.warning("Terminated orphaned test runner(s): {}", ", ".join(str(pid) for pid in pids))
        return pids

    def _is_stale(self, sandbox: Sandbox) -> bool:
        if sandbox.state is SandboxState.DESTROYED:
            return True
        # Created, Active or Cleaning entries belong to their owner while it lives.
        return not _pid_alive(sandbox.owner_pid)

    def _remove_dir(self, path: Path, worktrees: set[Path]) -> bool:
        if not path.exists():
            return True
        if path.resolve() in worktrees:
            try:
                if _git_has_changes(path):
                    _git_stash_push(path, f"sprint-agents: recovered leftovers from {path.name}")
            except Exception:
                logger.exception("Could not quarantine leftovers in {}", path)
            if _git_worktree_remove(self.project_dir, path):
                return True
        try:
            shutil.rmtree(path)
        except OSError as exc:
            logger.warning("Could not remove {}: {}", path, exc)
            return False
        return True

    def remove_stale_sandboxes(self) -> list[str]:
        removed: list[str] = []
        with get_git_coordinator().locked(self.project_dir, "recovery sweep"):
            worktrees = {path.resolve() for path in _git_worktree_paths(self.project_dir)}
            entries = self.registry.entries()
            known_dirs = {entry.root.resolve() for entry in entries if not entry.in_place}
            for entry in entries:
                if not self._is_stale(entry):
                    continue
                if entry.in_place or self._remove_dir(entry.root, worktrees):
                    self.registry.remove(entry.id)
                    removed.append(entry.id)
            if self.sandboxes_dir.is_dir():
                for child in sorted(self.sandboxes_dir.iterdir()):
                    if child.is_dir() and child.resolve() not in known_dirs:
                        if self._remove_dir(child, worktrees):
                            removed.append(child.name)
            if removed:
                _git_worktree_prune(self.project_dir)
                logger.info("Removed stale sandbox(es): {}", ", ".join(removed))
        return removed

    def sweep(self) -> SweepReport:
        with self._sweep_lock:
            report = SweepReport()
            report.terminated = self.terminate(self.find_orphaned_processes())
            report.removed = self.remove_stale_sandboxes()
            if report.empty:
                logger.debug("Recovery sweep: nothing to clean")
            return report

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            if self.cancel is not None and self.cancel.cancelled:
                return
            try:
                self.sweep()
            except Exception:
                logger.exception("Recovery sweep failed")

    def start(self) -> threading.Thread:
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="recovery-sweep", daemon=True)
            self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
