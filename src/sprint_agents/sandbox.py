"""Create and destroy per-task sandboxes.

A sandbox is a working directory plus the task's exclusive branch. With the
``worktree`` strategy every task gets its own git worktree under
``.sprint_agents/sandboxes/``; with ``inplace`` the project checkout itself
switches to the task branch. Live sandboxes are recorded in
``.sprint_agents/sandboxes.json`` so that no task ever has two, and so the
recovery sweep can find what a crashed run left behind.
"""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

import psutil
from filelock import FileLock
from loguru import logger

from .cancellation import CancelToken
from .constants import BRANCH_PREFIX, SANDBOX_REGISTRY_FILE, SANDBOXES_DIR_NAME
from .errors import SandboxBusy, TaskFailure, WorkspaceDirty
from .git_coordinator import get_git_coordinator
from .git_utils import (
    _ensure_excluded,
    _git_branch_exists,
    _git_changed_files,
    _git_checkout,
    _git_checkout_new,
    _git_commit_all,
    _git_commits_ahead,
    _git_current_branch,
    _git_delete_branch,
    _git_fetch,
    _git_has_changes,
    _git_has_remote,
    _git_is_linked_worktree,
    _git_pull,
    _git_remote_ref_exists,
    _git_stash_push,
    _git_worktree_add,
    _git_worktree_paths,
    _git_worktree_prune,
    _git_worktree_remove,
)
from .io_utils import _load_data, _save_data
from .models import DirtyWorkspacePolicy, Sandbox, SandboxState, SandboxStrategy, Task
from .utils import _slugify


def _pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        return psutil.pid_exists(pid)
    except psutil.Error:
        return False


class SandboxRegistry:
    """Process- and thread-safe record of sandboxes that have not been removed."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / SANDBOX_REGISTRY_FILE
        self._file_lock = FileLock(str(self.path) + ".lock", timeout=60)
        self._thread_lock = threading.Lock()

    @contextmanager
    def _locked(self) -> Iterator[dict[str, dict]]:
        with self._thread_lock, self._file_lock:
            data = _load_data(self.path, {})
            entries = data.get("sandboxes") if isinstance(data.get("sandboxes"), dict) else {}
            before = dict(entries)
            yield entries
            if entries != before:
                _save_data(self.path, {"sandboxes": entries})

    def acquire(self, sandbox: Sandbox) -> None:
        """Record `sandbox` as live, refusing if its task already has a live sandbox.

        Raises:
            SandboxBusy: Another live sandbox exists for the same task.
        """
        with self._locked() as entries:
            for entry in entries.values():
                other = Sandbox.from_dict(entry)
                if other.task_id != sandbox.task_id or not other.is_live:
                    continue
                if _pid_alive(other.owner_pid):
                    raise SandboxBusy(
                        f"Task {sandbox.task_id} already has a live sandbox {other.id} (pid {other.owner_pid})"
                    )
                logger.warning("Replacing stale sandbox record {} from dead pid {}", other.id, other.owner_pid)
            entries[sandbox.id] = sandbox.to_dict()

    def update(self, sandbox: Sandbox) -> None:
        with self._locked() as entries:
            entries[sandbox.id] = sandbox.to_dict()

    def remove(self, sandbox_id: str) -> None:
        with self._locked() as entries:
            entries.pop(sandbox_id, None)

    def entries(self) -> list[Sandbox]:
        with self._locked() as entries:
            return [Sandbox.from_dict(entry) for entry in entries.values()]

    def live_owner_pids(self) -> set[int]:
        return {sb.owner_pid for sb in self.entries() if sb.is_live and sb.owner_pid}


class SandboxManager:
    """Own the sandbox lifecycle Created -> Active -> Cleaning -> Destroyed."""

    def __init__(
        self,
        project_dir: Path,
        *,
        state_dir: Path,
        registry: SandboxRegistry,
        base_branch: str,
        remote: str = "origin",
        strategy: SandboxStrategy = SandboxStrategy.WORKTREE,
        dirty_policy: DirtyWorkspacePolicy = DirtyWorkspacePolicy.STASH,
        cleaner: Optional[Callable[[Path], None]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.project_dir = project_dir
        self.state_dir = state_dir
        self.registry = registry
        self.base_branch = base_branch
        self.remote = remote
        self.strategy = strategy
        self.dirty_policy = dirty_policy
        self.cleaner = cleaner
        self.cancel = cancel
        self._git_lock = get_git_coordinator()
        self.nested = _git_is_linked_worktree(project_dir)
        if self.nested:
            logger.info("{} is a linked worktree; task branches start from {}/{}", project_dir, remote, base_branch)
        _ensure_excluded(project_dir)

    @property
    def sandboxes_dir(self) -> Path:
        return self.state_dir / SANDBOXES_DIR_NAME

    @staticmethod
    def branch_name(task: Task) -> str:
        slug = _slugify(task.title)
        return f"{BRANCH_PREFIX}{task.id}-{slug}" if slug else f"{BRANCH_PREFIX}{task.id}"

    @staticmethod
    def sandbox_id(branch: str) -> str:
        return branch.replace("/", "-")

    def create(self, task: Task, role: Optional[str] = None, run_dir: Optional[Path] = None) -> Sandbox:
        """Create (or reuse) the sandbox for `task` and mark it Active.

        Raises:
            SandboxBusy: The task already has a live sandbox.
            WorkspaceDirty: Leftover changes could not be cleared.
        """
        branch = self.branch_name(task)
        in_place = self.strategy is SandboxStrategy.IN_PLACE
        sandbox_id = self.sandbox_id(branch)
        sandbox = Sandbox(
            id=sandbox_id,
            task_id=task.id,
            branch=branch,
            root=self.project_dir if in_place else self.sandboxes_dir / sandbox_id,
            role=role,
            in_place=in_place,
            run_dir=run_dir,
            owner_pid=os.getpid(),
        )
        self.registry.acquire(sandbox)
        try:
            # Outside the repository lock: the delegate policy invokes the backend.
            if in_place:
                sandbox.previous_branch = _git_current_branch(sandbox.root)
                self._ensure_clean(sandbox.root, branch)
            elif self._is_worktree(sandbox.root):
                self._ensure_clean(sandbox.root, branch)
            with self._git_lock.locked(self.project_dir, f"create sandbox {sandbox_id}"):
                if in_place:
                    self._prepare_in_place(sandbox)
                else:
                    self._prepare_worktree(sandbox)
        except BaseException:
            if sandbox.in_place or self._is_worktree(sandbox.root):
                self.destroy(sandbox)
            else:
                sandbox.state = SandboxState.DESTROYED
                self.registry.remove(sandbox.id)
            raise
        sandbox.state = SandboxState.ACTIVE
        self.registry.update(sandbox)
        logger.info("Sandbox {} active on {} at {}", sandbox.id, branch, sandbox.root)
        return sandbox

    def _is_worktree(self, path: Path) -> bool:
        if not path.exists():
            return False
        return path.resolve() in {known.resolve() for known in _git_worktree_paths(self.project_dir)}

    def _upstream_base(self) -> str:
        """Prefer the freshly fetched upstream base; fall back to the local base branch."""
        if _git_has_remote(self.project_dir, self.remote):
            _git_fetch(self.project_dir, self.remote, self.base_branch, cancel=self.cancel)
            if _git_remote_ref_exists(self.project_dir, self.remote, self.base_branch):
                return f"{self.remote}/{self.base_branch}"
        if _git_branch_exists(self.project_dir, self.base_branch):
            return self.base_branch
        raise TaskFailure(f"Base branch {self.base_branch!r} not found locally or on {self.remote}")

    def _prepare_worktree(self, sandbox: Sandbox) -> None:
        root = sandbox.root
        sandbox.base_ref = self._upstream_base()
        if self._is_worktree(root):
            logger.info("Reusing existing worktree {}", root)
            if _git_current_branch(root) != sandbox.branch:
                _git_checkout(root, sandbox.branch)
            return
        if root.exists():
            raise SandboxBusy(f"{root} exists but is not a registered worktree")
        if _git_branch_exists(self.project_dir, sandbox.branch):
            logger.info("Reusing existing branch {}", sandbox.branch)
            _git_worktree_add(self.project_dir, root, sandbox.branch)
        else:
            _git_worktree_add(self.project_dir, root, sandbox.branch, start_point=sandbox.base_ref)

    def _prepare_in_place(self, sandbox: Sandbox) -> None:
        root = sandbox.root
        if _git_branch_exists(root, sandbox.branch):
            logger.info("Reusing existing branch {}", sandbox.branch)
            sandbox.base_ref = self._upstream_base() if self.nested else self.base_branch
            _git_checkout(root, sandbox.branch)
            if _git_remote_ref_exists(root, self.remote, sandbox.branch):
                pulled = _git_pull(root, self.remote, sandbox.branch, cancel=self.cancel)
                if not pulled.ok:
                    logger.warning("Pull of {} failed; continuing with local state", sandbox.branch)
            return
        if self.nested:
            # The long-lived workspace branch is never a valid base for task work.
            sandbox.base_ref = self._upstream_base()
            _git_checkout_new(root, sandbox.branch, sandbox.base_ref)
            return
        sandbox.base_ref = self.base_branch
        _git_checkout(root, self.base_branch)
        if _git_has_remote(root, self.remote):
            pulled = _git_pull(root, self.remote, self.base_branch, cancel=self.cancel)
            if not pulled.ok:
                logger.warning("Could not update {} from {}: {}", self.base_branch, self.remote, pulled.tail(300))
        _git_checkout_new(root, sandbox.branch, self.base_branch)

    def _ensure_clean(self, workdir: Path, branch: str) -> None:
        if not _git_has_changes(workdir):
            return
        leftovers = _git_changed_files(workdir)
        logger.warning(
            "Workspace {} has {} uncommitted path(s) before {}; applying '{}' policy",
            workdir,
            len(leftovers),
            branch,
            self.dirty_policy.value,
        )
        if self.dirty_policy is DirtyWorkspacePolicy.FAIL:
            raise WorkspaceDirty(f"Uncommitted changes in {workdir}: {', '.join(leftovers[:10])}")
        if self.dirty_policy is DirtyWorkspacePolicy.STASH:
            _git_stash_push(workdir, f"sprint-agents: quarantined before {branch}")
        elif self.dirty_policy is DirtyWorkspacePolicy.COMMIT:
            _git_commit_all(workdir, f"chore: preserve uncommitted work before {branch}")
        elif self.dirty_policy is DirtyWorkspacePolicy.DELEGATE:
            if self.cleaner is None:
                raise WorkspaceDirty(f"No backend available to clean {workdir}")
            self.cleaner(workdir)
        if _git_has_changes(workdir):
            raise WorkspaceDirty(f"Workspace {workdir} is still dirty after '{self.dirty_policy.value}'")

    def destroy(self, sandbox: Sandbox) -> Sandbox:
        """Tear the sandbox down; always ends in Destroyed.

        Uncommitted leftovers are stashed rather than discarded. The local
        task branch survives unless it was published or holds no commits.
        If the worktree directory cannot be removed the registry entry is kept
        (state Destroyed, ``removed`` false) for the recovery sweep.
        """
        sandbox.state = SandboxState.CLEANING
        self.registry.update(sandbox)
        removed = sandbox.in_place
        try:
            with self._git_lock.locked(self.project_dir, f"destroy sandbox {sandbox.id}"):
                if sandbox.root.exists() and _git_current_branch(sandbox.root) == sandbox.branch:
                    if _git_has_changes(sandbox.root):
                        logger.warning("Quarantining leftovers of {} in the stash", sandbox.branch)
                        _git_stash_push(sandbox.root, f"sprint-agents: quarantined leftovers from {sandbox.branch}")
                if sandbox.in_place:
                    target = sandbox.previous_branch or self.base_branch
                    if target not in (sandbox.branch, "HEAD") and _git_current_branch(sandbox.root) == sandbox.branch:
                        _git_checkout(sandbox.root, target)
                elif sandbox.root.exists():
                    removed = _git_worktree_remove(self.project_dir, sandbox.root)
                    _git_worktree_prune(self.project_dir)
                else:
                    removed = True
                self._maybe_delete_branch(sandbox)
        except Exception:
            logger.exception("Cleanup of sandbox {} failed", sandbox.id)
        finally:
            sandbox.state = SandboxState.DESTROYED
            sandbox.removed = removed
            if removed:
                self.registry.remove(sandbox.id)
            else:
                self.registry.update(sandbox)
        logger.info("Sandbox {} destroyed (removed={})", sandbox.id, removed)
        return sandbox

    def _maybe_delete_branch(self, sandbox: Sandbox) -> None:
        if not _git_branch_exists(self.project_dir, sandbox.branch):
            return
        if _git_current_branch(self.project_dir) == sandbox.branch:
            return
        ahead = _git_commits_ahead(self.project_dir, sandbox.base_ref, sandbox.branch) if sandbox.base_ref else None
        if sandbox.published or ahead == 0:
            _git_delete_branch(self.project_dir, sandbox.branch)
        else:
            logger.info("Keeping branch {} with unpublished commits", sandbox.branch)

    @contextmanager
    def session(self, task: Task, role: Optional[str] = None, run_dir: Optional[Path] = None) -> Iterator[Sandbox]:
        """Yield an active sandbox and destroy it on every exit path."""
        sandbox = self.create(task, role=role, run_dir=run_dir)
        try:
            yield sandbox
        finally:
            self.destroy(sandbox)
