"""Serialize git operations that touch a shared repository's metadata.

Worktree creation and removal, branch deletion and prune all write to the
main repository's `.git` directory. Workers running in parallel therefore
take the per-repository lock for those steps; commands confined to a
single worktree (status, commit, push) do not need it.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger


class GitCoordinator:
    """Hand out one re-entrant lock per repository root."""

    _instance: Optional[GitCoordinator] = None
    _lock = threading.Lock()

    def __new__(cls) -> GitCoordinator:
        """Singleton pattern to ensure one coordinator per process."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._repo_locks = {}
                    cls._instance = instance
        return cls._instance

    def _lock_for(self, repo_dir: Path) -> threading.RLock:
        key = str(Path(repo_dir).resolve())
        with self._lock:
            lock = self._repo_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._repo_locks[key] = lock
            return lock

    @contextmanager
    def locked(self, repo_dir: Path, operation_name: str = "git operation") -> Iterator[None]:
        thread_id = threading.current_thread().name
        lock = self._lock_for(repo_dir)
        logger.debug("Thread {} waiting for git lock ({})", thread_id, operation_name)
        with lock:
            logger.debug("Thread {} acquired git lock ({})", thread_id, operation_name)
            try:
                yield
            finally:
                logger.debug("Thread {} releasing git lock ({})", thread_id, operation_name)


def get_git_coordinator() -> GitCoordinator:
    return GitCoordinator()
