"""Drive the code-generation backend inside a sandbox and check it changed something."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional

from loguru import logger

from .backends.base import CodeGenBackend
from .cancellation import CancelToken
from .errors import NoOpExecution
from .git_utils import _diff_fingerprints, _git_diff_text, _git_state_fingerprint, _git_status_entries
from .models import AcceptanceCriterion, Sandbox, Story, Task, Transcript
from .prompts import build_cleanup_prompt, build_task_prompt


class ExecutionDriver:
    """Run prompts through one backend and report the files they touched."""

    def __init__(self, backend: CodeGenBackend, *, cancel: Optional[CancelToken] = None) -> None:
        self.backend = backend
        self.cancel = cancel

    def execute(
        self,
        sandbox: Sandbox,
        task: Task,
        story: Optional[Story],
        criteria: list[AcceptanceCriterion],
        *,
        role: str = "dev",
    ) -> Transcript:
        """Implement `task` in `sandbox`.

        Raises:
            NoOpExecution: The backend left the sandbox unchanged.
        """
        prompt = build_task_prompt(task, story, criteria, branch=sandbox.branch, role=role, workdir=sandbox.root)
        return self.run_prompt(sandbox, prompt, label="implement", require_changes=True)

    def run_prompt(
        self,
        sandbox: Sandbox,
        prompt: str,
        *,
        label: str,
        require_changes: bool = False,
    ) -> Transcript:
        log_dir = (sandbox.run_dir / label) if sandbox.run_dir else None
        before = _git_state_fingerprint(sandbox.root)
        start = time.monotonic()
        text = self.backend.invoke(prompt, workdir=sandbox.root, log_dir=log_dir, cancel=self.cancel)
        after = _git_state_fingerprint(sandbox.root)
        changed = _diff_fingerprints(sandbox.root, before, after)
        transcript = Transcript(
            backend=self.backend.name,
            text=text,
            changed_files=changed,
            runtime_seconds=time.monotonic() - start,
        )
        logger.info(
            "{} ({}) changed {} file(s) in {:.0f}s",
            self.backend.name,
            label,
            len(changed),
            transcript.runtime_seconds,
        )
        if require_changes and not changed:
            raise NoOpExecution(f"{self.backend.name} produced no file changes for {sandbox.task_id}")
        return transcript

    def clean_workspace(self, workdir: Path) -> None:
        """Ask the backend to commit or stash leftovers in `workdir`."""
        status = [f"{code} {path}" for code, path in _git_status_entries(workdir)]
        prompt = build_cleanup_prompt(status, _git_diff_text(workdir))
        self.backend.invoke(prompt, workdir=workdir, cancel=self.cancel)
