"""Run a code-generation CLI (claude, codex) as a subprocess."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Optional

from loguru import logger

from ..cancellation import CancelToken
from ..errors import BackendError, Cancelled
from ..process import run_command
from .base import CodeGenBackend

_PROMPT_PLACEHOLDERS = ("{prompt}", "{prompt_file}")


class CliBackend(CodeGenBackend):
    """Invoke a command template such as ``claude --print --model {model}``.

    Placeholders: ``{prompt}``, ``{prompt_file}``, ``{workdir}``, ``{model}``.
    Without a prompt placeholder the prompt is written to stdin.
    """

    def __init__(self, name: str, command: str, *, model: str = "", timeout: Optional[float] = None) -> None:
        self.name = name
        self.command = command
        self.model = model
        self.timeout = timeout

    def build_argv(self, prompt: str, prompt_file: Path, workdir: Path) -> tuple[list[str], bool]:
        """Return the argv and whether the prompt must go to stdin."""
        try:
            parts = [
                part.format(prompt=prompt, prompt_file=str(prompt_file), workdir=str(workdir), model=self.model)
                for part in shlex.split(self.command)
            ]
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Unknown placeholder in backend command: {exc}") from exc
        uses_placeholder = any(token in self.command for token in _PROMPT_PLACEHOLDERS)
        return parts, not uses_placeholder

    def invoke(
        self,
        prompt: str,
        *,
        workdir: Path,
        log_dir: Optional[Path] = None,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        base_dir = log_dir or workdir
        base_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = base_dir / "prompt.txt"
        prompt_file.write_text(prompt)
        argv, via_stdin = self.build_argv(prompt, prompt_file, workdir)
        logger.info("Invoking {} in {}", self.name, workdir)
        result = run_command(
            argv,
            cwd=workdir,
            timeout=self.timeout,
            cancel=cancel,
            input_text=prompt if via_stdin else None,
            log_path=(log_dir / f"{self.name}.log") if log_dir else None,
        )
        if result.cancelled:
            raise Cancelled(f"{self.name} cancelled")
        if result.timed_out:
            raise BackendError(f"{self.name} timed out after {self.timeout}s")
        if result.returncode != 0:
            raise BackendError(f"{self.name} exited with {result.returncode}: {result.tail(1000).strip()}")
        return result.stdout
