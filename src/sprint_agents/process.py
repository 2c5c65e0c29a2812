"""Run external commands with captured output, timeouts and cancellation.

Every git, gh, backend and test-runner invocation goes through
:func:`run_command`. Child processes are started in their own session so
that a timeout or cancellation can terminate the whole process group, not
only the direct child (test runners tend to fork).
"""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Optional, Sequence, Union

from loguru import logger

from .cancellation import CancelToken
from .errors import Cancelled, CommandError, CommandTimeout
from .io_utils import _tail_text

Args = Union[str, Sequence[str]]

_POLL_SECONDS = 0.2
_KILL_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of a finished command."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr

    def tail(self, max_chars: int = 4000) -> str:
        return _tail_text(self.output, max_chars)

    def check(self) -> "CommandResult":
        """Return self when successful, otherwise raise the matching error."""
        if self.cancelled:
            raise Cancelled(f"Cancelled: {self.command}")
        if self.timed_out:
            raise CommandTimeout(f"Timed out after {self.duration_seconds:.0f}s: {self.command}", self)
        if self.returncode != 0:
            detail = self.tail(800).strip()
            raise CommandError(f"Command failed ({self.returncode}): {self.command}\n{detail}", self)
        return self


def _format_command(args: Args) -> str:
    if isinstance(args, str):
        return args
    return shlex.join([str(part) for part in args])


def _stream_pipe(pipe: Any, sink: list[str], log_handle: Optional[IO[str]], lock: threading.Lock) -> None:
    for line in iter(pipe.readline, ""):
        sink.append(line)
        if log_handle is not None:
            with lock:
                log_handle.write(line)
                log_handle.flush()
    try:
        pipe.close()
    except OSError:
        pass


def _terminate_group(process: subprocess.Popen) -> None:
    try:
        pgid = os.getpgid(process.pid)
    except (ProcessLookupError, PermissionError):
        pgid = None
    try:
        if pgid is not None:
            os.killpg(pgid, signal.SIGTERM)
        else:
            process.terminate()
    except ProcessLookupError:
        return
    try:
        process.wait(timeout=_KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            if pgid is not None:
                os.killpg(pgid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
        process.wait()


def run_command(
    args: Args,
    *,
    cwd: Path,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
    input_text: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    log_path: Optional[Path] = None,
) -> CommandResult:
    """Run ``args`` in ``cwd`` and capture its output.

    A string is executed through the shell; a sequence is executed directly.
    The call never raises for a non-zero exit; use :meth:`CommandResult.check`.

    Args:
        args: Shell string or argv sequence.
        cwd: Working directory.
        timeout: Seconds before the process group is terminated.
        cancel: Token whose cancellation terminates the process group.
        input_text: Text written to stdin, which is then closed.
        env: Extra environment variables layered over ``os.environ``.
        log_path: Optional file receiving stdout and stderr as they arrive.

    Returns:
        The captured :class:`CommandResult`. A missing executable yields
        return code 127.
    """
    command = _format_command(args)
    shell = isinstance(args, str)
    merged_env = None
    if env:
        merged_env = dict(os.environ)
        merged_env.update(env)

    logger.debug("$ {} (cwd={})", command, cwd)
    start = time.monotonic()
    try:
        process = subprocess.Popen(
            args if shell else [str(part) for part in args],
            cwd=str(cwd),
            shell=shell,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=merged_env,
            start_new_session=True,
        )
    except (FileNotFoundError, NotADirectoryError, PermissionError) as exc:
        return CommandResult(command=command, returncode=127, stderr=str(exc))

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    log_handle: Optional[IO[str]] = None
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_handle = open(log_path, "w", encoding="utf-8")
        log_handle.write(f"$ {command}\n")
    lock = threading.Lock()
    readers = [
        threading.Thread(target=_stream_pipe, args=(process.stdout, stdout_lines, log_handle, lock), daemon=True),
        threading.Thread(target=_stream_pipe, args=(process.stderr, stderr_lines, log_handle, lock), daemon=True),
    ]
    for reader in readers:
        reader.start()

    if input_text is not None and process.stdin:
        try:
            process.stdin.write(input_text)
            process.stdin.flush()
        except BrokenPipeError:
            pass
        finally:
            try:
                process.stdin.close()
            except BrokenPipeError:
                pass

    timed_out = False
    cancelled = False
    try:
        while True:
            try:
                process.wait(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.cancelled:
                cancelled = True
                logger.info("Cancelling: {}", command)
                _terminate_group(process)
                break
            if timeout is not None and time.monotonic() - start > timeout:
                timed_out = True
                logger.warning("Timed out after {}s: {}", timeout, command)
                _terminate_group(process)
                break
    finally:
        for reader in readers:
            reader.join(timeout=5)
        if log_handle is not None:
            if timed_out:
                log_handle.write(f"\n[sprint-agents] Command timed out after {timeout}s\n")
            log_handle.close()

    returncode = process.returncode if process.returncode is not None else -1
    if timed_out:
        returncode = 124
    return CommandResult(
        command=command,
        returncode=returncode,
        stdout="".join(stdout_lines),
        stderr="".join(stderr_lines),
        timed_out=timed_out,
        cancelled=cancelled,
        duration_seconds=time.monotonic() - start,
    )
