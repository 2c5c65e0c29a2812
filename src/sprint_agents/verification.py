"""Bounded verify/fix loop: tests first, then quality checks, one shared attempt budget."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .cancellation import CancelToken
from .constants import VERIFY_DETAIL_MAX_CHARS
from .errors import Cancelled
from .executor import ExecutionDriver
from .logging_utils import failure_digest
from .models import Sandbox, Task, Transcript, VerificationKind, VerificationOutcome, VerificationResult
from .process import run_command
from .prompts import build_fix_prompt


class VerificationLoop:
    """Run the configured checks and ask the backend to fix failures.

    One attempt is one verification pass. A fix is requested only while
    `attempt < max_fix_retries`, so the pass count never exceeds the budget
    and produced work is never thrown away when it runs out.
    """

    def __init__(
        self,
        driver: ExecutionDriver,
        *,
        test_command: Optional[str],
        quality_commands: Sequence[str] = (),
        max_fix_retries: int = 3,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.driver = driver
        self.test_command = test_command
        self.quality_commands = tuple(quality_commands)
        self.max_fix_retries = max_fix_retries
        self.timeout = timeout
        self.cancel = cancel
        if not test_command:
            logger.warning("No test command configured; the test phase will be reported as passing")

    def _run_check(
        self,
        sandbox: Sandbox,
        kind: VerificationKind,
        command: str,
        attempt: int,
        index: int = 0,
    ) -> VerificationResult:
        log_path: Optional[Path] = None
        if sandbox.run_dir is not None:
            suffix = f"-{index}" if index else ""
            log_path = sandbox.run_dir / f"verify-{attempt}-{kind.value}{suffix}.log"
        result = run_command(command, cwd=sandbox.root, timeout=self.timeout, cancel=self.cancel, log_path=log_path)
        if result.cancelled:
            raise Cancelled(f"Cancelled while running {command}")
        detail = ""
        if not result.ok:
            tail = result.tail(VERIFY_DETAIL_MAX_CHARS)
            digest = failure_digest(result.output) if kind is VerificationKind.TEST else ""
            prefix = "Timed out.\n" if result.timed_out else ""
            detail = f"{prefix}{digest}\n{tail}".strip() if digest else f"{prefix}{tail}".strip()
        return VerificationResult(
            kind=kind,
            passed=result.ok,
            error_detail=detail,
            attempt=attempt,
            command=command,
            log_path=str(log_path) if log_path else None,
        )

    def verify(self, sandbox: Sandbox, attempt: int = 1) -> list[VerificationResult]:
        """Run tests, then (only if they pass) the quality commands in order."""
        if self.test_command:
            tests = self._run_check(sandbox, VerificationKind.TEST, self.test_command, attempt)
        else:
            tests = VerificationResult(
                kind=VerificationKind.TEST, passed=True, error_detail="no test command configured", attempt=attempt
            )
        results = [tests]
        if not tests.passed:
            logger.warning("Tests failed on attempt {}/{}", attempt, self.max_fix_retries)
            return results
        for index, command in enumerate(self.quality_commands):
            quality = self._run_check(sandbox, VerificationKind.QUALITY_CHECK, command, attempt, index)
            results.append(quality)
            if not quality.passed:
                logger.warning("Quality check '{}' failed on attempt {}/{}", command, attempt, self.max_fix_retries)
                break
        return results

    def fix(self, sandbox: Sandbox, task: Task, failure: VerificationResult, attempt: int) -> Transcript:
        prompt = build_fix_prompt(task, failure, attempt=attempt, max_attempts=self.max_fix_retries)
        return self.driver.run_prompt(sandbox, prompt, label=f"fix-{attempt}", require_changes=False)

    def passes(self, sandbox: Sandbox) -> bool:
        """Single pass without fixes; used to re-check an integrated branch."""
        return all(result.passed for result in self.verify(sandbox, attempt=1))

    def run(self, sandbox: Sandbox, task: Task) -> VerificationOutcome:
        results: list[VerificationResult] = []
        tests_passed = quality_passed = False
        attempt = 0
        while attempt < self.max_fix_retries:
            if self.cancel is not None:
                self.cancel.raise_if_cancelled()
            attempt += 1
            round_results = self.verify(sandbox, attempt)
            results.extend(round_results)
            tests_passed = round_results[0].passed
            quality_passed = tests_passed and all(result.passed for result in round_results[1:])
            failure = next((result for result in round_results if not result.passed), None)
            if failure is None:
                logger.success("Verification passed on attempt {}/{}", attempt, self.max_fix_retries)
                break
            if attempt >= self.max_fix_retries:
                logger.warning(
                    "Verification still failing after {} attempt(s); publishing flagged for review",
                    attempt,
                )
                break
            self.fix(sandbox, task, failure, attempt)
        return VerificationOutcome(
            tests_passed=tests_passed,
            quality_passed=quality_passed,
            attempts=attempt,
            results=results,
        )
