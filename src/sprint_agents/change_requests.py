"""Change-request hosting: the interface the publisher needs and a GitHub CLI implementation."""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Sequence

from loguru import logger

from .cancellation import CancelToken
from .errors import CommandError
from .models import ChangeRequest, ChangeRequestStatus
from .process import run_command

_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")


class ChangeRequestHost(ABC):
    @abstractmethod
    def find_open(self, branch: str) -> Optional[ChangeRequest]:
        """Return the open change request whose head is `branch`, if any."""

    @abstractmethod
    def create(
        self,
        *,
        branch: str,
        base: str,
        title: str,
        body: str,
        reviewers: Sequence[str] = (),
    ) -> ChangeRequest:
        ...

    @abstractmethod
    def check_states(self, change_request: ChangeRequest) -> list[str]:
        """Upper-case state of every status check (SUCCESS, FAILURE, PENDING, ...)."""

    @abstractmethod
    def review_decision(self, change_request: ChangeRequest) -> str:
        """APPROVED, CHANGES_REQUESTED, REVIEW_REQUIRED or an empty string."""

    @abstractmethod
    def merge(self, change_request: ChangeRequest) -> None:
        ...


class GitHubCliHost(ChangeRequestHost):
    """Pull requests through the `gh` command line tool."""

    def __init__(self, repo_dir: Path, *, timeout: float = 120.0, cancel: Optional[CancelToken] = None) -> None:
        self.repo_dir = repo_dir
        self.timeout = timeout
        self.cancel = cancel

    def _gh(self, *args: str) -> str:
        result = run_command(["gh", *args], cwd=self.repo_dir, timeout=self.timeout, cancel=self.cancel)
        return result.check().stdout

    def _gh_json(self, *args: str) -> Any:
        output = self._gh(*args).strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise CommandError(f"gh {' '.join(args[:2])} returned invalid JSON: {output[:200]}") from exc

    def find_open(self, branch: str) -> Optional[ChangeRequest]:
        items = self._gh_json(
            "pr", "list", "--head", branch, "--state", "open", "--json", "number,url,title,baseRefName,isDraft"
        ) or []
        if not items:
            return None
        item = items[0]
        status = ChangeRequestStatus.DRAFT if item.get("isDraft") else ChangeRequestStatus.OPEN
        return ChangeRequest(
            branch=branch,
            base=str(item.get("baseRefName") or ""),
            title=str(item.get("title") or ""),
            status=status,
            url=item.get("url"),
            number=item.get("number"),
            existing=True,
        )

    def create(
        self,
        *,
        branch: str,
        base: str,
        title: str,
        body: str,
        reviewers: Sequence[str] = (),
    ) -> ChangeRequest:
        args = ["pr", "create", "--head", branch, "--base", base, "--title", title, "--body", body]
        if reviewers:
            args.extend(["--reviewer", ",".join(reviewers)])
        output = self._gh(*args)
        url = next((line.strip() for line in reversed(output.splitlines()) if line.strip()), None)
        match = _PR_NUMBER_RE.search(url or "")
        logger.info("Opened pull request {}", url)
        return ChangeRequest(
            branch=branch,
            base=base,
            title=title,
            body=body,
            status=ChangeRequestStatus.OPEN,
            url=url,
            number=int(match.group(1)) if match else None,
        )

    def _ref(self, change_request: ChangeRequest) -> str:
        if change_request.number is not None:
            return str(change_request.number)
        return change_request.url or change_request.branch

    def check_states(self, change_request: ChangeRequest) -> list[str]:
        result = run_command(
            ["gh", "pr", "checks", self._ref(change_request), "--json", "state"],
            cwd=self.repo_dir,
            timeout=self.timeout,
            cancel=self.cancel,
        )
        # gh exits non-zero while checks are pending but still prints the JSON.
        text = result.stdout.strip()
        if text.startswith("["):
            return [str(item.get("state") or "").upper() for item in json.loads(text)]
        if "no checks reported" in result.output:
            return []
        result.check()
        return []

    def review_decision(self, change_request: ChangeRequest) -> str:
        data = self._gh_json("pr", "view", self._ref(change_request), "--json", "reviewDecision") or {}
        return str(data.get("reviewDecision") or "").upper()

    def merge(self, change_request: ChangeRequest) -> None:
        self._gh("pr", "merge", self._ref(change_request), "--squash", "--delete-branch")
