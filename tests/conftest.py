"""Shared fixtures: throwaway git repositories, a scripted backend and a change-request host."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from sprint_agents.backends.base import CodeGenBackend
from sprint_agents.cancellation import CancelToken
from sprint_agents.change_requests import ChangeRequestHost
from sprint_agents.models import ChangeRequest

Action = Callable[[Path], None]


def run_git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout


@pytest.fixture(autouse=True)
def _git_identity(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@test.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@test.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    path = tmp_path / "origin.git"
    run_git(tmp_path, "init", "--bare", "-b", "main", str(path))
    return path


@pytest.fixture
def repo(tmp_path: Path, origin: Path) -> Path:
    """A checkout on `main` with one commit, tracking the bare `origin`."""
    path = tmp_path / "repo"
    path.mkdir()
    run_git(path, "init", "-b", "main")
    run_git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# init\n")
    run_git(path, "add", "-A")
    run_git(path, "commit", "-m", "initial")
    run_git(path, "remote", "add", "origin", str(origin))
    run_git(path, "push", "-u", "origin", "main")
    return path


def write_file(name: str, content: str = "changed\n") -> Action:
    def _action(workdir: Path) -> None:
        target = workdir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)

    return _action


class FakeBackend(CodeGenBackend):
    """Pops one scripted action per invocation; with none left it does nothing."""

    name = "fake"

    def __init__(self, actions: Optional[list[Optional[Action]]] = None) -> None:
        self.actions: list[Optional[Action]] = list(actions or [])
        self.prompts: list[str] = []

    def invoke(
        self,
        prompt: str,
        *,
        workdir: Path,
        log_dir: Optional[Path] = None,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        self.prompts.append(prompt)
        if self.actions:
            action = self.actions.pop(0)
            if action is not None:
                action(workdir)
        return "done"


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


class FakeHost(ChangeRequestHost):
    """Change-request host double; the last scripted check/decision repeats forever."""

    def __init__(
        self,
        existing: Optional[ChangeRequest] = None,
        checks: Optional[list[list[str]]] = None,
        decisions: Optional[list[str]] = None,
    ) -> None:
        self.existing = existing
        self.checks = checks or [["SUCCESS"]]
        self.decisions = decisions or ["APPROVED"]
        self.created: list[ChangeRequest] = []
        self.merged: list[ChangeRequest] = []

    def find_open(self, branch: str) -> Optional[ChangeRequest]:
        if self.existing is not None and self.existing.branch == branch:
            return self.existing
        return None

    def create(self, *, branch: str, base: str, title: str, body: str, reviewers: Sequence[str] = ()) -> ChangeRequest:
        number = len(self.created) + 1
        cr = ChangeRequest(
            branch=branch,
            base=base,
            title=title,
            body=body,
            url=f"https://example.test/pull/{number}",
            number=number,
        )
        self.created.append(cr)
        return cr

    def check_states(self, change_request: ChangeRequest) -> list[str]:
        return self.checks.pop(0) if len(self.checks) > 1 else self.checks[0]

    def review_decision(self, change_request: ChangeRequest) -> str:
        return self.decisions.pop(0) if len(self.decisions) > 1 else self.decisions[0]

    def merge(self, change_request: ChangeRequest) -> None:
        self.merged.append(change_request)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()
