"""Task sources: where recommendations come from and where claims are arbitrated.

:class:`HttpTaskSource` talks to the backlog service's REST API.
:class:`FileTaskSource` keeps the same contract over a local YAML backlog
guarded by a file lock, which is handy for dry runs and tests.
"""

from __future__ import annotations

import os
import socket
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import httpx
from filelock import FileLock
from loguru import logger

from .constants import API_KEY_HEADER, HTTP_TIMEOUT_SECONDS
from .errors import ConfigError, TaskSourceError
from .io_utils import _load_data_with_error, _save_data
from .models import AcceptanceCriterion, Recommendation, Story, Task, TaskStatus
from .utils import _now_iso


class TaskSource(ABC):
    """Read/write view of the shared backlog."""

    @abstractmethod
    def list_recommended(self, role: str, sprint_id: Optional[str], limit: int) -> list[Recommendation]:
        """Return ranked candidate tasks for `role`, best first."""

    @abstractmethod
    def claim(self, task_id: str) -> bool:
        """Take exclusive ownership; False means another worker owns it."""

    @abstractmethod
    def release(self, task_id: str) -> None:
        """Return an owned task to Available."""

    @abstractmethod
    def start_work(self, task_id: str) -> None:
        """Move an owned task to InProgress."""

    @abstractmethod
    def mark_complete(self, task_id: str) -> None:
        ...

    @abstractmethod
    def update_status(self, task_id: str, status: TaskStatus) -> None:
        ...

    @abstractmethod
    def get_story(self, story_id: str) -> Story:
        ...

    @abstractmethod
    def get_acceptance_criteria(self, story_id: str) -> list[AcceptanceCriterion]:
        ...

    def detect_active_sprint(self) -> Optional[str]:
        return None

    def close(self) -> None:
        return None


class HttpTaskSource(TaskSource):
    """Backlog service client over httpx.

    One client is shared by every worker thread; httpx clients are
    thread-safe for concurrent requests.
    """

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        *,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers[API_KEY_HEADER] = api_key
        self._client = httpx.Client(
            base_url=api_base.rstrip("/") + "/",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TaskSourceError(f"{method} {path} failed: {exc}") from exc
        return response

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._request(method, path, **kwargs)
        self._raise_for_status(method, path, response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TaskSourceError(f"{method} {path} returned invalid JSON") from exc

    @staticmethod
    def _raise_for_status(method: str, path: str, response: httpx.Response) -> None:
        if response.is_success:
            return
        if response.status_code in (401, 403):
            raise TaskSourceError(
                f"{method} {path}: authentication failed ({response.status_code})",
                status_code=response.status_code,
            )
        raise TaskSourceError(
            f"{method} {path}: HTTP {response.status_code} {response.text[:300]}",
            status_code=response.status_code,
        )

    def list_recommended(self, role: str, sprint_id: Optional[str], limit: int) -> list[Recommendation]:
        params: dict[str, Any] = {"role": role, "exclude_mine": "false", "limit": limit}
        if sprint_id:
            params["sprint_id"] = sprint_id
        payload = self._json("GET", "tasks/recommended", params=params) or []
        if isinstance(payload, dict):
            payload = payload.get("recommendations") or payload.get("items") or []
        return [Recommendation.from_dict(item) for item in payload if isinstance(item, dict)]

    def claim(self, task_id: str) -> bool:
        path = f"tasks/{task_id}/ownership"
        response = self._request("PUT", path)
        if response.status_code == 409:
            return False
        self._raise_for_status("PUT", path, response)
        return True

    def release(self, task_id: str) -> None:
        self._json("DELETE", f"tasks/{task_id}/ownership")

    def start_work(self, task_id: str) -> None:
        self._json("POST", f"tasks/{task_id}/work/start")

    def mark_complete(self, task_id: str) -> None:
        self._json("POST", f"tasks/{task_id}/work/complete")

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        self._json("PATCH", f"tasks/{task_id}/status", json={"status": status.value})

    def get_story(self, story_id: str) -> Story:
        payload = self._json("GET", f"stories/{story_id}") or {}
        return Story.from_dict({"id": story_id, **payload})

    def get_acceptance_criteria(self, story_id: str) -> list[AcceptanceCriterion]:
        payload = self._json("GET", f"stories/{story_id}/acceptance-criteria") or []
        return [AcceptanceCriterion.from_dict(item) for item in payload if isinstance(item, dict)]

    def detect_active_sprint(self) -> Optional[str]:
        """Use the first team's active sprint."""
        teams = self._json("GET", "teams") or []
        if not teams:
            logger.warning("No teams visible to this API key; cannot detect a sprint")
            return None
        team_id = teams[0].get("id")
        path = f"teams/{team_id}/sprints/active"
        response = self._request("GET", path)
        if response.status_code == 404:
            return None
        self._raise_for_status("GET", path, response)
        sprint = response.json() if response.content else None
        if isinstance(sprint, list):
            sprint = sprint[0] if len(sprint) == 1 else None
        if not isinstance(sprint, dict) or not sprint.get("id"):
            return None
        logger.info("Detected active sprint {} ({}) for team {}", sprint["id"], sprint.get("name", ""), team_id)
        return str(sprint["id"])

    def close(self) -> None:
        self._client.close()


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class FileTaskSource(TaskSource):
    """YAML backlog with claims arbitrated by an exclusive file lock.

    Layout::

        sprints: [{id, name, status}]
        stories: [{id, title, description, acceptance_criteria: [{id, given, when, then}]}]
        tasks:   [{id, title, description, role, story_id, sprint_id, status, owner, score, reason}]
    """

    def __init__(self, path: Path, owner_id: Optional[str] = None, lock_timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.owner_id = owner_id or _default_owner()
        self._lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)

    def _load(self) -> dict[str, Any]:
        data, err = _load_data_with_error(self.path, {})
        if err:
            raise TaskSourceError(f"Cannot read backlog: {err}")
        data.setdefault("tasks", [])
        data.setdefault("stories", [])
        data.setdefault("sprints", [])
        return data

    @staticmethod
    def _find_task(data: dict[str, Any], task_id: str) -> dict[str, Any]:
        for item in data["tasks"]:
            if str(item.get("id")) == str(task_id):
                return item
        raise TaskSourceError(f"Unknown task {task_id}", status_code=404)

    def _mutate_task(self, task_id: str, **changes: Any) -> None:
        with self._lock:
            data = self._load()
            entry = self._find_task(data, task_id)
            entry.update(changes)
            entry["updated_at"] = _now_iso()
            _save_data(self.path, data)

    def list_recommended(self, role: str, sprint_id: Optional[str], limit: int) -> list[Recommendation]:
        with self._lock:
            data = self._load()
        candidates = []
        for item in data["tasks"]:
            status = str(item.get("status") or TaskStatus.AVAILABLE.value).lower()
            if status != TaskStatus.AVAILABLE.value:
                continue
            if item.get("role") and item.get("role") != role:
                continue
            if sprint_id and item.get("sprint_id") and str(item.get("sprint_id")) != str(sprint_id):
                continue
            candidates.append(Recommendation.from_dict({"task": item, "score": item.get("score"), "reason": item.get("reason")}))
        candidates.sort(key=lambda rec: rec.score, reverse=True)
        return candidates[:limit]

    def claim(self, task_id: str) -> bool:
        with self._lock:
            data = self._load()
            entry = self._find_task(data, task_id)
            status = str(entry.get("status") or TaskStatus.AVAILABLE.value).lower()
            if status != TaskStatus.AVAILABLE.value:
                return False
            entry["status"] = TaskStatus.OWNED.value
            entry["owner"] = self.owner_id
            entry["updated_at"] = _now_iso()
            _save_data(self.path, data)
            return True

    def release(self, task_id: str) -> None:
        self._mutate_task(task_id, status=TaskStatus.AVAILABLE.value, owner=None)

    def start_work(self, task_id: str) -> None:
        self._mutate_task(task_id, status=TaskStatus.IN_PROGRESS.value)

    def mark_complete(self, task_id: str) -> None:
        self._mutate_task(task_id, status=TaskStatus.COMPLETED.value)

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        self._mutate_task(task_id, status=status.value)

    def _story_entry(self, story_id: str) -> dict[str, Any]:
        with self._lock:
            data = self._load()
        for item in data["stories"]:
            if str(item.get("id")) == str(story_id):
                return item
        raise TaskSourceError(f"Unknown story {story_id}", status_code=404)

    def get_story(self, story_id: str) -> Story:
        return Story.from_dict(self._story_entry(story_id))

    def get_acceptance_criteria(self, story_id: str) -> list[AcceptanceCriterion]:
        entry = self._story_entry(story_id)
        return [AcceptanceCriterion.from_dict(item) for item in entry.get("acceptance_criteria") or []]

    def detect_active_sprint(self) -> Optional[str]:
        with self._lock:
            data = self._load()
        active = [s for s in data["sprints"] if str(s.get("status", "")).lower() == "active"]
        if len(active) == 1:
            return str(active[0]["id"])
        if len(active) > 1:
            raise ConfigError("Several active sprints in the backlog file; pass --sprint-id")
        return None


def build_task_source(config: Any) -> TaskSource:
    """Pick the file-backed source when a backlog file is configured, else HTTP."""
    if config.backlog_file is not None:
        return FileTaskSource(config.backlog_file)
    return HttpTaskSource(config.api_base, config.api_key)
