"""Optimistic task claiming against the task source."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from loguru import logger

from .errors import TaskSourceError
from .models import Recommendation
from .task_source import TaskSource


class ClaimStatus(str, Enum):
    OWNED = "owned"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class ClaimOutcome:
    task_id: str
    status: ClaimStatus

    @property
    def owned(self) -> bool:
        return self.status is ClaimStatus.OWNED


class ClaimManager:
    """Claim and release tasks; a conflict is a normal answer, not an error.

    Ownership is only ever assumed after the task source confirms it.
    """

    def __init__(self, source: TaskSource) -> None:
        self.source = source

    def claim(self, task_id: str) -> ClaimOutcome:
        if self.source.claim(task_id):
            logger.info("Claimed task {}", task_id)
            return ClaimOutcome(task_id, ClaimStatus.OWNED)
        logger.debug("Task {} already owned by another worker", task_id)
        return ClaimOutcome(task_id, ClaimStatus.CONFLICT)

    def claim_first(
        self,
        candidates: Iterable[Recommendation],
        skip: Optional[set[str]] = None,
    ) -> Optional[Recommendation]:
        """Claim the best candidate not in `skip`, falling through on conflicts."""
        skip = skip or set()
        for candidate in candidates:
            if candidate.task.id in skip:
                continue
            if self.claim(candidate.task.id).owned:
                return candidate
        return None

    def release(self, task_id: str) -> bool:
        """Best-effort release so other workers can retry the task."""
        try:
            self.source.release(task_id)
        except TaskSourceError as exc:
            logger.error("Failed to release task {}: {}", task_id, exc)
            return False
        logger.info("Released task {} back to the pool", task_id)
        return True
