"""Define the code-generation backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..cancellation import CancelToken


class CodeGenBackend(ABC):
    """Turn a prompt into edits inside `workdir` and return its text output.

    Nothing about the returned text is trusted; callers diff the working
    tree to find out what actually happened.
    """

    name: str = "backend"

    @abstractmethod
    def invoke(
        self,
        prompt: str,
        *,
        workdir: Path,
        log_dir: Optional[Path] = None,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        """Run the backend once.

        Raises:
            BackendError: The backend failed or timed out.
            Cancelled: `cancel` fired while the backend was running.
        """
