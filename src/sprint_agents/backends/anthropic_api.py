"""Call the Anthropic Messages API over httpx.

The API only returns text, so it edits nothing on disk by itself. A run
that produces no file changes is reported as a no-op by the execution
driver like any other backend.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Optional

import httpx
from loguru import logger

from ..cancellation import CancelToken
from ..constants import ANTHROPIC_MESSAGES_URL, ANTHROPIC_VERSION, DEFAULT_API_MAX_TOKENS
from ..errors import BackendError
from .base import CodeGenBackend


class AnthropicApiBackend(CodeGenBackend):
    name = "claude-api"

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        max_tokens: int = DEFAULT_API_MAX_TOKENS,
        endpoint: str = ANTHROPIC_MESSAGES_URL,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.endpoint = endpoint
        self.timeout = timeout
        self.transport = transport

    def invoke(
        self,
        prompt: str,
        *,
        workdir: Path,
        log_dir: Optional[Path] = None,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        if cancel is not None:
            cancel.raise_if_cancelled()
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        start = time.monotonic()
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.endpoint, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BackendError(
                f"Anthropic API returned {exc.response.status_code}: {exc.response.text[:500]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"Anthropic API request failed: {exc}") from exc
        body = response.json()
        text = "\n".join(
            block.get("text", "") for block in body.get("content") or [] if block.get("type") == "text"
        )
        logger.info("{} answered in {:.1f}s", self.name, time.monotonic() - start)
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            (log_dir / "prompt.txt").write_text(prompt)
            (log_dir / f"{self.name}.log").write_text(text)
        return text
