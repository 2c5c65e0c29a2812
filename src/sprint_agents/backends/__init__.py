"""Code-generation backends, selected once from the run configuration."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from ..constants import (
    DEFAULT_API_MODEL,
    DEFAULT_CLAUDE_COMMAND,
    DEFAULT_CLAUDE_MODEL,
    DEFAULT_CODEX_COMMAND,
    DEFAULT_CODEX_MODEL,
)
from ..errors import ConfigError
from ..models import BackendKind
from .anthropic_api import AnthropicApiBackend
from .base import CodeGenBackend
from .cli import CliBackend

if TYPE_CHECKING:
    from ..config import RunnerConfig


def _checked(backend: CliBackend) -> CliBackend:
    try:
        backend.build_argv("", Path("prompt.txt"), Path("."))
    except ValueError as exc:
        raise ConfigError(f"Invalid {backend.name} command template {backend.command!r}: {exc}") from exc
    return backend


def build_backend(config: "RunnerConfig") -> CodeGenBackend:
    """Return the single backend implementation for `config.backend`.

    Raises:
        ConfigError: Missing API key or a command template that cannot be rendered.
    """
    if config.backend is BackendKind.CLAUDE_CLI:
        backend = CliBackend(
            BackendKind.CLAUDE_CLI.value,
            config.backend_command or DEFAULT_CLAUDE_COMMAND,
            model=config.backend_model or DEFAULT_CLAUDE_MODEL,
            timeout=config.backend_timeout,
        )
        return _checked(backend)
    if config.backend is BackendKind.CODEX_CLI:
        backend = CliBackend(
            BackendKind.CODEX_CLI.value,
            config.backend_command or DEFAULT_CODEX_COMMAND,
            model=config.backend_model or DEFAULT_CODEX_MODEL,
            timeout=config.backend_timeout,
        )
        return _checked(backend)
    if config.backend is BackendKind.CLAUDE_API:
        if not config.anthropic_api_key:
            raise ConfigError("The claude-api backend requires ANTHROPIC_API_KEY")
        return AnthropicApiBackend(
            config.anthropic_api_key,
            config.backend_model or DEFAULT_API_MODEL,
            timeout=config.backend_timeout,
        )
    raise ConfigError(f"Unsupported backend: {config.backend}")


__all__ = ["AnthropicApiBackend", "CliBackend", "CodeGenBackend", "build_backend"]
