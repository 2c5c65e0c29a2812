"""Provide the public `sprint_agents` package exports."""

from __future__ import annotations

from .config import RunnerConfig, resolve_config
from .scheduler import Scheduler

__all__ = ["RunnerConfig", "Scheduler", "resolve_config"]
