"""Cooperative cancellation shared by every wait in the orchestrator."""

from __future__ import annotations

import signal
import threading
from typing import Any, Optional

from loguru import logger

from .errors import Cancelled


class CancelToken:
    """A thread-safe stop flag whose waits wake up as soon as it is set."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(timeout=seconds)

    def sleep(self, seconds: float) -> None:
        """Like :meth:`wait` but raise :class:`Cancelled` when interrupted."""
        if self.wait(seconds):
            raise Cancelled(self._reason or "cancelled")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self._reason or "cancelled")


def install_signal_handlers(token: CancelToken) -> dict[int, Any]:
    """Route SIGINT/SIGTERM into ``token``.

    The first signal requests a graceful stop. A second one restores the
    previous handlers so the next signal terminates the process normally.
    Returns the previous handlers so callers can restore them.
    """
    previous: dict[int, Any] = {}

    def _handler(signum: int, _frame: Any) -> None:
        name = signal.Signals(signum).name
        if token.cancelled:
            logger.warning("Received {} again; restoring default handlers", name)
            restore_signal_handlers(previous)
            return
        logger.warning("Received {}; finishing current step and shutting down", name)
        token.cancel(f"signal {name}")

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, _handler)
        except ValueError:
            # Only the main thread may install handlers.
            logger.debug("Cannot install handler for {} outside the main thread", signum)
    return previous


def restore_signal_handlers(previous: dict[int, Any]) -> None:
    for signum, handler in previous.items():
        try:
            signal.signal(signum, handler)
        except (ValueError, TypeError):
            continue
