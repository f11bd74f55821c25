"""Cooperative cancellation primitives shared by the monitor and its workers.

Python threads cannot be killed, so long-running analyses check a
``CancellationToken`` (set once by ``Stop()``) and a per-item ``Deadline``
between blocking steps and bail out by raising.
"""

import threading
import time
from typing import Optional


class AnalysisCancelled(Exception):
    """Raised when the shared cancellation token has been triggered."""
    pass


class AnalysisTimeout(Exception):
    """Raised when a per-item deadline has passed."""
    pass


class CancellationToken:
    """One-shot cancellation flag shared from Stop() down to worker tasks."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float]) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AnalysisCancelled()


class Deadline:
    """A monotonic deadline, optionally tied to a cancellation token."""

    def __init__(self, seconds: float, token: Optional[CancellationToken] = None):
        self.expires_at = time.monotonic() + seconds
        self.token = token

    @property
    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self) -> None:
        """Raise if the token is cancelled or the deadline has passed."""
        if self.token is not None:
            self.token.raise_if_cancelled()
        if self.expired:
            raise AnalysisTimeout()
