"""Cooperative cancellation for long-running density map tasks."""

import threading
from typing import Optional

from densitymaps.errors import Cancelled


class CancellationToken:
    """
    Flag checked by builds, min/max scans and hotspot searches.

    Cancellation is cooperative: work stops at the next check, never by
    killing a thread.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Task was cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout``; returns True if cancelled."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """Raise Cancelled if ``token`` is set (None never cancels)."""
    if token is not None:
        token.raise_if_cancelled()
