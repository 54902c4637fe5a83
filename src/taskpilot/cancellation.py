from __future__ import annotations

import threading


class TaskCancelled(Exception):
    """Raised when a cancel token fires while work is in flight."""


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        self.reason = reason or "cancelled"
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelled(self.reason or "cancelled")

    def wait(self, timeout_s: float) -> bool:
        """Sleep up to *timeout_s*; return True if cancelled meanwhile."""
        return self._event.wait(timeout_s)


def ensure_token(cancel: CancelToken | None) -> CancelToken:
    return cancel if cancel is not None else CancelToken()
