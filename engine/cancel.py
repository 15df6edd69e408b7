from __future__ import annotations
import threading


class CancelToken:
    """
    Shared cancellation flag for one run.

    Cancelling never interrupts a request already on the wire; callers check
    is_cancelled() before starting work and after each attempt settles.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self.is_cancelled()})"
