from __future__ import annotations

import threading

from .errors import OperationCancelledError


class CancelToken:
    """
    Cooperative cancellation signal shared between a caller and worker threads.

    Workers check it before starting new network calls; backoff sleeps wait on it
    so a cancel wakes them immediately.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if cancelled meanwhile."""
        return self._event.wait(timeout=max(0.0, seconds))

    def raise_if_cancelled(self, op: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelledError(f"{op} cancelled")


def ensure_token(cancel: CancelToken | None) -> CancelToken:
    return cancel if cancel is not None else CancelToken()
