"""
Cooperative cancellation for analysis entry points.
"""

import threading
import time
from typing import Optional

from .exceptions import OperationCancelledError


class CancellationToken:
    """
    Signal checked by long-running analysis at safe points.

    A token is cancelled explicitly via ``cancel()`` or implicitly once its
    optional deadline (seconds from creation) has passed.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = None
        if timeout_seconds is not None:
            self._deadline = time.monotonic() + timeout_seconds

    @classmethod
    def none(cls) -> "CancellationToken":
        return cls()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self):
        if self.cancelled:
            raise OperationCancelledError("Operation was cancelled")
