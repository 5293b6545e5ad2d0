"""
Cooperative cancellation for step execution.
"""

import threading
import time
from typing import Optional

from ..exceptions import ExecutionCancelled


class CancellationToken:
    """
    Cancellation signal with an optional deadline.

    Checked between sequential steps, handed to every action call and used
    for retry sleeps so a cancel interrupts them.
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional['CancellationToken'] = None):
        """
        Args:
            timeout: Seconds until the token expires (None or 0 = no deadline)
            parent: Token whose cancellation also cancels this one
        """
        self._event = threading.Event()
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout else None
        if parent is not None and parent._deadline is not None:
            if self._deadline is None or parent._deadline < self._deadline:
                self._deadline = parent._deadline
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            self.cancel(self._parent.reason)
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, returning early on cancellation.

        Returns:
            True if the full duration elapsed, False if cancelled
        """
        end = time.monotonic() + max(0.0, seconds)
        while not self.cancelled:
            left = end - time.monotonic()
            if left <= 0:
                return True
            remaining = self.remaining()
            if remaining is not None:
                left = min(left, remaining)
            # Short slices so a parent cancel is noticed
            self._event.wait(min(left, 0.05))
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExecutionCancelled(f"execution cancelled: {self.reason}")

    def child(self, timeout: Optional[float] = None) -> 'CancellationToken':
        """Derived token cancelled with this one, optionally with a shorter deadline."""
        return CancellationToken(timeout=timeout, parent=self)
