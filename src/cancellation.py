"""
Cancellation token threaded through every blocking wait of a migration run.
"""

import logging
import threading
from typing import Optional

from errors import MigrationCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation for readiness polls, observation periods,
    backoff and cooldown waits, and rate-limiter slots.

    `sleep()` returns early and raises MigrationCancelled as soon as
    `cancel()` is called from another thread (e.g. a signal handler).
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._parent = parent
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.warning(f"Cancellation requested: {reason}")
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            reason = self.reason
            if reason is None and self._parent is not None:
                reason = self._parent.reason
            raise MigrationCancelled(reason or "cancelled")

    def sleep(self, seconds: float) -> None:
        """Wait up to `seconds`, raising MigrationCancelled if cancelled meanwhile."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        if self._parent is None:
            self._event.wait(seconds)
        else:
            # Poll so a parent cancel also interrupts a child wait
            remaining = seconds
            while remaining > 0 and not self.cancelled:
                chunk = min(remaining, 0.5)
                self._event.wait(chunk)
                remaining -= chunk
        self.raise_if_cancelled()

    def child(self) -> "CancellationToken":
        """Token cancelled together with this one, but cancellable on its own."""
        return CancellationToken(parent=self)
