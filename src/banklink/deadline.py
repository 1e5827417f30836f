"""Request deadlines and cooperative cancellation.

A ``Deadline`` travels from the inbound request down to every adapter call and
retry sleep. It combines an optional absolute expiry with a cancellation event
that another thread (for example a disconnect handler) can set.
"""

import threading
import time
from collections.abc import Callable

from .errors import OperationCancelled


class Deadline:
    """Absolute expiry plus a cancel flag, measured on a monotonic clock."""

    def __init__(
        self,
        timeout: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._expires_at = None if timeout is None else clock() + timeout
        self._cancelled = threading.Event()

    @classmethod
    def none(cls) -> "Deadline":
        """A deadline that never expires (still cancellable)."""
        return cls(None)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        """Seconds left, ``None`` when unbounded, never negative."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        """Raise ``OperationCancelled`` if cancelled or expired."""
        if self.cancelled:
            raise OperationCancelled("Operation cancelled by caller")
        if self.expired:
            raise OperationCancelled("Operation deadline exceeded")

    def bound(self, timeout: float | None) -> float | None:
        """Clamp a per-call timeout to what is left of the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            OperationCancelled: If cancelled while waiting, or if the remaining
                budget cannot cover the requested sleep.
        """
        self.check()
        remaining = self.remaining()
        if remaining is not None and seconds > remaining:
            raise OperationCancelled(
                f"Deadline leaves {remaining:.2f}s, cannot wait {seconds:.2f}s"
            )
        if self._cancelled.wait(seconds):
            raise OperationCancelled("Operation cancelled by caller")
