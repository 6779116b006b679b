"""
Cancellation tokens for blocking storage calls.

A token is shared between the caller and the storage layer. The caller may
cancel it from any thread, or give it a deadline up front; the store checks
it while waiting for locks and from inside running SQLite statements.
"""

import threading
import time
from typing import Optional

from .exceptions import OperationCancelledError


class CancellationToken:
    """
    Thread-safe cancellation signal with an optional deadline.
    
    Example:
        >>> token = CancellationToken.with_timeout(2.0)
        >>> store.get_messages(cancel=token)
    """
    
    def __init__(self, deadline: Optional[float] = None):
        """
        Initialize the token.
        
        Args:
            deadline: Absolute ``time.monotonic()`` value after which the
                token counts as cancelled (None = no deadline)
        """
        self._event = threading.Event()
        self._deadline = deadline
        self._reason: Optional[str] = None
    
    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        """Create a token that expires ``seconds`` from now."""
        return cls(deadline=time.monotonic() + seconds)
    
    def cancel(self, reason: str = "operation cancelled") -> None:
        """Signal cancellation. Safe to call more than once."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
    
    @property
    def cancelled(self) -> bool:
        """True once cancelled explicitly or past the deadline."""
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline
    
    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, 0 if cancelled, None if unbounded."""
        if self._event.is_set():
            return 0.0
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())
    
    def wait(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds; returns True if cancelled."""
        remaining = self.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled
    
    def raise_if_cancelled(self, operation: str = None) -> None:
        """Raise OperationCancelledError if the token has fired."""
        if not self.cancelled:
            return
        if self._event.is_set():
            reason = self._reason or "operation cancelled"
        else:
            reason = "deadline exceeded"
        if operation:
            reason = f"{operation}: {reason}"
        raise OperationCancelledError(reason)


def check_cancelled(token: Optional[CancellationToken], operation: str = None) -> None:
    """Raise if ``token`` is set and has fired; no-op for None."""
    if token is not None:
        token.raise_if_cancelled(operation)
