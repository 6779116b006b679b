"""
Reader/writer lock used by the store and the ANN index.

Shared holders may overlap each other; an exclusive holder excludes
everyone. Waiting writers block new readers so lifecycle changes are not
starved by a steady stream of searches.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .cancellation import CancellationToken, check_cancelled

# Poll interval while waiting with a cancellation token
_WAIT_SLICE_SECONDS = 0.05


class ReadWriteLock:
    """Writer-preferring reader/writer lock (not reentrant)."""
    
    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0
    
    def _wait(self, cancel: Optional[CancellationToken], operation: str) -> None:
        if cancel is None:
            self._cond.wait()
            return
        check_cancelled(cancel, operation)
        remaining = cancel.remaining()
        timeout = _WAIT_SLICE_SECONDS if remaining is None else min(_WAIT_SLICE_SECONDS, remaining)
        self._cond.wait(timeout)
        check_cancelled(cancel, operation)
    
    def acquire_read(self, cancel: Optional[CancellationToken] = None) -> None:
        check_cancelled(cancel, "acquire shared lock")
        with self._cond:
            while self._writer or self._writers_waiting:
                self._wait(cancel, "acquire shared lock")
            self._readers += 1
    
    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()
    
    def acquire_write(self, cancel: Optional[CancellationToken] = None) -> None:
        check_cancelled(cancel, "acquire exclusive lock")
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._wait(cancel, "acquire exclusive lock")
            except BaseException:
                # Readers parked behind this writer must re-check
                self._writers_waiting -= 1
                self._cond.notify_all()
                raise
            self._writers_waiting -= 1
            self._writer = True
    
    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()
    
    @contextmanager
    def read_locked(self, cancel: Optional[CancellationToken] = None) -> Iterator[None]:
        """Hold the lock in shared mode for the duration of the block."""
        self.acquire_read(cancel)
        try:
            yield
        finally:
            self.release_read()
    
    @contextmanager
    def write_locked(self, cancel: Optional[CancellationToken] = None) -> Iterator[None]:
        """Hold the lock exclusively for the duration of the block."""
        self.acquire_write(cancel)
        try:
            yield
        finally:
            self.release_write()
