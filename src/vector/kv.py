"""
Embedded key-value environment backed by SQLite.

Each chat owns one environment directory (``<chat>/messages.db/``) holding a
WAL-mode SQLite file with a single ``kv`` table of string keys and JSON
values. Values are read back as raw bytes; decoding them is left to the
caller so that one undecodable row does not fail a whole scan. Keys are type-prefixed (``msg:``, ``doc:``, ``chunk:``, ``profile:``
...) and prefix scans return entries in key order.

Several handles may target the same environment (the active chat plus a
short-lived background writer). SQLite's file locking serializes their
writers; a handle that cannot get the lock within the busy timeout fails
with StorageIOError instead of corrupting data.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from .core.cancellation import CancellationToken
from .core.exceptions import OperationCancelledError, StorageIOError


logger = logging.getLogger(__name__)

DATA_FILE_NAME = "data.sqlite"

# SQLite VM instructions between cancellation checks
_PROGRESS_INTERVAL = 1000

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL
) WITHOUT ROWID
"""


def _to_blob(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def prefix_upper_bound(prefix: str) -> str:
    """Smallest string greater than every string starting with ``prefix``."""
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


class KVTransaction:
    """Operations available inside ``KVEnvironment.begin``."""

    def __init__(self, conn: sqlite3.Connection, writable: bool):
        self._conn = conn
        self.writable = writable

    def get(self, key: str) -> Optional[bytes]:
        row = self._conn.execute("SELECT CAST(value AS BLOB) FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def put(self, key: str, value: Union[str, bytes]) -> None:
        self._require_writable()
        self._conn.execute(
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, _to_blob(value)),
        )

    def delete(self, key: str) -> bool:
        self._require_writable()
        cursor = self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def delete_prefix(self, prefix: str) -> int:
        self._require_writable()
        cursor = self._conn.execute(
            "DELETE FROM kv WHERE key >= ? AND key < ?",
            (prefix, prefix_upper_bound(prefix)),
        )
        return cursor.rowcount

    def scan(self, prefix: str) -> List[Tuple[str, bytes]]:
        """All (key, value) pairs whose key starts with ``prefix``, in key order."""
        return self._conn.execute(
            "SELECT key, CAST(value AS BLOB) FROM kv WHERE key >= ? AND key < ? ORDER BY key",
            (prefix, prefix_upper_bound(prefix)),
        ).fetchall()

    def iter_prefix(self, prefix: str) -> Iterator[Tuple[str, bytes]]:
        """Like ``scan`` but streams rows, so callers can stop early."""
        cursor = self._conn.execute(
            "SELECT key, CAST(value AS BLOB) FROM kv WHERE key >= ? AND key < ? ORDER BY key",
            (prefix, prefix_upper_bound(prefix)),
        )
        try:
            for row in cursor:
                yield row[0], row[1]
        finally:
            cursor.close()

    def count(self, prefix: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM kv WHERE key >= ? AND key < ?",
            (prefix, prefix_upper_bound(prefix)),
        ).fetchone()
        return int(row[0])

    def _require_writable(self) -> None:
        if not self.writable:
            raise StorageIOError("write attempted in a read-only transaction", operation="write")


class KVEnvironment:
    """
    One open handle on a chat's key-value environment.

    Statements on a handle are serialized by an internal mutex; callers
    needing atomic multi-key updates use ``begin(write=True)``.

    Example:
        >>> env = KVEnvironment.open(Path("/tmp/chat/messages.db"))
        >>> with env.begin(write=True) as txn:
        ...     txn.put("msg:1", "{}")
        >>> env.close()
    """

    def __init__(self, path: Union[str, Path], busy_timeout_seconds: float = 5.0):
        """
        Initialize (but do not open) the environment.

        Args:
            path: Environment directory
            busy_timeout_seconds: How long to wait on a lock held by another handle
        """
        self.path = Path(path)
        self.busy_timeout_seconds = busy_timeout_seconds
        self._conn: Optional[sqlite3.Connection] = None
        self._mutex = threading.Lock()

    @classmethod
    def open(
        cls,
        path: Union[str, Path],
        busy_timeout_seconds: float = 5.0,
        cancel: Optional[CancellationToken] = None,
    ) -> "KVEnvironment":
        """Create and open an environment at ``path``."""
        env = cls(path, busy_timeout_seconds=busy_timeout_seconds)
        env.connect(cancel=cancel)
        return env

    @property
    def data_file(self) -> Path:
        return self.path / DATA_FILE_NAME

    @property
    def closed(self) -> bool:
        return self._conn is None

    def connect(self, cancel: Optional[CancellationToken] = None) -> None:
        """Open the SQLite file, creating the directory and schema if needed."""
        if self._conn is not None:
            return
        if cancel is not None:
            cancel.raise_if_cancelled("open chat database")

        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(
                f"failed to create database directory {self.path}: {e}", operation="open"
            ) from e

        conn = None
        try:
            conn = sqlite3.connect(
                str(self.data_file),
                timeout=self._effective_timeout(cancel),
                isolation_level=None,
                check_same_thread=False,
            )
            self._arm(conn, cancel)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(_SCHEMA)
            self._disarm(conn)
        except sqlite3.Error as e:
            if conn is not None:
                conn.close()
            raise self._translate(e, cancel, "open chat database") from e

        self._conn = conn
        logger.debug(f"Opened key-value environment: {self.path}")

    def close(self) -> None:
        """Checkpoint the WAL and close the handle. No-op if already closed."""
        with self._mutex:
            conn = self._conn
            if conn is None:
                return
            self._conn = None
            try:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            except sqlite3.Error as e:
                logger.warning(f"WAL checkpoint failed for {self.path}: {e}")
            try:
                conn.close()
            except sqlite3.Error as e:
                raise StorageIOError(
                    f"failed to close database {self.path}: {e}", operation="close"
                ) from e
        logger.debug(f"Closed key-value environment: {self.path}")

    def __enter__(self) -> "KVEnvironment":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @contextmanager
    def begin(
        self,
        write: bool = False,
        cancel: Optional[CancellationToken] = None,
        operation: str = "transaction",
    ) -> Iterator[KVTransaction]:
        """
        Run a transaction.

        Commits when the block exits normally and rolls back on any
        exception. A cancellation token aborts the wait for the lock and any
        statement in flight.

        Args:
            write: Take the write lock up front (BEGIN IMMEDIATE)
            cancel: Optional cancellation token
            operation: Name used in error messages
        """
        self._acquire_mutex(cancel, operation)
        try:
            conn = self._conn
            if conn is None:
                raise StorageIOError(f"{operation}: database is closed", operation=operation)

            try:
                self._arm(conn, cancel)
                conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            except sqlite3.Error as e:
                self._disarm(conn)
                raise self._translate(e, cancel, operation) from e

            try:
                yield KVTransaction(conn, writable=write)
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._disarm(conn)
                self._rollback(conn)
                raise self._translate(e, cancel, operation) from e
            except BaseException:
                self._disarm(conn)
                self._rollback(conn)
                raise
            finally:
                self._disarm(conn)
        finally:
            self._mutex.release()

    # =========================================================================
    # Convenience single-statement operations
    # =========================================================================

    def get(self, key: str, cancel: Optional[CancellationToken] = None) -> Optional[bytes]:
        with self.begin(cancel=cancel, operation=f"get {key}") as txn:
            return txn.get(key)

    def put(self, key: str, value: Union[str, bytes], cancel: Optional[CancellationToken] = None) -> None:
        with self.begin(write=True, cancel=cancel, operation=f"put {key}") as txn:
            txn.put(key, value)

    def scan(self, prefix: str, cancel: Optional[CancellationToken] = None) -> List[Tuple[str, bytes]]:
        with self.begin(cancel=cancel, operation=f"scan {prefix}") as txn:
            return txn.scan(prefix)

    # =========================================================================
    # Internals
    # =========================================================================

    def _effective_timeout(self, cancel: Optional[CancellationToken]) -> float:
        timeout = self.busy_timeout_seconds
        if cancel is not None:
            remaining = cancel.remaining()
            if remaining is not None:
                timeout = min(timeout, remaining)
        return timeout

    def _acquire_mutex(self, cancel: Optional[CancellationToken], operation: str) -> None:
        if cancel is None:
            self._mutex.acquire()
            return
        while not self._mutex.acquire(timeout=0.05):
            cancel.raise_if_cancelled(operation)
        if cancel.cancelled:
            self._mutex.release()
            cancel.raise_if_cancelled(operation)

    def _arm(self, conn: sqlite3.Connection, cancel: Optional[CancellationToken]) -> None:
        conn.execute(f"PRAGMA busy_timeout = {int(self._effective_timeout(cancel) * 1000)}")
        if cancel is not None:
            conn.set_progress_handler(lambda: 1 if cancel.cancelled else 0, _PROGRESS_INTERVAL)

    def _disarm(self, conn: sqlite3.Connection) -> None:
        conn.set_progress_handler(None, 0)

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"Rollback failed for {self.path}: {e}")

    def _translate(
        self,
        error: sqlite3.Error,
        cancel: Optional[CancellationToken],
        operation: str,
    ) -> Exception:
        if cancel is not None and cancel.cancelled:
            return OperationCancelledError(f"{operation}: cancelled ({error})")
        message = str(error)
        if "locked" in message or "busy" in message:
            return StorageIOError(
                f"{operation}: database {self.path} is locked by another handle ({message})",
                operation=operation,
            )
        return StorageIOError(f"{operation}: {message}", operation=operation)
