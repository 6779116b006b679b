"""
Unit tests for the SQLite-backed key-value environment.

Tests for:
- Open/close lifecycle and on-disk layout
- Transactions: commit, rollback, read-only guard
- Prefix scans, counts and deletes
- Two handles on one environment
- Cancellation of queued and running work
"""

import sqlite3
import threading

import pytest

from vector.core.cancellation import CancellationToken
from vector.core.exceptions import OperationCancelledError, StorageIOError
from vector.kv import DATA_FILE_NAME, KVEnvironment, prefix_upper_bound


@pytest.fixture
def env(tmp_path):
    environment = KVEnvironment.open(tmp_path / "messages.db", busy_timeout_seconds=1.0)
    yield environment
    environment.close()


class TestPrefixUpperBound:
    """Tests for prefix_upper_bound."""

    def test_bumps_last_character(self):
        """Test the bound follows every key with the prefix."""
        assert prefix_upper_bound("msg:") == "msg;"
        assert "msg:zzzz" < prefix_upper_bound("msg:")
        assert "msh" >= prefix_upper_bound("msg:")


class TestLifecycle:
    """Tests for opening and closing environments."""

    def test_open_creates_directory_and_file(self, tmp_path):
        """Test the environment directory holds the data file."""
        path = tmp_path / "chat" / "messages.db"

        with KVEnvironment.open(path) as environment:
            assert path.is_dir()
            assert environment.data_file == path / DATA_FILE_NAME
            assert environment.data_file.exists()
            assert not environment.closed

        assert environment.closed

    def test_close_is_idempotent(self, env):
        """Test closing twice is a no-op."""
        env.close()
        env.close()

        assert env.closed

    def test_use_after_close_raises(self, env):
        """Test operations on a closed handle raise StorageIOError."""
        env.close()

        with pytest.raises(StorageIOError, match="closed"):
            env.get("msg:1")

    def test_data_survives_reopen(self, tmp_path):
        """Test committed data is durable across handles."""
        path = tmp_path / "messages.db"
        with KVEnvironment.open(path) as first:
            first.put("msg:1", '{"id": "1"}')

        with KVEnvironment.open(path) as second:
            assert second.get("msg:1") == b'{"id": "1"}'

    def test_open_fails_when_path_is_a_file(self, tmp_path):
        """Test an unusable path raises StorageIOError."""
        blocker = tmp_path / "messages.db"
        blocker.write_text("not a directory")

        with pytest.raises(StorageIOError):
            KVEnvironment.open(blocker)


class TestTransactions:
    """Tests for begin()."""

    def test_put_get_overwrite(self, env):
        """Test put upserts by key."""
        env.put("doc:a", "one")
        env.put("doc:a", "two")

        assert env.get("doc:a") == b"two"
        assert env.get("doc:missing") is None

    def test_commit_on_success(self, env):
        """Test several writes in one transaction all land."""
        with env.begin(write=True) as txn:
            txn.put("msg:1", "a")
            txn.put("msg:2", "b")

        assert env.scan("msg:") == [("msg:1", b"a"), ("msg:2", b"b")]

    def test_rollback_on_error(self, env):
        """Test an exception inside the block discards its writes."""
        env.put("msg:1", "original")

        with pytest.raises(RuntimeError):
            with env.begin(write=True) as txn:
                txn.put("msg:1", "changed")
                txn.put("msg:2", "new")
                raise RuntimeError("boom")

        assert env.get("msg:1") == b"original"
        assert env.get("msg:2") is None

    def test_read_only_transaction_rejects_writes(self, env):
        """Test put inside a read transaction raises."""
        with pytest.raises(StorageIOError, match="read-only"):
            with env.begin() as txn:
                txn.put("msg:1", "x")

    def test_delete(self, env):
        """Test delete reports whether the key existed."""
        env.put("profile_fact:c:name", "x")

        with env.begin(write=True) as txn:
            assert txn.delete("profile_fact:c:name") is True
            assert txn.delete("profile_fact:c:name") is False


class TestScans:
    """Tests for prefix scans."""

    def test_scan_is_prefix_bounded_and_ordered(self, env):
        """Test scan returns only matching keys, in key order."""
        for key in ("msg:b", "doc:1", "msg:a", "msh:z", "chunk:1", "msg:c"):
            env.put(key, key.upper())

        assert [k for k, _ in env.scan("msg:")] == ["msg:a", "msg:b", "msg:c"]

    def test_count(self, env):
        """Test count only includes the prefix."""
        env.put("doc:1", "a")
        env.put("doc:2", "b")
        env.put("docs", "not a doc")

        with env.begin() as txn:
            assert txn.count("doc:") == 2

    def test_delete_prefix(self, env):
        """Test delete_prefix removes exactly the matching keys."""
        env.put("profile_fact:c1:a", "1")
        env.put("profile_fact:c1:b", "2")
        env.put("profile_fact:c2:a", "3")

        with env.begin(write=True) as txn:
            assert txn.delete_prefix("profile_fact:c1:") == 2

        assert [k for k, _ in env.scan("profile_fact:")] == ["profile_fact:c2:a"]

    def test_iter_prefix_can_stop_early(self, env):
        """Test iter_prefix streams rows and can be abandoned."""
        for n in range(5):
            env.put(f"doc:{n}", str(n))

        with env.begin() as txn:
            rows = txn.iter_prefix("doc:")
            first = next(rows)
            rows.close()

        assert first == ("doc:0", b"0")

    def test_invalid_utf8_text_returned_as_bytes(self, env):
        """Test a TEXT value that is not UTF-8 does not fail the scan."""
        env.put("msg:1", "ok")
        conn = sqlite3.connect(str(env.data_file))
        try:
            conn.execute("INSERT INTO kv (key, value) VALUES ('msg:2', CAST(X'7BFF7D' AS TEXT))")
            conn.commit()
        finally:
            conn.close()

        assert env.scan("msg:") == [("msg:1", b"ok"), ("msg:2", b"{\xff}")]
        assert env.get("msg:2") == b"{\xff}"


class TestConcurrentHandles:
    """Tests for two handles on the same environment."""

    def test_second_handle_sees_committed_writes(self, env):
        """Test a short-lived handle writes alongside the long-lived one."""
        with KVEnvironment.open(env.path) as other:
            other.put("msg:bg", "from background")

        assert env.get("msg:bg") == b"from background"

    def test_writer_waits_for_other_handle(self, env):
        """Test a blocked writer proceeds once the other handle commits."""
        started = threading.Event()
        release = threading.Event()

        def hold_write_lock():
            with env.begin(write=True) as txn:
                txn.put("msg:1", "first")
                started.set()
                release.wait(5)

        holder = threading.Thread(target=hold_write_lock)
        holder.start()
        started.wait(5)

        with KVEnvironment.open(env.path, busy_timeout_seconds=5.0) as other:
            threading.Timer(0.2, release.set).start()
            other.put("msg:2", "second")

        holder.join()
        assert [k for k, _ in env.scan("msg:")] == ["msg:1", "msg:2"]

    def test_busy_timeout_raises_storage_error(self, env):
        """Test a writer gives up after the busy timeout."""
        started = threading.Event()
        release = threading.Event()

        def hold_write_lock():
            with env.begin(write=True) as txn:
                txn.put("msg:1", "first")
                started.set()
                release.wait(5)

        holder = threading.Thread(target=hold_write_lock)
        holder.start()
        started.wait(5)
        try:
            other = KVEnvironment.open(env.path, busy_timeout_seconds=0.2)
            try:
                with pytest.raises(StorageIOError):
                    other.put("msg:2", "second")
            finally:
                other.close()
        finally:
            release.set()
            holder.join()


class TestCancellation:
    """Tests for cancellation tokens on transactions."""

    def test_cancelled_token_fails_before_starting(self, env):
        """Test an already cancelled token never reaches SQLite."""
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelledError):
            env.put("msg:1", "x", cancel=token)
        assert env.get("msg:1") is None

    def test_deadline_cuts_busy_wait(self, env):
        """Test a deadline shorter than the busy timeout ends the wait."""
        started = threading.Event()
        release = threading.Event()

        def hold_write_lock():
            with env.begin(write=True) as txn:
                txn.put("msg:1", "first")
                started.set()
                release.wait(10)

        holder = threading.Thread(target=hold_write_lock)
        holder.start()
        started.wait(5)
        try:
            other = KVEnvironment.open(env.path, busy_timeout_seconds=30.0)
            try:
                with pytest.raises((OperationCancelledError, StorageIOError)):
                    other.put("msg:2", "second", cancel=CancellationToken.with_timeout(0.3))
            finally:
                other.close()
        finally:
            release.set()
            holder.join()

    def test_cancel_interrupts_running_statement(self, env):
        """Test a token cancelled mid-statement interrupts and rolls back."""
        token = CancellationToken()

        with pytest.raises(OperationCancelledError):
            with env.begin(write=True, cancel=token) as txn:
                txn.put("msg:1", "x")
                token.cancel("user pressed escape")
                # Long enough to hit the progress handler
                txn._conn.execute(
                    "WITH RECURSIVE n(i) AS (SELECT 1 UNION ALL SELECT i + 1 FROM n WHERE i < 5000000) "
                    "SELECT COUNT(*) FROM n"
                ).fetchone()

        assert env.get("msg:1") is None
