"""
Unit tests for the per-database run lock (dumpkeeper/backup/locking.py).
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from freezegun import freeze_time

from dumpkeeper.backup.errors import LockContentionError
from dumpkeeper.backup.locking import RunLock


class TestRunLock:
    """Test acquisition, contention and stale lease takeover."""

    def test_acquire_and_release(self, tmp_path):
        lock = RunLock(str(tmp_path), 'orders')

        with lock:
            lease = json.loads(lock.path.read_text())
            assert lease['database'] == 'orders'
            assert lease['token'] == lock.token

        assert not lock.path.exists()

    def test_contention(self, tmp_path):
        """Test a second run for the same database is rejected while the first holds the lease."""
        with RunLock(str(tmp_path), 'orders'):
            with pytest.raises(LockContentionError) as exc_info:
                RunLock(str(tmp_path), 'orders').acquire()

        assert 'in progress' in exc_info.value.message
        assert exc_info.value.details['pid'] is not None

    def test_different_databases_do_not_contend(self, tmp_path):
        with RunLock(str(tmp_path), 'orders'):
            with RunLock(str(tmp_path), 'users') as other:
                assert other.token is not None

    def test_released_lock_can_be_reacquired(self, tmp_path):
        with RunLock(str(tmp_path), 'orders'):
            pass

        with RunLock(str(tmp_path), 'orders') as lock:
            assert lock.path.exists()

    def test_stale_lease_is_taken_over(self, tmp_path):
        """Test a lease left behind by a crashed run is broken once expired."""
        with freeze_time('2024-01-15 02:00:00'):
            crashed = RunLock(str(tmp_path), 'orders', lease=timedelta(hours=1))
            crashed.acquire()

        with freeze_time('2024-01-15 03:30:00'):
            with RunLock(str(tmp_path), 'orders') as lock:
                lease = json.loads(lock.path.read_text())
                assert lease['token'] == lock.token
                assert lease['token'] != crashed.token

        assert list(tmp_path.glob('*.stale-*')) == []

    def test_unexpired_lease_is_respected(self, tmp_path):
        with freeze_time('2024-01-15 02:00:00'):
            RunLock(str(tmp_path), 'orders', lease=timedelta(hours=1)).acquire()

        with freeze_time('2024-01-15 02:30:00'):
            with pytest.raises(LockContentionError):
                RunLock(str(tmp_path), 'orders').acquire()

    def test_release_after_takeover_keeps_new_lease(self, tmp_path):
        """Test a run whose lease was taken over does not remove the new holder's lock."""
        first = RunLock(str(tmp_path), 'orders')
        first.acquire()
        lease = json.loads(first.path.read_text())
        lease['token'] = 'someone-else'
        lease['expires_at'] = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        first.path.write_text(json.dumps(lease))

        first.release()

        assert first.path.exists()
        assert first.token is None

    def test_wait_gives_up(self, tmp_path):
        with RunLock(str(tmp_path), 'orders'):
            waiting = RunLock(str(tmp_path), 'orders', wait=0.3, poll_interval=0.05)
            with pytest.raises(LockContentionError):
                waiting.acquire()
