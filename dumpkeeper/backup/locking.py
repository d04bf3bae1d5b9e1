"""
Per-database run lock.

A run holds a lease file ``{lock_dir}/{database}.lock`` for its whole
duration. The lease records an expiry, so a lock left behind by a crashed
process is taken over once it has expired instead of blocking backups
forever. Creation uses O_EXCL, which makes acquisition atomic across
processes and threads sharing the lock directory.
"""

import os
import json
import time
import errno
import socket
import logging
import secrets
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import LockContentionError, WriteError


logger = logging.getLogger(__name__)


class RunLock:
    """
    Exclusive lease for one database identifier.

    Usage:
        with RunLock(lock_dir, 'orders', lease=timedelta(hours=2)):
            ...
    """

    def __init__(self, lock_dir: str, database_id: str, lease: timedelta = timedelta(hours=6),
                 wait: float = 0, poll_interval: float = 0.2):
        """
        Args:
            lock_dir: Directory holding lock files
            database_id: Database identifier the lock protects
            lease: Lease duration; an older lock is considered abandoned
            wait: Seconds to wait for a busy lock before failing (0 = fail fast)
            poll_interval: Seconds between acquisition attempts while waiting
        """
        self.lock_dir = Path(lock_dir)
        self.database_id = database_id
        self.lease = lease
        self.wait = wait
        self.poll_interval = poll_interval
        self.path = self.lock_dir / f"{database_id}.lock"
        self.token = None

    def _read_lease(self) -> Optional[dict]:
        try:
            with open(self.path) as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            # Lease being written right now, or garbage: treat as held
            return {}

    def _is_expired(self, lease: dict) -> bool:
        expires_at = lease.get('expires_at')
        if expires_at:
            return datetime.fromisoformat(expires_at) < datetime.now(timezone.utc)
        # Unreadable lease: fall back to the file age
        try:
            return time.time() - self.path.stat().st_mtime > self.lease.total_seconds()
        except FileNotFoundError:
            return False

    def _try_create(self) -> bool:
        token = secrets.token_hex(8)
        now = datetime.now(timezone.utc)
        lease = {
            'database': self.database_id,
            'token': token,
            'pid': os.getpid(),
            'host': socket.gethostname(),
            'acquired_at': now.isoformat(),
            'expires_at': (now + self.lease).isoformat()
        }

        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o640)
        except FileExistsError:
            return False
        except OSError as e:
            raise WriteError(f"Cannot create lock file {self.path}: {e}")

        with os.fdopen(fd, 'w') as f:
            json.dump(lease, f)
            f.flush()
            os.fsync(f.fileno())

        self.token = token
        return True

    def acquire(self):
        """
        Acquire the lease.

        Raises:
            LockContentionError: If another run holds an unexpired lease and
                it was not released within ``wait`` seconds
        """
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WriteError(f"Cannot create lock directory {self.lock_dir}: {e}")

        deadline = time.monotonic() + self.wait

        while True:
            if self._try_create():
                logger.debug(f"Acquired run lock {self.path}")
                return self

            lease = self._read_lease()
            if lease is not None and self._is_expired(lease):
                logger.warning(
                    f"Run lock for {self.database_id} expired at {lease.get('expires_at')} "
                    f"(held by pid {lease.get('pid')} on {lease.get('host')}), taking over"
                )
                self._break_stale(lease)
                continue

            if time.monotonic() >= deadline:
                holder = lease or {}
                raise LockContentionError(
                    f"Another backup run for {self.database_id} is in progress",
                    details={'pid': holder.get('pid'), 'host': holder.get('host'),
                             'expires_at': holder.get('expires_at')}
                )
            time.sleep(self.poll_interval)

    def _break_stale(self, lease: dict):
        # Rename first so that only one contender removes this particular stale lease
        grave = self.path.with_name(f"{self.path.name}.stale-{secrets.token_hex(4)}")
        try:
            os.rename(self.path, grave)
        except FileNotFoundError:
            return
        current = None
        try:
            with open(grave) as f:
                current = json.load(f)
        except (OSError, ValueError):
            pass
        if current is not None and current.get('token') != lease.get('token'):
            # Someone else re-acquired in between; put their lease back
            try:
                os.link(grave, self.path)
            except OSError as e:
                if e.errno != errno.EEXIST:
                    raise
        os.unlink(grave)

    def release(self):
        """Release the lease if this instance still owns it."""
        if self.token is None:
            return
        lease = self._read_lease()
        if lease and lease.get('token') == self.token:
            try:
                self.path.unlink()
                logger.debug(f"Released run lock {self.path}")
            except FileNotFoundError:
                pass
        else:
            logger.warning(f"Run lock for {self.database_id} was taken over before release")
        self.token = None

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
