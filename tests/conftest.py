"""
Shared pytest fixtures for Dumpkeeper tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- Backup job fixtures
- Engine settings, stores and snapshot sources
- Mock fixtures for external services (S3, SSH)
"""

import json
import sqlite3
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from dumpkeeper import create_app, db as _db
from dumpkeeper.models import BackupJob
from dumpkeeper.backup.errors import SourceError
from dumpkeeper.backup.retention import RetentionWindow
from dumpkeeper.backup.retry import RetryPolicy
from dumpkeeper.backup.settings import EngineSettings, BackupRequest, RemoteTarget
from dumpkeeper.backup.sources import SnapshotStream
from dumpkeeper.backup.storage import LocalStore


FAKE_COMPLETION_MARKER = b'-- fake dump completed'


class FakeSnapshotStream(SnapshotStream):
    """Snapshot stream yielding fixed chunks, optionally failing mid-stream."""

    def __init__(self, chunks, fail_after=None, with_marker=True):
        super().__init__('fake dump', FAKE_COMPLETION_MARKER)
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.with_marker = with_marker
        self.released = False

    def _produce(self):
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise SourceError("connection to database lost")
            yield chunk
        if self.with_marker:
            yield FAKE_COMPLETION_MARKER + b'\n'

    def _release(self):
        self.released = True


class FakeSource:
    """Snapshot source handing out FakeSnapshotStreams and remembering them."""

    def __init__(self, chunks=None, fail_after=None, with_marker=True, error=None):
        self.chunks = chunks or [b'CREATE TABLE orders (id INTEGER);\n', b'INSERT INTO orders VALUES (1);\n']
        self.fail_after = fail_after
        self.with_marker = with_marker
        self.error = error
        self.streams = []

    def take_snapshot(self, database_id, consistency_mode):
        if self.error:
            raise self.error
        stream = FakeSnapshotStream(self.chunks, self.fail_after, self.with_marker)
        self.streams.append(stream)
        return stream


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database and per-test directories.
    """
    app = create_app('testing', overrides={
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
        'WORK_DIR': str(tmp_path / 'work'),
        'LOCK_DIR': str(tmp_path / 'locks'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def sqlite_database(tmp_path):
    """
    Create a small SQLite database to back up.

    Table orders with three rows.
    """
    path = tmp_path / 'orders.db'
    connection = sqlite3.connect(path)
    connection.execute('CREATE TABLE orders (id INTEGER PRIMARY KEY, customer TEXT, total REAL)')
    connection.executemany(
        'INSERT INTO orders (customer, total) VALUES (?, ?)',
        [('alice', 12.5), ('bob', 7.25), ('carol', 99.0)]
    )
    connection.commit()
    connection.close()
    return path


@pytest.fixture(scope='function')
def sqlite_backup_job(db, sqlite_database):
    """
    Create a backup job for the SQLite test database.
    """
    job = BackupJob(
        name='orders',
        description='Test SQLite backup job',
        enabled=True,
        source_type='sqlite',
        source_config=json.dumps({'path': str(sqlite_database)}),
        consistency_mode='snapshot',
        compression='gzip',
        schedule_cron='0 2 * * *',  # Daily at 2 AM
        retention_local_days=7,
        local_minimum_keep=2
    )
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture
def engine_settings(tmp_path):
    """EngineSettings pointing at per-test directories, without retry delays."""
    return EngineSettings(
        local_backup_dir=str(tmp_path / 'backups'),
        work_dir=str(tmp_path / 'work'),
        lock_dir=str(tmp_path / 'locks'),
        retry_policy=RetryPolicy(attempts=2, base_delay=0)
    )


@pytest.fixture
def local_store(engine_settings):
    return LocalStore(engine_settings.local_backup_dir, engine_settings.retry_policy)


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def backup_request():
    """Request without remote tiers: 30 days, keep 3, gzip."""
    return BackupRequest(
        database_id='orders',
        consistency_mode='single-transaction',
        retention=RetentionWindow.from_days(30, 3)
    )


@pytest.fixture
def remote_target():
    return RemoteTarget(name='offsite', bucket='test-bucket', prefix='db')


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for remote dump testing.

    exec_command returns a stdout whose channel reports exit status 0.
    """
    with patch('dumpkeeper.backup.sources.SSHClient') as mock_ssh:
        client = mock_ssh.return_value
        client.connect.return_value = None

        stdout = MagicMock()
        stdout.channel.recv_exit_status.return_value = 0
        stderr = MagicMock()
        stderr.read.return_value = b''
        client.exec_command.return_value = (MagicMock(), stdout, stderr)

        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('dumpkeeper.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
