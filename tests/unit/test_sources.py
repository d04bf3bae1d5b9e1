"""
Unit tests for snapshot sources (dumpkeeper/backup/sources.py).

Process streams are exercised with small Python scripts standing in for
the dump utilities; SSH is mocked.
"""

import sys
import sqlite3

import pytest

from dumpkeeper.backup.sources import (
    ConsistencyMode,
    MySQLDumpSource,
    PostgresDumpSource,
    ProcessSnapshotStream,
    SSHDumpSource,
    SqliteSource,
    create_source,
    MYSQL_COMPLETION_MARKER,
    SQLITE_COMPLETION_MARKER
)
from dumpkeeper.backup.errors import SourceError


def python_dump(script, timeout=30):
    """Stream the stdout of a Python snippet as if it were mysqldump."""
    return ProcessSnapshotStream([sys.executable, '-c', script], MYSQL_COMPLETION_MARKER,
                                 timeout=timeout, description='fake mysqldump')


class TestProcessSnapshotStream:
    """Test completion detection of process-backed streams."""

    def test_complete_dump(self):
        stream = python_dump("import sys; sys.stdout.write('CREATE TABLE t (id int);\\n-- Dump completed on 2024-01-15\\n')")

        data = b''.join(stream)

        assert data.startswith(b'CREATE TABLE t')
        assert stream.completed
        assert stream.closed
        assert stream.bytes_read == len(data)

    def test_nonzero_exit_status(self):
        """Test a failing exit status fails the stream even with the trailer present."""
        stream = python_dump(
            "import sys; sys.stdout.write('-- Dump completed\\n'); sys.stderr.write('access denied'); sys.exit(2)"
        )

        with pytest.raises(SourceError, match='exited with status 2') as exc_info:
            b''.join(stream)

        assert 'access denied' in exc_info.value.details['stderr']
        assert not stream.completed

    def test_missing_completion_marker(self):
        """Test a clean exit without the trailer counts as truncated."""
        stream = python_dump("import sys; sys.stdout.write('CREATE TABLE t (id int);\\n')")

        with pytest.raises(SourceError, match='truncated'):
            b''.join(stream)

    def test_timeout_kills_process(self):
        stream = python_dump("import time; time.sleep(30)", timeout=0.5)

        with pytest.raises(SourceError, match='timed out'):
            b''.join(stream)

        assert stream.process.poll() is not None

    def test_close_releases_process(self):
        """Test closing an unread stream kills the dump process."""
        stream = python_dump("import time; time.sleep(30)")

        stream.close()

        assert stream.process.poll() is not None

    def test_stream_is_single_use(self):
        stream = python_dump("import sys; sys.stdout.write('-- Dump completed\\n')")
        b''.join(stream)

        with pytest.raises(SourceError, match='already consumed'):
            b''.join(stream)

    def test_missing_executable(self):
        with pytest.raises(SourceError, match='Failed to start'):
            ProcessSnapshotStream(['/nonexistent/mysqldump'], MYSQL_COMPLETION_MARKER)


class TestDumpCommandSources:
    """Test command construction for mysqldump and pg_dump."""

    def test_mysqldump_single_transaction(self):
        source = MySQLDumpSource({'host': 'db.internal', 'port': 3306, 'username': 'backup',
                                  'password': 'literal:s3cret'})

        argv, env = source.build_command('orders', ConsistencyMode.SINGLE_TRANSACTION)

        assert argv[0] == 'mysqldump'
        assert '--single-transaction' in argv
        assert argv[-1] == 'orders'
        assert env == {'MYSQL_PWD': 's3cret'}
        assert 's3cret' not in ' '.join(argv)

    def test_mysqldump_lock_tables(self):
        argv, _ = MySQLDumpSource({}).build_command('orders', ConsistencyMode.LOCK_TABLES)

        assert '--lock-tables' in argv
        assert '--single-transaction' not in argv

    def test_mysqldump_rejects_snapshot_mode(self):
        with pytest.raises(SourceError, match='does not support'):
            MySQLDumpSource({}).take_snapshot('orders', 'snapshot')

    def test_unknown_mode(self):
        with pytest.raises(SourceError, match='Unknown consistency mode'):
            MySQLDumpSource({}).take_snapshot('orders', 'eventually')

    def test_pg_dump_command(self, monkeypatch):
        monkeypatch.setenv('ORDERS_DB_PASSWORD', 'pgpw')
        source = PostgresDumpSource({'database': 'orders_prod', 'username': 'backup',
                                     'password': 'env:ORDERS_DB_PASSWORD'})

        argv, env = source.build_command('orders_prod', ConsistencyMode.SNAPSHOT)

        assert argv[:3] == ['pg_dump', '--format=plain', '--no-password']
        assert argv[-1] == 'orders_prod'
        assert env == {'PGPASSWORD': 'pgpw'}

    def test_unresolvable_password(self, monkeypatch):
        monkeypatch.delenv('ORDERS_DB_PASSWORD', raising=False)
        source = PostgresDumpSource({'password': 'env:ORDERS_DB_PASSWORD'})

        with pytest.raises(SourceError, match='credentials'):
            source.build_command('orders', ConsistencyMode.SNAPSHOT)


class TestSqliteSource:
    """Test consistent SQLite dumps."""

    def test_snapshot_contains_schema_and_rows(self, sqlite_database):
        stream = SqliteSource(str(sqlite_database)).take_snapshot('orders', 'snapshot')

        dump = b''.join(stream).decode()

        assert 'CREATE TABLE orders' in dump
        assert "'alice'" in dump
        assert dump.rstrip().endswith(SQLITE_COMPLETION_MARKER.decode())
        assert stream.completed

    def test_snapshot_restores(self, sqlite_database, tmp_path):
        """Test the dump recreates an identical database."""
        dump = b''.join(SqliteSource(str(sqlite_database)).take_snapshot('orders', 'snapshot')).decode()

        restored = sqlite3.connect(tmp_path / 'restored.db')
        restored.executescript(dump)
        rows = restored.execute('SELECT customer, total FROM orders ORDER BY id').fetchall()
        restored.close()

        assert rows == [('alice', 12.5), ('bob', 7.25), ('carol', 99.0)]

    def test_missing_database(self, tmp_path):
        with pytest.raises(SourceError, match='not found'):
            SqliteSource(str(tmp_path / 'missing.db')).take_snapshot('orders', 'snapshot')

    def test_lock_tables_not_supported(self, sqlite_database):
        with pytest.raises(SourceError):
            SqliteSource(str(sqlite_database)).take_snapshot('orders', 'lock-tables')


class TestSSHDumpSource:
    """Test remote dumps over SSH (paramiko mocked)."""

    def config(self):
        return {
            'host': 'db1.example.com',
            'username': 'backup',
            'password': 'literal:sshpw',
            'engine': 'mysql',
            'db': {'database': 'orders', 'password': 'literal:dbpw'}
        }

    def test_remote_dump_streams_output(self, mock_ssh_client):
        client = mock_ssh_client.return_value
        stdout = client.exec_command.return_value[1]
        stdout.read.side_effect = [b'CREATE TABLE t (id int);\n-- Dump completed\n', b'']

        stream = SSHDumpSource(self.config()).take_snapshot('orders', 'single-transaction')
        data = b''.join(stream)

        assert data.endswith(b'-- Dump completed\n')
        assert stream.completed

        client.connect.assert_called_once()
        assert client.connect.call_args.kwargs['password'] == 'sshpw'

        command = client.exec_command.call_args.args[0]
        assert command.startswith('mysqldump')
        assert 'dbpw' not in command
        assert client.exec_command.call_args.kwargs['environment'] == {'MYSQL_PWD': 'dbpw'}

        # The connection is released once the stream completes
        client.close.assert_called()

    def test_remote_dump_nonzero_exit(self, mock_ssh_client):
        client = mock_ssh_client.return_value
        stdout = client.exec_command.return_value[1]
        stdout.read.side_effect = [b'-- Dump completed\n', b'']
        stdout.channel.recv_exit_status.return_value = 2

        stream = SSHDumpSource(self.config()).take_snapshot('orders', 'single-transaction')

        with pytest.raises(SourceError, match='status 2'):
            b''.join(stream)

    def test_requires_password_or_key(self, mock_ssh_client):
        config = self.config()
        del config['password']

        with pytest.raises(SourceError, match='password or private_key'):
            SSHDumpSource(config).take_snapshot('orders', 'single-transaction')

    def test_invalid_engine(self):
        with pytest.raises(ValueError):
            SSHDumpSource({'host': 'h', 'engine': 'oracle'})


class TestCreateSource:
    """Test the source factory."""

    def test_create_sources(self, sqlite_database):
        assert isinstance(create_source('mysql', {}), MySQLDumpSource)
        assert isinstance(create_source('postgres', {}), PostgresDumpSource)
        assert isinstance(create_source('ssh', {'host': 'h'}), SSHDumpSource)
        assert isinstance(create_source('sqlite', {'path': str(sqlite_database)}), SqliteSource)

    def test_invalid_source_type(self):
        with pytest.raises(ValueError, match='Invalid source type'):
            create_source('oracle', {})
