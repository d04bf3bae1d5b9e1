"""
Snapshot sources for backup operations.

A source produces a lazy byte stream holding a transactionally consistent
dump of one database. Streams detect truncation: a dump is only complete
when the producer exited cleanly and its completion trailer was seen, so a
producer that dies half-way can never pass for a valid (shorter) dump.

Supports:
- MySQLDumpSource: mysqldump on the local host
- PostgresDumpSource: pg_dump on the local host
- SSHDumpSource: a dump command executed on a remote host over SSH
- SqliteSource: logical dump of a SQLite database file
"""

import os
import shlex
import sqlite3
import logging
import tempfile
import threading
import subprocess
from enum import Enum
from pathlib import Path
from typing import List, Dict, Any, Iterator, Optional, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from dumpkeeper.utils.credentials import SecretHandle, CredentialError
from .artifacts import CHUNK_SIZE
from .errors import SourceError


logger = logging.getLogger(__name__)

MYSQL_COMPLETION_MARKER = b'-- Dump completed'
POSTGRES_COMPLETION_MARKER = b'-- PostgreSQL database dump complete'
SQLITE_COMPLETION_MARKER = b'-- dumpkeeper: sqlite dump completed'

DEFAULT_SNAPSHOT_TIMEOUT = 6 * 3600


class ConsistencyMode(str, Enum):
    """Mechanism that makes a dump reflect a single point in time."""
    SINGLE_TRANSACTION = 'single-transaction'
    LOCK_TABLES = 'lock-tables'
    SNAPSHOT = 'snapshot'


class SnapshotStream:
    """
    Lazy, single-use byte stream produced by a snapshot source.

    Iterating yields raw dump chunks. When the producer is exhausted the
    stream checks that it completed; otherwise SourceError is raised from
    the iteration, after the last chunk. ``close()`` releases the live
    database handle and is safe to call at any time, including while the
    producer is still running.
    """

    def __init__(self, description: str, completion_marker: bytes):
        self.description = description
        self.completion_marker = completion_marker
        self.bytes_read = 0
        self.completed = False
        self.closed = False
        self._tail = b''
        self._consumed = False

    def _produce(self) -> Iterator[bytes]:
        raise NotImplementedError

    def _check_exit(self):
        """Raise SourceError if the producer did not exit cleanly."""
        pass

    def _release(self):
        pass

    def __iter__(self) -> Iterator[bytes]:
        if self._consumed:
            raise SourceError(f"Snapshot stream already consumed: {self.description}")
        self._consumed = True

        try:
            for chunk in self._produce():
                if not chunk:
                    continue
                self.bytes_read += len(chunk)
                self._tail = (self._tail + chunk)[-(len(self.completion_marker) + 512):]
                yield chunk

            if self.closed:
                raise SourceError(f"Snapshot stream was closed before completion: {self.description}")

            self._check_exit()

            if self.completion_marker not in self._tail:
                raise SourceError(
                    f"Snapshot is truncated: completion marker missing after {self.bytes_read} bytes",
                    details={'source': self.description}
                )

            self.completed = True
        finally:
            self.close()

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self._release()
        except Exception as e:
            logger.warning(f"Failed to release snapshot source {self.description}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class ProcessSnapshotStream(SnapshotStream):
    """
    Snapshot stream read from the stdout of a local dump process.

    A watchdog kills the process once ``timeout`` seconds have passed, which
    unblocks any pending read and turns the stream into a SourceError.
    """

    def __init__(self, argv: List[str], completion_marker: bytes, env: Dict[str, str] = None,
                 timeout: float = DEFAULT_SNAPSHOT_TIMEOUT, description: str = None):
        super().__init__(description or os.path.basename(argv[0]), completion_marker)
        self.argv = argv
        self.timeout = timeout
        self.timed_out = False
        self._stderr = tempfile.TemporaryFile()

        process_env = os.environ.copy()
        process_env.update(env or {})

        try:
            self.process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=self._stderr,
                env=process_env
            )
        except OSError as e:
            self._stderr.close()
            raise SourceError(f"Failed to start {self.description}: {e}")

        self._watchdog = threading.Timer(timeout, self._on_timeout)
        self._watchdog.daemon = True
        self._watchdog.start()

    def _on_timeout(self):
        self.timed_out = True
        logger.warning(f"Snapshot {self.description} exceeded {self.timeout}s, killing process {self.process.pid}")
        self.process.kill()

    def _produce(self) -> Iterator[bytes]:
        for chunk in iter(lambda: self.process.stdout.read(CHUNK_SIZE), b''):
            yield chunk

    def _stderr_text(self) -> str:
        try:
            self._stderr.seek(0)
            return self._stderr.read()[-2000:].decode(errors='replace').strip()
        except (OSError, ValueError):
            return ''

    def _check_exit(self):
        try:
            returncode = self.process.wait(timeout=30)
        except subprocess.TimeoutExpired:
            raise SourceError(f"{self.description} closed its output but did not exit")

        if self.timed_out:
            raise SourceError(f"{self.description} timed out after {self.timeout}s")
        if returncode != 0:
            raise SourceError(
                f"{self.description} exited with status {returncode}",
                details={'stderr': self._stderr_text()}
            )

    def _release(self):
        self._watchdog.cancel()
        if self.process.poll() is None:
            self.process.kill()
        try:
            self.process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {self.process.pid} did not exit after kill")
        if self.process.stdout:
            self.process.stdout.close()
        self._stderr.close()


class SSHSnapshotStream(SnapshotStream):
    """Snapshot stream read from a command executed on a remote host."""

    def __init__(self, ssh_client: SSHClient, command: str, completion_marker: bytes,
                 env: Dict[str, str] = None, timeout: float = DEFAULT_SNAPSHOT_TIMEOUT,
                 description: str = None):
        super().__init__(description or f"ssh:{command.split()[0]}", completion_marker)
        self.ssh_client = ssh_client
        self.timeout = timeout
        self.timed_out = False

        try:
            _, self._stdout, self._stderr = ssh_client.exec_command(command, environment=env or None)
        except paramiko.SSHException as e:
            ssh_client.close()
            raise SourceError(f"Failed to start remote dump: {e}")

        self.channel = self._stdout.channel
        self._watchdog = threading.Timer(timeout, self._on_timeout)
        self._watchdog.daemon = True
        self._watchdog.start()

    def _on_timeout(self):
        self.timed_out = True
        logger.warning(f"Remote snapshot {self.description} exceeded {self.timeout}s, closing channel")
        self.channel.close()

    def _produce(self) -> Iterator[bytes]:
        try:
            for chunk in iter(lambda: self._stdout.read(CHUNK_SIZE), b''):
                yield chunk
        except (paramiko.SSHException, OSError) as e:
            raise SourceError(f"Remote dump stream failed: {e}")

    def _check_exit(self):
        if self.timed_out:
            raise SourceError(f"{self.description} timed out after {self.timeout}s")
        status = self.channel.recv_exit_status()
        if status != 0:
            stderr = self._stderr.read()[-2000:].decode(errors='replace').strip()
            raise SourceError(f"{self.description} exited with status {status}", details={'stderr': stderr})

    def _release(self):
        self._watchdog.cancel()
        try:
            self.channel.close()
        finally:
            self.ssh_client.close()


class SqliteSnapshotStream(SnapshotStream):
    """Logical dump of a SQLite database taken inside one read transaction."""

    def __init__(self, path: str, timeout: float = DEFAULT_SNAPSHOT_TIMEOUT):
        super().__init__(f"sqlite:{os.path.basename(path)}", SQLITE_COMPLETION_MARKER)
        self.path = path
        self.timeout = timeout
        try:
            self.connection = sqlite3.connect(
                Path(path).resolve().as_uri() + "?mode=ro", uri=True, timeout=30, isolation_level=None, check_same_thread=False
            )
            # Deferred read transaction: every SELECT of the dump sees the same snapshot
            self.connection.execute('BEGIN')
            self.connection.execute('SELECT count(*) FROM sqlite_master').fetchone()
        except sqlite3.Error as e:
            raise SourceError(f"Cannot open SQLite database {path}: {e}")

        self.timed_out = False
        self._watchdog = threading.Timer(timeout, self._on_timeout)
        self._watchdog.daemon = True
        self._watchdog.start()

    def _on_timeout(self):
        self.timed_out = True
        self.connection.interrupt()

    def _produce(self) -> Iterator[bytes]:
        buffer = []
        size = 0
        try:
            for line in self.connection.iterdump():
                if self.closed:
                    return
                data = (line + '\n').encode('utf-8')
                buffer.append(data)
                size += len(data)
                if size >= CHUNK_SIZE:
                    yield b''.join(buffer)
                    buffer, size = [], 0
        except sqlite3.Error as e:
            if self.timed_out:
                raise SourceError(f"{self.description} timed out after {self.timeout}s")
            raise SourceError(f"SQLite dump failed: {e}")

        buffer.append(SQLITE_COMPLETION_MARKER + b'\n')
        yield b''.join(buffer)

    def _release(self):
        self._watchdog.cancel()
        try:
            self.connection.rollback()
        except sqlite3.Error:
            pass
        self.connection.close()


class DumpCommandSource:
    """
    Base for sources that run a dump utility.

    Subclasses provide the command line, the environment carrying the
    password and the completion trailer of the utility.
    """

    completion_marker = b''
    supported_modes = ()

    def __init__(self, config: Dict[str, Any], timeout: float = DEFAULT_SNAPSHOT_TIMEOUT):
        """
        Args:
            config: Source configuration dict with keys:
                - database: Database name (defaults to the database identifier)
                - host, port, username: Connection parameters
                - password: Credential reference ('env:NAME' or 'file:/path')
                - extra_args: Additional command line arguments
            timeout: Maximum duration of one snapshot in seconds
        """
        self.database = config.get('database')
        self.host = config.get('host')
        self.port = config.get('port')
        self.username = config.get('username')
        self.password = SecretHandle.parse(config.get('password'))
        self.extra_args = list(config.get('extra_args', []))
        self.timeout = timeout

    def _check_mode(self, consistency_mode) -> ConsistencyMode:
        try:
            mode = ConsistencyMode(consistency_mode)
        except ValueError:
            raise SourceError(f"Unknown consistency mode: {consistency_mode}")
        if mode not in self.supported_modes:
            raise SourceError(f"{type(self).__name__} does not support consistency mode '{mode.value}'")
        return mode

    def _password_env(self, variable: str) -> Dict[str, str]:
        if not self.password:
            return {}
        try:
            return {variable: self.password.reveal()}
        except CredentialError as e:
            raise SourceError(f"Cannot resolve database credentials: {e}")

    def build_command(self, database: str, mode: ConsistencyMode) -> Tuple[List[str], Dict[str, str]]:
        raise NotImplementedError

    def take_snapshot(self, database_id: str, consistency_mode) -> SnapshotStream:
        """
        Start a dump and return its stream.

        Raises:
            SourceError: If the mode is unsupported or the process cannot start
        """
        mode = self._check_mode(consistency_mode)
        argv, env = self.build_command(self.database or database_id, mode)
        logger.info(f"Starting snapshot of {database_id}: {argv[0]} ({mode.value})")
        return ProcessSnapshotStream(argv, self.completion_marker, env=env, timeout=self.timeout,
                                     description=f"{argv[0]} {database_id}")


class MySQLDumpSource(DumpCommandSource):
    """Logical dump through mysqldump."""

    completion_marker = MYSQL_COMPLETION_MARKER
    supported_modes = (ConsistencyMode.SINGLE_TRANSACTION, ConsistencyMode.LOCK_TABLES)

    def build_command(self, database, mode):
        argv = ['mysqldump', '--routines', '--triggers', '--events']
        argv.append('--single-transaction' if mode == ConsistencyMode.SINGLE_TRANSACTION else '--lock-tables')
        if self.host:
            argv += ['--host', self.host]
        if self.port:
            argv += ['--port', str(self.port)]
        if self.username:
            argv += ['--user', self.username]
        argv += self.extra_args + [database]
        return argv, self._password_env('MYSQL_PWD')


class PostgresDumpSource(DumpCommandSource):
    """Plain-format dump through pg_dump (always an MVCC snapshot)."""

    completion_marker = POSTGRES_COMPLETION_MARKER
    supported_modes = (ConsistencyMode.SNAPSHOT, ConsistencyMode.SINGLE_TRANSACTION)

    def build_command(self, database, mode):
        argv = ['pg_dump', '--format=plain', '--no-password']
        if self.host:
            argv += ['--host', self.host]
        if self.port:
            argv += ['--port', str(self.port)]
        if self.username:
            argv += ['--username', self.username]
        argv += self.extra_args + [database]
        return argv, self._password_env('PGPASSWORD')


class SSHDumpSource:
    """
    Runs mysqldump or pg_dump on a remote host over SSH and streams its output.

    The database password is sent as a channel environment variable, which
    requires the remote sshd to accept it (AcceptEnv MYSQL_PWD PGPASSWORD).
    """

    def __init__(self, config: Dict[str, Any], timeout: float = DEFAULT_SNAPSHOT_TIMEOUT):
        """
        Args:
            config: SSH source configuration dict with keys:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password credential reference (optional if using key)
                - private_key: Path to private key file (optional)
                - engine: 'mysql' (default) or 'postgres'
                - db: Nested dict with the dump source config (database, username, password, ...)
            timeout: Maximum duration of one snapshot in seconds
        """
        self.host = config.get('host') or config.get('hostname')
        self.port = config.get('port', 22)
        self.username = config.get('username')
        self.password = SecretHandle.parse(config.get('password'))
        self.private_key_path = config.get('private_key')
        self.engine = config.get('engine', 'mysql')
        self.timeout = timeout

        if self.engine == 'mysql':
            self.dump = MySQLDumpSource(config.get('db', {}), timeout)
            self.password_variable = 'MYSQL_PWD'
        elif self.engine == 'postgres':
            self.dump = PostgresDumpSource(config.get('db', {}), timeout)
            self.password_variable = 'PGPASSWORD'
        else:
            raise ValueError(f"Invalid SSH dump engine: {self.engine}")

    def _connect(self) -> SSHClient:
        """
        Establish SSH connection.

        Raises:
            SourceError: If connection fails
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        try:
            if self.password:
                connect_kwargs['password'] = self.password.reveal()
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise SourceError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise SourceError("Either password or private_key must be provided")

            ssh_client.connect(**connect_kwargs)
            return ssh_client

        except CredentialError as e:
            raise SourceError(f"Cannot resolve SSH credentials: {e}")
        except paramiko.AuthenticationException as e:
            raise SourceError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise SourceError(f"SSH connection failed: {e}")
        except OSError as e:
            raise SourceError(f"Failed to connect to {self.host}: {e}")

    def take_snapshot(self, database_id: str, consistency_mode) -> SnapshotStream:
        mode = self.dump._check_mode(consistency_mode)
        argv, env = self.dump.build_command(self.dump.database or database_id, mode)
        command = ' '.join(shlex.quote(arg) for arg in argv)

        logger.info(f"Starting remote snapshot of {database_id} on {self.host}: {argv[0]} ({mode.value})")
        ssh_client = self._connect()
        return SSHSnapshotStream(ssh_client, command, self.dump.completion_marker, env=env,
                                 timeout=self.timeout, description=f"ssh {self.host} {argv[0]} {database_id}")


class SqliteSource:
    """Consistent logical dump of a SQLite database file."""

    supported_modes = (ConsistencyMode.SNAPSHOT, ConsistencyMode.SINGLE_TRANSACTION)

    def __init__(self, path: str, timeout: float = DEFAULT_SNAPSHOT_TIMEOUT):
        self.path = path
        self.timeout = timeout

    def take_snapshot(self, database_id: str, consistency_mode) -> SnapshotStream:
        try:
            mode = ConsistencyMode(consistency_mode)
        except ValueError:
            raise SourceError(f"Unknown consistency mode: {consistency_mode}")
        if mode not in self.supported_modes:
            raise SourceError(f"SqliteSource does not support consistency mode '{mode.value}'")
        if not os.path.exists(self.path):
            raise SourceError(f"SQLite database not found: {self.path}")

        logger.info(f"Starting snapshot of {database_id}: sqlite {self.path}")
        return SqliteSnapshotStream(self.path, timeout=self.timeout)


def create_source(source_type: str, config: Dict[str, Any], timeout: float = DEFAULT_SNAPSHOT_TIMEOUT):
    """
    Factory function to create the snapshot source for a job.

    Args:
        source_type: 'mysql', 'postgres', 'ssh' or 'sqlite'
        config: Configuration dict for the source
        timeout: Maximum duration of one snapshot in seconds

    Returns:
        Source instance exposing ``take_snapshot``

    Raises:
        ValueError: If source_type is invalid
    """
    if source_type == 'mysql':
        return MySQLDumpSource(config, timeout)
    elif source_type == 'postgres':
        return PostgresDumpSource(config, timeout)
    elif source_type == 'ssh':
        return SSHDumpSource(config, timeout)
    elif source_type == 'sqlite':
        return SqliteSource(config['path'], timeout)
    else:
        raise ValueError(f"Invalid source type: {source_type}")
