"""
Immutable configuration values handed to the backup engine.

EngineSettings describes the process (directories, timeouts, retries),
BackupRequest describes one trigger (what to back up and how long to
keep it). Neither is looked up globally: both are passed explicitly to
the orchestrator.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Tuple, Dict, Any

from dumpkeeper.utils.credentials import SecretHandle
from .compression import TransformOptions
from .errors import PolicyError
from .naming import validate_identifier
from .retention import RetentionWindow
from .retry import RetryPolicy
from .sources import ConsistencyMode


@dataclass(frozen=True)
class EngineSettings:
    """
    Process-wide engine configuration.

    Attributes:
        local_backup_dir: Directory of the local tier
        work_dir: Directory for staging files during a run
        lock_dir: Directory for per-database run locks
        run_timeout: Maximum wall time of one run
        snapshot_timeout: Maximum duration of one snapshot
        lock_lease: Lease duration of a run lock
        lock_wait: Seconds to wait for a busy run lock before failing
        key_granularity: Artifact naming window
        retry_policy: Backoff policy for transient disk and network errors
        remote_connect_timeout: Connection timeout for remote tiers (seconds)
        remote_read_timeout: Read timeout for remote tiers (seconds)
        max_parallel_syncs: Upper bound of remote tiers synced concurrently
    """
    local_backup_dir: str
    work_dir: str
    lock_dir: str
    run_timeout: timedelta = timedelta(hours=6)
    snapshot_timeout: timedelta = timedelta(hours=4)
    lock_lease: timedelta = timedelta(hours=7)
    lock_wait: float = 0
    key_granularity: timedelta = timedelta(minutes=1)
    retry_policy: RetryPolicy = RetryPolicy()
    remote_connect_timeout: float = 10
    remote_read_timeout: float = 60
    max_parallel_syncs: int = 4

    def __post_init__(self):
        if self.lock_lease < self.run_timeout:
            raise PolicyError("Run lock lease must be at least as long as the run timeout")

    @classmethod
    def from_config(cls, config) -> 'EngineSettings':
        """
        Build settings from a Flask config mapping.

        Args:
            config: app.config or any mapping with the Config keys
        """
        run_timeout = timedelta(seconds=int(config['RUN_TIMEOUT_SECONDS']))
        return cls(
            local_backup_dir=config['LOCAL_BACKUP_DIR'],
            work_dir=config['WORK_DIR'],
            lock_dir=config['LOCK_DIR'],
            run_timeout=run_timeout,
            snapshot_timeout=timedelta(seconds=int(config['SNAPSHOT_TIMEOUT_SECONDS'])),
            lock_lease=max(timedelta(seconds=int(config['LOCK_LEASE_SECONDS'])), run_timeout),
            lock_wait=float(config['LOCK_WAIT_SECONDS']),
            key_granularity=timedelta(minutes=int(config['KEY_GRANULARITY_MINUTES'])),
            retry_policy=RetryPolicy(
                attempts=int(config['RETRY_ATTEMPTS']),
                base_delay=float(config['RETRY_BASE_DELAY'])
            ),
            remote_connect_timeout=float(config['REMOTE_CONNECT_TIMEOUT']),
            remote_read_timeout=float(config['REMOTE_READ_TIMEOUT'])
        )


@dataclass(frozen=True)
class RemoteTarget:
    """
    One off-site tier.

    Attributes:
        name: Tier name (unique within a request)
        bucket: S3 bucket
        prefix: Key prefix inside the bucket
        region: AWS region
        endpoint_url: Endpoint of an S3-compatible service, if any
        access_key: Credential handle of the access key ID
        secret_key: Credential handle of the secret access key
        retention: Retention window of this tier (defaults to the request's)
    """
    name: str
    bucket: str
    prefix: str = ''
    region: str = 'us-east-1'
    endpoint_url: Optional[str] = None
    access_key: Optional[SecretHandle] = None
    secret_key: Optional[SecretHandle] = None
    retention: Optional[RetentionWindow] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RemoteTarget':
        retention = None
        if data.get('retention_days') is not None:
            retention = RetentionWindow.from_days(data['retention_days'], data.get('minimum_keep', 0))
        return cls(
            name=data['name'],
            bucket=data['bucket'],
            prefix=data.get('prefix', ''),
            region=data.get('region', 'us-east-1'),
            endpoint_url=data.get('endpoint_url'),
            access_key=SecretHandle.parse(data.get('access_key')),
            secret_key=SecretHandle.parse(data.get('secret_key')),
            retention=retention
        )


@dataclass(frozen=True)
class BackupRequest:
    """
    Trigger value for one backup run.

    Attributes:
        database_id: Database identifier (used in artifact keys and the run lock)
        consistency_mode: Snapshot consistency mechanism
        retention: Retention window of the local tier (and default for remote tiers)
        remote_targets: Remote tiers to mirror into
        transform: Compression and encryption options
        auto_prune: Whether expired artifacts may be deleted from remote tiers
    """
    database_id: str
    consistency_mode: ConsistencyMode
    retention: RetentionWindow
    remote_targets: Tuple[RemoteTarget, ...] = field(default_factory=tuple)
    transform: TransformOptions = TransformOptions()
    auto_prune: bool = False

    def __post_init__(self):
        validate_identifier(self.database_id)
        try:
            object.__setattr__(self, 'consistency_mode', ConsistencyMode(self.consistency_mode))
        except ValueError:
            raise PolicyError(f"Unknown consistency mode: {self.consistency_mode}")
        object.__setattr__(self, 'remote_targets', tuple(self.remote_targets))

        names = [target.name for target in self.remote_targets]
        if len(names) != len(set(names)):
            raise PolicyError(f"Remote target names must be unique: {names}")

    def retention_for(self, target: RemoteTarget) -> RetentionWindow:
        return target.retention or self.retention
