"""
Backup engine for Dumpkeeper.

This package handles the backup lifecycle:
- Snapshot acquisition (mysqldump, pg_dump, SSH, SQLite)
- Compression and encryption
- Storage tiers (local directory and S3)
- Retention policy enforcement
- Run orchestration
"""

from .executor import BackupOrchestrator, BackupRun, StepResult, RunStatus, RunState, Step
from .sources import create_source, ConsistencyMode
from .compression import TransformOptions, transform, restore_stream
from .storage import LocalStore, S3RemoteStore, SyncReport
from .retention import RetentionWindow, expired
from .settings import EngineSettings, BackupRequest, RemoteTarget

__all__ = [
    'BackupOrchestrator',
    'BackupRun',
    'StepResult',
    'RunStatus',
    'RunState',
    'Step',
    'create_source',
    'ConsistencyMode',
    'TransformOptions',
    'transform',
    'restore_stream',
    'LocalStore',
    'S3RemoteStore',
    'SyncReport',
    'RetentionWindow',
    'expired',
    'EngineSettings',
    'BackupRequest',
    'RemoteTarget'
]
