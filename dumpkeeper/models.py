import json
from datetime import datetime, timezone

from dumpkeeper import db
from dumpkeeper.backup.compression import TransformOptions
from dumpkeeper.backup.retention import RetentionWindow
from dumpkeeper.backup.settings import BackupRequest, RemoteTarget
from dumpkeeper.utils.credentials import SecretHandle


def _utcnow():
    return datetime.now(timezone.utc)


def _isoformat(value):
    return value.isoformat() if value else None


class BackupJob(db.Model):
    """Backup job configuration (one database)"""
    __tablename__ = 'backup_jobs'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)  # Database identifier used in artifact keys
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    source_type = db.Column(db.String(20), nullable=False)  # mysql, postgres, ssh, sqlite
    source_config = db.Column(db.Text, nullable=False)  # JSON string
    consistency_mode = db.Column(db.String(30), nullable=False, default='single-transaction')
    compression = db.Column(db.String(20), nullable=False, default='gzip')  # none, gzip, gzip-N
    encryption_passphrase = db.Column(db.String(500))  # Credential reference (env:/file:), never the secret
    schedule_cron = db.Column(db.String(100))  # Cron expression
    retention_local_days = db.Column(db.Integer, nullable=False, default=7)
    local_minimum_keep = db.Column(db.Integer, nullable=False, default=0)
    retention_remote_days = db.Column(db.Integer)  # Default for targets without their own window
    remote_minimum_keep = db.Column(db.Integer, nullable=False, default=0)
    remote_targets = db.Column(db.Text, nullable=False, default='[]')  # JSON list of target dicts
    auto_prune = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    # Relationship
    runs = db.relationship('BackupRunRecord', back_populates='job', cascade='all, delete-orphan', lazy='dynamic')

    def get_source_config(self) -> dict:
        return json.loads(self.source_config or '{}')

    def get_remote_targets(self) -> list:
        """Remote targets with the job's remote retention applied as default."""
        targets = []
        for data in json.loads(self.remote_targets or '[]'):
            data = dict(data)
            if data.get('retention_days') is None and self.retention_remote_days is not None:
                data['retention_days'] = self.retention_remote_days
                data.setdefault('minimum_keep', self.remote_minimum_keep)
            targets.append(RemoteTarget.from_dict(data))
        return targets

    def to_request(self) -> BackupRequest:
        """
        Build the engine request for this job.

        Raises:
            PolicyError: If the job holds an invalid identifier, mode or policy
        """
        return BackupRequest(
            database_id=self.name,
            consistency_mode=self.consistency_mode,
            retention=RetentionWindow.from_days(self.retention_local_days, self.local_minimum_keep),
            remote_targets=tuple(self.get_remote_targets()),
            transform=TransformOptions.parse(self.compression, SecretHandle.parse(self.encryption_passphrase)),
            auto_prune=self.auto_prune
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'enabled': self.enabled,
            'source_type': self.source_type,
            'consistency_mode': self.consistency_mode,
            'compression': self.compression,
            'encrypted': bool(self.encryption_passphrase),
            'schedule_cron': self.schedule_cron,
            'retention_local_days': self.retention_local_days,
            'local_minimum_keep': self.local_minimum_keep,
            'retention_remote_days': self.retention_remote_days,
            'remote_minimum_keep': self.remote_minimum_keep,
            'remote_targets': [target['name'] for target in json.loads(self.remote_targets or '[]')],
            'auto_prune': self.auto_prune
        }

    def __repr__(self):
        return f'<BackupJob {self.name} type={self.source_type} enabled={self.enabled}>'


class BackupRunRecord(db.Model):
    """Finished backup run"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.String(32), primary_key=True)  # Run ID issued by the orchestrator
    job_id = db.Column(db.Integer, db.ForeignKey('backup_jobs.id'), nullable=True)
    database_id = db.Column(db.String(255), nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False)  # backup, resume
    status = db.Column(db.String(20), nullable=False)  # success, partial_failure, failure
    started_at = db.Column(db.DateTime, nullable=False)
    finished_at = db.Column(db.DateTime)
    artifact_key = db.Column(db.String(500))
    artifact_size_bytes = db.Column(db.BigInteger)
    artifact_checksum = db.Column(db.String(64))
    failing_step = db.Column(db.String(30))
    error_kind = db.Column(db.String(50))
    error_message = db.Column(db.Text)
    sync_reports = db.Column(db.Text)  # JSON dict keyed by tier
    logs = db.Column(db.Text)  # Detailed execution logs

    # Relationships
    job = db.relationship('BackupJob', back_populates='runs')
    steps = db.relationship('StepResultRecord', back_populates='run', cascade='all, delete-orphan',
                            order_by='StepResultRecord.position')

    @property
    def exit_code(self) -> int:
        return {'success': 0, 'failure': 1, 'partial_failure': 2}.get(self.status, 1)

    def to_dict(self, include_steps: bool = False, include_logs: bool = False) -> dict:
        data = {
            'id': self.id,
            'job_id': self.job_id,
            'database_id': self.database_id,
            'kind': self.kind,
            'status': self.status,
            'exit_code': self.exit_code,
            'started_at': _isoformat(self.started_at),
            'finished_at': _isoformat(self.finished_at),
            'artifact_key': self.artifact_key,
            'artifact_size_bytes': self.artifact_size_bytes,
            'artifact_checksum': self.artifact_checksum,
            'failing_step': self.failing_step,
            'error_kind': self.error_kind,
            'error_message': self.error_message
        }
        if include_steps:
            data['steps'] = [step.to_dict() for step in self.steps]
            data['sync_reports'] = json.loads(self.sync_reports or '{}')
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRunRecord {self.id} database={self.database_id} status={self.status}>'


class StepResultRecord(db.Model):
    """One lifecycle step of a recorded run"""
    __tablename__ = 'backup_run_steps'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.String(32), db.ForeignKey('backup_runs.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    step = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # success, failed, skipped
    started_at = db.Column(db.DateTime, nullable=False)
    finished_at = db.Column(db.DateTime)
    error_kind = db.Column(db.String(50))
    message = db.Column(db.Text)
    details = db.Column(db.Text)  # JSON

    run = db.relationship('BackupRunRecord', back_populates='steps')

    def to_dict(self) -> dict:
        return {
            'step': self.step,
            'status': self.status,
            'started_at': _isoformat(self.started_at),
            'finished_at': _isoformat(self.finished_at),
            'error_kind': self.error_kind,
            'message': self.message,
            'details': json.loads(self.details or '{}')
        }

    def __repr__(self):
        return f'<StepResultRecord {self.step} status={self.status}>'


def record_run(run, job_id=None) -> BackupRunRecord:
    """
    Persist a finished BackupRun with its steps.

    Args:
        run: Finished BackupRun
        job_id: Optional BackupJob ID the run belongs to

    Returns:
        The stored BackupRunRecord
    """
    failing = run.failing_step
    artifact = run.artifact

    record = BackupRunRecord(
        id=run.id,
        job_id=job_id,
        database_id=run.database_id,
        kind=run.kind,
        status=run.status.value,
        started_at=run.started_at,
        finished_at=run.finished_at,
        artifact_key=artifact.key if artifact else None,
        artifact_size_bytes=artifact.size_bytes if artifact else None,
        artifact_checksum=artifact.checksum if artifact else None,
        failing_step=failing.step.value if failing else None,
        error_kind=failing.error_kind if failing else None,
        error_message=failing.message if failing else None,
        sync_reports=json.dumps(run.sync_reports, default=str),
        logs='\n'.join(run.logs)
    )

    for position, result in enumerate(run.steps):
        record.steps.append(StepResultRecord(
            position=position,
            step=result.step.value,
            status=result.status,
            started_at=result.started_at,
            finished_at=result.finished_at,
            error_kind=result.error_kind,
            message=result.message,
            details=json.dumps(result.details, default=str)
        ))

    db.session.add(record)
    db.session.commit()
    return record
