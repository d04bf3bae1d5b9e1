"""
Runs backup jobs stored in the database through the backup engine.

Shared by the CLI, the scheduler and the HTTP API so that every trigger
builds its orchestrator the same way and every finished run is recorded.
"""

import logging
from functools import partial

from flask import current_app
from sqlalchemy import func

from dumpkeeper import db
from dumpkeeper.models import BackupJob, BackupRunRecord, record_run
from dumpkeeper.backup.errors import BackupError, LockContentionError
from dumpkeeper.backup.executor import BackupOrchestrator, BackupRun, RunStatus
from dumpkeeper.backup.settings import EngineSettings
from dumpkeeper.backup.sources import create_source
from dumpkeeper.utils.credentials import CredentialError


logger = logging.getLogger(__name__)


def build_orchestrator(job: BackupJob) -> BackupOrchestrator:
    """
    Create the orchestrator for a job using the current app's configuration.

    Finished runs are recorded in the run history.
    """
    settings = EngineSettings.from_config(current_app.config)
    source = create_source(job.source_type, job.get_source_config(),
                           timeout=settings.snapshot_timeout.total_seconds())
    return BackupOrchestrator(settings, source, listeners=[partial(record_run, job_id=job.id)])


def _get_job(job_id: int, allow_disabled: bool) -> BackupJob:
    job = db.session.get(BackupJob, job_id)

    if not job:
        raise ValueError(f"Backup job not found: {job_id}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Backup job is disabled: {job.name}")

    return job


def execute_backup_job(job_id: int, allow_disabled: bool = False) -> BackupRun:
    """
    Execute a backup job by ID.

    Args:
        job_id: ID of BackupJob to execute
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)

    Returns:
        Finished BackupRun

    Raises:
        ValueError: If job not found, or if disabled and not allowed
        PolicyError: If the job configuration is invalid
        LockContentionError: If a run for the same database is in progress
    """
    job = _get_job(job_id, allow_disabled)
    request = job.to_request()
    return build_orchestrator(job).run(request)


def resume_backup_job(job_id: int, allow_disabled: bool = False) -> BackupRun:
    """
    Retry remote sync and pruning for a job's newest local backup.

    Raises:
        ValueError: If job not found, or if disabled and not allowed
        LockContentionError: If a run for the same database is in progress
    """
    job = _get_job(job_id, allow_disabled)
    request = job.to_request()
    return build_orchestrator(job).resume(request)


def find_job(name: str) -> BackupJob:
    """
    Look up a job by name.

    Raises:
        ValueError: If job not found
    """
    job = BackupJob.query.filter_by(name=name).first()

    if not job:
        raise ValueError(f"Backup job not found: {name}")

    return job


def jobs_awaiting_resume() -> list:
    """Enabled jobs whose most recent run ended in PartialFailure."""
    latest = (
        db.session.query(BackupRunRecord.job_id, func.max(BackupRunRecord.started_at).label('started_at'))
        .group_by(BackupRunRecord.job_id)
        .subquery()
    )
    records = (
        BackupRunRecord.query
        .join(latest, (BackupRunRecord.job_id == latest.c.job_id) & (BackupRunRecord.started_at == latest.c.started_at))
        .filter(BackupRunRecord.status == RunStatus.PARTIAL_FAILURE.value)
        .all()
    )
    return [record.job for record in records if record.job is not None and record.job.enabled]


def resume_partial_failures() -> list:
    """
    Resume every job whose latest run ended in PartialFailure.

    Jobs with a run in progress are skipped until the next pass. A job that
    cannot be resumed (invalid configuration, unresolvable credentials) is
    logged and does not stop the others.

    Returns:
        List of finished resume runs
    """
    runs = []
    for job in jobs_awaiting_resume():
        try:
            runs.append(resume_backup_job(job.id))
        except LockContentionError as e:
            logger.info(f"Skipping resume of {job.name}: {e.message}")
        except (BackupError, CredentialError, KeyError, ValueError) as e:
            logger.error(f"Cannot resume {job.name}: {e}")
    return runs
