"""
APScheduler configuration and job scheduling for Dumpkeeper.

Manages:
- Scheduled backup jobs (based on cron expressions)
- Periodic resume of runs that ended in PartialFailure
- Manual job triggers
"""

import logging
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from dumpkeeper import db
from dumpkeeper.models import BackupJob
from dumpkeeper.backup.errors import BackupError, LockContentionError
from dumpkeeper.runner import execute_backup_job, resume_partial_failures
from dumpkeeper.utils.credentials import CredentialError


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

RESUME_JOB_ID = 'resume_partial_failures'


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    # Configure job stores and executors
    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    # Create scheduler
    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    # Retry remote sync of runs that ended in PartialFailure
    scheduler.add_job(
        func=_resume_wrapper,
        trigger=IntervalTrigger(minutes=app.config.get('RESUME_INTERVAL_MINUTES', 30)),
        id=RESUME_JOB_ID,
        name='Resume partially failed backups',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_backup_jobs():
    """
    Synchronize backup jobs from database to scheduler.

    This function should be called:
    - After app startup
    - After creating/updating/deleting backup jobs
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Manual triggers from a previous process have either run or missed their window
    for job in scheduler.get_jobs():
        if job.id.startswith('manual_'):
            _remove_job(job.id)

    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for backup_job in BackupJob.query.all():
        job_id = f"backup_{backup_job.id}"

        if backup_job.enabled and backup_job.schedule_cron:
            _schedule_job(backup_job)
            scheduled_job_ids.discard(job_id)
        elif job_id in scheduled_job_ids:
            _remove_job(job_id)
            scheduled_job_ids.discard(job_id)

    # Remove any leftover scheduled jobs that don't exist in database
    for leftover_id in scheduled_job_ids:
        _remove_job(leftover_id)


def _schedule_job(backup_job: BackupJob):
    """
    Add or reschedule a backup job.

    Args:
        backup_job: BackupJob instance
    """
    try:
        trigger = CronTrigger.from_crontab(backup_job.schedule_cron, timezone='UTC')
    except ValueError as e:
        logger.error(f"Invalid cron expression for {backup_job.name} ({backup_job.schedule_cron}): {e}")
        return

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[backup_job.id],
        trigger=trigger,
        id=f"backup_{backup_job.id}",
        name=f"Backup: {backup_job.name}",
        replace_existing=True
    )
    logger.info(f"Scheduled backup job: {backup_job.name} ({backup_job.schedule_cron})")


def _remove_job(job_id: str):
    try:
        scheduler.remove_job(job_id)
        logger.info(f"Removed scheduled job: {job_id}")
    except JobLookupError:
        pass


def _execute_backup_wrapper(job_id: int, allow_disabled: bool = False):
    """
    Wrapper function for executing backup jobs in scheduler context.

    This function ensures the database session is properly managed when
    jobs are executed by APScheduler.

    Args:
        job_id: BackupJob ID to execute
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup job ID: {job_id} (allow_disabled={allow_disabled})")
            run = execute_backup_job(job_id, allow_disabled=allow_disabled)
            logger.info(f"Backup job {job_id} finished with status: {run.status.value}")
        except LockContentionError as e:
            logger.warning(f"Backup job {job_id} not started: {e.message}")
        except (BackupError, CredentialError, KeyError, ValueError) as e:
            logger.error(f"Backup job {job_id} could not run: {e}")
        finally:
            db.session.remove()


def _resume_wrapper():
    with flask_app.app_context():
        try:
            runs = resume_partial_failures()
            for run in runs:
                logger.info(f"Resumed {run.database_id}: {run.status.value}")
        finally:
            db.session.remove()


def trigger_backup_now(job_id: int):
    """
    Manually trigger a backup job immediately.

    Args:
        job_id: BackupJob ID to execute

    Raises:
        ValueError: If job not found
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    backup_job = db.session.get(BackupJob, job_id)
    if not backup_job:
        raise ValueError(f"Backup job not found: {job_id}")

    # One second delay avoids racing the scheduler's own wakeup
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[job_id, True],  # True = allow_disabled for manual triggers
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{job_id}_{int(now.timestamp())}",
        name=f"Manual: {backup_job.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup job: {backup_job.name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
