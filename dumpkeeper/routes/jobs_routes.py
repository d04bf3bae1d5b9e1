"""
Backup job routes - job overview and manual triggers.
"""

from flask import Blueprint, jsonify

from dumpkeeper import db
from dumpkeeper.models import BackupJob
from dumpkeeper.scheduler import trigger_backup_now, get_scheduled_jobs, is_scheduler_running


bp = Blueprint('jobs', __name__, url_prefix='/api/jobs')


@bp.route('', methods=['GET'])
def list_jobs():
    """
    Get all backup jobs with their next scheduled run.

    Returns:
        JSON array of backup jobs
    """
    next_runs = {job['id']: job['next_run'] for job in get_scheduled_jobs()}

    jobs_data = []
    for job in BackupJob.query.order_by(BackupJob.name).all():
        data = job.to_dict()
        data['next_run'] = next_runs.get(f"backup_{job.id}")
        jobs_data.append(data)

    return jsonify(jobs_data)


@bp.route('/scheduled', methods=['GET'])
def list_scheduled():
    """Get every job known to the scheduler, including resume and manual runs."""
    return jsonify({
        'scheduler_running': is_scheduler_running(),
        'jobs': get_scheduled_jobs()
    })


@bp.route('/<int:job_id>/run', methods=['POST'])
def run_job(job_id):
    """
    Queue a backup job for immediate execution by the scheduler.

    Disabled jobs may be triggered manually. The run itself is recorded in
    the run history like any scheduled run.

    Args:
        job_id: Backup job ID
    """
    job = db.get_or_404(BackupJob, job_id)

    if not is_scheduler_running():
        return jsonify({'error': 'Scheduler is not running in this process'}), 503

    trigger_backup_now(job_id)
    return jsonify({
        'message': f"Backup job '{job.name}' has been queued for immediate execution"
    }), 202
