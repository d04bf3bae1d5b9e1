"""
Run history routes - read-only view of recorded backup runs.
"""

from datetime import datetime, timedelta, timezone

from flask import Blueprint, jsonify, request

from dumpkeeper import db
from dumpkeeper.models import BackupRunRecord


bp = Blueprint('runs', __name__, url_prefix='/api/runs')

RUN_STATUSES = ('success', 'partial_failure', 'failure')


@bp.route('', methods=['GET'])
def list_runs():
    """
    Get run history with filtering and pagination.

    Query params:
        - status: Filter by status (success/partial_failure/failure)
        - job_id: Filter by job ID
        - database: Filter by database identifier
        - days: Only show runs from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    job_id_filter = request.args.get('job_id', type=int)
    database_filter = request.args.get('database')
    days_filter = request.args.get('days', type=int)
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupRunRecord.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRunRecord.status == status_filter)

    if job_id_filter:
        query = query.filter(BackupRunRecord.job_id == job_id_filter)

    if database_filter:
        query = query.filter(BackupRunRecord.database_id == database_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.now(timezone.utc) - timedelta(days=days_filter)
        query = query.filter(BackupRunRecord.started_at >= cutoff_date)

    # Get total count before pagination
    total_count = query.count()

    records = query.order_by(BackupRunRecord.started_at.desc()).limit(limit).offset(offset).all()

    return jsonify({
        'records': [record.to_dict() for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/summary', methods=['GET'])
def get_runs_summary():
    """
    Get summary statistics for the run history.

    Query params:
        - days: Calculate summary for last N days (default: 30, max: 365)
    """
    days = request.args.get('days', 30, type=int)
    if days < 1:
        days = 30
    if days > 365:
        days = 365

    cutoff_date = datetime.now(timezone.utc) - timedelta(days=days)
    query = BackupRunRecord.query.filter(BackupRunRecord.started_at >= cutoff_date)

    counts = {status: query.filter(BackupRunRecord.status == status).count() for status in RUN_STATUSES}
    total = sum(counts.values())

    recent = BackupRunRecord.query.order_by(BackupRunRecord.started_at.desc()).first()

    return jsonify({
        'days': days,
        'total_runs': total,
        'successful': counts['success'],
        'partial_failures': counts['partial_failure'],
        'failed': counts['failure'],
        'success_rate': round(counts['success'] / total * 100, 1) if total else 0,
        'most_recent': recent.to_dict() if recent else None
    })


@bp.route('/<run_id>', methods=['GET'])
def get_run_detail(run_id):
    """
    Get one run with its steps, sync reports and logs.

    Args:
        run_id: Run ID
    """
    record = db.get_or_404(BackupRunRecord, run_id)

    data = record.to_dict(include_steps=True, include_logs=True)
    if record.finished_at:
        data['duration_seconds'] = int((record.finished_at - record.started_at).total_seconds())

    return jsonify(data)
