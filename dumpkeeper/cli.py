"""
Command line interface, registered on the Flask app.

    flask backup run orders        # exit status 0 success, 1 failure, 2 partial failure
    flask backup resume orders
    flask backup runs --database orders
    flask backup restore orders_2024-01-15_0200.sql.gz.enc restored.sql --passphrase env:BACKUP_PASSPHRASE
    flask jobs add orders --source-type mysql --source-config '{"database": "orders"}'
    flask jobs list
    flask jobs check orders        # exit status 1 if a remote tier is unreachable
    flask jobs remove orders
"""

import json

import click
from flask import current_app
from flask.cli import AppGroup

from dumpkeeper import db
from dumpkeeper.models import BackupJob, BackupRunRecord
from dumpkeeper.runner import find_job, execute_backup_job, resume_backup_job
from dumpkeeper.backup.compression import restore_stream, options_for_key
from dumpkeeper.backup.errors import BackupError, LockContentionError
from dumpkeeper.backup.artifacts import iter_file_chunks
from dumpkeeper.backup.executor import create_remote_store
from dumpkeeper.backup.settings import EngineSettings
from dumpkeeper.backup.storage import LocalStore
from dumpkeeper.utils.credentials import SecretHandle, CredentialError


backup_cli = AppGroup('backup', help='Run and inspect backups.')
jobs_cli = AppGroup('jobs', help='Manage backup job definitions.')


def _echo_run(run):
    click.echo(f"Run {run.id} ({run.kind}) for {run.database_id}: {run.status.value}")
    for result in run.steps:
        line = f"  {result.step.value:<14} {result.status}"
        if result.error_kind:
            line += f" [{result.error_kind}]"
        if result.message:
            line += f" {result.message}"
        click.echo(line)
    if run.artifact:
        click.echo(f"  artifact: {run.artifact.key} ({run.artifact.size_bytes} bytes, sha256 {run.artifact.checksum})")


def _run_job(name, allow_disabled, action):
    try:
        job = find_job(name)
        run = action(job.id, allow_disabled=allow_disabled)
    except LockContentionError as e:
        click.echo(f"Backup not started: {e}", err=True)
        raise SystemExit(1)
    except (ValueError, BackupError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    _echo_run(run)
    raise SystemExit(run.exit_code)


@backup_cli.command('run')
@click.argument('name')
@click.option('--allow-disabled', is_flag=True, help='Run the job even if it is disabled.')
def run_command(name, allow_disabled):
    """Run a complete backup of job NAME."""
    _run_job(name, allow_disabled, execute_backup_job)


@backup_cli.command('resume')
@click.argument('name')
@click.option('--allow-disabled', is_flag=True, help='Resume the job even if it is disabled.')
def resume_command(name, allow_disabled):
    """Retry remote sync and pruning for job NAME's newest local backup."""
    _run_job(name, allow_disabled, resume_backup_job)


@backup_cli.command('runs')
@click.option('--database', help='Only show runs of this database.')
@click.option('--status', type=click.Choice(['success', 'partial_failure', 'failure']))
@click.option('--limit', default=20, show_default=True)
def runs_command(database, status, limit):
    """List recorded runs, newest first."""
    query = BackupRunRecord.query
    if database:
        query = query.filter_by(database_id=database)
    if status:
        query = query.filter_by(status=status)

    for record in query.order_by(BackupRunRecord.started_at.desc()).limit(limit):
        failure = f" {record.failing_step}/{record.error_kind}" if record.failing_step else ''
        click.echo(f"{record.started_at:%Y-%m-%d %H:%M:%S} {record.id} {record.database_id} "
                   f"{record.kind} {record.status}{failure} {record.artifact_key or '-'}")


@backup_cli.command('restore')
@click.argument('key')
@click.argument('output', type=click.Path(dir_okay=False, writable=True))
@click.option('--passphrase', help='Credential reference of the passphrase (env:NAME or file:/path).')
def restore_command(key, output, passphrase):
    """Decrypt and decompress local artifact KEY into OUTPUT."""
    store = LocalStore(current_app.config['LOCAL_BACKUP_DIR'])
    try:
        artifact = store.get(key)
        options = options_for_key(key, SecretHandle.parse(passphrase))
        with open(store.path_for(key), 'rb') as source, open(output, 'wb') as target:
            for chunk in restore_stream(iter_file_chunks(source), options):
                target.write(chunk)
    except BackupError as e:
        click.echo(f"Restore failed: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Restored {artifact.key} to {output}")


@jobs_cli.command('add')
@click.argument('name')
@click.option('--source-type', required=True, type=click.Choice(['mysql', 'postgres', 'ssh', 'sqlite']))
@click.option('--source-config', required=True, help='Source configuration as JSON.')
@click.option('--consistency-mode', default='single-transaction', show_default=True,
              type=click.Choice(['single-transaction', 'lock-tables', 'snapshot']))
@click.option('--compression', default='gzip', show_default=True, help="'none', 'gzip' or 'gzip-N'.")
@click.option('--passphrase', help='Credential reference of the encryption passphrase.')
@click.option('--cron', help='Cron schedule, e.g. "0 2 * * *".')
@click.option('--local-days', default=7, show_default=True)
@click.option('--local-keep', default=0, show_default=True)
@click.option('--remote-days', type=int)
@click.option('--remote-keep', default=0, show_default=True)
@click.option('--remote-target', 'remote_targets', multiple=True, help='Remote target as JSON (repeatable).')
@click.option('--auto-prune', is_flag=True, help='Delete expired artifacts from remote tiers.')
@click.option('--disabled', is_flag=True)
def add_job_command(name, source_type, source_config, consistency_mode, compression, passphrase, cron,
                    local_days, local_keep, remote_days, remote_keep, remote_targets, auto_prune, disabled):
    """Create backup job NAME."""
    try:
        targets = [json.loads(target) for target in remote_targets]
        json.loads(source_config)
    except ValueError as e:
        raise click.BadParameter(f"Invalid JSON: {e}")

    if BackupJob.query.filter_by(name=name).first():
        raise click.ClickException(f"Backup job already exists: {name}")

    job = BackupJob(
        name=name,
        enabled=not disabled,
        source_type=source_type,
        source_config=source_config,
        consistency_mode=consistency_mode,
        compression=compression,
        encryption_passphrase=passphrase,
        schedule_cron=cron,
        retention_local_days=local_days,
        local_minimum_keep=local_keep,
        retention_remote_days=remote_days,
        remote_minimum_keep=remote_keep,
        remote_targets=json.dumps(targets),
        auto_prune=auto_prune
    )

    try:
        job.to_request()
    except (BackupError, CredentialError, KeyError, ValueError) as e:
        raise click.ClickException(f"Invalid job configuration: {e}")

    db.session.add(job)
    db.session.commit()
    click.echo(f"Created backup job {name}")


@jobs_cli.command('list')
def list_jobs_command():
    """List backup jobs."""
    for job in BackupJob.query.order_by(BackupJob.name):
        state = 'enabled' if job.enabled else 'disabled'
        click.echo(f"{job.name} [{job.source_type}, {state}] schedule={job.schedule_cron or '-'} "
                   f"local={job.retention_local_days}d/{job.local_minimum_keep} "
                   f"remote={', '.join(job.to_dict()['remote_targets']) or '-'}")


@jobs_cli.command('remove')
@click.argument('name')
def remove_job_command(name):
    """Delete backup job NAME and its run history."""
    try:
        job = find_job(name)
    except ValueError as e:
        raise click.ClickException(str(e))

    db.session.delete(job)
    db.session.commit()
    click.echo(f"Removed backup job {name}")


@jobs_cli.command('check')
@click.argument('name')
def check_job_command(name):
    """Check that job NAME's remote tiers are reachable with its credentials."""
    try:
        job = find_job(name)
        targets = job.get_remote_targets()
    except (ValueError, KeyError, BackupError, CredentialError) as e:
        raise click.ClickException(str(e))

    if not targets:
        click.echo(f"{name} has no remote targets")
        return

    settings = EngineSettings.from_config(current_app.config)
    failed = 0
    for target in targets:
        try:
            create_remote_store(target, settings).test_connection()
            click.echo(f"  {target.name:<14} ok (s3://{target.bucket}/{target.prefix})")
        except BackupError as e:
            failed += 1
            click.echo(f"  {target.name:<14} failed [{e.error_kind}] {e}")

    if failed:
        raise SystemExit(1)


def register_cli(app):
    app.cli.add_command(backup_cli)
    app.cli.add_command(jobs_cli)
