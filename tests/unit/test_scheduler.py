"""
Unit tests for scheduler (dumpkeeper/scheduler.py).

Tests APScheduler configuration and job scheduling.
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from dumpkeeper import scheduler as scheduler_module
from dumpkeeper.backup.errors import LockContentionError, SourceError
from dumpkeeper.utils.credentials import CredentialError


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Clean up after each test."""
        # Reset global scheduler
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_init_scheduler(self, app, mock_scheduler):
        """Test scheduler initialization."""
        result = scheduler_module.init_scheduler(app)

        assert result == mock_scheduler
        assert scheduler_module.scheduler == mock_scheduler
        assert scheduler_module.flask_app == app

        # Resume job is registered on an interval
        mock_scheduler.add_job.assert_called_once()
        call_kwargs = mock_scheduler.add_job.call_args[1]
        assert call_kwargs['id'] == scheduler_module.RESUME_JOB_ID
        assert isinstance(call_kwargs['trigger'], IntervalTrigger)

    @patch('dumpkeeper.scheduler.BackgroundScheduler')
    def test_scheduler_configuration(self, mock_scheduler_class, app):
        scheduler_module.init_scheduler(app)

        call_kwargs = mock_scheduler_class.call_args[1]
        assert 'jobstores' in call_kwargs
        assert 'executors' in call_kwargs
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['job_defaults']['coalesce'] is True
        assert call_kwargs['timezone'] == 'UTC'

    @patch('dumpkeeper.scheduler.BackgroundScheduler')
    def test_init_scheduler_only_once(self, mock_scheduler_class, app):
        """Test scheduler is only initialized once."""
        result1 = scheduler_module.init_scheduler(app)
        result2 = scheduler_module.init_scheduler(app)

        assert result1 == result2
        mock_scheduler_class.assert_called_once()


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.state = 0
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_start_scheduler(self):
        self.mock_scheduler.get_jobs.return_value = []

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_not_initialized(self):
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_already_running(self):
        self.mock_scheduler.running = True

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self):
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once()

    def test_stop_scheduler_not_running(self):
        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_not_called()


class TestSyncBackupJobs:
    """Test syncing backup jobs with scheduler."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.get_jobs.return_value = []
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_sync_backup_jobs_not_initialized(self):
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.sync_backup_jobs()

    def test_sync_schedules_enabled_job(self, db, sqlite_backup_job):
        """Test syncing schedules an enabled job with a cron expression."""
        scheduler_module.sync_backup_jobs()

        self.mock_scheduler.add_job.assert_called_once()
        call_kwargs = self.mock_scheduler.add_job.call_args[1]
        assert call_kwargs['id'] == f'backup_{sqlite_backup_job.id}'
        assert call_kwargs['name'] == 'Backup: orders'
        assert call_kwargs['args'] == [sqlite_backup_job.id]
        assert call_kwargs['replace_existing'] is True
        assert isinstance(call_kwargs['trigger'], CronTrigger)

    def test_sync_removes_disabled_job(self, db, sqlite_backup_job):
        sqlite_backup_job.enabled = False
        db.session.commit()

        mock_job = MagicMock()
        mock_job.id = f'backup_{sqlite_backup_job.id}'
        self.mock_scheduler.get_jobs.return_value = [mock_job]

        scheduler_module.sync_backup_jobs()

        self.mock_scheduler.add_job.assert_not_called()
        self.mock_scheduler.remove_job.assert_called_once_with(f'backup_{sqlite_backup_job.id}')

    def test_sync_removes_deleted_job(self, db):
        """Test a scheduled job whose database row is gone gets removed."""
        mock_job = MagicMock()
        mock_job.id = 'backup_999'
        self.mock_scheduler.get_jobs.return_value = [mock_job]

        scheduler_module.sync_backup_jobs()

        self.mock_scheduler.remove_job.assert_called_once_with('backup_999')

    def test_sync_keeps_resume_job(self, db):
        mock_job = MagicMock()
        mock_job.id = scheduler_module.RESUME_JOB_ID
        self.mock_scheduler.get_jobs.return_value = [mock_job]

        scheduler_module.sync_backup_jobs()

        self.mock_scheduler.remove_job.assert_not_called()

    def test_sync_cleans_old_manual_jobs(self, db):
        mock_manual_job = MagicMock()
        mock_manual_job.id = 'manual_123_1234567890'
        self.mock_scheduler.get_jobs.return_value = [mock_manual_job]

        scheduler_module.sync_backup_jobs()

        self.mock_scheduler.remove_job.assert_called_with('manual_123_1234567890')

    def test_invalid_cron_is_not_scheduled(self, db, sqlite_backup_job):
        sqlite_backup_job.schedule_cron = 'every day at two'
        db.session.commit()

        scheduler_module.sync_backup_jobs()

        self.mock_scheduler.add_job.assert_not_called()

    def test_remove_missing_job_ignored(self):
        self.mock_scheduler.remove_job.side_effect = JobLookupError('backup_1')

        scheduler_module._remove_job('backup_1')


class TestManualTrigger:
    """Test manual backup job triggering."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_trigger_backup_now(self, db, sqlite_backup_job):
        scheduler_module.trigger_backup_now(sqlite_backup_job.id)

        # One-time job that may run a disabled job
        self.mock_scheduler.add_job.assert_called_once()
        call_args = self.mock_scheduler.add_job.call_args
        assert call_args[1]['args'] == [sqlite_backup_job.id, True]
        assert call_args[1]['id'].startswith(f'manual_{sqlite_backup_job.id}_')

    def test_trigger_backup_now_not_initialized(self, db, sqlite_backup_job):
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.trigger_backup_now(sqlite_backup_job.id)

    def test_trigger_backup_now_job_not_found(self, db):
        with pytest.raises(ValueError, match="not found"):
            scheduler_module.trigger_backup_now(99999)


class TestSchedulerQueries:
    """Test scheduler query functions."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None

    def test_get_scheduled_jobs(self):
        mock_job1 = MagicMock()
        mock_job1.id = 'backup_1'
        mock_job1.name = 'Backup: orders'
        mock_job1.next_run_time = datetime(2024, 1, 1, 2, 0, 0)
        mock_job1.trigger = 'cron'

        mock_job2 = MagicMock()
        mock_job2.id = 'manual_1_1704074400'
        mock_job2.name = 'Manual: orders'
        mock_job2.next_run_time = None
        mock_job2.trigger = 'date'

        self.mock_scheduler.get_jobs.return_value = [mock_job1, mock_job2]

        result = scheduler_module.get_scheduled_jobs()

        assert len(result) == 2
        assert result[0]['id'] == 'backup_1'
        assert result[0]['next_run'] == '2024-01-01T02:00:00'
        assert result[1]['next_run'] is None

    def test_get_scheduled_jobs_not_initialized(self):
        scheduler_module.scheduler = None

        assert scheduler_module.get_scheduled_jobs() == []

    def test_is_scheduler_running(self):
        self.mock_scheduler.running = True
        assert scheduler_module.is_scheduler_running() is True

        self.mock_scheduler.running = False
        assert scheduler_module.is_scheduler_running() is False

    def test_is_scheduler_running_not_initialized(self):
        scheduler_module.scheduler = None

        assert scheduler_module.is_scheduler_running() is False


class TestExecuteBackupWrapper:
    """Test backup execution wrapper."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_app = MagicMock()
        scheduler_module.flask_app = self.mock_app

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.flask_app = None

    @patch('dumpkeeper.scheduler.db')
    @patch('dumpkeeper.scheduler.execute_backup_job')
    def test_execute_backup_wrapper_success(self, mock_execute, mock_db):
        mock_execute.return_value.status.value = 'success'

        scheduler_module._execute_backup_wrapper(123)

        self.mock_app.app_context.assert_called_once()
        mock_execute.assert_called_once_with(123, allow_disabled=False)
        mock_db.session.remove.assert_called_once()

    @patch('dumpkeeper.scheduler.db')
    @patch('dumpkeeper.scheduler.execute_backup_job')
    def test_execute_backup_wrapper_with_allow_disabled(self, mock_execute, mock_db):
        scheduler_module._execute_backup_wrapper(123, allow_disabled=True)

        mock_execute.assert_called_once_with(123, allow_disabled=True)

    @pytest.mark.parametrize('error', [
        LockContentionError('Another backup run for orders is in progress'),
        SourceError('connection refused'),
        ValueError('Backup job is disabled: orders'),
        CredentialError('Environment variable ORDERS_BACKUP_KEY is not set'),
    ])
    @patch('dumpkeeper.scheduler.db')
    @patch('dumpkeeper.scheduler.execute_backup_job')
    def test_execute_backup_wrapper_handles_errors(self, mock_execute, mock_db, error):
        """Test expected failures are logged, not raised into APScheduler."""
        mock_execute.side_effect = error

        scheduler_module._execute_backup_wrapper(123)

        mock_db.session.remove.assert_called_once()

    @patch('dumpkeeper.scheduler.db')
    @patch('dumpkeeper.scheduler.resume_partial_failures')
    def test_resume_wrapper(self, mock_resume, mock_db):
        mock_resume.return_value = []

        scheduler_module._resume_wrapper()

        mock_resume.assert_called_once()
        mock_db.session.remove.assert_called_once()
