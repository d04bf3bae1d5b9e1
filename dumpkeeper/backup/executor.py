"""
Backup orchestrator - runs the complete lifecycle of one backup.

Workflow (each step recorded as a StepResult on the BackupRun):
1. Snapshot: issue the artifact key and start a consistent dump
2. Transform: stream the dump through compression/encryption into a staging file
3. LocalPersist: atomically store the artifact locally and verify its checksum
4. RemoteSync: mirror verified local artifacts to every remote tier in parallel
5. LocalPrune: delete local artifacts outside the retention window
6. RemotePrune: delete expired remote artifacts (only with auto_prune)

A failure in steps 1-3 leaves no new backup and ends the run as
Failure. A failure afterwards ends it as PartialFailure: the new backup
is durable locally and ``resume`` can later redo steps 4-6 without a new
snapshot. Steps never run after a failed one.
"""

import os
import copy
import uuid
import time
import shutil
import logging
import tempfile
import threading
from enum import Enum
from datetime import datetime, timezone
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, List, Dict, Any, Callable

from .artifacts import Artifact, ArtifactState
from .compression import transform
from .errors import BackupError, WriteError, NotFoundError, PartialSyncError, RunCancelledError, DuplicateKeyError
from .locking import RunLock
from .naming import ArtifactNamer
from .notifications import FailureEvent, LoggingNotifier
from .retention import expired, newest_first
from .settings import EngineSettings, BackupRequest, RemoteTarget
from .storage import LocalStore, S3RemoteStore, _classify_os_error


logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    RUNNING = 'running'
    SUCCESS = 'success'
    PARTIAL_FAILURE = 'partial_failure'
    FAILURE = 'failure'

    @property
    def exit_code(self) -> int:
        return {
            RunStatus.SUCCESS: 0,
            RunStatus.FAILURE: 1,
            RunStatus.PARTIAL_FAILURE: 2
        }.get(self, 1)


class RunState(str, Enum):
    IDLE = 'idle'
    SNAPSHOTTING = 'snapshotting'
    TRANSFORMING = 'transforming'
    LOCAL_PERSISTING = 'local_persisting'
    REMOTE_SYNCING = 'remote_syncing'
    PRUNING = 'pruning'
    COMPLETED = 'completed'


class Step(str, Enum):
    SNAPSHOT = 'snapshot'
    TRANSFORM = 'transform'
    LOCAL_PERSIST = 'local_persist'
    REMOTE_SYNC = 'remote_sync'
    LOCAL_PRUNE = 'local_prune'
    REMOTE_PRUNE = 'remote_prune'


STEP_STATES = {
    Step.SNAPSHOT: RunState.SNAPSHOTTING,
    Step.TRANSFORM: RunState.TRANSFORMING,
    Step.LOCAL_PERSIST: RunState.LOCAL_PERSISTING,
    Step.REMOTE_SYNC: RunState.REMOTE_SYNCING,
    Step.LOCAL_PRUNE: RunState.PRUNING,
    Step.REMOTE_PRUNE: RunState.PRUNING,
}

# Steps whose failure means no new durable backup exists
PRODUCING_STEPS = (Step.SNAPSHOT, Step.TRANSFORM, Step.LOCAL_PERSIST)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepResult:
    """Outcome of one lifecycle step."""

    SUCCESS = 'success'
    FAILED = 'failed'
    SKIPPED = 'skipped'

    def __init__(self, step: Step):
        self.step = step
        self.status = None
        self.started_at = _utcnow()
        self.finished_at = None
        self.error_kind = None
        self.message = None
        self.details = {}

    def __setattr__(self, name, value):
        if getattr(self, '_frozen', False):
            raise AttributeError(f"Result of step {self.step.value} belongs to a finished run")
        super().__setattr__(name, value)

    @property
    def details(self) -> Dict[str, Any]:
        """Step specific data; a copy once the owning run is finished."""
        if getattr(self, '_frozen', False):
            return copy.deepcopy(self._details)
        return self._details

    @details.setter
    def details(self, value: Dict[str, Any]):
        self._details = value

    def freeze(self):
        self._frozen = True

    @property
    def ok(self) -> bool:
        return self.status in (self.SUCCESS, self.SKIPPED)

    def skip(self, message: str):
        self.status = self.SKIPPED
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            'step': self.step.value,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'error_kind': self.error_kind,
            'message': self.message,
            'details': self.details
        }


class BackupRun:
    """
    Record of one orchestrator invocation.

    Only the orchestrator mutates a run, and only until ``finish``; after
    that every attribute is read-only.
    """

    def __init__(self, database_id: str, kind: str = 'backup'):
        self.id = uuid.uuid4().hex
        self.database_id = database_id
        self.kind = kind
        self.state = RunState.IDLE
        self.status = RunStatus.RUNNING
        self.started_at = _utcnow()
        self.finished_at = None
        self.artifact: Optional[Artifact] = None
        self._sync_reports: Dict[str, Dict[str, Any]] = {}
        self._steps: List[StepResult] = []
        self._logs: List[str] = []
        self._sealed = False

    def __setattr__(self, name, value):
        if getattr(self, '_sealed', False):
            raise AttributeError(f"BackupRun {self.id} is finished and can no longer change")
        super().__setattr__(name, value)

    @property
    def steps(self) -> tuple:
        return tuple(self._steps)

    @property
    def logs(self) -> tuple:
        return tuple(self._logs)

    @property
    def sync_reports(self) -> Dict[str, Dict[str, Any]]:
        """Per-tier sync reports; a copy once the run is finished."""
        if self._sealed:
            return copy.deepcopy(self._sync_reports)
        return self._sync_reports

    @sync_reports.setter
    def sync_reports(self, value: Dict[str, Dict[str, Any]]):
        self._sync_reports = value

    @property
    def is_finished(self) -> bool:
        return self._sealed

    def record(self, result: StepResult):
        if self._sealed:
            raise AttributeError(f"BackupRun {self.id} is finished and can no longer change")
        self._steps.append(result)

    def log(self, message: str):
        if self._sealed:
            raise AttributeError(f"BackupRun {self.id} is finished and can no longer change")
        timestamp = _utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self._logs.append(f"[{timestamp}] {message}")

    def finish(self, status: RunStatus):
        self.status = status
        self.state = RunState.COMPLETED
        self.finished_at = _utcnow()
        for result in self._steps:
            result.freeze()
        self._sealed = True

    @property
    def failing_step(self) -> Optional[StepResult]:
        """The first step that failed, if any."""
        for result in self._steps:
            if result.status == StepResult.FAILED:
                return result
        return None

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def step(self, step: Step) -> Optional[StepResult]:
        for result in self._steps:
            if result.step == step:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        failing = self.failing_step
        return {
            'id': self.id,
            'database_id': self.database_id,
            'kind': self.kind,
            'status': self.status.value,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'artifact': self.artifact.to_dict() if self.artifact else None,
            'failing_step': failing.step.value if failing else None,
            'error_kind': failing.error_kind if failing else None,
            'message': failing.message if failing else None,
            'steps': [result.to_dict() for result in self._steps],
            'sync_reports': copy.deepcopy(self._sync_reports)
        }

    def __repr__(self):
        return f'<BackupRun {self.id} {self.database_id} status={self.status.value}>'


def create_remote_store(target: RemoteTarget, settings: EngineSettings) -> S3RemoteStore:
    """Build the remote store for a target with the engine's timeouts and retries."""
    return S3RemoteStore(
        name=target.name,
        bucket_name=target.bucket,
        prefix=target.prefix,
        region=target.region,
        access_key=target.access_key,
        secret_key=target.secret_key,
        endpoint_url=target.endpoint_url,
        retry_policy=settings.retry_policy,
        connect_timeout=settings.remote_connect_timeout,
        read_timeout=settings.remote_read_timeout
    )


class BackupOrchestrator:
    """
    Runs backups of one database source through the full lifecycle.

    The orchestrator is synchronous: ``run`` returns once the run is
    complete, whatever the outcome. Schedulers, the CLI and the API all
    call into it.
    """

    def __init__(self, settings: EngineSettings, source,
                 notifiers: Optional[list] = None,
                 listeners: Optional[List[Callable[[BackupRun], None]]] = None,
                 remote_store_factory: Callable[[RemoteTarget, EngineSettings], Any] = create_remote_store,
                 local_store: Optional[LocalStore] = None):
        """
        Args:
            settings: EngineSettings
            source: Snapshot source exposing ``take_snapshot(database_id, mode)``
            notifiers: Failure sinks (defaults to a LoggingNotifier)
            listeners: Callbacks receiving every finished run (history recording)
            remote_store_factory: Builds a remote store from a RemoteTarget
            local_store: LocalStore override (defaults to settings.local_backup_dir)
        """
        self.settings = settings
        self.source = source
        self.notifiers = notifiers if notifiers is not None else [LoggingNotifier()]
        self.listeners = listeners or []
        self.remote_store_factory = remote_store_factory
        self.local_store = local_store or LocalStore(settings.local_backup_dir, settings.retry_policy)
        self._namers: Dict[str, ArtifactNamer] = {}
        self._namers_lock = threading.Lock()

    # -- entry points --

    def run(self, request: BackupRequest, cancel_event: Optional[threading.Event] = None) -> BackupRun:
        """
        Execute one complete backup run.

        Args:
            request: BackupRequest describing what to back up
            cancel_event: Optional event; setting it cancels the run at the
                next step or chunk boundary

        Returns:
            The finished BackupRun

        Raises:
            LockContentionError: If another run for the same database is in progress
        """
        with self._lock(request.database_id):
            run = BackupRun(request.database_id, kind='backup')
            return self._execute(run, request, cancel_event, self._backup_workflow)

    def resume(self, request: BackupRequest, cancel_event: Optional[threading.Event] = None) -> BackupRun:
        """
        Retry the remote sync and pruning of the newest verified local backup.

        Used after a PartialFailure; no new snapshot is taken.

        Raises:
            LockContentionError: If another run for the same database is in progress
        """
        with self._lock(request.database_id):
            run = BackupRun(request.database_id, kind='resume')
            return self._execute(run, request, cancel_event, self._resume_workflow)

    # -- workflow --

    def _lock(self, database_id: str) -> RunLock:
        return RunLock(self.settings.lock_dir, database_id, lease=self.settings.lock_lease,
                       wait=self.settings.lock_wait)

    def _execute(self, run: BackupRun, request: BackupRequest, cancel_event, workflow) -> BackupRun:
        self._log(run, f"Starting {run.kind} run {run.id} for {request.database_id} "
                       f"({request.transform.describe()}, {len(request.remote_targets)} remote tiers)")

        deadline = time.monotonic() + self.settings.run_timeout.total_seconds()

        def check_cancelled():
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelledError(f"Run {run.id} was cancelled")
            if time.monotonic() > deadline:
                raise RunCancelledError(f"Run {run.id} exceeded its timeout of {self.settings.run_timeout}")

        staging_dir = None
        try:
            os.makedirs(self.settings.work_dir, exist_ok=True)
            staging_dir = tempfile.mkdtemp(prefix=f'dumpkeeper_{request.database_id}_', dir=self.settings.work_dir)
            removed = self.local_store.cleanup_temp(request.database_id)
            if removed:
                self._log(run, f"Removed {removed} stale temporary files from interrupted runs")
            discarded = self.local_store.discard_unverified(request.database_id)
            if discarded:
                self._log(run, f"Removed unverified artifacts from interrupted runs: {', '.join(discarded)}")

            workflow(run, request, check_cancelled, staging_dir)
        except Exception as e:
            # Every exit path must end in a terminal status
            logger.exception(f"Unexpected error in run {run.id}")
            self._log(run, f"Unexpected error: {e}")
            if not run.steps or run.steps[-1].ok:
                result = StepResult(self._next_step(run))
                result.status = StepResult.FAILED
                result.error_kind = type(e).__name__
                result.message = str(e)
                result.finished_at = _utcnow()
                run.record(result)
        finally:
            if staging_dir:
                shutil.rmtree(staging_dir, ignore_errors=True)

        status = self._final_status(run)
        self._log(run, f"Run finished with status {status.value}")
        run.finish(status)
        self._publish(run)
        return run

    def _next_step(self, run: BackupRun) -> Step:
        order = list(Step) if run.kind == 'backup' else [Step.REMOTE_SYNC, Step.LOCAL_PRUNE, Step.REMOTE_PRUNE]
        done = {result.step for result in run.steps}
        for step in order:
            if step not in done:
                return step
        return order[-1]

    def _final_status(self, run: BackupRun) -> RunStatus:
        failing = run.failing_step
        if failing is None:
            return RunStatus.SUCCESS
        if run.kind == 'backup' and failing.step in PRODUCING_STEPS:
            return RunStatus.FAILURE
        return RunStatus.PARTIAL_FAILURE

    def _backup_workflow(self, run: BackupRun, request: BackupRequest, check_cancelled, staging_dir: str):
        context = {}

        if not self._step(run, Step.SNAPSHOT, lambda r: self._snapshot(run, request, context, check_cancelled)):
            return
        if not self._step(run, Step.TRANSFORM, lambda r: self._transform(run, request, context, staging_dir, check_cancelled, r)):
            return
        if not self._step(run, Step.LOCAL_PERSIST, lambda r: self._persist(run, context, r)):
            return

        self._distribute(run, request, run.artifact, check_cancelled)

    def _resume_workflow(self, run: BackupRun, request: BackupRequest, check_cancelled, staging_dir: str):
        inventory = [a for a in self.local_store.list(request.database_id) if a.is_verified]
        if not inventory:
            result = StepResult(Step.REMOTE_SYNC)
            result.status = StepResult.FAILED
            result.error_kind = NotFoundError.__name__
            result.message = f"No verified local backup of {request.database_id} to sync"
            result.finished_at = _utcnow()
            run.record(result)
            self._log(run, result.message)
            return

        run.artifact = newest_first(inventory)[0]
        self._log(run, f"Resuming remote sync from local artifact {run.artifact.key}")
        self._distribute(run, request, run.artifact, check_cancelled)

    def _distribute(self, run: BackupRun, request: BackupRequest, artifact: Artifact, check_cancelled):
        stores = {}

        if not self._step(run, Step.REMOTE_SYNC, lambda r: self._remote_sync(run, request, artifact, stores, check_cancelled, r)):
            return
        if not self._step(run, Step.LOCAL_PRUNE, lambda r: self._local_prune(run, request, artifact, check_cancelled, r)):
            return
        self._step(run, Step.REMOTE_PRUNE, lambda r: self._remote_prune(run, request, artifact, stores, check_cancelled, r))

    def _step(self, run: BackupRun, step: Step, action) -> bool:
        """
        Run one step and record its result.

        Returns:
            True if the step succeeded (or was skipped), False if it failed
        """
        run.state = STEP_STATES[step]
        result = StepResult(step)
        self._log(run, f"{step.value}: started")

        try:
            action(result)
            if result.status is None:
                result.status = StepResult.SUCCESS
        except BackupError as e:
            result.status = StepResult.FAILED
            result.error_kind = e.error_kind
            result.message = str(e)
            result.details.update(e.details)

        result.finished_at = _utcnow()
        run.record(result)

        if result.status == StepResult.FAILED:
            self._log(run, f"{step.value}: failed ({result.error_kind}): {result.message}")
            return False

        suffix = f" ({result.message})" if result.message else ''
        self._log(run, f"{step.value}: {result.status}{suffix}")
        return True

    # -- steps --

    def _namer(self, request: BackupRequest) -> ArtifactNamer:
        extension = request.transform.extension
        with self._namers_lock:
            if extension not in self._namers:
                self._namers[extension] = ArtifactNamer(
                    extension, self.settings.key_granularity, exists=self.local_store.window_taken
                )
            return self._namers[extension]

    def _snapshot(self, run, request, context, check_cancelled):
        check_cancelled()
        now = _utcnow()
        key = self._namer(request).name(request.database_id, now)
        context['key'] = key
        context['created_at'] = now
        context['stream'] = self.source.take_snapshot(request.database_id, request.consistency_mode)
        self._log(run, f"Artifact key: {key}")

    def _transform(self, run, request, context, staging_dir, check_cancelled, result):
        stream = context['stream']
        staging_path = os.path.join(staging_dir, context['key'])
        size = 0

        try:
            with open(staging_path, 'wb') as f:
                for chunk in transform(stream, request.transform):
                    check_cancelled()
                    f.write(chunk)
                    size += len(chunk)
        except OSError as e:
            raise _classify_os_error(e, f"staging {context['key']}")
        finally:
            # Releases the dump process/connection whether or not the stream completed
            stream.close()
            if not stream.completed and os.path.exists(staging_path):
                os.remove(staging_path)

        context['staging_path'] = staging_path
        result.details.update({'raw_bytes': stream.bytes_read, 'artifact_bytes': size})
        result.message = f"{stream.bytes_read} bytes dumped, {size} bytes after transform"

    def _persist(self, run, context, result):
        key = context['key']
        artifact = self.local_store.persist_file(key, context['staging_path'], created_at=context['created_at'])

        try:
            verified = self.local_store.verify(artifact)
        except Exception:
            self._discard(run, key)
            raise

        if not verified:
            self._discard(run, key)
            raise WriteError(f"Verification of {key} failed: stored bytes do not match the write-time checksum")

        run.artifact = self.local_store.get(key)
        result.details.update({'key': key, 'checksum': artifact.checksum, 'size_bytes': artifact.size_bytes})
        result.message = f"{key} stored and verified"

    def _discard(self, run, key):
        try:
            self.local_store.delete(key)
        except BackupError as e:
            # The next run of this database removes it while holding the lock
            self._log(run, f"Could not remove unverified artifact {key}: {e}")

    def _remote_sync(self, run, request, artifact, stores, check_cancelled, result):
        if not request.remote_targets:
            result.skip('no remote targets configured')
            return

        check_cancelled()
        inventory = [a for a in self.local_store.list(request.database_id) if a.is_verified]

        def sync_target(target: RemoteTarget):
            store = self.remote_store_factory(target, self.settings)
            stores[target.name] = store
            return store.sync(inventory, self.local_store, check_cancelled)

        outcomes = {}
        workers = max(1, min(len(request.remote_targets), self.settings.max_parallel_syncs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='remote-sync') as pool:
            futures = {target.name: pool.submit(sync_target, target) for target in request.remote_targets}
            for name, future in futures.items():
                try:
                    outcomes[name] = future.result()
                except BackupError as e:
                    outcomes[name] = e

        first_error = None
        for name, outcome in outcomes.items():
            if isinstance(outcome, BackupError):
                report = outcome.report if isinstance(outcome, PartialSyncError) else None
                run.sync_reports[name] = report.to_dict() if report else {'tier': name, 'error': str(outcome)}
                self._log(run, f"Sync to {name} failed ({outcome.error_kind}): {outcome}")
                first_error = first_error or outcome
            elif artifact.key not in outcome.confirmed:
                run.sync_reports[name] = outcome.to_dict()
                first_error = first_error or PartialSyncError(f"{artifact.key} was not confirmed on {name}", outcome)
            else:
                run.sync_reports[name] = outcome.to_dict()
                self._log(run, f"Sync to {name}: {len(outcome.uploaded)} uploaded, {len(outcome.unchanged)} already present")

        result.details['tiers'] = run.sync_reports
        if first_error is not None:
            raise first_error

        result.message = f"{artifact.key} confirmed on {len(outcomes)} remote tiers"

    def _delete_expired(self, keys, delete, failures: Dict[str, BackupError], check_cancelled) -> List[str]:
        deleted = []
        for key in sorted(keys):
            check_cancelled()
            try:
                delete(key)
            except NotFoundError:
                # Already gone, which is what pruning wants
                pass
            except BackupError as e:
                failures[key] = e
                continue
            deleted.append(key)
        return deleted

    def _local_prune(self, run, request, artifact, check_cancelled, result):
        inventory = self.local_store.list(request.database_id)
        to_delete = expired(inventory, request.retention, _utcnow())
        # Expired by an earlier run whose prune was interrupted
        to_delete |= {a.key for a in inventory if a.state == ArtifactState.EXPIRED}
        to_delete.discard(artifact.key)

        def delete(key):
            try:
                self.local_store.mark_expired(key)
            except NotFoundError:
                pass
            self.local_store.delete(key)

        failures = {}
        deleted = self._delete_expired(to_delete, delete, failures, check_cancelled)

        result.details.update({'deleted': deleted, 'failed': {k: str(e) for k, e in failures.items()}})
        result.message = f"{len(deleted)} expired local artifacts deleted"
        for key in deleted:
            self._log(run, f"Deleted expired local artifact {key}")

        if failures:
            key, error = next(iter(failures.items()))
            raise type(error)(f"Failed to delete {len(failures)} local artifacts, first {key}: {error.message}",
                              details={'failed': result.details['failed']})

    def _remote_prune(self, run, request, artifact, stores, check_cancelled, result):
        if not request.remote_targets:
            result.skip('no remote targets configured')
            return
        if not request.auto_prune:
            result.skip('auto_prune disabled, remote artifacts are kept')
            return

        failures = {}
        deleted = {}

        for target in request.remote_targets:
            check_cancelled()
            report = run.sync_reports.get(target.name, {})
            store = stores.get(target.name)
            # Upload-before-delete: only prune a tier holding a confirmed copy of this artifact
            if store is None or artifact.key not in report.get('uploaded', []) and not self._confirmed(store, artifact):
                failures[target.name] = BackupError(f"{artifact.key} not confirmed on {target.name}")
                continue

            try:
                inventory = store.list(request.database_id)
            except BackupError as e:
                failures[target.name] = e
                continue

            to_delete = expired(inventory, request.retention_for(target), _utcnow())
            to_delete.discard(artifact.key)

            tier_failures = {}
            deleted[target.name] = self._delete_expired(to_delete, store.delete, tier_failures, check_cancelled)
            for key, error in tier_failures.items():
                failures[f"{target.name}:{key}"] = error
            for key in deleted[target.name]:
                self._log(run, f"Deleted expired artifact {key} from {target.name}")

        result.details.update({'deleted': deleted, 'failed': {k: str(e) for k, e in failures.items()}})
        result.message = f"{sum(len(keys) for keys in deleted.values())} expired remote artifacts deleted"

        if failures:
            name, error = next(iter(failures.items()))
            raise type(error)(f"Remote pruning incomplete ({len(failures)} failures), first {name}: {error.message}",
                              details={'failed': result.details['failed']})

    def _confirmed(self, store, artifact: Artifact) -> bool:
        try:
            return store.remote_checksum(artifact.key) == artifact.checksum
        except BackupError:
            return False

    # -- reporting --

    def _log(self, run: BackupRun, message: str):
        run.log(message)
        logger.info(f"[{run.database_id}:{run.id[:8]}] {message}")

    def _publish(self, run: BackupRun):
        if run.status != RunStatus.SUCCESS:
            failing = run.failing_step
            event = FailureEvent(
                run_id=run.id,
                database_id=run.database_id,
                status=run.status.value,
                failing_step=failing.step.value if failing else None,
                error_kind=failing.error_kind if failing else None,
                message=failing.message if failing else None
            )
            for notifier in self.notifiers:
                try:
                    notifier.notify(event)
                except Exception:
                    logger.exception(f"Notifier {type(notifier).__name__} failed for run {run.id}")

        for listener in self.listeners:
            try:
                listener(run)
            except Exception:
                logger.exception(f"Run listener failed for run {run.id}")
