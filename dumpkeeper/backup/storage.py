"""
Storage tiers for backup artifacts.

Supports:
- LocalStore: durable local directory, the tier every artifact lands in first
- S3RemoteStore: off-site mirror in an S3 bucket (or compatible service)

Each store owns its inventory and is the only place artifact state
changes for its tier.
"""

import os
import json
import errno
import hashlib
import logging
import secrets
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Iterable, List

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError, EndpointConnectionError, ConnectionError as BotoConnectionError

from dumpkeeper.utils.credentials import SecretHandle, CredentialError
from .artifacts import Artifact, ArtifactState, Tier, CHUNK_SIZE, iter_file_chunks, sha256_file
from .errors import (
    BackupError, WriteError, DiskFullError, NotFoundError, DuplicateKeyError,
    NetworkError, AuthError, PartialSyncError, PolicyError
)
from .naming import parse_key
from .retry import RetryPolicy, retry_call


logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = '.manifest.json'
TEMP_MARKER = '.tmp-'

_DISK_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, 'EDQUOT', errno.ENOSPC)}
_TRANSIENT_ERRNOS = {errno.EIO, errno.EAGAIN, errno.EINTR, errno.EBUSY}


def _classify_os_error(e: OSError, action: str) -> WriteError:
    if e.errno in _DISK_FULL_ERRNOS:
        return DiskFullError(f"No space left while {action}: {e}")
    return WriteError(f"Failed {action}: {e}", transient=e.errno in _TRANSIENT_ERRNOS)


def _check_key(key: str):
    if not key or '/' in key or os.sep in key or key.startswith('.') or key.endswith(MANIFEST_SUFFIX):
        raise PolicyError(f"Invalid artifact key: {key!r}")


def _fsync_directory(path: Path):
    """Make a rename inside ``path`` durable (no-op where directories cannot be opened)."""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


class LocalStore:
    """
    Local filesystem tier.

    Artifacts are stored flat in ``base_path`` under their key, each with a
    JSON manifest ``{key}.manifest.json`` recording checksum, size, creation
    time and state. Writes go to a hidden temporary name, are fsynced and
    then renamed, so a reader never sees a partially written artifact under
    its final key.
    """

    def __init__(self, base_path: str, retry_policy: RetryPolicy = RetryPolicy()):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory holding the artifacts
            retry_policy: Retry policy for transient write errors
        """
        self.base_path = Path(base_path)
        self.retry_policy = retry_policy

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise _classify_os_error(e, f"creating local storage directory {self.base_path}")

    def path_for(self, key: str) -> Path:
        _check_key(key)
        return self.base_path / key

    def _manifest_path(self, key: str) -> Path:
        return self.base_path / f"{key}{MANIFEST_SUFFIX}"

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists() or self._manifest_path(key).exists()

    def window_taken(self, key: str) -> bool:
        """True if an artifact with the same database and timestamp is stored under any extension."""
        stem = key.split('.', 1)[0]
        return any(self.base_path.glob(f"{stem}.*"))

    def _write_manifest(self, artifact: Artifact):
        manifest_path = self._manifest_path(artifact.key)
        tmp_path = self.base_path / f".{manifest_path.name}{TEMP_MARKER}{secrets.token_hex(4)}"
        try:
            with open(tmp_path, 'w') as f:
                json.dump(artifact.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, manifest_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise _classify_os_error(e, f"writing manifest for {artifact.key}")

    def _read_manifest(self, key: str) -> Optional[Artifact]:
        manifest_path = self._manifest_path(key)
        try:
            with open(manifest_path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable manifest {manifest_path}: {e}")
            return None

        return Artifact(
            key=data['key'],
            size_bytes=data['size_bytes'],
            checksum=data.get('checksum'),
            created_at=datetime.fromisoformat(data['created_at']),
            tier=Tier.LOCAL,
            state=ArtifactState(data.get('state', ArtifactState.PENDING.value))
        )

    def persist(self, key: str, chunks: Iterable[bytes], created_at: Optional[datetime] = None) -> Artifact:
        """
        Atomically write an artifact and record its checksum.

        Errors raised by the chunk iterator itself (for example TransformError)
        propagate unchanged; nothing is left behind in either case.

        Args:
            key: Artifact key
            chunks: Final (transformed) artifact bytes
            created_at: Creation time; defaults to the timestamp in the key

        Returns:
            Artifact in Pending state

        Raises:
            DuplicateKeyError: If the key is already stored
            DiskFullError: If the disk runs out of space
            WriteError: On any other write failure
        """
        final_path = self.path_for(key)
        if self.exists(key):
            raise DuplicateKeyError(f"Artifact already exists in local storage: {key}")

        if created_at is None:
            parsed = parse_key(key)
            created_at = parsed[1] if parsed else datetime.now(timezone.utc)

        tmp_path = self.base_path / f".{key}{TEMP_MARKER}{secrets.token_hex(4)}"
        artifact = None

        try:
            digest = hashlib.sha256()
            size = 0

            try:
                with open(tmp_path, 'xb') as f:
                    for chunk in chunks:
                        f.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, final_path)
                _fsync_directory(self.base_path)
            except OSError as e:
                raise _classify_os_error(e, f"writing {key}")

            artifact = Artifact(
                key=key,
                size_bytes=size,
                checksum=digest.hexdigest(),
                created_at=created_at,
                tier=Tier.LOCAL,
                state=ArtifactState.PENDING
            )
            self._write_manifest(artifact)

        except BaseException:
            tmp_path.unlink(missing_ok=True)
            if artifact is not None or final_path.exists():
                final_path.unlink(missing_ok=True)
                self._manifest_path(key).unlink(missing_ok=True)
            raise

        logger.info(f"Stored {key} locally ({size} bytes)")
        return artifact

    def persist_file(self, key: str, source_path: str, created_at: Optional[datetime] = None) -> Artifact:
        """
        Persist a staged file, retrying transient write errors.
        """
        def attempt():
            try:
                with open(source_path, 'rb') as f:
                    return self.persist(key, iter_file_chunks(f), created_at)
            except OSError as e:
                raise WriteError(f"Cannot read staged artifact {source_path}: {e}")

        return retry_call(attempt, self.retry_policy, description=f"persist {key}")

    def verify(self, artifact: Artifact) -> bool:
        """
        Re-read an artifact and compare its checksum with the write-time checksum.

        On success the artifact's manifest is marked Verified.

        Returns:
            True if the stored bytes match, False otherwise
        """
        path = self.path_for(artifact.key)
        recorded = self._read_manifest(artifact.key)

        if recorded is None or not recorded.checksum or recorded.checksum != artifact.checksum:
            logger.error(f"Cannot verify {artifact.key}: manifest missing or checksum differs from write time")
            return False

        try:
            actual = sha256_file(path)
        except OSError as e:
            logger.error(f"Cannot verify {artifact.key}: {e}")
            return False

        if actual != recorded.checksum:
            logger.error(f"Checksum mismatch for {artifact.key}: expected {recorded.checksum}, got {actual}")
            return False

        if not recorded.is_verified:
            self._write_manifest(recorded.with_state(ArtifactState.VERIFIED))
        return True

    def get(self, key: str) -> Artifact:
        artifact = self._read_manifest(key)
        if artifact is None or not self.path_for(key).exists():
            raise NotFoundError(f"Artifact not found in local storage: {key}")
        return artifact

    def list(self, database_id: Optional[str] = None) -> List[Artifact]:
        """
        List stored artifacts, optionally restricted to one database.

        Returns:
            Artifacts sorted by key
        """
        artifacts = []
        try:
            manifest_paths = sorted(self.base_path.glob(f"*{MANIFEST_SUFFIX}"))
        except OSError as e:
            raise WriteError(f"Failed to list local storage: {e}")

        for manifest_path in manifest_paths:
            key = manifest_path.name[:-len(MANIFEST_SUFFIX)]
            if database_id is not None:
                parsed = parse_key(key)
                if not parsed or parsed[0] != database_id:
                    continue
            artifact = self._read_manifest(key)
            if artifact is None:
                continue
            if not self.path_for(key).exists() and artifact.state != ArtifactState.EXPIRED:
                logger.warning(f"Manifest without artifact file: {key}")
                continue
            artifacts.append(artifact)

        return artifacts

    def mark_expired(self, key: str) -> Artifact:
        """Record that an artifact is about to be pruned."""
        artifact = self.get(key)
        expired_artifact = artifact.with_state(ArtifactState.EXPIRED)
        self._write_manifest(expired_artifact)
        return expired_artifact

    def delete(self, key: str) -> Artifact:
        """
        Delete an artifact and its manifest.

        Returns:
            The artifact in Deleted state

        Raises:
            NotFoundError: If neither the artifact nor its manifest exists
            WriteError: If deletion fails
        """
        path = self.path_for(key)
        manifest_path = self._manifest_path(key)
        artifact = self._read_manifest(key)

        if artifact is None and not path.exists():
            raise NotFoundError(f"Artifact not found in local storage: {key}")

        def attempt():
            try:
                path.unlink(missing_ok=True)
                manifest_path.unlink(missing_ok=True)
            except OSError as e:
                raise WriteError(f"Failed to delete {key}: {e}", transient=e.errno in _TRANSIENT_ERRNOS)

        retry_call(attempt, self.retry_policy, description=f"delete {key}")
        logger.info(f"Deleted local artifact {key}")
        if artifact is None:
            return Artifact(key, 0, None, datetime.now(timezone.utc), Tier.LOCAL, ArtifactState.DELETED)
        return artifact.with_state(ArtifactState.DELETED)

    def cleanup_temp(self, database_id: str) -> int:
        """
        Remove temporary files left behind by interrupted writes for a database.

        Must only be called while holding the database's run lock.

        Returns:
            Number of files removed
        """
        removed = 0
        for path in self.base_path.glob(f".{database_id}_*{TEMP_MARKER}*"):
            parsed = parse_key(path.name[1:].split(TEMP_MARKER)[0].replace(MANIFEST_SUFFIX, ''))
            if not parsed or parsed[0] != database_id:
                continue
            try:
                path.unlink()
                removed += 1
                logger.info(f"Removed stale temporary file {path.name}")
            except OSError as e:
                logger.warning(f"Failed to remove stale temporary file {path.name}: {e}")
        return removed

    def discard_unverified(self, database_id: str) -> List[str]:
        """
        Remove artifacts of a database that never reached Verified state.

        A run that dies between storing and verifying its artifact leaves it
        Pending (or without a manifest). Retention never touches such
        artifacts, and they keep their naming window taken.

        Must only be called while holding the database's run lock.

        Returns:
            Keys removed
        """
        removed = []
        for path in sorted(self.base_path.glob(f"{database_id}_*")):
            if path.name.endswith(MANIFEST_SUFFIX):
                continue
            parsed = parse_key(path.name)
            if not parsed or parsed[0] != database_id:
                continue
            artifact = self._read_manifest(path.name)
            if artifact is not None and artifact.state != ArtifactState.PENDING:
                continue
            try:
                path.unlink(missing_ok=True)
                self._manifest_path(path.name).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove unverified artifact {path.name}: {e}")
                continue
            logger.warning(f"Removed unverified artifact {path.name} left by an interrupted run")
            removed.append(path.name)
        return removed


class SyncReport:
    """
    Outcome of one remote sync.

    ``uploaded`` lists keys transferred by this sync, ``unchanged`` keys that
    were already present with a matching checksum, ``failed`` maps keys to
    the error that stopped their upload, and ``skipped`` lists local
    artifacts that were not verified and therefore not eligible.
    """

    def __init__(self, tier: str):
        self.tier = tier
        self.uploaded: List[str] = []
        self.unchanged: List[str] = []
        self.skipped: List[str] = []
        self.failed: Dict[str, str] = {}

    @property
    def is_empty(self) -> bool:
        """True if the sync neither uploaded nor failed anything."""
        return not self.uploaded and not self.failed

    @property
    def confirmed(self) -> set:
        """Keys known to be present remotely with the local checksum."""
        return set(self.uploaded) | set(self.unchanged)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tier': self.tier,
            'uploaded': list(self.uploaded),
            'unchanged': len(self.unchanged),
            'skipped': list(self.skipped),
            'failed': dict(self.failed)
        }

    def __repr__(self):
        return (f"<SyncReport tier={self.tier} uploaded={len(self.uploaded)} "
                f"unchanged={len(self.unchanged)} failed={len(self.failed)}>")


_AUTH_ERROR_CODES = {
    'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch', 'ExpiredToken',
    'InvalidToken', 'AuthorizationHeaderMalformed', 'AllAccessDisabled', '401', '403'
}
_TRANSIENT_ERROR_CODES = {
    'RequestTimeout', 'RequestTimeoutException', 'SlowDown', 'Throttling', 'ThrottlingException',
    'InternalError', 'ServiceUnavailable', '500', '502', '503', '504'
}


def _classify_client_error(e: ClientError, action: str) -> BackupError:
    error_code = e.response.get('Error', {}).get('Code', 'Unknown')
    if error_code in _AUTH_ERROR_CODES:
        return AuthError(f"S3 {action} rejected ({error_code}): {e}")
    return NetworkError(f"S3 {action} failed ({error_code}): {e}", transient=error_code in _TRANSIENT_ERROR_CODES)


class S3RemoteStore:
    """
    Remote tier mirroring artifacts into an S3 bucket.

    Objects are stored as ``{prefix}/{key}`` with the artifact's SHA-256 in
    the ``sha256`` user metadata; that checksum is what makes a remote copy
    count as verified and what keeps re-syncs idempotent.
    """

    def __init__(self, name: str, bucket_name: str, prefix: str = '', region: str = 'us-east-1',
                 access_key: Optional[SecretHandle] = None, secret_key: Optional[SecretHandle] = None,
                 endpoint_url: Optional[str] = None, retry_policy: RetryPolicy = RetryPolicy(),
                 connect_timeout: float = 10, read_timeout: float = 60,
                 multipart_threshold: int = 100 * 1024 * 1024):
        """
        Initialize S3 storage handler.

        Args:
            name: Tier name used in reports and logs
            bucket_name: S3 bucket name
            prefix: Key prefix inside the bucket
            region: AWS region (default: us-east-1)
            access_key: Credential handle of the access key ID (default credential chain if None)
            secret_key: Credential handle of the secret access key
            endpoint_url: Custom endpoint for S3-compatible services
            retry_policy: Retry policy for transient network errors
            connect_timeout: Connection timeout in seconds
            read_timeout: Read timeout in seconds
            multipart_threshold: Size above which uploads use multipart
        """
        self.name = name
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        self.region = region
        self.retry_policy = retry_policy
        self.multipart_threshold = multipart_threshold

        client_kwargs = {
            'region_name': region,
            'config': BotoConfig(
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={'total_max_attempts': 1}
            )
        }
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url

        try:
            if access_key and secret_key:
                client_kwargs['aws_access_key_id'] = access_key.reveal()
                client_kwargs['aws_secret_access_key'] = secret_key.reveal()
            self.s3_client = boto3.client('s3', **client_kwargs)
        except CredentialError as e:
            raise AuthError(f"Cannot resolve credentials for remote tier {name}: {e}")
        except (BotoCoreError, ValueError) as e:
            raise NetworkError(f"Failed to initialize S3 client for {name}: {e}", transient=False)

    def object_key(self, key: str) -> str:
        if self.prefix:
            return f"{self.prefix}/{key}"
        return key

    def _call(self, action: str, fn):
        """Run one S3 call, translating botocore errors and retrying transient ones."""
        def attempt():
            try:
                return fn()
            except ClientError as e:
                raise _classify_client_error(e, action)
            except (EndpointConnectionError, BotoConnectionError) as e:
                raise NetworkError(f"S3 {action} failed, endpoint unreachable: {e}")
            except BotoCoreError as e:
                raise NetworkError(f"S3 {action} failed: {e}")

        return retry_call(attempt, self.retry_policy, description=f"S3 {action} ({self.name})")

    def remote_checksum(self, key: str) -> Optional[str]:
        """
        Return the recorded checksum of a remote artifact.

        Returns:
            The sha256 metadata value, '' if the object exists without one,
            or None if the object does not exist
        """
        def head():
            try:
                response = self.s3_client.head_object(Bucket=self.bucket_name, Key=self.object_key(key))
            except ClientError as e:
                if e.response.get('Error', {}).get('Code') in ('404', 'NoSuchKey', 'NotFound'):
                    return None
                raise
            return response.get('Metadata', {}).get('sha256', '')

        return self._call(f"head {key}", head)

    def upload(self, artifact: Artifact, local_path: str, cancellation_check: Optional[callable] = None):
        """
        Upload a local artifact and confirm the remote copy.

        Raises:
            NetworkError: If the upload fails or cannot be confirmed
            AuthError: If the credentials are rejected
        """
        if not os.path.exists(local_path):
            raise WriteError(f"Local file not found: {local_path}")

        s3_key = self.object_key(artifact.key)
        metadata = {'sha256': artifact.checksum}

        def do_upload():
            if cancellation_check:
                cancellation_check()
            if artifact.size_bytes > self.multipart_threshold:
                self._multipart_upload(local_path, s3_key, metadata, cancellation_check)
            else:
                self._simple_upload(local_path, s3_key, metadata)

        self._call(f"upload {artifact.key}", do_upload)

        if self.remote_checksum(artifact.key) != artifact.checksum:
            raise NetworkError(f"Upload of {artifact.key} could not be confirmed (checksum mismatch)", transient=False)

        logger.info(f"Uploaded {artifact.key} to {self.name} (s3://{self.bucket_name}/{s3_key})")

    def _simple_upload(self, local_path: str, s3_key: str, metadata: Dict[str, str]):
        """
        Upload file using simple put_object.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
            metadata: Object user metadata
        """
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                Metadata=metadata
            )

    def _multipart_upload(self, local_path: str, s3_key: str, metadata: Dict[str, str],
                          cancellation_check: Optional[callable] = None):
        """
        Upload large file using multipart upload with cancellation support.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
            metadata: Object user metadata
            cancellation_check: Optional function to call between chunks to check for cancellation
        """
        # 10MB chunks
        chunk_size = 10 * CHUNK_SIZE

        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            Metadata=metadata
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(chunk_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {s3_key}: {abort_error}")
            raise

    def sync(self, local_inventory: Iterable[Artifact], local_store: LocalStore,
             cancellation_check: Optional[callable] = None) -> SyncReport:
        """
        Mirror verified local artifacts to this tier.

        Uploads artifacts that are missing remotely or whose remote checksum
        differs; never deletes anything. A failed key does not roll back
        keys uploaded before it.

        Args:
            local_inventory: Local artifacts to mirror
            local_store: LocalStore holding the artifact files
            cancellation_check: Optional function raising when the run is cancelled

        Returns:
            SyncReport

        Raises:
            AuthError: If the tier rejects the credentials (sync stops)
            PartialSyncError: If some artifacts could not be uploaded; the
                error carries the report
        """
        report = SyncReport(self.name)

        for artifact in sorted(local_inventory, key=lambda a: a.key):
            if not artifact.is_verified:
                report.skipped.append(artifact.key)
                continue

            if cancellation_check:
                cancellation_check()

            try:
                if self.remote_checksum(artifact.key) == artifact.checksum:
                    report.unchanged.append(artifact.key)
                    continue
                self.upload(artifact, str(local_store.path_for(artifact.key)), cancellation_check)
                report.uploaded.append(artifact.key)
            except AuthError:
                raise
            except (NetworkError, WriteError) as e:
                logger.error(f"Failed to sync {artifact.key} to {self.name}: {e}")
                report.failed[artifact.key] = str(e)

        if report.failed:
            raise PartialSyncError(
                f"Sync to {self.name} incomplete: {len(report.uploaded)} uploaded, {len(report.failed)} failed",
                report=report
            )

        logger.info(f"Sync to {self.name} complete: {report!r}")
        return report

    def list(self, database_id: str) -> List[Artifact]:
        """
        List this tier's artifacts for a database.

        Objects that do not follow the key format are ignored. Objects without
        a sha256 checksum are reported as Pending, which keeps them out of
        retention accounting.

        Raises:
            NetworkError, AuthError: If listing fails
        """
        list_prefix = self.object_key(f"{database_id}_")

        def list_objects():
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=list_prefix):
                for obj in page.get('Contents', []):
                    objects.append({'Key': obj['Key'], 'Size': obj['Size']})
            return objects

        artifacts = []
        for obj in self._call(f"list {database_id}", list_objects):
            key = obj['Key'][len(self.object_key('')):]
            parsed = parse_key(key)
            if not parsed or parsed[0] != database_id:
                continue
            checksum = self.remote_checksum(key)
            if checksum is None:
                continue
            artifacts.append(Artifact(
                key=key,
                size_bytes=obj['Size'],
                checksum=checksum or None,
                created_at=parsed[1],
                tier=Tier.REMOTE,
                state=ArtifactState.VERIFIED if checksum else ArtifactState.PENDING
            ))

        return artifacts

    def delete(self, key: str):
        """
        Delete an artifact from this tier. Deleting an absent key succeeds.
        """
        self._call(
            f"delete {key}",
            lambda: self.s3_client.delete_object(Bucket=self.bucket_name, Key=self.object_key(key))
        )
        logger.info(f"Deleted {key} from {self.name}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            AuthError: If access is denied
            NetworkError: If the bucket is unreachable or missing
        """
        self._call('head bucket', lambda: self.s3_client.head_bucket(Bucket=self.bucket_name))
        return True
