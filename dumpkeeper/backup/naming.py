"""
Artifact naming.

Keys follow the format ``{database}_{YYYY-MM-DD_HHMM}.{ext}``, for example
``orders_2024-01-15_0200.sql.gz``. External tooling reads backup
directories by this format, so it must not change.
"""

import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from .errors import DuplicateKeyError, PolicyError


TIMESTAMP_FORMAT = '%Y-%m-%d_%H%M'

_IDENTIFIER_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]*$')
_KEY_RE = re.compile(
    r'^(?P<database>[A-Za-z0-9][A-Za-z0-9_-]*)_(?P<timestamp>\d{4}-\d{2}-\d{2}_\d{4})\.(?P<ext>[a-z0-9.]+)$'
)


def validate_identifier(database_id: str) -> str:
    """
    Check that a database identifier can be embedded in an artifact key.

    Raises:
        PolicyError: If the identifier is empty or contains characters
            outside ``[A-Za-z0-9_-]``
    """
    if not database_id or not _IDENTIFIER_RE.match(database_id):
        raise PolicyError(f"Invalid database identifier: {database_id!r}")
    return database_id


def to_utc(timestamp: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def parse_key(key: str) -> Optional[Tuple[str, datetime, str]]:
    """
    Split an artifact key into its parts.

    Args:
        key: Artifact key (basename, without any remote prefix)

    Returns:
        Tuple of (database identifier, UTC timestamp, extension), or None if
        the key does not follow the naming format
    """
    match = _KEY_RE.match(key)
    if not match:
        return None
    try:
        timestamp = datetime.strptime(match.group('timestamp'), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return match.group('database'), timestamp.replace(tzinfo=timezone.utc), match.group('ext')


class ArtifactNamer:
    """
    Turns (database identifier, timestamp) into a unique artifact key.

    Timestamps are truncated to ``granularity``. A second request for the
    same database inside one granularity window raises DuplicateKeyError
    instead of handing out a key that would overwrite the first artifact.
    """

    def __init__(self, extension: str, granularity: timedelta = timedelta(minutes=1),
                 exists: Optional[Callable[[str], bool]] = None):
        """
        Args:
            extension: Artifact extension reflecting the transform pipeline (e.g. 'sql.gz')
            granularity: Naming window, a whole number of minutes
            exists: Optional callback reporting whether a key is already stored
        """
        if granularity < timedelta(minutes=1) or granularity % timedelta(minutes=1):
            raise PolicyError(f"Key granularity must be a whole number of minutes: {granularity}")

        self.extension = extension.lstrip('.')
        self.granularity = granularity
        self._exists = exists
        self._issued = set()
        self._lock = threading.Lock()

    def truncate(self, timestamp: datetime) -> datetime:
        """Truncate a timestamp down to the start of its granularity window."""
        timestamp = to_utc(timestamp).replace(second=0, microsecond=0)
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        return timestamp - ((timestamp - epoch) % self.granularity)

    def name(self, database_id: str, timestamp: datetime) -> str:
        """
        Issue the key for a new artifact.

        Raises:
            PolicyError: If the database identifier is invalid
            DuplicateKeyError: If the key was already issued or stored
        """
        validate_identifier(database_id)
        window = self.truncate(timestamp)
        key = f"{database_id}_{window.strftime(TIMESTAMP_FORMAT)}.{self.extension}"

        with self._lock:
            if key in self._issued or (self._exists is not None and self._exists(key)):
                raise DuplicateKeyError(
                    f"Artifact key already used in this time window: {key}",
                    details={'database': database_id, 'window_start': window.isoformat()}
                )
            self._issued.add(key)

        return key
