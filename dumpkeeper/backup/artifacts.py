"""
Artifact data model shared by the stores, the retention policy and the orchestrator.
"""

import hashlib
import dataclasses
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Iterable, Iterator, BinaryIO


CHUNK_SIZE = 1024 * 1024


class Tier(str, Enum):
    LOCAL = 'local'
    REMOTE = 'remote'


class ArtifactState(str, Enum):
    PENDING = 'pending'
    VERIFIED = 'verified'
    EXPIRED = 'expired'
    DELETED = 'deleted'


@dataclass(frozen=True)
class Artifact:
    """
    One immutable stored backup object.

    A store never mutates an Artifact in place; state transitions return a
    new instance via ``with_state``.
    """
    key: str
    size_bytes: int
    checksum: Optional[str]
    created_at: datetime
    tier: Tier
    state: ArtifactState = ArtifactState.PENDING

    @property
    def is_verified(self) -> bool:
        return self.state == ArtifactState.VERIFIED

    def with_state(self, state: ArtifactState) -> 'Artifact':
        return dataclasses.replace(self, state=state)

    def to_dict(self) -> dict:
        return {
            'key': self.key,
            'size_bytes': self.size_bytes,
            'checksum': self.checksum,
            'created_at': self.created_at.isoformat(),
            'tier': self.tier.value,
            'state': self.state.value
        }


def iter_file_chunks(fileobj: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield a binary file object in fixed-size chunks."""
    for chunk in iter(lambda: fileobj.read(chunk_size), b''):
        yield chunk


def sha256_chunks(chunks: Iterable[bytes]) -> str:
    """Return the hex SHA-256 digest of a chunk stream."""
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(chunk)
    return digest.hexdigest()


def sha256_file(path) -> str:
    """Return the hex SHA-256 digest of a file on disk."""
    with open(path, 'rb') as f:
        return sha256_chunks(iter_file_chunks(f))
