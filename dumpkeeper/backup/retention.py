"""
Retention policy for backup artifacts.

The policy is a pure computation over an inventory snapshot. It is
evaluated separately for every tier, so local and remote retention may
diverge while a remote sync is lagging.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Set

from .artifacts import Artifact
from .errors import PolicyError
from .naming import to_utc


@dataclass(frozen=True)
class RetentionWindow:
    """
    Retention configuration for one tier.

    Attributes:
        duration: Maximum age of an artifact before it may expire
        minimum_keep: Number of newest artifacts that always survive,
            whatever their age
    """
    duration: timedelta
    minimum_keep: int = 0

    def __post_init__(self):
        if not isinstance(self.duration, timedelta):
            raise PolicyError(f"Retention duration must be a timedelta, got {type(self.duration).__name__}")
        if self.duration < timedelta(0):
            raise PolicyError(f"Retention duration cannot be negative: {self.duration}")
        if self.minimum_keep < 0:
            raise PolicyError(f"Retention minimum_keep cannot be negative: {self.minimum_keep}")

    @classmethod
    def from_days(cls, days: int, minimum_keep: int = 0) -> 'RetentionWindow':
        if days is None or days < 0:
            raise PolicyError(f"Retention days must be a non-negative number: {days}")
        return cls(duration=timedelta(days=days), minimum_keep=minimum_keep)

    def to_dict(self) -> dict:
        return {
            'days': self.duration.total_seconds() / 86400,
            'minimum_keep': self.minimum_keep
        }


def newest_first(inventory: Iterable[Artifact]) -> list:
    """
    Order artifacts newest first.

    Equal timestamps are ordered by key, the lexicographically higher key
    counting as newer, so the order is total and deterministic.
    """
    return sorted(inventory, key=lambda a: (to_utc(a.created_at), a.key), reverse=True)


def expired(inventory: Iterable[Artifact], window: RetentionWindow, now: datetime) -> Set[str]:
    """
    Compute which artifacts of one tier have expired.

    Only verified artifacts take part: an unverified artifact counts as not
    yet existing, so it is neither kept towards ``minimum_keep`` nor expired.

    Args:
        inventory: Artifacts of a single tier
        window: RetentionWindow for that tier
        now: Reference time for age computation

    Returns:
        Set of expired artifact keys
    """
    now = to_utc(now)
    candidates = newest_first(a for a in inventory if a.is_verified)

    return {
        artifact.key
        for artifact in candidates[window.minimum_keep:]
        if now - to_utc(artifact.created_at) > window.duration
    }
