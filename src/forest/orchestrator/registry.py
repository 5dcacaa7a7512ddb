"""Last-run bookkeeping and the archiving throttle."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterator, Optional, Union

from .models import ArchiveState, JobKind

RegistryKey = Union[JobKind, str]

ARCHIVE_MIN_GAP = timedelta(seconds=30)


def _key(key: RegistryKey) -> str:
    return key.value if isinstance(key, JobKind) else str(key)


class RunRegistry:
    """Timestamp of the last completed run (or no-op check) per job.

    Advisory metadata: readers may observe an update made by another job
    mid-run and nothing relies on it for correctness.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, datetime] = {}

    def record(self, key: RegistryKey, when: datetime) -> None:
        self._runs[_key(key)] = when

    def get(self, key: RegistryKey) -> Optional[datetime]:
        return self._runs.get(_key(key))

    def snapshot(self) -> Dict[str, str]:
        """Copy of the registry with ISO-8601 timestamps."""
        return {key: when.isoformat() for key, when in self._runs.items()}

    def __contains__(self, key: object) -> bool:
        if isinstance(key, (JobKind, str)):
            return _key(key) in self._runs
        return False

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._runs))

    def __len__(self) -> int:
        return len(self._runs)


class ArchiveThrottle:
    """Minimum-gap guard shared by every archiving trigger source.

    The gap is measured from the last *attempt*, successful or not, so a
    timer firing right after an event-driven run is dropped.
    """

    def __init__(self, min_gap: timedelta = ARCHIVE_MIN_GAP) -> None:
        self._min_gap = min_gap
        self._last_attempt: Optional[datetime] = None
        self.state = ArchiveState.IDLE
        self.last_outcome: Optional[ArchiveState] = None

    @property
    def last_attempt(self) -> Optional[datetime]:
        return self._last_attempt

    def try_acquire(self, now: datetime) -> bool:
        """Record an attempt at ``now`` unless one happened within the gap."""
        if self._last_attempt is not None and now - self._last_attempt < self._min_gap:
            return False
        self._last_attempt = now
        self.state = ArchiveState.ATTEMPTING
        return True

    def finish(self, outcome: Optional[ArchiveState]) -> Optional[ArchiveState]:
        """Leave the attempt, returning its outcome (None if it failed)."""
        self.last_outcome = outcome
        self.state = ArchiveState.IDLE
        return outcome
