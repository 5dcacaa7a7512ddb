"""Domain models for the background analysis clock."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from .exceptions import UnknownJobKindError


class JobKind(str, Enum):
    STRATEGIC_ANALYSIS = "strategic_analysis"
    RISK_DETECTION = "risk_detection"
    OPPORTUNITY_SCANNING = "opportunity_scanning"
    IDENTITY_REFLECTION = "identity_reflection"
    DATA_ARCHIVING = "data_archiving"

    @classmethod
    def parse(cls, tag: "str | JobKind") -> "JobKind":
        """Resolve a job kind from its value or short manual-trigger alias.

        Raises:
            UnknownJobKindError: If the tag names no known job kind
        """
        if isinstance(tag, JobKind):
            return tag
        normalized = str(tag).strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            pass
        kind = JOB_ALIASES.get(normalized)
        if kind is None:
            raise UnknownJobKindError(tag)
        return kind


class ExecutionMode(str, Enum):
    INTERACTIVE = "interactive"
    EMBEDDED = "embedded"


class ArchiveState(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    ARCHIVED = "archived"
    SKIPPED = "skipped"


JOB_ALIASES: Dict[str, JobKind] = {
    "strategic": JobKind.STRATEGIC_ANALYSIS,
    "risk": JobKind.RISK_DETECTION,
    "opportunity": JobKind.OPPORTUNITY_SCANNING,
    "identity": JobKind.IDENTITY_REFLECTION,
    "archive": JobKind.DATA_ARCHIVING,
}

# Registry key for archiving checks that found nothing to do
ARCHIVE_CHECK_KEY = "data_archiving_check"

# Staggered first runs in interactive mode; archiving has none
WARMUP_DELAYS: Dict[JobKind, timedelta] = {
    JobKind.STRATEGIC_ANALYSIS: timedelta(seconds=30),
    JobKind.RISK_DETECTION: timedelta(seconds=60),
    JobKind.OPPORTUNITY_SCANNING: timedelta(seconds=90),
    JobKind.IDENTITY_REFLECTION: timedelta(seconds=120),
}


@dataclass
class ScheduledTrigger:
    """An event-driven one-off run waiting for its delay to elapse."""

    trigger_id: str
    job_kind: JobKind
    reason: str
    delay_seconds: float
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()


@dataclass
class ClockStatus:
    """Point-in-time view of a clock, safe to hand to callers."""

    running: bool
    mode: Optional[ExecutionMode] = None
    active_jobs: FrozenSet[JobKind] = frozenset()
    last_runs: Dict[str, str] = field(default_factory=dict)
    pending_triggers: int = 0

    @property
    def uptime(self) -> str:
        return "Active" if self.running else "Stopped"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "mode": self.mode.value if self.mode else None,
            "active_jobs": sorted(kind.value for kind in self.active_jobs),
            "last_runs": dict(self.last_runs),
            "pending_triggers": self.pending_triggers,
            "uptime": self.uptime,
        }
