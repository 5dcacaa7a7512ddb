"""State snapshot assembly and derived learning metrics.

Every clock job starts from a fresh snapshot of the active project:
configuration, the HTA task tree, learning history, the last week of
daily schedules, and a handful of metrics derived from completed topics.
A key that fails to load leaves a gap and an error marker on the
snapshot; it never aborts the job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .exceptions import SnapshotAssemblyFailure
from .interfaces import DataPersistence, resolve

logger = logging.getLogger(__name__)

CONFIG_KEY = "config.json"
HTA_KEY = "hta.json"
LEARNING_HISTORY_KEY = "learning_history.json"
SCHEDULE_DAYS = 7
MOMENTUM_WINDOW = timedelta(days=7)
DEFAULT_DIFFICULTY = 3
DEFAULT_BRANCH = "general"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def schedule_key(day: datetime) -> str:
    return f"day_{day.date().isoformat()}.json"


@dataclass
class SystemMetrics:
    total_completed_tasks: int = 0
    average_difficulty: float = 0
    breakthrough_count: int = 0
    branch_diversity: int = 0
    momentum: int = 0
    last_activity_days: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "totalCompletedTasks": self.total_completed_tasks,
            "averageDifficulty": self.average_difficulty,
            "breakthroughCount": self.breakthrough_count,
            "branchDiversity": self.branch_diversity,
            "momentum": self.momentum,
            "lastActivityDays": self.last_activity_days,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class StateSnapshot:
    """Point-in-time view of a project handed to analysis providers."""

    project_id: str
    timestamp: datetime
    last_runs: Dict[str, str] = field(default_factory=dict)
    config: Any = None
    hta_data: Any = None
    learning_history: Any = None
    recent_schedules: List[Dict[str, Any]] = field(default_factory=list)
    metrics: SystemMetrics = field(default_factory=SystemMetrics)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Render with the camelCase keys used in event payloads."""
        data = {
            "projectId": self.project_id,
            "timestamp": self.timestamp.isoformat(),
            "lastAnalyses": dict(self.last_runs),
            "config": self.config,
            "htaData": self.hta_data,
            "learningHistory": self.learning_history,
            "recentSchedules": list(self.recent_schedules),
            "metrics": self.metrics.to_dict(),
        }
        if self.error:
            data["error"] = self.error
        return data


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_system_metrics(learning_history: Any, now: Optional[datetime] = None) -> SystemMetrics:
    """Derive learning metrics from ``learning_history["completedTopics"]``.

    Topics are trusted to be in completion order; the last one dates the
    most recent activity. Any error yields zeroed metrics with ``error`` set.
    """
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    try:
        topics = (learning_history or {}).get("completedTopics") or []
        if not topics:
            return SystemMetrics()

        difficulties = []
        for topic in topics:
            difficulty = topic.get("difficulty")
            difficulties.append(DEFAULT_DIFFICULTY if difficulty is None else difficulty)
        average_difficulty = sum(difficulties) / len(difficulties)

        breakthroughs = sum(1 for topic in topics if topic.get("breakthrough"))
        branches = {topic.get("branch") or DEFAULT_BRANCH for topic in topics}

        window_start = now - MOMENTUM_WINDOW
        momentum = 0
        for topic in topics:
            completed_at = parse_timestamp(topic.get("completedAt"))
            if completed_at is not None and completed_at >= window_start:
                momentum += 1

        last_activity_days = 0
        last_completed = parse_timestamp(topics[-1].get("completedAt"))
        if last_completed is not None:
            last_activity_days = (now - last_completed) // timedelta(days=1)

        return SystemMetrics(
            total_completed_tasks=len(topics),
            average_difficulty=average_difficulty,
            breakthrough_count=breakthroughs,
            branch_diversity=len(branches),
            momentum=momentum,
            last_activity_days=last_activity_days,
        )
    except Exception as e:
        logger.error(f"Error calculating metrics: {e}", exc_info=True)
        return SystemMetrics(error=str(e))


class StateSnapshotGatherer:
    """Loads project data through the persistence collaborator."""

    def __init__(
        self,
        data_persistence: DataPersistence,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._data_persistence = data_persistence
        self._now = now

    async def gather(self, project_id: str, last_runs: Optional[Dict[str, str]] = None) -> StateSnapshot:
        """Assemble a snapshot for ``project_id``.

        Args:
            project_id: Active project identifier
            last_runs: Copy of the clock's run registry

        Returns:
            StateSnapshot, possibly carrying an error marker
        """
        now = self._now()
        snapshot = StateSnapshot(
            project_id=project_id,
            timestamp=now,
            last_runs=dict(last_runs or {}),
        )
        failures: List[SnapshotAssemblyFailure] = []

        snapshot.config = await self._load(project_id, CONFIG_KEY, failures)
        snapshot.hta_data = await self._load(project_id, HTA_KEY, failures)
        snapshot.learning_history = await self._load(project_id, LEARNING_HISTORY_KEY, failures)
        snapshot.recent_schedules = await self._load_recent_schedules(project_id, now)
        snapshot.metrics = calculate_system_metrics(snapshot.learning_history, now)

        if failures:
            snapshot.error = "; ".join(str(failure) for failure in failures)
            logger.error(
                f"Error gathering system state: {snapshot.error}",
                extra={"project_id": project_id},
            )

        return snapshot

    async def _load(self, project_id: str, key: str, failures: List[SnapshotAssemblyFailure]) -> Any:
        try:
            return await resolve(self._data_persistence.load_project_data(project_id, key))
        except Exception as e:
            failures.append(SnapshotAssemblyFailure(key, e))
            return None

    async def _load_recent_schedules(self, project_id: str, now: datetime) -> List[Dict[str, Any]]:
        schedules = []
        for offset in range(SCHEDULE_DAYS):
            day = now - timedelta(days=offset)
            key = schedule_key(day)
            try:
                schedule = await resolve(self._data_persistence.load_project_data(project_id, key))
            except Exception as e:
                # Days without a schedule are expected
                logger.debug(f"Skipping schedule {key}: {e}")
                continue
            if schedule:
                schedules.append({"date": day.date().isoformat(), "schedule": schedule})
        return schedules


__all__ = [
    "StateSnapshot",
    "StateSnapshotGatherer",
    "SystemMetrics",
    "calculate_system_metrics",
    "parse_timestamp",
    "schedule_key",
    "utc_now",
]
