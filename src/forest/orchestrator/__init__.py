"""Background analysis clock package."""

from .clock import SystemClock
from .config import ClockConfig, ClockConfigManager, ConfigurationError
from .events import ForestEvent, ForestEventBus, Topics
from .exceptions import (
    ClockError,
    NoActiveProjectError,
    ProviderFailure,
    SnapshotAssemblyFailure,
    UnknownJobKindError,
)
from .mode import detect_execution_mode, fixed_mode
from .models import (
    ArchiveState,
    ClockStatus,
    ExecutionMode,
    JobKind,
    ScheduledTrigger,
)
from .registry import ArchiveThrottle, RunRegistry
from .snapshot import StateSnapshot, StateSnapshotGatherer, SystemMetrics, calculate_system_metrics

__all__ = [
    "ArchiveState",
    "ArchiveThrottle",
    "ClockConfig",
    "ClockConfigManager",
    "ClockError",
    "ClockStatus",
    "ConfigurationError",
    "ExecutionMode",
    "ForestEvent",
    "ForestEventBus",
    "JobKind",
    "NoActiveProjectError",
    "ProviderFailure",
    "RunRegistry",
    "ScheduledTrigger",
    "SnapshotAssemblyFailure",
    "StateSnapshot",
    "StateSnapshotGatherer",
    "SystemClock",
    "SystemMetrics",
    "Topics",
    "UnknownJobKindError",
    "calculate_system_metrics",
    "detect_execution_mode",
    "fixed_mode",
]
