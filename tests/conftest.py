"""Shared fixtures: in-memory collaborators for the background clock."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from forest.orchestrator.clock import SystemClock
from forest.orchestrator.events import ForestEventBus
from forest.orchestrator.exceptions import NoActiveProjectError
from forest.orchestrator.mode import fixed_mode
from forest.orchestrator.models import ExecutionMode


class FakeTime:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.value = start or datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs: float) -> datetime:
        self.value = self.value + timedelta(**kwargs)
        return self.value


class FakeProjects:
    def __init__(self, project_id: Optional[str] = "proj-1") -> None:
        self.project_id = project_id

    def require_active_project(self) -> str:
        if not self.project_id:
            raise NoActiveProjectError()
        return self.project_id


class FakePersistence:
    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self.data: Dict[str, Any] = data or {}
        self.errors: List[Tuple[str, BaseException, Optional[Dict[str, Any]]]] = []
        self.loads: List[Tuple[str, str]] = []
        self.fail_log_error = False

    def load_project_data(self, project_id: str, key: str) -> Any:
        self.loads.append((project_id, key))
        value = self.data.get(key)
        if isinstance(value, Exception):
            raise value
        return value

    def log_error(self, context: str, error: BaseException, meta: Optional[Dict[str, Any]] = None) -> None:
        if self.fail_log_error:
            raise OSError("disk full")
        self.errors.append((context, error, meta))


class FakeReasoning:
    def __init__(self) -> None:
        self.results: Dict[str, Any] = {}
        self.calls: List[Tuple[Any, str]] = []

    async def perform_background_analysis(self, snapshot: Any, analysis_type: str) -> Any:
        self.calls.append((snapshot, analysis_type))
        result = self.results.get(analysis_type, {})
        if isinstance(result, Exception):
            raise result
        return result


class FakeIdentity:
    def __init__(self) -> None:
        self.result: Any = {"themes": ["persistence"]}
        self.calls: List[Any] = []

    def perform_background_reflection(self, snapshot: Any) -> Any:
        self.calls.append(snapshot)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeArchiver:
    def __init__(self) -> None:
        self.needed: Any = False
        self.results: Any = {"archivedItems": 4}
        self.assess_calls: List[str] = []
        self.archive_calls: List[str] = []

    async def assess_archive_needs(self, project_id: str) -> bool:
        self.assess_calls.append(project_id)
        if isinstance(self.needed, Exception):
            raise self.needed
        return self.needed

    async def perform_archiving(self, *, project_id: str) -> Any:
        self.archive_calls.append(project_id)
        return self.results


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def bus() -> ForestEventBus:
    return ForestEventBus()


@pytest.fixture
def projects() -> FakeProjects:
    return FakeProjects()


@pytest.fixture
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture
def reasoning() -> FakeReasoning:
    return FakeReasoning()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def archiver() -> FakeArchiver:
    return FakeArchiver()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest_asyncio.fixture
async def make_clock(bus, persistence, projects, reasoning, identity, archiver, fake_time, sleeps):
    """Factory for clocks wired to the in-memory fakes; closes them afterwards."""
    created: List[SystemClock] = []

    async def instant_sleep(delay: float) -> None:
        sleeps.append(delay)

    def _make(mode: ExecutionMode = ExecutionMode.INTERACTIVE, **kwargs: Any) -> SystemClock:
        kwargs.setdefault("mode_detector", fixed_mode(mode))
        kwargs.setdefault("sleep", instant_sleep)
        kwargs.setdefault("now", fake_time)
        clock = SystemClock(
            persistence,
            projects,
            reasoning,
            identity,
            archiver,
            kwargs.pop("event_bus", bus),
            **kwargs,
        )
        created.append(clock)
        return clock

    yield _make

    for clock in created:
        await clock.close()
    # Let cancelled scheduler wakeups settle before the loop closes
    await asyncio.sleep(0)
