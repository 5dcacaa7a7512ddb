"""Background analysis clock.

Turns the assistant from reactive to proactive: periodic jobs re-read the
active project's state and ask the reasoning, identity and archiving
providers for strategic insights, risks, opportunities, identity
reflections and archiving. Domain events (a breakthrough block, a new
project, an evolved strategy) schedule early one-off runs.

Schedule (defaults, see ClockConfig):
- Strategic analysis every 24h, risk detection every 12h,
  opportunity scans every 6h
- Identity reflection every 7 days, archiving checks every 30 days

When the process is embedded in a host (stdin is not a TTY), background
ticks are switched off: no job gets a timer or a warm-up run, and analysis
happens only through events and manual triggers.

Example:
    clock = SystemClock(
        data_persistence=store,
        project_management=projects,
        reasoning_engine=reasoning,
        identity_engine=identity,
        archiver=archiver,
        event_bus=bus,
    )
    clock.start({"strategicAnalysisHours": 12})
    ...
    await clock.close()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .config import ClockConfig
from .events import ForestEvent, ForestEventBus, Topics, Unsubscribe
from .exceptions import NoActiveProjectError, ProviderFailure, UnknownJobKindError
from .interfaces import (
    DataArchiver,
    DataPersistence,
    IdentityEngine,
    ProjectManagement,
    ReasoningEngine,
    resolve,
)
from .mode import ModeDetector, detect_execution_mode
from .models import (
    ARCHIVE_CHECK_KEY,
    WARMUP_DELAYS,
    ArchiveState,
    ClockStatus,
    ExecutionMode,
    JobKind,
    ScheduledTrigger,
)
from .registry import ArchiveThrottle, RunRegistry
from .snapshot import StateSnapshot, StateSnapshotGatherer, utc_now

logger = logging.getLogger(__name__)

EVENT_SOURCE = "SystemClock"

# Delay before an event-driven run, letting other handlers of the same
# event finish first
REACTION_DELAYS: Dict[str, float] = {
    Topics.BLOCK_COMPLETED: 5.0,
    Topics.PROJECT_CREATED: 10.0,
    Topics.STRATEGY_EVOLVED: 3.0,
}
SIGNIFICANT_ENGAGEMENT = 8
SIGNIFICANT_TASKS_ADDED = 3

ARCHIVE_NOTE_INTERVAL = timedelta(hours=6)

ANALYSIS_TYPES: Dict[JobKind, str] = {
    JobKind.STRATEGIC_ANALYSIS: "strategic_overview",
    JobKind.RISK_DETECTION: "risk_detection",
    JobKind.OPPORTUNITY_SCANNING: "opportunity_detection",
}

_CONTEXTS: Dict[JobKind, str] = {
    JobKind.STRATEGIC_ANALYSIS: "SystemClock.perform_strategic_analysis",
    JobKind.RISK_DETECTION: "SystemClock.perform_risk_detection",
    JobKind.OPPORTUNITY_SCANNING: "SystemClock.perform_opportunity_scanning",
    JobKind.IDENTITY_REFLECTION: "SystemClock.perform_identity_reflection",
    JobKind.DATA_ARCHIVING: "SystemClock.perform_archiving",
}

_LABELS: Dict[JobKind, str] = {
    JobKind.STRATEGIC_ANALYSIS: "Strategic analysis",
    JobKind.RISK_DETECTION: "Risk detection",
    JobKind.OPPORTUNITY_SCANNING: "Opportunity scanning",
    JobKind.IDENTITY_REFLECTION: "Identity reflection",
    JobKind.DATA_ARCHIVING: "Data archiving",
}


def _field(result: Any, name: str, default: Any = None) -> Any:
    if isinstance(result, Mapping):
        return result.get(name, default)
    return getattr(result, name, default)


class SystemClock:
    """Periodic and event-driven background analysis for one server process.

    Each instance owns its scheduler, run registry, archive throttle and
    bus subscriptions. Subscriptions are made on construction and removed
    by ``close()``, so instances can be created and torn down repeatedly.

    With background ticks on, ``start()`` must be called from inside the
    event loop (or with ``loop=`` supplied) because timers run on it.
    Embedded mode and ticks-off starts need no loop.
    """

    def __init__(
        self,
        data_persistence: DataPersistence,
        project_management: ProjectManagement,
        reasoning_engine: ReasoningEngine,
        identity_engine: IdentityEngine,
        archiver: DataArchiver,
        event_bus: Optional[ForestEventBus] = None,
        *,
        mode_detector: Optional[ModeDetector] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = utc_now,
        warmup_delays: Optional[Mapping[JobKind, timedelta]] = None,
    ) -> None:
        """Initialize the clock.

        Args:
            data_persistence: Loads project data and records errors
            project_management: Resolves the active project
            reasoning_engine: Strategic, risk and opportunity provider
            identity_engine: Identity reflection provider
            archiver: Decides on and performs archiving
            event_bus: Bus to subscribe and publish on (a private one if omitted)
            mode_detector: Resolves the execution mode at each start
            loop: Event loop for timers and one-off triggers
            sleep: Delay primitive for event-driven triggers
            now: Clock used for registry and payload timestamps
            warmup_delays: Delay before each job's first run after start
        """
        self._data_persistence = data_persistence
        self._project_management = project_management
        self._reasoning_engine = reasoning_engine
        self._identity_engine = identity_engine
        self._archiver = archiver
        self._event_bus = event_bus or ForestEventBus()
        self._mode_detector = mode_detector or detect_execution_mode
        self._loop = loop
        self._sleep = sleep
        self._now = now
        self._warmup_delays = dict(WARMUP_DELAYS if warmup_delays is None else warmup_delays)

        self._gatherer = StateSnapshotGatherer(data_persistence, now=now)
        self._registry = RunRegistry()
        self._archive_throttle = ArchiveThrottle()
        self._last_archive_note: Optional[datetime] = None

        self._running = False
        self._mode: Optional[ExecutionMode] = None
        self._config: Optional[ClockConfig] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._interval_jobs: Dict[JobKind, Job] = {}
        self._warmup_jobs: Dict[JobKind, Job] = {}
        self._pending_triggers: Dict[str, ScheduledTrigger] = {}

        self._unsubscribers: List[Unsubscribe] = [
            self._event_bus.subscribe(Topics.BLOCK_COMPLETED, self._on_block_completed),
            self._event_bus.subscribe(Topics.PROJECT_CREATED, self._on_project_created),
            self._event_bus.subscribe(Topics.STRATEGY_EVOLVED, self._on_strategy_evolved),
        ]

        logger.debug("SystemClock initialized")

    @property
    def running(self) -> bool:
        return self._running

    @property
    def mode(self) -> Optional[ExecutionMode]:
        return self._mode

    @property
    def config(self) -> Optional[ClockConfig]:
        return self._config

    @property
    def event_bus(self) -> ForestEventBus:
        return self._event_bus

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    @property
    def archive_throttle(self) -> ArchiveThrottle:
        return self._archive_throttle

    @property
    def scheduler(self) -> Optional[AsyncIOScheduler]:
        return self._scheduler

    @property
    def pending_triggers(self) -> List[ScheduledTrigger]:
        return list(self._pending_triggers.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, config: Union[ClockConfig, Mapping[str, Any], None] = None) -> None:
        """Start periodic scheduling.

        Args:
            config: Cadence overrides merged over the defaults

        Unknown keys in ``config`` are ignored.

        Raises:
            ConfigurationError: If an override is out of range
        """
        if self._running:
            logger.warning("SystemClock already running")
            return

        clock_config = ClockConfig.merged(config, ignore_unknown=True)
        mode = self._resolve_mode()
        if mode == ExecutionMode.EMBEDDED and clock_config.enable_background_ticks:
            clock_config = clock_config.model_copy(update={"enable_background_ticks": False})

        # Needs a loop; fail before any state changes
        scheduler = self._ensure_scheduler() if clock_config.enable_background_ticks else None

        self._config = clock_config
        self._mode = mode
        self._running = True

        log_extra = {"clock_config": clock_config.to_wire(), "mode": mode.value}
        if mode == ExecutionMode.EMBEDDED:
            logger.info("SystemClock starting in embedded mode", extra=log_extra)
        else:
            logger.info("SystemClock starting", extra=log_extra)

        if scheduler is not None:
            for kind in JobKind:
                self._schedule_job(scheduler, kind, clock_config)
        else:
            logger.info("Background ticks disabled - event-driven analysis only")

        self._event_bus.emit(
            Topics.CLOCK_STARTED,
            {
                "config": clock_config.to_wire(),
                "mode": self._mode.value,
                "startedAt": self._now().isoformat(),
            },
            EVENT_SOURCE,
        )
        logger.info(f"SystemClock started with {len(self._interval_jobs)} periodic jobs")

    def stop(self) -> None:
        """Cancel periodic jobs and warm-ups.

        Event-driven one-offs and runs already in flight are left alone.
        """
        if not self._running:
            return

        for kind, job in list(self._interval_jobs.items()):
            _remove_job(job)
            logger.info(f"Stopped {kind.value} interval")
        for job in list(self._warmup_jobs.values()):
            _remove_job(job)

        self._interval_jobs.clear()
        self._warmup_jobs.clear()
        self._running = False

        self._event_bus.emit(
            Topics.CLOCK_STOPPED,
            {"stoppedAt": self._now().isoformat()},
            EVENT_SOURCE,
        )
        logger.info("SystemClock stopped")

    async def close(self) -> None:
        """Tear the instance down: stop, cancel triggers, unsubscribe."""
        self.stop()

        cancelled = self.cancel_pending_triggers()
        if cancelled:
            logger.debug(f"Cancelled {cancelled} pending event-driven runs")
        await self.wait_for_pending_triggers()

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None

    def _resolve_mode(self) -> ExecutionMode:
        try:
            return ExecutionMode(self._mode_detector())
        except Exception as e:
            logger.warning(f"Execution mode detection failed, assuming embedded: {e}")
            return ExecutionMode.EMBEDDED

    def _ensure_scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            loop = self._loop or asyncio.get_running_loop()
            self._scheduler = AsyncIOScheduler(
                event_loop=loop,
                job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            )
        if not self._scheduler.running:
            self._scheduler.start()
        return self._scheduler

    def _schedule_job(self, scheduler: AsyncIOScheduler, kind: JobKind, config: ClockConfig) -> None:
        cadence = config.cadence_for(kind)
        self._interval_jobs[kind] = scheduler.add_job(
            self._run_scheduled,
            trigger=IntervalTrigger(seconds=cadence.total_seconds()),
            args=[kind],
            kwargs={"trigger": "interval"},
            id=f"interval-{kind.value}",
            replace_existing=True,
        )
        logger.info(f"{_LABELS[kind]} scheduled every {cadence}")

        warmup = self._warmup_delays.get(kind)
        if warmup is not None:
            # Scheduler time is wall-clock time, independent of the injected clock
            run_date = datetime.now(timezone.utc) + warmup
            self._warmup_jobs[kind] = scheduler.add_job(
                self._run_scheduled,
                trigger=DateTrigger(run_date=run_date),
                args=[kind],
                kwargs={"trigger": "warmup"},
                id=f"warmup-{kind.value}",
                replace_existing=True,
            )

    async def _run_scheduled(self, kind: JobKind, trigger: str = "interval") -> None:
        if trigger == "warmup":
            self._warmup_jobs.pop(kind, None)
        logger.debug(f"{_LABELS[kind]} fired", extra={"job_kind": kind.value, "trigger": trigger})
        await self.run_job(kind)

    # ------------------------------------------------------------------
    # Status and manual triggers
    # ------------------------------------------------------------------

    def get_status(self) -> ClockStatus:
        return ClockStatus(
            running=self._running,
            mode=self._mode,
            active_jobs=frozenset(self._interval_jobs),
            last_runs=self._registry.snapshot(),
            pending_triggers=len(self._pending_triggers),
        )

    async def trigger_immediate_analysis(self, analysis_type: Union[str, JobKind]) -> JobKind:
        """Run one job body now, bypassing scheduling.

        Args:
            analysis_type: JobKind, its value, or a short alias
                (strategic, risk, opportunity, identity, archive)

        Returns:
            The job kind that ran

        Raises:
            UnknownJobKindError: If the tag names no known job; nothing runs
        """
        try:
            kind = JobKind.parse(analysis_type)
        except UnknownJobKindError:
            logger.error(f"Unknown analysis type: {analysis_type}")
            raise

        logger.debug(f"Triggering immediate {kind.value} analysis")
        await self.run_job(kind)
        return kind

    async def run_job(self, kind: JobKind) -> None:
        if kind == JobKind.DATA_ARCHIVING:
            await self.perform_archiving()
        else:
            await self._perform_analysis(kind)

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------

    async def perform_strategic_analysis(self) -> bool:
        return await self._perform_analysis(JobKind.STRATEGIC_ANALYSIS)

    async def perform_risk_detection(self) -> bool:
        return await self._perform_analysis(JobKind.RISK_DETECTION)

    async def perform_opportunity_scanning(self) -> bool:
        return await self._perform_analysis(JobKind.OPPORTUNITY_SCANNING)

    async def perform_identity_reflection(self) -> bool:
        return await self._perform_analysis(JobKind.IDENTITY_REFLECTION)

    async def _perform_analysis(self, kind: JobKind) -> bool:
        """Gather state, invoke the provider, record and publish.

        Returns:
            True if the run completed, False if it failed and was logged
        """
        project_id: Optional[str] = None
        try:
            logger.debug(f"SystemClock: performing {kind.value}")
            project_id = await self._require_project()
            snapshot = await self._gatherer.gather(project_id, self._registry.snapshot())
            result = await self._invoke_provider(kind, snapshot)

            completed_at = self._now()
            self._registry.record(kind, completed_at)
            topic, payload = self._result_event(kind, project_id, snapshot, result, completed_at)
            self._event_bus.emit(topic, payload, EVENT_SOURCE)

            logger.info(
                f"{_LABELS[kind]} completed",
                extra={"job_kind": kind.value, "project_id": project_id},
            )
            return True
        except Exception as e:
            await self._report_failure(kind, project_id, e)
            return False

    async def _invoke_provider(self, kind: JobKind, snapshot: StateSnapshot) -> Any:
        try:
            if kind == JobKind.IDENTITY_REFLECTION:
                result = await resolve(self._identity_engine.perform_background_reflection(snapshot))
            else:
                result = await resolve(
                    self._reasoning_engine.perform_background_analysis(snapshot, ANALYSIS_TYPES[kind])
                )
        except Exception as e:
            raise ProviderFailure(kind.value, str(e)) from e
        return result if result is not None else {}

    def _result_event(
        self,
        kind: JobKind,
        project_id: str,
        snapshot: StateSnapshot,
        result: Any,
        completed_at: datetime,
    ) -> Tuple[str, Dict[str, Any]]:
        timestamp = completed_at.isoformat()

        if kind == JobKind.STRATEGIC_ANALYSIS:
            insights = _field(result, "insights") or []
            logger.info(f"Strategic analysis generated {len(insights)} insights")
            return Topics.STRATEGIC_INSIGHTS, {
                "projectId": project_id,
                "insights": insights,
                "systemState": snapshot.to_dict(),
                "analysisType": "background_strategic",
                "analyzedAt": timestamp,
            }

        if kind == JobKind.RISK_DETECTION:
            risks = _field(result, "risks") or []
            logger.info(f"Risk detection identified {len(risks)} risks")
            return Topics.RISKS_DETECTED, {
                "projectId": project_id,
                "risks": risks,
                "riskLevel": _field(result, "overallRiskLevel") or "low",
                "detectedAt": timestamp,
            }

        if kind == JobKind.OPPORTUNITY_SCANNING:
            opportunities = _field(result, "opportunities") or []
            logger.info(f"Opportunity scanning found {len(opportunities)} opportunities")
            return Topics.OPPORTUNITIES_DETECTED, {
                "projectId": project_id,
                "opportunities": opportunities,
                "priorityLevel": _field(result, "priorityLevel") or "medium",
                "detectedAt": timestamp,
            }

        return Topics.IDENTITY_INSIGHTS, {
            "projectId": project_id,
            "identityInsights": result,
            "reflectedAt": timestamp,
        }

    async def perform_archiving(self) -> Optional[ArchiveState]:
        """Run an archiving attempt through the throttle.

        Returns:
            ARCHIVED or SKIPPED, or None when throttled or failed
        """
        if not self._archive_throttle.try_acquire(self._now()):
            logger.debug("Archiving throttled - attempted too recently")
            return None

        outcome: Optional[ArchiveState] = None
        project_id: Optional[str] = None
        try:
            logger.debug("SystemClock: performing data archiving check")
            project_id = await self._require_project()

            try:
                needed = await resolve(self._archiver.assess_archive_needs(project_id))
            except Exception as e:
                raise ProviderFailure(JobKind.DATA_ARCHIVING.value, str(e)) from e

            if needed:
                logger.info("Archive threshold reached - beginning archiving process")
                try:
                    results = await resolve(self._archiver.perform_archiving(project_id=project_id))
                except Exception as e:
                    raise ProviderFailure(JobKind.DATA_ARCHIVING.value, str(e)) from e

                archived_at = self._now()
                self._registry.record(JobKind.DATA_ARCHIVING, archived_at)
                self._event_bus.emit(
                    Topics.ARCHIVING_COMPLETED,
                    {
                        "projectId": project_id,
                        "results": results,
                        "archivedAt": archived_at.isoformat(),
                    },
                    EVENT_SOURCE,
                )
                logger.info("Archiving completed successfully", extra={"project_id": project_id})
                outcome = ArchiveState.ARCHIVED
            else:
                checked_at = self._now()
                if (
                    self._last_archive_note is None
                    or checked_at - self._last_archive_note > ARCHIVE_NOTE_INTERVAL
                ):
                    logger.debug("No archiving needed at this time")
                    self._last_archive_note = checked_at
                self._registry.record(ARCHIVE_CHECK_KEY, checked_at)
                outcome = ArchiveState.SKIPPED
        except Exception as e:
            await self._report_failure(JobKind.DATA_ARCHIVING, project_id, e)
        finally:
            self._archive_throttle.finish(outcome)

        return outcome

    async def _require_project(self) -> str:
        project_id = await resolve(self._project_management.require_active_project())
        if not project_id:
            raise NoActiveProjectError()
        return project_id

    async def _report_failure(self, kind: JobKind, project_id: Optional[str], error: Exception) -> None:
        context = _CONTEXTS[kind]
        logger.error(
            f"{_LABELS[kind]} failed: {error}",
            exc_info=not isinstance(error, NoActiveProjectError),
            extra={"job_kind": kind.value, "project_id": project_id},
        )
        try:
            await resolve(
                self._data_persistence.log_error(
                    context,
                    error,
                    {"job": kind.value, "projectId": project_id},
                )
            )
        except Exception as log_error:
            logger.error(f"Failed to record error for {context}: {log_error}", exc_info=True)

    # ------------------------------------------------------------------
    # Event reactions
    # ------------------------------------------------------------------

    def _on_block_completed(self, event: ForestEvent) -> None:
        block = event.payload.get("block")
        if not isinstance(block, Mapping):
            return
        context = block.get("opportunityContext")
        engagement = context.get("engagementLevel") if isinstance(context, Mapping) else None
        significant = isinstance(engagement, (int, float)) and engagement >= SIGNIFICANT_ENGAGEMENT
        if block.get("breakthrough") or significant:
            logger.debug("Significant block completion - scheduling strategic analysis")
            self._schedule_trigger(JobKind.STRATEGIC_ANALYSIS, event.topic)

    def _on_project_created(self, event: ForestEvent) -> None:
        project_id = event.payload.get("projectId")
        logger.info(f"New project detected: {project_id} - scheduling initial analysis")
        self._schedule_trigger(JobKind.STRATEGIC_ANALYSIS, event.topic)
        self._schedule_trigger(JobKind.OPPORTUNITY_SCANNING, event.topic)

    def _on_strategy_evolved(self, event: ForestEvent) -> None:
        tasks_added = event.payload.get("tasksAdded")
        if isinstance(tasks_added, (int, float)) and tasks_added >= SIGNIFICANT_TASKS_ADDED:
            logger.debug("Significant strategy evolution - scheduling risk detection")
            self._schedule_trigger(JobKind.RISK_DETECTION, event.topic)

    def _schedule_trigger(self, kind: JobKind, reason: str) -> Optional[ScheduledTrigger]:
        try:
            loop = self._loop or asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No event loop running - dropping {kind.value} run requested by {reason}")
            return None

        trigger = ScheduledTrigger(
            trigger_id=uuid.uuid4().hex,
            job_kind=kind,
            reason=reason,
            delay_seconds=REACTION_DELAYS[reason],
        )
        trigger.task = loop.create_task(self._delayed_run(trigger))
        self._pending_triggers[trigger.trigger_id] = trigger
        trigger.task.add_done_callback(
            lambda task, trigger_id=trigger.trigger_id: self._trigger_done(trigger_id, task)
        )
        return trigger

    async def _delayed_run(self, trigger: ScheduledTrigger) -> None:
        try:
            await self._sleep(trigger.delay_seconds)
            await self.run_job(trigger.job_kind)
        except asyncio.CancelledError:
            logger.debug(f"Event-driven {trigger.job_kind.value} run cancelled")
            raise

    def _trigger_done(self, trigger_id: str, task: "asyncio.Task[None]") -> None:
        self._pending_triggers.pop(trigger_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Event-driven run failed: {task.exception()}")

    def cancel_pending_triggers(self) -> int:
        """Cancel event-driven runs that have not finished.

        Returns:
            Number of runs cancelled
        """
        cancelled = 0
        for trigger in list(self._pending_triggers.values()):
            if trigger.task is not None and not trigger.task.done():
                trigger.task.cancel()
                cancelled += 1
        return cancelled

    async def wait_for_pending_triggers(self) -> None:
        """Wait until every event-driven run has finished or been cancelled."""
        while True:
            tasks = [
                trigger.task
                for trigger in self._pending_triggers.values()
                if trigger.task is not None and not trigger.task.done()
            ]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)


def _remove_job(job: Job) -> None:
    try:
        job.remove()
    except JobLookupError:
        # Warm-up already fired and was dropped by the scheduler
        pass
