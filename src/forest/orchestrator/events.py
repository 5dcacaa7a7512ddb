"""Topic-based event bus shared by the clock and the rest of the server.

Domain components publish events such as ``block:completed`` when a task
block is finished, and the clock answers with ``system:*`` events carrying
analysis results. Handlers never see each other's failures: an exception
raised by one handler is logged and delivery continues.

Example:
    bus = ForestEventBus()
    unsubscribe = bus.subscribe(Topics.BLOCK_COMPLETED, on_block_completed)

    bus.emit(Topics.BLOCK_COMPLETED, {"block": {"breakthrough": True}}, "TaskEngine")

    unsubscribe()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Topics:
    """Topic names consumed and published by the clock."""

    BLOCK_COMPLETED = "block:completed"
    PROJECT_CREATED = "project:created"
    STRATEGY_EVOLVED = "strategy:evolved"

    CLOCK_STARTED = "system:clock_started"
    CLOCK_STOPPED = "system:clock_stopped"
    STRATEGIC_INSIGHTS = "system:strategic_insights"
    RISKS_DETECTED = "system:risks_detected"
    OPPORTUNITIES_DETECTED = "system:opportunities_detected"
    IDENTITY_INSIGHTS = "system:identity_insights"
    ARCHIVING_COMPLETED = "system:archiving_completed"


@dataclass
class ForestEvent:
    """Event delivered to bus subscribers."""

    topic: str
    payload: Dict[str, Any] = field(default_factory=dict)
    source: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[ForestEvent], Any]
Unsubscribe = Callable[[], None]


class ForestEventBus:
    """In-memory publish/subscribe bus with bounded history.

    Sync handlers run inline during ``emit``. Coroutine handlers are
    scheduled as tasks on the running loop; ``emit_async`` awaits them.
    """

    def __init__(self, max_history: int = 1000) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._event_history: List[ForestEvent] = []
        self._max_history = max_history

    def subscribe(self, topic: str, handler: EventHandler) -> Unsubscribe:
        """Subscribe to a topic.

        Args:
            topic: Topic to listen on
            handler: Callback receiving a ForestEvent (sync or async)

        Returns:
            Callable that removes this subscription; safe to call twice
        """
        self._handlers.setdefault(topic, []).append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(topic, handler)

        return _unsubscribe

    def unsubscribe(self, topic: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(topic)
        if not handlers:
            return
        with contextlib.suppress(ValueError):
            handlers.remove(handler)
        if not handlers:
            del self._handlers[topic]

    def listener_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, []))

    def emit(self, topic: str, payload: Optional[Dict[str, Any]] = None, source: str = "") -> ForestEvent:
        """Emit an event to all subscribers of ``topic``.

        Returns:
            The delivered event
        """
        event = ForestEvent(topic=topic, payload=dict(payload or {}), source=source)
        self._record(event)

        for handler in list(self._handlers.get(topic, [])):
            try:
                result = handler(event)
            except Exception as e:
                logger.error(f"Event handler error on {topic}: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._schedule(topic, result)

        return event

    async def emit_async(
        self,
        topic: str,
        payload: Optional[Dict[str, Any]] = None,
        source: str = "",
    ) -> ForestEvent:
        """Emit an event and await every coroutine handler."""
        event = ForestEvent(topic=topic, payload=dict(payload or {}), source=source)
        self._record(event)

        pending = []
        for handler in list(self._handlers.get(topic, [])):
            try:
                result = handler(event)
            except Exception as e:
                logger.error(f"Event handler error on {topic}: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                pending.append(result)

        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Async event handler error on {topic}: {result}")

        return event

    def get_recent_events(self, topic: Optional[str] = None, limit: int = 100) -> List[ForestEvent]:
        """Get recent events from history, oldest first.

        Args:
            topic: Filter by topic (optional)
            limit: Maximum events to return
        """
        events = self._event_history
        if topic:
            events = [e for e in events if e.topic == topic]
        return events[-limit:]

    def _record(self, event: ForestEvent) -> None:
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]

    def _schedule(self, topic: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            logger.error(f"Async event handler for {topic} needs a running loop: {e}")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        task.add_done_callback(_log_task_failure)


def _log_task_failure(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Async event handler error: {exc}")
