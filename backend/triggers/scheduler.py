"""Scheduler — starts workflow instances on time-based triggers.

The Scheduler keeps one ScheduledTrigger per scheduled definition and polls
them on its own asyncio task, independent of step execution. Polling runs
every SCHEDULER_POLL_INTERVAL seconds (1s by default); this is the
granularity of the schedule, not a latency guarantee.

A trigger that fell behind (for example while a blocking handler held the
event loop) fires once and is rescheduled from the current time; missed
occurrences are not replayed.
"""

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import structlog

from core.exceptions import SchedulingError, WorkflowEngineError
from triggers.base import BaseScheduleHandler, ScheduledTrigger, ScheduleKind, TriggerEvent
from triggers.handlers.schedule import SCHEDULE_HANDLERS

logger = structlog.get_logger(__name__)

StartCallback = Callable[[TriggerEvent], Optional[str]]


class Scheduler:
    """Recurring trigger manager for scheduled workflow definitions."""

    def __init__(
        self,
        on_trigger: StartCallback,
        timezone: str = "UTC",
        poll_interval: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._on_trigger = on_trigger
        self._tz = ZoneInfo(timezone)
        self._poll_interval = poll_interval
        self._clock = clock or (lambda: datetime.now(self._tz))
        self._handlers: dict[ScheduleKind, BaseScheduleHandler] = {}
        self._triggers: dict[str, ScheduledTrigger] = {}
        self._lock = threading.RLock()
        self._task: Optional[asyncio.Task] = None

        for handler_cls in SCHEDULE_HANDLERS.values():
            self.register_handler(handler_cls())

    def register_handler(self, handler: BaseScheduleHandler) -> None:
        """Register a schedule kind handler."""
        self._handlers[handler.kind] = handler

    def now(self) -> datetime:
        return self._clock()

    # ─── Trigger registration ──────────────────────────────────

    def register(self, definition) -> Optional[ScheduledTrigger]:
        """Create or replace the trigger for a definition.

        Definitions without a schedule drop any existing trigger. Invalid
        schedules are logged and ignored; the definition itself stays loaded.
        """
        schedule = definition.schedule
        if schedule is None:
            self.unregister(definition.id)
            return None

        spec = schedule.model_dump(exclude_none=True)
        try:
            trigger = self._build_trigger(definition.id, spec)
        except SchedulingError as e:
            logger.error(
                "Schedule ignored",
                workflow_id=definition.id,
                schedule=spec,
                error=e.message,
            )
            self.unregister(definition.id)
            return None

        with self._lock:
            self._triggers[definition.id] = trigger
        logger.info(
            "Schedule registered",
            workflow_id=definition.id,
            kind=trigger.kind.value,
            next_run_at=trigger.next_run_at.isoformat(),
        )
        return trigger

    def _build_trigger(self, definition_id: str, spec: dict) -> ScheduledTrigger:
        try:
            kind = ScheduleKind(spec.get("type"))
        except ValueError:
            raise SchedulingError(f"Unknown schedule type: {spec.get('type')!r}")
        handler = self._handlers.get(kind)
        if handler is None:
            raise SchedulingError(f"No handler for schedule type: {kind.value}")
        next_run_at = handler.next_run(spec, self.now())
        return ScheduledTrigger(
            definition_id=definition_id,
            kind=kind,
            spec=spec,
            next_run_at=next_run_at,
        )

    def unregister(self, definition_id: str) -> bool:
        with self._lock:
            removed = self._triggers.pop(definition_id, None) is not None
        if removed:
            logger.info("Schedule removed", workflow_id=definition_id)
        return removed

    def on_definition_event(self, event: str, definition) -> None:
        """DefinitionStore listener: keep triggers in sync with definitions."""
        if event == "removed":
            self.unregister(definition.id)
        else:
            self.register(definition)

    def get_trigger(self, definition_id: str) -> Optional[ScheduledTrigger]:
        with self._lock:
            return self._triggers.get(definition_id)

    def list_triggers(self) -> list[dict]:
        with self._lock:
            return [t.to_dict() for t in self._triggers.values()]

    # ─── Firing ───────────────────────────────────────────────

    def due_triggers(self, now: Optional[datetime] = None) -> list[ScheduledTrigger]:
        now = now or self.now()
        with self._lock:
            return [t for t in self._triggers.values() if t.next_run_at <= now]

    def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Fire every due trigger once and advance it.

        Returns:
            Instance ids started during this tick
        """
        now = now or self.now()
        started: list[str] = []
        for trigger in self.due_triggers(now):
            event = TriggerEvent(
                definition_id=trigger.definition_id,
                kind=trigger.kind,
                fired_at=now,
                variables={"trigger": "schedule", "scheduled_at": now.isoformat()},
            )
            try:
                instance_id = self._on_trigger(event)
            except WorkflowEngineError as e:
                logger.error(
                    "Scheduled start failed",
                    workflow_id=trigger.definition_id,
                    error=e.message,
                )
                instance_id = None
            except Exception as e:
                logger.error(
                    "Scheduled start failed",
                    workflow_id=trigger.definition_id,
                    error=str(e),
                    exc_info=True,
                )
                instance_id = None

            with self._lock:
                trigger.last_run_at = now
                trigger.fire_count += 1
                trigger.last_instance_id = instance_id
                try:
                    trigger.next_run_at = self._handlers[trigger.kind].next_run(trigger.spec, now)
                except SchedulingError as e:
                    logger.error("Cannot reschedule trigger", workflow_id=trigger.definition_id, error=e.message)
                    self._triggers.pop(trigger.definition_id, None)

            if instance_id:
                started.append(instance_id)
                logger.info(
                    "Scheduled workflow started",
                    workflow_id=trigger.definition_id,
                    instance_id=instance_id,
                    next_run_at=trigger.next_run_at.isoformat(),
                )
        return started

    # ─── Loop ─────────────────────────────────────────────────

    async def _run(self) -> None:
        logger.info("Scheduler started", poll_interval=self._poll_interval)
        while True:
            try:
                self.tick()
            except Exception as e:
                logger.error("Scheduler tick failed", error=str(e), exc_info=True)
            await asyncio.sleep(self._poll_interval)

    def start(self) -> None:
        """Start polling on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name="workflow-scheduler")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
