"""Workflow Execution Engine — sequential step runner.

Takes validated workflow definitions and runs instances of them step by
step, handling:

- Conditional skips (a false ``condition`` marks the step skipped)
- Variable interpolation of step parameters (``${name}``)
- Retries with a fixed per-step delay
- Definition-level error policy: abort, continue or goto
- Variable passing between steps (handler results merge into variables)
- Scheduled starts through the Scheduler
- Status and log views with secrets redacted

Execution model:
- A single asyncio.Queue holds ``(instance_id, step_index)`` work units
- One worker task drains it by default, so step executions never overlap.
  ``WORKER_COUNT > 1`` runs a pool with one lock per instance: instances
  progress in parallel, steps of one instance never do.
- Retries wait in a DelayQueue, not in the worker
- Instance state lives in memory only
"""

import asyncio
import copy
import inspect
import threading
from typing import Any, Optional, Union

import structlog

from app.config import Settings, get_settings
from core.exceptions import NotFoundError, StepExecutionError, WorkflowEngineError
from core.utils import generate_instance_id, sanitize_for_display, utc_now
from tasks.registry import StepHandler, TaskRegistry, get_task_registry
from triggers.base import TriggerEvent
from triggers.scheduler import Scheduler
from workflow.conditions import evaluate_condition
from workflow.definitions import DefinitionStore
from workflow.delay_queue import DelayQueue
from workflow.interpolation import interpolate
from workflow.models import (
    ErrorAction,
    InstanceStatus,
    StepRuntime,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
)

logger = structlog.get_logger(__name__)

WorkUnit = tuple[str, int]


class WorkflowEngine:
    """Main workflow execution engine.

    Owns the definition store, the handler registry, every instance created
    through it, the work queue and the scheduler.

    ``start_workflow`` may be called before ``start()``; units simply wait in
    the queue until workers exist.
    """

    def __init__(
        self,
        registry: Optional[TaskRegistry] = None,
        store: Optional[DefinitionStore] = None,
        settings: Optional[Settings] = None,
        worker_count: Optional[int] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or get_task_registry()
        self.store = store or DefinitionStore(known_types=lambda: self.registry.available_types)
        self._worker_count = max(1, worker_count or self.settings.WORKER_COUNT)

        self._instances: dict[str, WorkflowInstance] = {}
        self._done_events: dict[str, asyncio.Event] = {}
        self._instance_locks: dict[str, asyncio.Lock] = {}
        self._lock = threading.RLock()

        self._queue: asyncio.Queue[WorkUnit] = asyncio.Queue()
        self._delay_queue = DelayQueue(self._enqueue)
        self._workers: list[asyncio.Task] = []

        self.scheduler = Scheduler(
            on_trigger=self._on_trigger,
            timezone=self.settings.SCHEDULER_TIMEZONE,
            poll_interval=self.settings.SCHEDULER_POLL_INTERVAL,
        )
        self.store.subscribe(self.scheduler.on_definition_event)
        for summary in self.store.list():
            if summary["scheduled"]:
                self.scheduler.register(self.store.get(summary["id"]))

    # ─── Lifecycle ───────────────────────────────────────────

    async def start(self, run_scheduler: bool = True) -> None:
        """Start the worker(s), the retry timer and optionally the scheduler."""
        if self._workers:
            return
        for n in range(self._worker_count):
            self._workers.append(
                asyncio.get_running_loop().create_task(self._worker(n), name=f"workflow-worker-{n}")
            )
        self._delay_queue.start()
        if run_scheduler:
            self.scheduler.start()
        logger.info("Workflow engine started", workers=self._worker_count, scheduler=run_scheduler)

    async def shutdown(self) -> None:
        """Stop all background tasks and release handler resources.

        Instances in flight stay as they are.
        """
        await self.scheduler.stop()
        await self._delay_queue.stop()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        self.registry.dispose()
        logger.info("Workflow engine stopped")

    async def __aenter__(self) -> "WorkflowEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ─── Definitions & handlers ──────────────────────────────

    def load_workflow(self, raw: Union[dict, WorkflowDefinition]) -> WorkflowDefinition:
        return self.store.load(raw)

    def register_step_type(self, step_type: str, handler: StepHandler) -> None:
        self.registry.register(step_type, handler)

    def list_workflows(self) -> list[dict]:
        return self.store.list()

    # ─── Starting instances ──────────────────────────────────

    def start_workflow(self, definition_id: str, variables: Optional[dict] = None) -> str:
        """Create an instance of a definition and queue its first step.

        Args:
            definition_id: Id of a loaded definition
            variables: Initial variables, layered over the definition's own

        Returns:
            The new instance id

        Raises:
            NotFoundError: If no definition has that id
        """
        definition = self.store.get(definition_id)
        instance = WorkflowInstance.create(
            generate_instance_id(definition.id),
            definition,
            copy.deepcopy(variables) if variables else None,
        )

        with self._lock:
            instance.status = InstanceStatus.RUNNING
            self._instances[instance.id] = instance
            self._done_events[instance.id] = asyncio.Event()
            instance.log(
                "workflow_started",
                workflow_id=definition.id,
                version=definition.version,
                step_count=len(instance.steps),
            )

        logger.info(
            "Workflow started",
            instance_id=instance.id,
            workflow_id=definition.id,
            version=definition.version,
        )
        self._queue_next_step(instance)
        return instance.id

    def _on_trigger(self, event: TriggerEvent) -> str:
        return self.start_workflow(event.definition_id, event.variables)

    async def wait_for_instance(self, instance_id: str, timeout: Optional[float] = None) -> dict:
        """Wait until an instance completes or fails and return its status view.

        Raises:
            NotFoundError: If the instance is unknown
            asyncio.TimeoutError: If ``timeout`` elapses first
        """
        instance = self._get_instance(instance_id)
        event = self._done_events.get(instance_id)
        if not instance.is_terminal and event is not None:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        return self.get_workflow_status(instance_id)

    # ─── Queueing ────────────────────────────────────────────

    def _enqueue(self, unit: WorkUnit) -> None:
        self._queue.put_nowait(unit)

    def _queue_next_step(self, instance: WorkflowInstance) -> None:
        """Queue the instance's current step, skipping steps whose condition is false.

        Completes the instance when the cursor runs past the last step.
        """
        with self._lock:
            while not instance.is_terminal:
                step = instance.current_step
                if step is None:
                    self._complete_instance(instance)
                    return

                if step.condition and step.condition.strip():
                    if not evaluate_condition(step.condition, instance.variables):
                        step.status = StepStatus.SKIPPED
                        step.result = None
                        step.error = None
                        step.end_time = utc_now()
                        instance.log("step_skipped", step_id=step.id, condition=step.condition)
                        logger.debug("Step skipped", instance_id=instance.id, step_id=step.id)
                        instance.current_step_index += 1
                        continue

                step.status = StepStatus.PENDING
                self._enqueue((instance.id, instance.current_step_index))
                return

    # ─── Workers ─────────────────────────────────────────────

    def _instance_lock(self, instance_id: str) -> Optional[asyncio.Lock]:
        """Lock serialising one instance's steps, or None once it is finished."""
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or instance.is_terminal:
                return None
            lock = self._instance_locks.get(instance_id)
            if lock is None:
                lock = self._instance_locks[instance_id] = asyncio.Lock()
            return lock

    async def _worker(self, number: int) -> None:
        logger.debug("Worker started", worker=number)
        while True:
            instance_id, index = await self._queue.get()
            try:
                lock = self._instance_lock(instance_id) if self._worker_count > 1 else None
                if lock is None:
                    await self._execute_step(instance_id, index)
                else:
                    async with lock:
                        await self._execute_step(instance_id, index)
            except Exception as e:
                logger.error(
                    "Unhandled error while executing step",
                    instance_id=instance_id,
                    step_index=index,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until the work queue is drained. Pending retries are not included."""
        await self._queue.join()

    # ─── Step execution ──────────────────────────────────────

    async def _execute_step(self, instance_id: str, index: int) -> None:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or instance.is_terminal:
                logger.debug("Dropping work unit for finished instance", instance_id=instance_id, step_index=index)
                return
            if index != instance.current_step_index or not 0 <= index < len(instance.steps):
                logger.warning(
                    "Dropping stale work unit",
                    instance_id=instance_id,
                    step_index=index,
                    current_step_index=instance.current_step_index,
                )
                return

            step = instance.steps[index]
            step.status = StepStatus.RUNNING
            step.start_time = utc_now()
            step.end_time = None
            step.error = None
            step.attempts += 1
            instance.log("step_started", step_id=step.id, step_type=step.type, attempt=step.attempts)

        logger.info(
            "Step started",
            instance_id=instance_id,
            step_id=step.id,
            step_type=step.type,
            attempt=step.attempts,
        )

        try:
            handler = self.registry.lookup(step.type, step.id)
            step.resolved_parameters = interpolate(step.parameters, instance.variables)
            result = await self._invoke(handler, instance, step)
        except WorkflowEngineError as e:
            self._handle_failure(instance, index, e.message)
        except Exception as e:
            logger.warning(
                "Step handler raised",
                instance_id=instance_id,
                step_id=step.id,
                error_type=type(e).__name__,
            )
            self._handle_failure(instance, index, str(e) or type(e).__name__)
        else:
            self._handle_success(instance, index, result)

    async def _invoke(self, handler: StepHandler, instance: WorkflowInstance, step: StepRuntime) -> Any:
        """Call a handler, awaiting coroutines and running plain callables in a thread."""
        if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(getattr(handler, "__call__", None)):
            call = handler(instance, step)
        else:
            call = asyncio.to_thread(handler, instance, step)

        if self.settings.ENFORCE_STEP_TIMEOUTS and step.timeout_seconds:
            try:
                result = await asyncio.wait_for(call, timeout=step.timeout_seconds)
            except asyncio.TimeoutError:
                raise StepExecutionError(f"Step '{step.id}' timed out after {step.timeout_seconds}s")
        else:
            result = await call

        if inspect.isawaitable(result):
            result = await result
        return result

    def _handle_success(self, instance: WorkflowInstance, index: int, result: Any) -> None:
        with self._lock:
            if instance.is_terminal:
                return
            step = instance.steps[index]
            step.status = StepStatus.COMPLETED
            step.result = result
            step.end_time = utc_now()
            instance.log("step_completed", step_id=step.id, duration_ms=step.duration_ms)

            if isinstance(result, dict):
                instance.variables.update(result)
            else:
                instance.variables[step.id] = result

            instance.current_step_index = index + 1

        logger.info("Step completed", instance_id=instance.id, step_id=step.id, duration_ms=step.duration_ms)
        self._queue_next_step(instance)

    def _handle_failure(self, instance: WorkflowInstance, index: int, message: str) -> None:
        with self._lock:
            if instance.is_terminal:
                return
            step = instance.steps[index]
            step.status = StepStatus.FAILED
            step.error = message
            step.end_time = utc_now()
            instance.log("step_failed", step_id=step.id, error=message, attempt=step.attempts)
            logger.warning("Step failed", instance_id=instance.id, step_id=step.id, error=message)

            if step.retry_count > 0:
                step.retry_count -= 1
                step.status = StepStatus.PENDING
                instance.log(
                    "step_retry",
                    step_id=step.id,
                    retries_remaining=step.retry_count,
                    delay_seconds=step.retry_delay_seconds,
                )
                self._delay_queue.put((instance.id, index), step.retry_delay_seconds)
                return

            definition = instance.definition
            policy = definition.error_handling

            if policy == ErrorAction.CONTINUE:
                instance.log("error_handled", step_id=step.id, action=ErrorAction.CONTINUE.value)
                instance.current_step_index = index + 1
                self._queue_next_step(instance)
                return

            if policy == ErrorAction.GOTO:
                target = definition.error_goto_step
                target_index = instance.find_step_index(target) if target else None
                if target_index is not None:
                    instance.log(
                        "error_handled",
                        step_id=step.id,
                        action=ErrorAction.GOTO.value,
                        target=target,
                    )
                    instance.current_step_index = target_index
                    self._queue_next_step(instance)
                    return
                logger.warning(
                    "goto target not found, aborting",
                    instance_id=instance.id,
                    step_id=step.id,
                    error_goto_step=target,
                )

            self._fail_instance(instance, step, message)

    # ─── Terminal transitions ────────────────────────────────

    def _complete_instance(self, instance: WorkflowInstance) -> None:
        instance.status = InstanceStatus.COMPLETED
        instance.completed_at = utc_now()
        elapsed = instance.elapsed_seconds()
        instance.log("workflow_completed", elapsed_seconds=elapsed)
        logger.info(
            "Workflow completed",
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            elapsed_seconds=elapsed,
        )
        self._finish(instance)

    def _fail_instance(self, instance: WorkflowInstance, step: StepRuntime, message: str) -> None:
        instance.status = InstanceStatus.FAILED
        instance.error = message
        instance.completed_at = utc_now()
        elapsed = instance.elapsed_seconds()
        instance.log("workflow_failed", step_id=step.id, error=message, elapsed_seconds=elapsed)
        logger.error(
            "Workflow failed",
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            step_id=step.id,
            error=message,
        )
        self._finish(instance)

    def _finish(self, instance: WorkflowInstance) -> None:
        self._instance_locks.pop(instance.id, None)
        event = self._done_events.get(instance.id)
        if event is not None:
            event.set()

    # ─── Status & logs ───────────────────────────────────────

    def _get_instance(self, instance_id: str) -> WorkflowInstance:
        with self._lock:
            instance = self._instances.get(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance not found: {instance_id}")
        return instance

    def _sanitize(self, value: Any) -> Any:
        return sanitize_for_display(
            value,
            max_list_items=self.settings.DISPLAY_MAX_LIST_ITEMS,
            max_string_length=self.settings.DISPLAY_MAX_STRING_LENGTH,
        )

    def get_workflow_status(self, instance_id: str) -> dict:
        """Snapshot of an instance, with secret-looking variables redacted."""
        instance = self._get_instance(instance_id)
        with self._lock:
            current = instance.current_step
            view = {
                "instance_id": instance.id,
                "workflow_id": instance.workflow_id,
                "workflow_name": instance.definition.name,
                "status": instance.status.value,
                "step_counts": instance.step_counts(),
                "current_step": current.id if current else None,
                "current_step_index": instance.current_step_index,
                "elapsed_seconds": instance.elapsed_seconds(),
                "started_at": instance.started_at.isoformat(),
                "completed_at": instance.completed_at.isoformat() if instance.completed_at else None,
                "error": instance.error,
                "variables": copy.deepcopy(instance.variables),
                "steps": [step.to_dict() for step in instance.steps],
            }
        view["variables"] = self._sanitize(view["variables"])
        return view

    def get_workflow_logs(self, instance_id: str) -> list[dict]:
        instance = self._get_instance(instance_id)
        with self._lock:
            entries = [entry.to_dict() for entry in instance.logs]
        for entry in entries:
            entry["details"] = self._sanitize(copy.deepcopy(entry["details"]))
        return entries

    def list_workflow_instances(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[Union[str, InstanceStatus]] = None,
    ) -> list[dict]:
        wanted = InstanceStatus(status) if status is not None else None
        with self._lock:
            instances = list(self._instances.values())
            return [
                instance.summary()
                for instance in instances
                if (workflow_id is None or instance.workflow_id == workflow_id)
                and (wanted is None or instance.status == wanted)
            ]
