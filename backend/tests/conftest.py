"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Test settings (no .env, short poll interval, display limits)
- A fresh handler registry and definition store per test
- A started WorkflowEngine (scheduler loop off)
- A recording step handler and a capturing notification channel
- Definition builders
"""

import os
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from app.config import Settings  # noqa: E402
from notifications.channels import BaseChannel, Notification, NotificationChannel  # noqa: E402
from notifications.manager import NotificationManager  # noqa: E402
from tasks.implementations.notification_task import NotificationTask  # noqa: E402
from tasks.registry import TaskRegistry  # noqa: E402
from workflow.definitions import DefinitionStore  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class RecordingHandler:
    """Async step handler that records every call.

    ``outcome`` is either a value to return or a callable
    ``outcome(instance, step, attempt)`` whose return value is used; raising
    from it fails the step.
    """

    def __init__(self, outcome: Any = None):
        self.outcome = outcome
        self.calls: list[dict] = []

    async def __call__(self, instance, step):
        self.calls.append({
            "instance_id": instance.id,
            "step_id": step.id,
            "step_index": instance.current_step_index,
            "parameters": dict(step.resolved_parameters),
            "variables": dict(instance.variables),
        })
        if callable(self.outcome):
            return self.outcome(instance, step, len(self.calls))
        return self.outcome

    @property
    def step_ids(self) -> list[str]:
        return [c["step_id"] for c in self.calls]


class CapturingChannel(BaseChannel):
    """Log-channel stand-in that keeps notifications in memory."""

    channel_type = NotificationChannel.LOG

    def __init__(self):
        self.sent: list[Notification] = []

    async def send(self, notification: Notification):
        self.sent.append(notification)
        return self._delivered(notification.recipient or "log", notification.message)


def make_definition(steps: list[dict], **overrides) -> dict:
    """Build a raw definition mapping with sensible defaults."""
    definition = {
        "id": "wf-test",
        "name": "Test workflow",
        "version": "1.0",
        "steps": steps,
    }
    definition.update(overrides)
    return definition


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="testing",
        WORKER_COUNT=1,
        SCHEDULER_POLL_INTERVAL=0.05,
        DOCUMENT_OUTPUT_DIR=str(tmp_path / "documents"),
        DISPLAY_MAX_LIST_ITEMS=5,
        DISPLAY_MAX_STRING_LENGTH=50,
    )


@pytest.fixture
def registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture
def store(registry) -> DefinitionStore:
    return DefinitionStore(known_types=lambda: registry.available_types)


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def capturing_channel() -> CapturingChannel:
    return CapturingChannel()


@pytest.fixture
def notification_manager(capturing_channel) -> NotificationManager:
    manager = NotificationManager()
    manager.register_channel(capturing_channel)
    return manager


@pytest_asyncio.fixture
async def engine(registry, store, settings, notification_manager):
    """A started engine with notifications captured in memory."""
    registry.register("notification", NotificationTask(manager=notification_manager))
    engine = WorkflowEngine(registry=registry, store=store, settings=settings)
    await engine.start(run_scheduler=False)
    yield engine
    await engine.shutdown()


@pytest.fixture
def run_definition(engine) -> Callable:
    """Load a raw definition, start it and wait for a terminal state."""

    async def _run(raw: dict, variables: Optional[dict] = None, timeout: float = 5.0) -> dict:
        definition = engine.load_workflow(raw)
        instance_id = engine.start_workflow(definition.id, variables)
        return await engine.wait_for_instance(instance_id, timeout=timeout)

    return _run
