"""Base schedule classes and schedule kind registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ScheduleKind(str, Enum):
    """All supported schedule trigger kinds."""

    INTERVAL = "interval"
    CRON = "cron"
    DAILY = "daily"


@dataclass
class ScheduledTrigger:
    """A registered recurring trigger for one workflow definition."""

    definition_id: str
    kind: ScheduleKind
    spec: dict[str, Any]
    next_run_at: datetime
    last_run_at: Optional[datetime] = None
    fire_count: int = 0
    last_instance_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "definition_id": self.definition_id,
            "kind": self.kind.value,
            "spec": self.spec,
            "next_run_at": self.next_run_at.isoformat(),
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "fire_count": self.fire_count,
            "last_instance_id": self.last_instance_id,
        }


@dataclass
class TriggerEvent:
    """Payload handed to the engine when a trigger fires.

    ``variables`` become the initial variables of the started instance.
    """

    definition_id: str
    kind: ScheduleKind
    fired_at: datetime
    variables: dict[str, Any] = field(default_factory=dict)


class BaseScheduleHandler(ABC):
    """Abstract base class for schedule kind handlers.

    Each kind (interval, cron, daily) implements next-run computation.
    The Scheduler uses these handlers to register triggers and advance them
    after each firing.
    """

    kind: ScheduleKind

    @abstractmethod
    def next_run(self, spec: dict, after: datetime) -> datetime:
        """Compute the first fire time strictly after ``after``.

        Args:
            spec: Schedule spec from the workflow definition
            after: Timezone-aware reference time

        Returns:
            Timezone-aware datetime of the next firing

        Raises:
            SchedulingError: If the spec is unusable
        """
        ...

    def validate_config(self, spec: dict) -> tuple[bool, Optional[str]]:
        """Validate a schedule spec.

        Returns:
            Tuple of (is_valid, error_message)
        """
        return True, None
