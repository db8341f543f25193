"""Workflow data model.

Definitions are validated, immutable pydantic models loaded by the
DefinitionStore. Instances and step runtimes are plain dataclasses owned and
mutated by the WorkflowEngine.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.utils import utc_now


# ─── Statuses ─────────────────────────────────────────────────

class StepStatus(str, Enum):
    """Status of a single workflow step."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class InstanceStatus(str, Enum):
    """Status of a workflow instance."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.COMPLETED, InstanceStatus.FAILED)


class ErrorAction(str, Enum):
    """What happens when a step fails with no retries left."""
    ABORT = "abort"
    CONTINUE = "continue"
    GOTO = "goto"


# ─── Definitions ──────────────────────────────────────────────

class ScheduleSpec(BaseModel):
    """Trigger spec attached to a definition.

    ``type`` is not restricted here: unknown kinds are rejected by the
    Scheduler, which logs and ignores them without failing the load.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    type: str
    interval_minutes: Optional[float] = None
    cron: Optional[str] = None
    time: Optional[str] = None


class StepDefinition(BaseModel):
    """One declarative step of a workflow definition."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    condition: Optional[str] = None
    timeout_seconds: float = Field(300, ge=0)
    retry_count: int = Field(0, ge=0)
    retry_delay_seconds: float = Field(30, ge=0)

    @field_validator("id", "type", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("parameters", mode="before")
    @classmethod
    def _none_parameters(cls, v):
        return {} if v is None else v

    @model_validator(mode="before")
    @classmethod
    def _default_name(cls, data):
        if isinstance(data, dict) and not data.get("name"):
            data = {**data, "name": data.get("id") or ""}
        return data


class WorkflowDefinition(BaseModel):
    """Validated, immutable workflow definition."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    description: str = ""
    variables: dict[str, Any] = Field(default_factory=dict)
    steps: list[StepDefinition] = Field(..., min_length=1)
    schedule: Optional[ScheduleSpec] = None
    error_handling: ErrorAction = ErrorAction.ABORT
    error_goto_step: Optional[str] = None

    @field_validator("version", mode="before")
    @classmethod
    def _version_to_str(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("variables", mode="before")
    @classmethod
    def _none_variables(cls, v):
        return {} if v is None else v

    @model_validator(mode="after")
    def _unique_step_ids(self) -> "WorkflowDefinition":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id: {step.id}")
            seen.add(step.id)
        return self

    def step_index(self, step_id: str) -> Optional[int]:
        """Position of a step id in the ordered step list, or None."""
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return None

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "step_count": len(self.steps),
            "scheduled": self.schedule is not None,
        }


# ─── Runtime state ────────────────────────────────────────────

@dataclass
class LogEntry:
    """One timestamped event in an instance's log."""
    timestamp: datetime
    event_type: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "details": self.details,
        }


@dataclass
class StepRuntime:
    """Per-run copy of a StepDefinition plus its execution state.

    ``parameters`` keeps the uninterpolated template so that retries and
    goto jumps re-resolve against the variables of that moment.
    ``resolved_parameters`` holds what the handler actually received.
    """
    id: str
    type: str
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    condition: Optional[str] = None
    timeout_seconds: float = 300
    retry_count: int = 0
    retry_delay_seconds: float = 30
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    attempts: int = 0
    resolved_parameters: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_definition(cls, step: StepDefinition) -> "StepRuntime":
        return cls(
            id=step.id,
            type=step.type,
            name=step.name,
            description=step.description,
            parameters=copy.deepcopy(step.parameters),
            condition=step.condition,
            timeout_seconds=step.timeout_seconds,
            retry_count=step.retry_count,
            retry_delay_seconds=step.retry_delay_seconds,
        )

    @property
    def duration_ms(self) -> Optional[int]:
        if self.start_time and self.end_time:
            return int((self.end_time - self.start_time).total_seconds() * 1000)
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "status": self.status.value,
            "attempts": self.attempts,
            "retries_remaining": self.retry_count,
            "error": self.error,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class WorkflowInstance:
    """One execution of a workflow definition.

    Holds its own variable bag and step states. Mutated only by the engine.
    """
    id: str
    workflow_id: str
    definition: WorkflowDefinition
    status: InstanceStatus = InstanceStatus.PENDING
    variables: dict[str, Any] = field(default_factory=dict)
    steps: list[StepRuntime] = field(default_factory=list)
    current_step_index: int = 0
    logs: list[LogEntry] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def create(
        cls,
        instance_id: str,
        definition: WorkflowDefinition,
        variables: Optional[dict] = None,
    ) -> "WorkflowInstance":
        return cls(
            id=instance_id,
            workflow_id=definition.id,
            definition=definition,
            variables={**copy.deepcopy(definition.variables), **(variables or {})},
            steps=[StepRuntime.from_definition(s) for s in definition.steps],
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def current_step(self) -> Optional[StepRuntime]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def log(self, event_type: str, **details: Any) -> LogEntry:
        """Append an event to the instance log."""
        entry = LogEntry(timestamp=utc_now(), event_type=event_type, details=details)
        self.logs.append(entry)
        return entry

    def elapsed_seconds(self) -> float:
        end = self.completed_at or utc_now()
        return round((end - self.started_at).total_seconds(), 3)

    def step_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in StepStatus}
        for step in self.steps:
            counts[step.status.value] += 1
        return counts

    def find_step_index(self, step_id: str) -> Optional[int]:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return None

    def summary(self) -> dict:
        current = self.current_step
        return {
            "instance_id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "current_step": current.id if current else None,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "elapsed_seconds": self.elapsed_seconds(),
        }
