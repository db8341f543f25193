"""
Base task interface for built-in step handlers.

Every built-in step type (script, HTTP request, notification, etc.)
inherits from BaseTask and implements the execute() method. A BaseTask
instance is itself a step handler: calling it with ``(instance, step)``
runs the task against the step's interpolated parameters.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from core.exceptions import StepExecutionError

logger = structlog.get_logger(__name__)


class TaskResult:
    """Standardized result from task execution."""

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.metadata = metadata or {}
        self.duration_ms = duration_ms
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "metadata": self.metadata,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


class BaseTask(ABC):
    """
    Abstract base class for built-in step handlers.

    Subclasses must implement:
    - execute(config, context) -> TaskResult
    - task_type (class property)
    - display_name (class property)
    """

    task_type: str = "base"
    display_name: str = "Base Task"
    description: str = "Abstract base task"

    @abstractmethod
    async def execute(
        self,
        config: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> TaskResult:
        """
        Execute the task with given configuration.

        Args:
            config: Interpolated step parameters
            context: Execution context with ``variables``, ``instance`` and ``step``

        Returns:
            TaskResult with output or error
        """
        pass

    async def run(
        self,
        config: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> TaskResult:
        """
        Run the task with timing and error handling.

        Exceptions raised by execute() become a failed TaskResult.
        """
        start = time.monotonic()
        try:
            logger.debug("Task starting", task_type=self.task_type)
            result = await self.execute(config, context or {})
            result.duration_ms = (time.monotonic() - start) * 1000

            logger.debug(
                "Task finished",
                task_type=self.task_type,
                success=result.success,
                duration_ms=round(result.duration_ms, 2),
            )
            return result

        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.error(
                "Task failed",
                task_type=self.task_type,
                error=str(e),
                duration_ms=round(duration_ms, 2),
            )
            return TaskResult(
                success=False,
                error=str(e) or type(e).__name__,
                duration_ms=duration_ms,
            )

    async def __call__(self, instance, step) -> Any:
        """Step handler entry point used by the workflow engine."""
        context = {
            "instance": instance,
            "step": step,
            "variables": instance.variables,
            "workflow_id": instance.workflow_id,
        }
        result = await self.run(step.resolved_parameters, context)
        if not result.success:
            raise StepExecutionError(
                result.error or f"Task '{self.task_type}' returned success=False",
                output=result.output,
            )
        return result.output

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for the step parameters.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}
