"""Flow control tasks: condition and delay."""

import asyncio
from typing import Any, Dict, Optional

import structlog

from app.config import get_settings
from tasks.base_task import BaseTask, TaskResult
from workflow.conditions import evaluate_condition

logger = structlog.get_logger(__name__)


def _pick(config: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in config:
            return config[key]
    return default


class ConditionTask(BaseTask):
    """Evaluate a condition and return one of two values.

    Config:
        condition: Boolean expression over the instance variables (required)
        true_value: Result when the condition holds (alias: trueValue; default True)
        false_value: Result otherwise (alias: falseValue; default False)
    """

    task_type = "condition"
    display_name = "Condition"
    description = "Return true_value or false_value depending on a condition"

    async def execute(self, config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        expression = config.get("condition") or config.get("expression")
        if not expression:
            return TaskResult(success=False, error="Missing required config: condition")

        variables = (context or {}).get("variables") or {}
        outcome = evaluate_condition(expression, variables)
        if outcome:
            value = _pick(config, "true_value", "trueValue", default=True)
        else:
            value = _pick(config, "false_value", "falseValue", default=False)
        return TaskResult(success=True, output=value, metadata={"condition_result": outcome})


class DelayTask(BaseTask):
    """Sleep for a computed duration.

    Config:
        seconds, minutes, hours: Summed into the total delay
    """

    task_type = "delay"
    display_name = "Delay"
    description = "Wait before continuing"

    async def execute(self, config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        try:
            total = (
                float(config.get("seconds", 0) or 0)
                + float(config.get("minutes", 0) or 0) * 60
                + float(config.get("hours", 0) or 0) * 3600
            )
        except (TypeError, ValueError):
            return TaskResult(success=False, error="Delay values must be numbers")
        if total < 0:
            return TaskResult(success=False, error="Delay must not be negative")

        max_delay = get_settings().MAX_DELAY_SECONDS
        if total > max_delay:
            logger.warning("Delay capped", requested=total, cap=max_delay)
            total = max_delay

        await asyncio.sleep(total)
        return TaskResult(success=True, output={"delayed_seconds": total})


# Export for task registry
CONTROL_TASK_TYPES = {
    "condition": ConditionTask,
    "delay": DelayTask,
}
