"""Schedule kind handlers: interval, cron and daily.

Cron support is deliberately narrow: only the minute and hour fields are
honoured. A field croniter cannot parse falls back to minute ``0`` / hour
``*`` (top of every hour); day, month and weekday fields are ignored.
"""

import re
from datetime import datetime, timedelta
from typing import Optional

import structlog
from croniter import croniter

from core.exceptions import SchedulingError
from triggers.base import BaseScheduleHandler, ScheduleKind

logger = structlog.get_logger(__name__)

_HHMM = re.compile(r"^\s*([01]?\d|2[0-3]):([0-5]\d)\s*$")


class IntervalScheduleHandler(BaseScheduleHandler):
    """Fire every ``interval_minutes`` minutes."""

    kind = ScheduleKind.INTERVAL

    def next_run(self, spec: dict, after: datetime) -> datetime:
        is_valid, error = self.validate_config(spec)
        if not is_valid:
            raise SchedulingError(error)
        return after + timedelta(minutes=float(spec["interval_minutes"]))

    def validate_config(self, spec: dict) -> tuple[bool, Optional[str]]:
        minutes = spec.get("interval_minutes")
        if minutes is None:
            return False, "Missing required field: interval_minutes"
        try:
            value = float(minutes)
        except (TypeError, ValueError):
            return False, f"interval_minutes must be a number, got {minutes!r}"
        if value <= 0:
            return False, "interval_minutes must be positive"
        return True, None


def normalize_cron(expr: str) -> str:
    """Reduce a cron expression to its minute/hour fields.

    Returns a 5-field expression ``"<minute> <hour> * * *"``.
    """
    parts = expr.strip().split()
    minute = parts[0] if parts else "0"
    hour = parts[1] if len(parts) > 1 else "*"

    if not croniter.is_valid(f"{minute} * * * *"):
        logger.warning("Unsupported cron minute field, using 0", cron=expr, field=minute)
        minute = "0"
    if not croniter.is_valid(f"0 {hour} * * *"):
        logger.warning("Unsupported cron hour field, using *", cron=expr, field=hour)
        hour = "*"

    ignored = [p for p in parts[2:] if p not in ("*", "?")]
    if ignored:
        logger.debug("Cron day/month/weekday fields ignored", cron=expr, ignored=ignored)

    return f"{minute} {hour} * * *"


class CronScheduleHandler(BaseScheduleHandler):
    """Fire on a simplified cron expression (minute and hour only)."""

    kind = ScheduleKind.CRON

    def next_run(self, spec: dict, after: datetime) -> datetime:
        is_valid, error = self.validate_config(spec)
        if not is_valid:
            raise SchedulingError(error)
        expression = normalize_cron(spec["cron"])
        return croniter(expression, after).get_next(datetime)

    def validate_config(self, spec: dict) -> tuple[bool, Optional[str]]:
        cron = spec.get("cron")
        if not cron or not isinstance(cron, str) or not cron.strip():
            return False, "Missing required field: cron"
        return True, None


class DailyScheduleHandler(BaseScheduleHandler):
    """Fire once a day at a fixed ``HH:MM``."""

    kind = ScheduleKind.DAILY

    def next_run(self, spec: dict, after: datetime) -> datetime:
        is_valid, error = self.validate_config(spec)
        if not is_valid:
            raise SchedulingError(error)
        match = _HHMM.match(str(spec["time"]))
        hour, minute = int(match.group(1)), int(match.group(2))
        candidate = after.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= after:
            candidate += timedelta(days=1)
        return candidate

    def validate_config(self, spec: dict) -> tuple[bool, Optional[str]]:
        value = spec.get("time")
        if not value:
            return False, "Missing required field: time"
        if not _HHMM.match(str(value)):
            return False, f"time must be HH:MM, got {value!r}"
        return True, None


SCHEDULE_HANDLERS = {
    ScheduleKind.INTERVAL: IntervalScheduleHandler,
    ScheduleKind.CRON: CronScheduleHandler,
    ScheduleKind.DAILY: DailyScheduleHandler,
}
