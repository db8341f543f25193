"""
Utility functions for the workflow automation engine.

Includes:
- UTC datetime helpers
- Instance id generation
- Display sanitisation (secret redaction, list/string truncation)
"""

import itertools
import os
import re
import time
from datetime import datetime, timezone
from typing import Any

SENSITIVE_KEY_PATTERN = re.compile(r"password|secret|token|key|auth", re.IGNORECASE)
REDACTED = "***REDACTED***"

_instance_seq = itertools.count(1)


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def generate_instance_id(workflow_id: str) -> str:
    """
    Build a process-unique instance id.

    Combines the definition id, the current time in milliseconds and the
    process id. A process-local sequence number keeps ids distinct when
    several instances start within the same millisecond.

    Args:
        workflow_id: Definition id the instance runs

    Returns:
        Instance id such as ``nightly-report-1718000000000-4242-7``
    """
    millis = int(time.time() * 1000)
    return f"{workflow_id}-{millis}-{os.getpid()}-{next(_instance_seq)}"


def is_sensitive_key(key: Any) -> bool:
    """Check whether a mapping key looks like it holds a credential."""
    return isinstance(key, str) and bool(SENSITIVE_KEY_PATTERN.search(key))


def sanitize_for_display(
    obj: Any,
    max_list_items: int = 20,
    max_string_length: int = 2000,
    depth: int = 0,
) -> Any:
    """Recursively prepare a value for an externally visible view.

    Redacts values under sensitive-looking keys, truncates long lists with a
    trailing marker and clips long strings. The stored value is not touched.
    """
    if depth > 10:
        return str(obj)
    if obj is None or isinstance(obj, (bool, int, float)):
        return obj
    if isinstance(obj, str):
        if len(obj) > max_string_length:
            return obj[:max_string_length] + "... (truncated)"
        return obj
    if isinstance(obj, dict):
        return {
            str(k): REDACTED if is_sensitive_key(k) else sanitize_for_display(
                v, max_list_items, max_string_length, depth + 1
            )
            for k, v in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        items = [
            sanitize_for_display(v, max_list_items, max_string_length, depth + 1)
            for v in list(obj)[:max_list_items]
        ]
        if len(obj) > max_list_items:
            items.append(f"... ({len(obj) - max_list_items} more items)")
        return items
    return str(obj)
