"""Variable interpolation for step parameters.

Replaces ``${name}`` tokens in strings with the current value of
``instance.variables[name]``, recursing through dicts and lists.
Tokens without a matching variable are left exactly as written.
"""

import json
import re
from typing import Any

TOKEN_PATTERN = re.compile(r"\$\{([^${}]+)\}")

_MISSING = object()


def _lookup(name: str, variables: dict) -> Any:
    """Resolve a token name: flat key first, then a dotted path."""
    name = name.strip()
    if name in variables:
        return variables[name]
    if "." not in name:
        return _MISSING

    current: Any = variables
    for part in name.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def interpolate_string(template: str, variables: dict) -> str:
    """Substitute every ``${name}`` token in a single string."""

    def _replace(match: re.Match) -> str:
        value = _lookup(match.group(1), variables)
        if value is _MISSING:
            return match.group(0)
        return _stringify(value)

    return TOKEN_PATTERN.sub(_replace, template)


def interpolate(value: Any, variables: dict) -> Any:
    """Recursively interpolate strings inside dicts and lists.

    Non-string scalars pass through unchanged. Dict keys are not interpolated.
    """
    if isinstance(value, str):
        return interpolate_string(value, variables)
    if isinstance(value, dict):
        return {key: interpolate(item, variables) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate(item, variables) for item in value]
    return value
