"""Inline code execution.

Executes caller-supplied Python source from a workflow definition against a
copy of the instance's variables. Whatever the code binds to ``result`` is
the step result: a dict is merged into the instance variables, any other
value is stored under the step id.

Scripts run with a reduced builtin set (no ``open``, ``eval``, ``exec``)
and can only import a handful of preloaded modules. This narrows
accidents, it is not a security boundary: only load definitions you trust.
"""

import asyncio
import builtins
import copy
import datetime
import json
import math
import random
import re
import time
from typing import Any, Dict, Optional

import structlog

from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)

_ALLOWED_BUILTINS = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter",
    "float", "format", "frozenset", "int", "isinstance", "len", "list", "map",
    "max", "min", "pow", "range", "repr", "reversed", "round", "set", "sorted",
    "str", "sum", "tuple", "zip", "Exception", "ValueError", "TypeError",
    "KeyError", "IndexError", "RuntimeError", "True", "False", "None",
)

PRELOADED_MODULES = {
    "json": json,
    "re": re,
    "math": math,
    "random": random,
    "time": time,
    "datetime": datetime,
}


def _restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
    """``import`` statement support limited to the preloaded modules."""
    module = PRELOADED_MODULES.get(name)
    if module is None or level != 0:
        raise ImportError(f"Import of '{name}' is not allowed in inline code")
    return module


SAFE_BUILTINS = {name: getattr(builtins, name) for name in _ALLOWED_BUILTINS}
SAFE_BUILTINS["__import__"] = _restricted_import


class InlineCodeTask(BaseTask):
    """Run inline Python code.

    Config:
        code: Python source (required; ``script`` is accepted as an alias)
        inputs: Extra names injected next to the instance variables
    """

    task_type = "inline-code"
    display_name = "Inline Code"
    description = "Execute inline Python against the workflow variables"

    async def execute(self, config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        code = config.get("code") or config.get("script")
        if not code:
            return TaskResult(success=False, error="Missing required config: code")

        ctx = context or {}
        namespace = self._build_namespace(ctx.get("variables") or {}, config.get("inputs") or {})

        try:
            compiled = compile(code, "<inline-code>", "exec")
        except SyntaxError as e:
            return TaskResult(success=False, error=f"Syntax error in inline code: {e.msg} (line {e.lineno})")

        try:
            # Run in a thread so long computations do not block the event loop
            await asyncio.to_thread(self._exec_code, compiled, namespace)
        except Exception as e:
            logger.warning("Inline code raised", error=str(e), error_type=type(e).__name__)
            return TaskResult(success=False, error=f"{type(e).__name__}: {e}")

        return TaskResult(success=True, output=namespace.get("result"))

    def _build_namespace(self, variables: dict, inputs: dict) -> Dict[str, Any]:
        snapshot = copy.deepcopy(variables)
        return {
            **PRELOADED_MODULES,
            **snapshot,
            **inputs,
            "variables": snapshot,
            "result": None,
            "print": lambda *a, **kw: logger.info("inline_code_print", message=" ".join(str(x) for x in a)),
            "__builtins__": SAFE_BUILTINS,
        }

    @staticmethod
    def _exec_code(compiled, namespace: dict) -> None:
        exec(compiled, namespace)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["code"],
            "properties": {
                "code": {"type": "string", "description": "Python source code"},
                "inputs": {"type": "object"},
            },
        }


# Export for task registry
INLINE_CODE_TASK_TYPES = {
    "inline-code": InlineCodeTask,
}
