"""
Step Handler Registry — maps step type names to handlers.

Built-in step types are registered on construction. Collaborators add their
own with register(); the last registration for a type wins.

A handler is any callable ``handler(instance, step) -> result``, sync or
async. BaseTask subclasses may be registered as classes; they are
instantiated once at registration.
"""

import inspect
import threading
from typing import Any, Callable, Dict, Optional

import structlog

from core.exceptions import HandlerNotFoundError
from tasks.base_task import BaseTask
from tasks.implementations.control_task import CONTROL_TASK_TYPES
from tasks.implementations.database_task import DATABASE_TASK_TYPES
from tasks.implementations.document_task import DOCUMENT_TASK_TYPES
from tasks.implementations.http_task import HTTP_TASK_TYPES
from tasks.implementations.inline_code_task import INLINE_CODE_TASK_TYPES
from tasks.implementations.notification_task import NOTIFICATION_TASK_TYPES
from tasks.implementations.script_task import SCRIPT_TASK_TYPES

logger = structlog.get_logger(__name__)

StepHandler = Callable[..., Any]


class TaskRegistry:
    """Central registry for step handlers."""

    def __init__(self, include_builtins: bool = True):
        self._handlers: Dict[str, StepHandler] = {}
        self._lock = threading.RLock()
        if include_builtins:
            self._register_builtin_tasks()

    def _register_builtin_tasks(self):
        """Register all built-in step types."""
        for group in (
            SCRIPT_TASK_TYPES,
            HTTP_TASK_TYPES,
            DATABASE_TASK_TYPES,
            INLINE_CODE_TASK_TYPES,
            CONTROL_TASK_TYPES,
            NOTIFICATION_TASK_TYPES,
            DOCUMENT_TASK_TYPES,
        ):
            for task_type, task_class in group.items():
                self.register(task_type, task_class)

    def register(self, task_type: str, handler: Any) -> None:
        """Register a handler for a step type, replacing any previous one."""
        if not task_type:
            raise ValueError("Step type must be a non-empty string")
        if inspect.isclass(handler):
            if not issubclass(handler, BaseTask):
                raise TypeError(f"Handler class for '{task_type}' must subclass BaseTask")
            handler = handler()
        if not callable(handler):
            raise TypeError(f"Handler for '{task_type}' is not callable")
        with self._lock:
            replaced = task_type in self._handlers
            self._handlers[task_type] = handler
        logger.debug("Step handler registered", step_type=task_type, replaced=replaced)

    def unregister(self, task_type: str) -> bool:
        with self._lock:
            return self._handlers.pop(task_type, None) is not None

    def get(self, task_type: str) -> Optional[StepHandler]:
        """Get a handler by type string, or None."""
        with self._lock:
            return self._handlers.get(task_type)

    def lookup(self, task_type: str, step_id: Optional[str] = None) -> StepHandler:
        """Get a handler by type string.

        Raises:
            HandlerNotFoundError: If nothing is registered for the type
        """
        handler = self.get(task_type)
        if handler is None:
            raise HandlerNotFoundError(task_type, step_id)
        return handler

    def __contains__(self, task_type: str) -> bool:
        with self._lock:
            return task_type in self._handlers

    def list_all(self) -> list:
        """List all registered step types with metadata."""
        with self._lock:
            items = list(self._handlers.items())
        listing = []
        for task_type, handler in items:
            if isinstance(handler, BaseTask):
                listing.append({
                    "task_type": task_type,
                    "display_name": handler.display_name,
                    "description": handler.description,
                    "config_schema": handler.get_config_schema(),
                    "builtin": True,
                })
            else:
                listing.append({
                    "task_type": task_type,
                    "display_name": getattr(handler, "__name__", task_type),
                    "description": (inspect.getdoc(handler) or "").split("\n")[0],
                    "config_schema": {"type": "object"},
                    "builtin": False,
                })
        return listing

    @property
    def available_types(self) -> list:
        with self._lock:
            return list(self._handlers.keys())

    def dispose(self) -> None:
        """Release resources held by handlers that keep any (connection pools)."""
        with self._lock:
            handlers = list(self._handlers.values())
        for handler in handlers:
            dispose = getattr(handler, "dispose", None)
            if callable(dispose):
                dispose()


# Singleton
_registry: Optional[TaskRegistry] = None


def get_task_registry() -> TaskRegistry:
    """Get or create the singleton task registry."""
    global _registry
    if _registry is None:
        _registry = TaskRegistry()
    return _registry
