"""
Workflow Definition Store.

Parses raw definition mappings (dicts, JSON or YAML files) into validated
WorkflowDefinition models and keeps them by id. Loading an id that already
exists replaces the stored definition; instances that are already running
keep the definition they were started with.
"""

import json
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import NotFoundError, ValidationError
from workflow.models import ErrorAction, WorkflowDefinition

logger = structlog.get_logger(__name__)

DefinitionListener = Callable[[str, WorkflowDefinition], None]

DEFINITION_SUFFIXES = (".json", ".yaml", ".yml")


def _format_errors(exc: PydanticValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        message = err.get("msg", "invalid value")
        errors.append(f"{location}: {message}" if location else message)
    return errors


def parse_definition(raw: Any) -> WorkflowDefinition:
    """Validate a raw mapping into a WorkflowDefinition.

    Raises:
        ValidationError: If the mapping is not a valid definition
    """
    if isinstance(raw, WorkflowDefinition):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(
            "Workflow definition must be a mapping",
            errors=[f"expected object, got {type(raw).__name__}"],
        )
    try:
        return WorkflowDefinition.model_validate(raw)
    except PydanticValidationError as e:
        errors = _format_errors(e)
        workflow_id = raw.get("id") or "<unknown>"
        raise ValidationError(
            f"Invalid workflow definition '{workflow_id}': {'; '.join(errors)}",
            errors=errors,
        ) from None


def read_definition_file(path: Union[str, Path]) -> Any:
    """Read a JSON or YAML definition file into raw data."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in DEFINITION_SUFFIXES:
        raise ValidationError(f"Unsupported definition file type: {path.name}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise NotFoundError(f"Cannot read definition file {path}: {e}")
    try:
        if suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot parse {path.name}: {e}", errors=[str(e)])


class DefinitionStore:
    """In-memory store of validated workflow definitions.

    Args:
        known_types: Optional callable returning the currently registered
            step types. Used only to warn about types nobody handles yet;
            binding is deferred to execution time.
    """

    def __init__(self, known_types: Optional[Callable[[], Iterable[str]]] = None):
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._listeners: list[DefinitionListener] = []
        self._known_types = known_types
        self._lock = threading.RLock()

    def load(self, raw: Any) -> WorkflowDefinition:
        """Validate and store a definition, replacing one with the same id."""
        definition = parse_definition(raw)
        self._warn(definition)

        with self._lock:
            replaced = definition.id in self._definitions
            self._definitions[definition.id] = definition
            listeners = list(self._listeners)

        logger.info(
            "Workflow definition loaded",
            workflow_id=definition.id,
            version=definition.version,
            steps=len(definition.steps),
            replaced=replaced,
        )
        self._notify(listeners, "loaded", definition)
        return definition

    def _warn(self, definition: WorkflowDefinition) -> None:
        if self._known_types is not None:
            known = set(self._known_types())
            for step in definition.steps:
                if step.type not in known:
                    logger.warning(
                        "No handler registered for step type yet",
                        workflow_id=definition.id,
                        step_id=step.id,
                        step_type=step.type,
                    )

        if definition.error_handling == ErrorAction.GOTO:
            target = definition.error_goto_step
            if not target or definition.step_index(target) is None:
                logger.warning(
                    "goto error handling has no valid target; failures will abort",
                    workflow_id=definition.id,
                    error_goto_step=target,
                )

    def load_file(self, path: Union[str, Path]) -> WorkflowDefinition:
        """Load a single JSON or YAML definition file."""
        return self.load(read_definition_file(path))

    def load_directory(self, path: Union[str, Path]) -> list[WorkflowDefinition]:
        """Load every definition file in a directory.

        Invalid files are logged and skipped.
        """
        directory = Path(path)
        if not directory.is_dir():
            raise NotFoundError(f"Definitions directory not found: {directory}")

        loaded = []
        for file in sorted(directory.iterdir()):
            if file.suffix.lower() not in DEFINITION_SUFFIXES or not file.is_file():
                continue
            try:
                loaded.append(self.load_file(file))
            except (ValidationError, NotFoundError) as e:
                logger.error("Skipping invalid definition file", file=str(file), error=e.message)
        logger.info("Definitions directory loaded", path=str(directory), count=len(loaded))
        return loaded

    def get(self, definition_id: str) -> WorkflowDefinition:
        with self._lock:
            definition = self._definitions.get(definition_id)
        if definition is None:
            raise NotFoundError(f"Workflow definition not found: {definition_id}")
        return definition

    def __contains__(self, definition_id: str) -> bool:
        with self._lock:
            return definition_id in self._definitions

    def __len__(self) -> int:
        with self._lock:
            return len(self._definitions)

    def list(self) -> list[dict]:
        """Summaries of every stored definition."""
        with self._lock:
            definitions = list(self._definitions.values())
        return [d.summary() for d in definitions]

    def remove(self, definition_id: str) -> WorkflowDefinition:
        with self._lock:
            definition = self._definitions.pop(definition_id, None)
            listeners = list(self._listeners)
        if definition is None:
            raise NotFoundError(f"Workflow definition not found: {definition_id}")
        logger.info("Workflow definition removed", workflow_id=definition_id)
        self._notify(listeners, "removed", definition)
        return definition

    def subscribe(self, listener: DefinitionListener) -> None:
        """Register a callback for ``loaded`` / ``removed`` events."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: DefinitionListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @staticmethod
    def _notify(listeners: Iterable[DefinitionListener], event: str, definition: WorkflowDefinition) -> None:
        for listener in listeners:
            try:
                listener(event, definition)
            except Exception as e:
                logger.error(
                    "Definition listener failed",
                    definition_event=event,
                    workflow_id=definition.id,
                    error=str(e),
                    exc_info=True,
                )
