"""Custom exceptions for the workflow automation engine."""


class WorkflowEngineError(Exception):
    """Base exception for the workflow automation engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code for callers that expose the engine over HTTP
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(WorkflowEngineError):
    """Definition or instance not found."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, 404)


class ValidationError(WorkflowEngineError):
    """Malformed workflow definition, rejected at load time."""

    def __init__(self, message: str = "Validation failed", errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message, 422)


class HandlerNotFoundError(WorkflowEngineError):
    """No handler registered for a step type.

    Raised inside step execution, so it becomes an ordinary step failure.
    """

    def __init__(self, step_type: str, step_id: str | None = None):
        self.step_type = step_type
        self.step_id = step_id
        if step_id:
            message = f"No handler registered for step '{step_id}' of type '{step_type}'"
        else:
            message = f"No handler registered for step type '{step_type}'"
        super().__init__(message, 500)


class StepExecutionError(WorkflowEngineError):
    """A handler reported failure. Carries the message only, never a traceback."""

    def __init__(self, message: str, output=None):
        self.output = output
        super().__init__(message, 500)


class ConditionEvaluationError(WorkflowEngineError):
    """A condition expression could not be evaluated."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        super().__init__(f"Cannot evaluate condition {expression!r}: {reason}", 400)


class SchedulingError(WorkflowEngineError):
    """Unknown or invalid schedule spec."""

    def __init__(self, message: str = "Invalid schedule"):
        super().__init__(message, 400)
