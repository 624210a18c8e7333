"""Custom exceptions for the flow engine."""

from typing import Optional


class FlowEngineException(Exception):
    """Base exception for the flow engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: Status code surfaced to callers (HTTP-compatible)
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(FlowEngineException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class WorkflowNotFoundError(NotFoundError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ExecutionNotFoundError(NotFoundError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class ValidationError(FlowEngineException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class WorkflowValidationError(ValidationError):
    """Workflow graph rejected at activation time."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Workflow is invalid: " + "; ".join(self.errors))


class NoTriggerNodeError(ValidationError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} has no trigger node")


class ConflictError(FlowEngineException):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


class ExecutionLockedError(ConflictError):
    """Another run loop holds the lock for this contact."""

    def __init__(self, lock_key: str):
        self.lock_key = lock_key
        super().__init__("Another execution is already in progress for this contact")


class ActiveExecutionExistsError(ConflictError):
    def __init__(self, execution_id: str, reason: str = ""):
        self.execution_id = execution_id
        suffix = f" ({reason})" if reason else ""
        super().__init__(f"Active execution already exists for this contact{suffix}")


class InvalidExecutionStateError(ConflictError):
    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Execution {execution_id} is {status}, expected WAITING")


class NodeExecutionError(FlowEngineException):
    """A node could not be executed."""

    def __init__(self, message: str, node_id: Optional[str] = None, node_type: Optional[str] = None):
        self.node_id = node_id
        self.node_type = node_type
        super().__init__(message, 500)


class UnknownNodeTypeError(NodeExecutionError):
    def __init__(self, node_id: str, node_type: str):
        super().__init__(f"Unknown node type: {node_type}", node_id=node_id, node_type=node_type)


class SessionNotReadyError(FlowEngineException):
    """Transient gateway failure: the chat session cannot send right now."""

    def __init__(self, session_id: str, message: str = "Session not ready"):
        self.session_id = session_id
        super().__init__(f"{message}: {session_id}", 503)
