"""Exception hierarchy for litestar-flows."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID

__all__ = (
    "ActionCancelledError",
    "ActionError",
    "ActionExecutionError",
    "ActionHandlerNotFoundError",
    "ApprovalError",
    "ContextNotFoundError",
    "ContextSerializationError",
    "ExecutionError",
    "InvalidTransitionError",
    "LockContentionError",
    "LockLostError",
    "WorkflowAlreadyCompletedError",
    "WorkflowInstanceNotFoundError",
    "WorkflowNotFoundError",
    "WorkflowTimeoutError",
    "WorkflowValidationError",
    "WorkflowsError",
)


class WorkflowsError(Exception):
    """Base exception for all litestar-flows errors.

    All exceptions raised by litestar-flows inherit from this class so callers
    can catch every workflow-related error with a single except clause.
    """


class WorkflowNotFoundError(WorkflowsError):
    """Raised when a workflow definition cannot be fetched by id.

    Attributes:
        definition_id: The id of the definition that was not found.
    """

    def __init__(self, definition_id: str) -> None:
        """Initialize the exception with the missing definition id.

        Args:
            definition_id: The id of the definition that was not found.
        """
        self.definition_id = definition_id
        super().__init__(f"Workflow definition '{definition_id}' not found")


class WorkflowInstanceNotFoundError(WorkflowsError):
    """Raised when a workflow instance is not found.

    Attributes:
        instance_id: The ID of the workflow instance that was not found.
    """

    def __init__(self, instance_id: str | UUID) -> None:
        """Initialize the exception with instance details.

        Args:
            instance_id: The ID of the workflow instance that was not found.
        """
        self.instance_id = instance_id
        super().__init__(f"Workflow instance '{instance_id}' not found")


class WorkflowValidationError(WorkflowsError):
    """Raised when a workflow definition or predicate is malformed.

    Raised before any instance is created and never retried.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: list[str]) -> None:
        """Initialize the exception with validation errors.

        Args:
            errors: List of validation error messages.
        """
        self.errors = errors
        super().__init__(f"Workflow validation failed: {'; '.join(errors)}")


class ExecutionError(WorkflowsError):
    """Raised on a runtime graph inconsistency.

    Examples are a missing node, a node with no usable outgoing edge, or a
    condition node where no branch matches.

    Attributes:
        node_id: The node being executed when the error occurred.
    """

    def __init__(self, message: str, node_id: str | None = None) -> None:
        self.node_id = node_id
        super().__init__(message)


class ActionError(WorkflowsError):
    """Raised by action handlers when a side effect fails.

    Attributes:
        status_code: Optional HTTP-like status code used by retry policies
            to decide whether another attempt is worthwhile.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Human readable failure description.
            status_code: Optional HTTP-like status code of the failure.
        """
        self.status_code = status_code
        super().__init__(message)


class ActionExecutionError(ActionError):
    """Raised by the dispatcher once an action has exhausted its attempts.

    Attributes:
        action_type: The action type that failed.
        attempts: Number of attempts made.
        cause: The last underlying exception.
    """

    def __init__(self, action_type: str, attempts: int, cause: BaseException | None = None) -> None:
        """Initialize the exception with the final failure details.

        Args:
            action_type: The action type that failed.
            attempts: Number of attempts made.
            cause: The last underlying exception, if any.
        """
        self.action_type = action_type
        self.attempts = attempts
        self.cause = cause
        msg = f"Action '{action_type}' failed after {attempts} attempt(s)"
        if cause:
            msg += f": {cause}"
        super().__init__(msg, status_code=getattr(cause, "status_code", None))


class ActionCancelledError(ActionError):
    """Raised when an instance is cancelled between two attempts of an action."""

    def __init__(self, action_type: str, attempts: int) -> None:
        self.action_type = action_type
        self.attempts = attempts
        super().__init__(f"Action '{action_type}' cancelled after {attempts} attempt(s)")


class ActionHandlerNotFoundError(WorkflowsError):
    """Raised when no handler is registered for an action type.

    Attributes:
        action_type: The unknown action type.
    """

    def __init__(self, action_type: str) -> None:
        self.action_type = action_type
        super().__init__(f"No handler registered for action type '{action_type}'")


class WorkflowTimeoutError(WorkflowsError):
    """Raised when a scheduled timeout fires for an instance.

    Always fails the instance.

    Attributes:
        instance_id: The instance that timed out.
        node_id: The node the timeout was armed for, if any.
    """

    def __init__(self, instance_id: str | UUID, node_id: str | None = None) -> None:
        self.instance_id = instance_id
        self.node_id = node_id
        msg = "Workflow timed out"
        if node_id:
            msg += f" at node '{node_id}'"
        super().__init__(msg)


class LockContentionError(WorkflowsError):
    """Raised when the lock on an instance is held by another caller.

    This is not a workflow failure; the caller should retry later.

    Attributes:
        instance_id: The instance whose lock could not be acquired.
    """

    def __init__(self, instance_id: str | UUID) -> None:
        self.instance_id = instance_id
        super().__init__(f"Workflow instance '{instance_id}' is locked by another execution")


class LockLostError(LockContentionError):
    """Raised when a holder finds its instance lock taken over by another caller.

    The holder stops without writing anything further for the instance.
    """

    def __init__(self, instance_id: str | UUID) -> None:
        self.instance_id = instance_id
        WorkflowsError.__init__(self, f"Lock on workflow instance '{instance_id}' was lost to another execution")


class InvalidTransitionError(WorkflowsError):
    """Raised when an instance status change violates the state machine.

    Attributes:
        from_status: The current status.
        to_status: The requested status.
    """

    def __init__(self, from_status: str, to_status: str, reason: str | None = None) -> None:
        """Initialize the exception with transition details.

        Args:
            from_status: The current status.
            to_status: The requested status.
            reason: Additional context about why the transition is invalid.
        """
        self.from_status = from_status
        self.to_status = to_status
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class WorkflowAlreadyCompletedError(WorkflowsError):
    """Raised when trying to modify an instance in a terminal state.

    Attributes:
        instance_id: The ID of the workflow instance.
        status: The current terminal status of the workflow.
    """

    def __init__(self, instance_id: str | UUID, status: str) -> None:
        self.instance_id = instance_id
        self.status = status
        super().__init__(f"Workflow '{instance_id}' is already {status}")


class ContextNotFoundError(WorkflowsError):
    """Raised when updating execution context that was never saved or has expired."""

    def __init__(self, instance_id: str | UUID) -> None:
        self.instance_id = instance_id
        super().__init__(f"No execution context stored for instance '{instance_id}'")


class ContextSerializationError(WorkflowsError):
    """Raised when stored context cannot be encoded or decoded."""


class ApprovalError(WorkflowsError):
    """Raised when an approval decision cannot be applied.

    Attributes:
        instance_id: The instance the decision was submitted for.
        node_id: The approval node.
    """

    def __init__(self, instance_id: str | UUID, node_id: str, reason: str) -> None:
        self.instance_id = instance_id
        self.node_id = node_id
        super().__init__(f"Cannot apply approval for node '{node_id}' of instance '{instance_id}': {reason}")
