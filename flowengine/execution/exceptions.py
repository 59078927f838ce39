"""
Execution engine custom exceptions
"""

from typing import List, Optional


class FlowEngineError(Exception):
    """Base exception for all execution engine errors"""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        node_id: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.execution_id = execution_id
        self.node_id = node_id

    def __str__(self) -> str:
        context = []
        if self.execution_id:
            context.append(f"execution_id={self.execution_id}")
        if self.node_id:
            context.append(f"node_id={self.node_id}")

        context_str = f" ({', '.join(context)})" if context else ""
        return f"{self.message}{context_str}"


class StructuralError(FlowEngineError):
    """Raised when a flow graph is empty, cyclic or has dangling edges"""
    pass


class ValidationError(FlowEngineError):
    """Raised when a flow or node input fails validation"""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        execution_id: Optional[str] = None,
        node_id: Optional[str] = None
    ):
        super().__init__(message, execution_id, node_id)
        self.errors = list(errors or [])


class BadRequestError(ValidationError):
    """Raised for requests that are malformed or illegal in the current state"""
    pass


class ContextNotFoundError(FlowEngineError):
    """Raised when no execution context is registered for an id"""
    pass


class ExecutionNotFoundError(FlowEngineError):
    """Raised when no active execution exists for an id"""
    pass


class StateConflictError(BadRequestError):
    """Raised when a lifecycle transition is not legal from the current status"""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        execution_id: Optional[str] = None
    ):
        super().__init__(message, execution_id=execution_id)
        self.current_status = current_status


class CircuitOpenError(FlowEngineError):
    """Raised when a node type's circuit breaker rejects a call"""

    def __init__(
        self,
        node_type: str,
        retry_after_ms: Optional[int] = None,
        execution_id: Optional[str] = None,
        node_id: Optional[str] = None
    ):
        super().__init__(
            f"Circuit breaker is open for node type {node_type}",
            execution_id,
            node_id
        )
        self.node_type = node_type
        self.retry_after_ms = retry_after_ms


class NodeTimeoutError(FlowEngineError, TimeoutError):
    """Raised when a node does not finish within its timeout"""

    def __init__(
        self,
        timeout_ms: int,
        execution_id: Optional[str] = None,
        node_id: Optional[str] = None
    ):
        super().__init__(
            f"Node execution timed out after {timeout_ms}ms",
            execution_id,
            node_id
        )
        self.timeout_ms = timeout_ms


class CancellationError(FlowEngineError):
    """Raised when a node invocation is cancelled"""
    pass


class ExecutionError(FlowEngineError):
    """Raised when node or flow execution fails"""

    def __str__(self) -> str:
        base_str = super().__str__()
        return f"Execution failed: {base_str}"


class RetryExhaustedError(ExecutionError):
    """Raised when every attempt of a retry budget has failed"""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Optional[str] = None,
        execution_id: Optional[str] = None,
        node_id: Optional[str] = None
    ):
        super().__init__(message, execution_id, node_id)
        self.attempts = attempts
        self.last_error = last_error


class TransformationError(ExecutionError):
    """Raised when a data transformation cannot be applied"""

    def __init__(
        self,
        message: str,
        transformation_type: Optional[str] = None,
        execution_id: Optional[str] = None,
        node_id: Optional[str] = None
    ):
        super().__init__(message, execution_id, node_id)
        self.transformation_type = transformation_type

    def __str__(self) -> str:
        # Skip the ExecutionError prefix
        return FlowEngineError.__str__(self)


class RollbackError(FlowEngineError):
    """Raised when a node's compensation hook fails"""
    pass


class SecretResolutionError(FlowEngineError):
    """Raised when a secret cannot be resolved from its source"""
    pass


class ExpressionError(FlowEngineError):
    """Raised when a restricted expression fails to parse or evaluate"""

    def __init__(self, message: str, expression: Optional[str] = None):
        super().__init__(message)
        self.expression = expression
