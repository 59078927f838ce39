"""
Flow execution core
Graph validation, run context, resilient node execution, data flow and orchestration
"""

from .models import (
    Connection,
    DataTransformation,
    ExecutionStatus,
    Flow,
    NodeDefinition,
    NodeInstance,
    NodePinDefinition,
    SecretConfig,
    SecretDefinition,
    SecretSourceType,
    TransformationType,
    VariableDefinition,
    VariableType,
)
from .exceptions import (
    BadRequestError,
    CancellationError,
    CircuitOpenError,
    ContextNotFoundError,
    ExecutionError,
    ExecutionNotFoundError,
    ExpressionError,
    FlowEngineError,
    NodeTimeoutError,
    RetryExhaustedError,
    RollbackError,
    SecretResolutionError,
    StateConflictError,
    StructuralError,
    TransformationError,
    ValidationError,
)
from .results import ExecutionLogEntry, ExecutionResult, NodeExecutionLog, NodeResult, RollbackOperation
from .graph import ExecutionGraph, GraphEdge
from .expressions import ExpressionEvaluator
from .context import ExecutionContext, ExecutionContextManager
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerState,
    CircuitState,
    InMemoryCircuitBreakerStore,
    RedisCircuitBreakerStore,
)
from .node_manager import (
    BackoffStrategy,
    CancellationToken,
    NodeExecutionManager,
    NodeExecutionOptions,
    NodeRunContext,
    RetryPolicy,
)
from .dataflow import CompatibilityCheck, DataFlowManager
from .orchestrator import ExecutionOrchestrator, ExecutionState, RunOptions
from .factory import create_default_orchestrator

__all__ = [
    "Connection",
    "DataTransformation",
    "ExecutionStatus",
    "Flow",
    "NodeDefinition",
    "NodeInstance",
    "NodePinDefinition",
    "SecretConfig",
    "SecretDefinition",
    "SecretSourceType",
    "TransformationType",
    "VariableDefinition",
    "VariableType",
    "BadRequestError",
    "CancellationError",
    "CircuitOpenError",
    "ContextNotFoundError",
    "ExecutionError",
    "ExecutionNotFoundError",
    "ExpressionError",
    "FlowEngineError",
    "NodeTimeoutError",
    "RetryExhaustedError",
    "RollbackError",
    "SecretResolutionError",
    "StateConflictError",
    "StructuralError",
    "TransformationError",
    "ValidationError",
    "ExecutionLogEntry",
    "ExecutionResult",
    "NodeExecutionLog",
    "NodeResult",
    "RollbackOperation",
    "ExecutionGraph",
    "GraphEdge",
    "ExpressionEvaluator",
    "ExecutionContext",
    "ExecutionContextManager",
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitState",
    "InMemoryCircuitBreakerStore",
    "RedisCircuitBreakerStore",
    "BackoffStrategy",
    "CancellationToken",
    "NodeExecutionManager",
    "NodeExecutionOptions",
    "NodeRunContext",
    "RetryPolicy",
    "CompatibilityCheck",
    "DataFlowManager",
    "ExecutionOrchestrator",
    "ExecutionState",
    "RunOptions",
    "create_default_orchestrator",
]
