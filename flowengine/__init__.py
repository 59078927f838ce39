"""
Flow execution engine for the scheduling and automation platform
"""

from .execution import (
    ExecutionOrchestrator,
    ExecutionResult,
    ExecutionStatus,
    Flow,
    RunOptions,
    create_default_orchestrator,
)
from .catalog import InMemoryCatalog
from .events import InMemoryEventSink
from .persistence import InMemoryExecutionRepository
from .secrets import EnvironmentSecretStore
from .nodes import BaseNode, NodeRegistry

__version__ = "1.0.0"

__all__ = [
    "ExecutionOrchestrator",
    "ExecutionResult",
    "ExecutionStatus",
    "Flow",
    "RunOptions",
    "create_default_orchestrator",
    "InMemoryCatalog",
    "InMemoryEventSink",
    "InMemoryExecutionRepository",
    "EnvironmentSecretStore",
    "BaseNode",
    "NodeRegistry",
]
