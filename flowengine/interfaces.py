"""
Collaborator contracts consumed by the execution core
"""

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from .execution.models import NodeDefinition


@runtime_checkable
class Node(Protocol):
    """Executable node instance produced by a NodeRuntime.

    Optional hooks looked up with getattr: ``configure(config)``,
    ``validate_inputs(inputs)`` (bool or result dict) and ``rollback(data, context)``.
    """

    async def execute(self, inputs: Dict[str, Any], context: Any) -> Any:
        ...


class NodeRuntime(Protocol):
    """Factory for node instances keyed by node type"""

    def create(self, node_type: str, config: Optional[Dict[str, Any]] = None) -> Node:
        ...


class Catalog(Protocol):
    """Registry of node type definitions"""

    async def get_node_definition(
        self,
        node_type: str,
        version: Optional[str] = None
    ) -> Optional[NodeDefinition]:
        ...


class ExecutionRepository(Protocol):
    """Durable store for execution records"""

    async def create_execution_record(self, record: Dict[str, Any]) -> None:
        ...

    async def update_status(self, execution_id: str, status: str, **fields: Any) -> None:
        ...

    async def append_node_execution_log(self, execution_id: str, entry: Dict[str, Any]) -> None:
        ...

    async def get_execution_record(self, execution_id: str) -> Optional[Dict[str, Any]]:
        ...


class EventSink(Protocol):
    """Fire-and-forget notification channel"""

    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        ...


class SecretStore(Protocol):
    """Resolves secrets from external sources"""

    async def resolve(self, source: str, key: str, **options: Any) -> Optional[str]:
        ...
