"""
Node registry
Maps node types to implementation classes and builds instances on demand
"""

from typing import Any, Callable, Dict, List, Optional, Type

import structlog

from ..execution.exceptions import ValidationError
from ..execution.models import NodeDefinition
from .base import BaseNode

logger = structlog.get_logger(__name__)


class NodeRegistry:
    """Node runtime backed by registered BaseNode subclasses"""

    def __init__(self):
        self._nodes: Dict[str, Type[BaseNode]] = {}

    def register(self, node_class: Type[BaseNode], node_type: Optional[str] = None) -> Type[BaseNode]:
        """
        Register a node class under its type.

        Args:
            node_class: BaseNode subclass
            node_type: Type override (defaults to ``node_class.type``)

        Returns:
            The class, so the method can be used as a decorator
        """
        resolved_type = node_type or node_class.type
        if not resolved_type:
            raise ValueError(f"Node class {node_class.__name__} does not declare a type")

        if resolved_type in self._nodes:
            logger.warning(
                "node_type_overwritten",
                node_type=resolved_type,
                previous=self._nodes[resolved_type].__name__,
                replacement=node_class.__name__
            )
        self._nodes[resolved_type] = node_class

        logger.debug(
            "node_type_registered",
            node_type=resolved_type,
            node_class=node_class.__name__
        )
        return node_class

    def node(self, node_type: Optional[str] = None) -> Callable[[Type[BaseNode]], Type[BaseNode]]:
        """Decorator form of register"""
        def decorator(node_class: Type[BaseNode]) -> Type[BaseNode]:
            return self.register(node_class, node_type)
        return decorator

    def create(self, node_type: str, config: Optional[Dict[str, Any]] = None) -> BaseNode:
        node_class = self._nodes.get(node_type)
        if node_class is None:
            raise ValidationError(f"Node type '{node_type}' not found")
        return node_class(config or {})

    def exists(self, node_type: str, version: Optional[str] = None) -> bool:
        node_class = self._nodes.get(node_type)
        if node_class is None:
            return False
        return version is None or node_class.version == version

    def available_types(self) -> List[str]:
        return list(self._nodes)

    def definitions(self) -> List[NodeDefinition]:
        return [
            node_class.definition().model_copy(update={"type": node_type})
            for node_type, node_class in self._nodes.items()
        ]
