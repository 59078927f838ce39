"""
Node implementations and the registry that instantiates them
"""

from .base import BaseNode
from .registry import NodeRegistry
from .transform import BUILTIN_NODES, DataFilterNode, FieldMapperNode

__all__ = [
    "BaseNode",
    "NodeRegistry",
    "DataFilterNode",
    "FieldMapperNode",
    "BUILTIN_NODES",
]
