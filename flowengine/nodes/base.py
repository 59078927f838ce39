"""
Base class for executable flow nodes
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List, Optional

from ..execution.models import NodeDefinition, NodePinDefinition
from ..execution.results import NodeResult


class BaseNode(ABC):
    """
    Abstract node implementation

    Subclasses declare their catalog metadata as class attributes and
    implement ``execute``. ``validate_inputs`` and ``rollback`` are optional
    hooks the execution manager looks up.
    """

    type: ClassVar[str] = ""
    version: ClassVar[str] = "1.0.0"
    category: ClassVar[str] = "transformation"
    description: ClassVar[str] = ""
    inputs: ClassVar[List[NodePinDefinition]] = []
    outputs: ClassVar[List[NodePinDefinition]] = []

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config: Dict[str, Any] = dict(config or {})

    def configure(self, config: Dict[str, Any]) -> None:
        self.config.update(config)

    @abstractmethod
    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        """Run the node against its collected inputs"""

    def validate_inputs(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        errors = [
            f"Required input '{pin.name}' is missing"
            for pin in self.inputs
            if pin.required and inputs.get(pin.name) is None
        ]
        return {"valid": not errors, "errors": errors, "warnings": []}

    @classmethod
    def definition(cls) -> NodeDefinition:
        """Catalog definition derived from the class metadata"""
        return NodeDefinition(
            type=cls.type,
            version=cls.version,
            name=cls.__name__,
            description=cls.description or (cls.__doc__ or "").strip().split("\n")[0],
            inputs=list(cls.inputs),
            outputs=list(cls.outputs),
            configuration={"category": cls.category},
        )
