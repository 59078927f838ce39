"""
Flow and catalog models - Pydantic v2 Implementation
Typed, serializable objects shared by the orchestrator, data flow and node managers
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExecutionStatus(str, Enum):
    """Lifecycle status of a flow run"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SUCCESS = "success"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.CANCELLED,
            ExecutionStatus.FAILED,
            ExecutionStatus.SUCCESS
        )


class TransformationType(str, Enum):
    """Supported connection transformations"""
    MAP = "map"
    FILTER = "filter"
    REDUCE = "reduce"
    CUSTOM = "custom"


class VariableType(str, Enum):
    """How a flow variable obtains its value"""
    STATIC = "static"
    DYNAMIC = "dynamic"      # Restricted expression evaluated at context creation
    SECRET = "secret"        # Resolved through the secret store


class SecretSourceType(str, Enum):
    """Backends a secret variable can be resolved from"""
    ENVIRONMENT = "environment"
    VAULT = "vault"
    AWS_SECRETS = "aws_secrets"


class DataTransformation(BaseModel):
    """Transformation applied to a value travelling along a connection"""
    model_config = ConfigDict(frozen=True)

    type: TransformationType = Field(..., description="Transformation kind")
    config: Dict[str, Any] = Field(default_factory=dict, description="Transformation configuration")
    script: Optional[str] = Field(default=None, description="Restricted expression for custom transformations")


class Connection(BaseModel):
    """Directed data edge from an output pin to an input pin"""
    model_config = ConfigDict(frozen=True)

    from_node_id: str = Field(..., min_length=1, description="Source node instance id")
    from_output: str = Field(..., min_length=1, description="Source output pin")
    to_node_id: str = Field(..., min_length=1, description="Target node instance id")
    to_input: str = Field(..., min_length=1, description="Target input pin")
    transformation: Optional[DataTransformation] = Field(default=None, description="Optional value transformation")


class NodeInstance(BaseModel):
    """Typed processing step placed in a flow"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Node instance id, unique within the flow")
    type: str = Field(..., min_length=1, description="Catalog node type")
    version: str = Field(default="1.0.0", description="Catalog node version")
    config: Dict[str, Any] = Field(default_factory=dict, description="Opaque node configuration")
    position: Optional[Dict[str, float]] = Field(default=None, description="Builder canvas position")

    @property
    def critical(self) -> bool:
        """A node is critical unless its config explicitly opts out"""
        return self.config.get("critical") is not False


class SecretConfig(BaseModel):
    """Where a secret variable is resolved from"""

    type: SecretSourceType = Field(default=SecretSourceType.ENVIRONMENT)
    key: str = Field(..., min_length=1, description="Key within the secret source")
    options: Dict[str, Any] = Field(default_factory=dict, description="Source specific options")


class VariableDefinition(BaseModel):
    """Variable declared on a flow"""

    name: str = Field(..., min_length=1)
    type: VariableType = Field(default=VariableType.STATIC)
    value: Any = Field(default=None, description="Static value")
    expression: Optional[str] = Field(default=None, description="Expression for dynamic variables")
    secret_config: Optional[SecretConfig] = Field(default=None, description="Source for secret variables")


class SecretDefinition(BaseModel):
    """Secret declared directly on a flow"""

    name: str = Field(..., min_length=1)
    value: Any = Field(default=None)


class Flow(BaseModel):
    """User-defined directed graph of node instances"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Flow identifier")
    name: str = Field(default="", description="Human-readable flow name")
    nodes: List[NodeInstance] = Field(default_factory=list, description="Node instances in declaration order")
    connections: List[Connection] = Field(default_factory=list, description="Data edges")
    variables: List[VariableDefinition] = Field(default_factory=list, description="Declared variables")
    secrets: List[SecretDefinition] = Field(default_factory=list, description="Declared secrets")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form flow metadata")
    created_by: Optional[str] = Field(default=None, description="Owner user id")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, v: List[NodeInstance]) -> List[NodeInstance]:
        """Ensure node ids are unique within the flow"""
        seen = set()
        duplicates = []
        for node in v:
            if node.id in seen:
                duplicates.append(node.id)
            seen.add(node.id)
        if duplicates:
            raise ValueError(f"Duplicate node ids: {', '.join(sorted(set(duplicates)))}")
        return v

    def get_node(self, node_id: str) -> Optional[NodeInstance]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class NodePinDefinition(BaseModel):
    """Named, typed input or output slot of a node type"""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    type: str = Field(default="any", description="Declared value type")
    required: bool = Field(default=False)
    data_schema: Optional[Dict[str, Any]] = Field(
        default=None,
        alias="schema",
        description="JSON-schema-like description of the value"
    )


class NodeDefinition(BaseModel):
    """Catalog description of a node type"""
    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., min_length=1)
    version: str = Field(default="1.0.0")
    name: str = Field(default="")
    description: str = Field(default="")
    inputs: List[NodePinDefinition] = Field(default_factory=list)
    outputs: List[NodePinDefinition] = Field(default_factory=list)
    configuration: Dict[str, Any] = Field(default_factory=dict)
    registered_at: datetime = Field(default_factory=datetime.utcnow)

    def get_input(self, name: str) -> Optional[NodePinDefinition]:
        return next((pin for pin in self.inputs if pin.name == name), None)

    def get_output(self, name: str) -> Optional[NodePinDefinition]:
        return next((pin for pin in self.outputs if pin.name == name), None)
