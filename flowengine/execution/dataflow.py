"""
Node-to-Node Data Flow Management
Collects node inputs from predecessor results, applies connection
transformations and checks pin compatibility against the catalog
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

from ..interfaces import Catalog, EventSink
from .exceptions import BadRequestError, ExpressionError, TransformationError
from .expressions import ExpressionEvaluator
from .graph import ExecutionGraph
from .models import DataTransformation, Flow, NodePinDefinition, TransformationType
from .results import NodeResult

logger = structlog.get_logger(__name__)

_MISSING = object()

FILTER_OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains", "exists")
REDUCE_OPERATIONS = ("sum", "count", "avg", "max", "min", "group_by")


class DataFlowStatus(str, Enum):
    """Data flow operation status"""
    PENDING = "pending"
    ROUTING = "routing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class DataFlowOperation:
    """Tracking record for one value passed along a connection"""

    operation_id: str = field(default_factory=lambda: uuid4().hex)
    from_node: str = ""
    to_node: str = ""
    output_pin: str = ""
    input_pin: str = ""
    transformation: Optional[str] = None
    data_size_bytes: int = 0
    status: DataFlowStatus = DataFlowStatus.PENDING

    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0
    error_message: str = ""

    def finish(self, status: DataFlowStatus, error_message: str = "") -> None:
        self.status = status
        self.error_message = error_message
        self.completed_at = datetime.utcnow()
        self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000


@dataclass
class CompatibilityCheck:
    """Result of checking one output pin against one input pin"""

    compatible: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggested_transformations: List[DataTransformation] = field(default_factory=list)


def get_nested_value(obj: Any, path: str, default: Any = None) -> Any:
    """Resolve a dot-path against nested dicts and lists"""
    current = obj
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key, _MISSING)
        elif isinstance(current, (list, tuple)) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def matches_condition(item: Any, condition: Dict[str, Any]) -> bool:
    """Evaluate one filter condition against an item"""
    operator = condition["operator"]
    expected = condition.get("value")
    actual = get_nested_value(item, condition.get("field", ""))

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "exists":
        return actual is not None
    if operator == "contains":
        if isinstance(actual, (list, tuple, set, dict)):
            return expected in actual
        return str(expected) in str(actual)

    try:
        if operator == "greater_than":
            return actual > expected
        if operator == "less_than":
            return actual < expected
    except TypeError:
        return False
    raise TransformationError(f"Unknown filter operator: {operator}", "filter")


def calculate_data_size(data: Any) -> int:
    try:
        return len(json.dumps(data, default=str))
    except (TypeError, ValueError):
        return 0


class DataFlowManager:
    """
    Manages data flow between flow nodes

    Features:
    - Input collection from already-produced node results
    - map / filter / reduce / custom transformations
    - Pin compatibility checks against catalog declarations
    - Transfer metrics
    """

    def __init__(
        self,
        catalog: Optional[Catalog] = None,
        event_sink: Optional[EventSink] = None,
        evaluator: Optional[ExpressionEvaluator] = None
    ):
        self.catalog = catalog
        self.event_sink = event_sink
        self.evaluator = evaluator or ExpressionEvaluator()

        # Performance metrics
        self._total_operations = 0
        self._failed_operations = 0
        self._skipped_inputs = 0
        self._total_data_transferred_bytes = 0
        self._transformations_applied: Dict[str, int] = {}

    async def collect_inputs(
        self,
        node_id: str,
        graph: ExecutionGraph,
        prior_results: Dict[str, NodeResult],
        execution_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Compute a node's input map from its incoming edges.

        Edges whose source result is missing or unsuccessful, or whose
        output pin was not produced, are skipped with a warning and the
        input pin is left unset.

        Raises:
            TransformationError: If an edge transformation fails
        """
        inputs: Dict[str, Any] = {}

        for edge in graph.incoming_edges(node_id):
            source = prior_results.get(edge.from_node_id)
            if source is None or not source.success:
                self._skipped_inputs += 1
                logger.warning(
                    "dataflow_input_skipped",
                    execution_id=execution_id,
                    node_id=node_id,
                    from_node_id=edge.from_node_id,
                    input_pin=edge.to_input,
                    reason="source_missing" if source is None else "source_failed"
                )
                continue

            if edge.from_output not in source.data:
                self._skipped_inputs += 1
                logger.warning(
                    "dataflow_input_skipped",
                    execution_id=execution_id,
                    node_id=node_id,
                    from_node_id=edge.from_node_id,
                    output_pin=edge.from_output,
                    input_pin=edge.to_input,
                    reason="output_missing"
                )
                continue

            inputs[edge.to_input] = self._transfer(
                source.data[edge.from_output],
                from_node=edge.from_node_id,
                to_node=node_id,
                output_pin=edge.from_output,
                input_pin=edge.to_input,
                transformation=edge.transformation
            )

        logger.debug(
            "dataflow_inputs_collected",
            execution_id=execution_id,
            node_id=node_id,
            input_pins=sorted(inputs)
        )
        return inputs

    async def pass_data_between_nodes(
        self,
        from_node_id: str,
        from_result: NodeResult,
        to_node_id: str,
        output_pin: str,
        input_pin: str,
        transformation: Optional[DataTransformation] = None
    ) -> Any:
        """
        Move a single output pin value to a target input pin.

        Raises:
            TransformationError: If the output pin is absent or the transformation fails
        """
        if output_pin not in from_result.data:
            self._failed_operations += 1
            message = f"Output pin '{output_pin}' not found in node {from_node_id} result"
            self._emit("data.flow.error", {
                "from_node_id": from_node_id,
                "to_node_id": to_node_id,
                "output_pin": output_pin,
                "input_pin": input_pin,
                "error": message,
            })
            raise TransformationError(message, node_id=to_node_id)

        return self._transfer(
            from_result.data[output_pin],
            from_node=from_node_id,
            to_node=to_node_id,
            output_pin=output_pin,
            input_pin=input_pin,
            transformation=transformation
        )

    def transform_data(self, data: Any, transformation: DataTransformation) -> Any:
        """Apply a transformation, wrapping unexpected failures"""
        try:
            return self.apply_transformation(data, transformation)
        except TransformationError:
            raise
        except Exception as e:
            raise TransformationError(
                f"Data transformation failed: {e}",
                transformation_type=transformation.type.value
            ) from e

    def apply_transformation(self, data: Any, transformation: DataTransformation) -> Any:
        """
        Dispatch on the transformation type.

        Raises:
            TransformationError: On unknown types or invalid configuration
        """
        handlers = {
            TransformationType.MAP: self._apply_map,
            TransformationType.FILTER: self._apply_filter,
            TransformationType.REDUCE: self._apply_reduce,
            TransformationType.CUSTOM: self._apply_custom,
        }
        handler = handlers.get(transformation.type)
        if handler is None:
            raise TransformationError(
                f"Unknown transformation type: {transformation.type}",
                transformation_type=str(transformation.type)
            )

        result = handler(data, transformation)
        key = transformation.type.value
        self._transformations_applied[key] = self._transformations_applied.get(key, 0) + 1
        return result

    async def validate_compatibility(
        self,
        from_node_type: str,
        from_output: str,
        to_node_type: str,
        to_input: str
    ) -> CompatibilityCheck:
        """
        Check an output pin can feed an input pin.

        Missing definitions or pins are errors. Mismatched non-"any" types
        are warnings and come with suggested transformations.
        """
        if self.catalog is None:
            return CompatibilityCheck(compatible=True, warnings=["No catalog configured"])

        from_def = await self.catalog.get_node_definition(from_node_type)
        to_def = await self.catalog.get_node_definition(to_node_type)

        if from_def is None or to_def is None:
            missing = [t for t, d in ((from_node_type, from_def), (to_node_type, to_def)) if d is None]
            return CompatibilityCheck(
                compatible=False,
                errors=[f"Node definitions not found in catalog: {', '.join(missing)}"]
            )

        output_pin = from_def.get_output(from_output)
        input_pin = to_def.get_input(to_input)

        errors = []
        if output_pin is None:
            errors.append(f"Output pin '{from_output}' not declared by {from_node_type}")
        if input_pin is None:
            errors.append(f"Input pin '{to_input}' not declared by {to_node_type}")
        if errors:
            return CompatibilityCheck(compatible=False, errors=errors)

        if self._types_compatible(output_pin.type, input_pin.type):
            return CompatibilityCheck(compatible=True)

        return CompatibilityCheck(
            compatible=False,
            warnings=[
                f"Type mismatch {from_node_type}[{from_output}]:{output_pin.type} -> "
                f"{to_node_type}[{to_input}]:{input_pin.type}"
            ],
            suggested_transformations=self._suggest_transformations(output_pin, input_pin)
        )

    async def validate_flow_connections(self, flow: Flow) -> List[str]:
        """
        Validate every connection of a flow.

        Returns:
            Collected warnings

        Raises:
            BadRequestError: Listing every connection error found
        """
        errors: List[str] = []
        warnings: List[str] = []

        for connection in flow.connections:
            from_node = flow.get_node(connection.from_node_id)
            to_node = flow.get_node(connection.to_node_id)

            if from_node is None or to_node is None:
                errors.append(
                    f"Connection references non-existent nodes: "
                    f"{connection.from_node_id} -> {connection.to_node_id}"
                )
                continue

            check = await self.validate_compatibility(
                from_node.type,
                connection.from_output,
                to_node.type,
                connection.to_input
            )
            if check.errors:
                errors.append(
                    f"Incompatible connection {from_node.id}[{connection.from_output}] -> "
                    f"{to_node.id}[{connection.to_input}]: {', '.join(check.errors)}"
                )
            warnings.extend(check.warnings)

        if errors:
            logger.warning(
                "flow_connection_validation_failed",
                flow_id=flow.id,
                error_count=len(errors)
            )
            raise BadRequestError(f"Flow validation failed: {'; '.join(errors)}", errors=errors)

        if warnings:
            logger.warning(
                "flow_connection_validation_warnings",
                flow_id=flow.id,
                warnings=warnings
            )
        return warnings

    def get_metrics(self) -> Dict[str, Any]:
        """Get data flow performance metrics"""
        success_rate = 0.0
        if self._total_operations:
            success_rate = (self._total_operations - self._failed_operations) / self._total_operations

        return {
            "total_operations": self._total_operations,
            "failed_operations": self._failed_operations,
            "skipped_inputs": self._skipped_inputs,
            "success_rate": success_rate,
            "total_data_transferred_bytes": self._total_data_transferred_bytes,
            "transformations_applied": dict(self._transformations_applied),
        }

    # Transfer

    def _transfer(
        self,
        value: Any,
        from_node: str,
        to_node: str,
        output_pin: str,
        input_pin: str,
        transformation: Optional[DataTransformation]
    ) -> Any:
        operation = DataFlowOperation(
            from_node=from_node,
            to_node=to_node,
            output_pin=output_pin,
            input_pin=input_pin,
            transformation=transformation.type.value if transformation else None,
            status=DataFlowStatus.ROUTING
        )
        self._total_operations += 1

        try:
            if transformation is not None:
                value = self.transform_data(value, transformation)
        except TransformationError as e:
            self._failed_operations += 1
            operation.finish(DataFlowStatus.FAILED, e.message)
            e.node_id = e.node_id or to_node
            logger.error(
                "dataflow_transformation_failed",
                from_node_id=from_node,
                to_node_id=to_node,
                transformation=operation.transformation,
                error=e.message
            )
            self._emit("data.flow.error", {
                "from_node_id": from_node,
                "to_node_id": to_node,
                "output_pin": output_pin,
                "input_pin": input_pin,
                "error": e.message,
            })
            raise

        operation.data_size_bytes = calculate_data_size(value)
        operation.finish(DataFlowStatus.COMPLETED)
        self._total_data_transferred_bytes += operation.data_size_bytes

        self._emit("data.flow.passed", {
            "from_node_id": from_node,
            "to_node_id": to_node,
            "output_pin": output_pin,
            "input_pin": input_pin,
            "data_size": operation.data_size_bytes,
            "transformation": operation.transformation,
        })
        return value

    # Transformations

    def _apply_map(self, data: Any, transformation: DataTransformation) -> List[Dict[str, Any]]:
        if not isinstance(data, list):
            raise TransformationError("Map transformation requires array input", "map")

        config = transformation.config
        mappings = config.get("field_mappings", config.get("fieldMappings"))
        if not isinstance(mappings, dict):
            raise TransformationError("Map transformation requires field_mappings configuration", "map")

        mapped = []
        for item in data:
            mapped_item: Dict[str, Any] = {}
            for target_field, source in mappings.items():
                if isinstance(source, str):
                    mapped_item[target_field] = get_nested_value(item, source)
                elif isinstance(source, dict) and source.get("expression"):
                    mapped_item[target_field] = self._evaluate_item_expression(source["expression"], item)
            mapped.append(mapped_item)
        return mapped

    def _apply_filter(self, data: Any, transformation: DataTransformation) -> List[Any]:
        if not isinstance(data, list):
            raise TransformationError("Filter transformation requires array input", "filter")

        conditions = transformation.config.get("conditions")
        if not isinstance(conditions, list):
            raise TransformationError("Filter transformation requires conditions configuration", "filter")

        for condition in conditions:
            if condition.get("operator") not in FILTER_OPERATORS:
                raise TransformationError(
                    f"Unknown filter operator: {condition.get('operator')}", "filter"
                )

        return [
            item for item in data
            if all(matches_condition(item, condition) for condition in conditions)
        ]

    def _apply_reduce(self, data: Any, transformation: DataTransformation) -> Any:
        if not isinstance(data, list):
            raise TransformationError("Reduce transformation requires array input", "reduce")

        config = transformation.config
        operation = config.get("operation")
        field_path = config.get("field", "")

        if operation == "count":
            return len(data)

        if operation == "sum":
            total = config.get("initial_value", config.get("initialValue", 0)) or 0
            try:
                for item in data:
                    total += get_nested_value(item, field_path) or 0
            except TypeError as e:
                raise TransformationError(f"Cannot sum field '{field_path}': {e}", "reduce") from e
            return total

        if operation in ("avg", "max", "min"):
            values = [
                value for value in (get_nested_value(item, field_path) for item in data)
                if isinstance(value, (int, float)) and not isinstance(value, bool)
            ]
            if operation == "avg":
                return sum(values) / len(values) if values else 0
            if not values:
                return None
            return max(values) if operation == "max" else min(values)

        if operation == "group_by":
            group_field = config.get("group_by", config.get("groupBy", field_path))
            if not group_field:
                raise TransformationError("group_by reduce requires a group_by field", "reduce")
            groups: Dict[Any, List[Any]] = {}
            for item in data:
                key = get_nested_value(item, group_field)
                try:
                    hash(key)
                except TypeError:
                    key = str(key)
                groups.setdefault(key, []).append(item)
            return groups

        raise TransformationError(
            f"Unknown reduce operation: {operation} (expected one of {', '.join(REDUCE_OPERATIONS)})",
            "reduce"
        )

    def _apply_custom(self, data: Any, transformation: DataTransformation) -> Any:
        script = transformation.script or transformation.config.get("expression")
        if not script:
            raise TransformationError("Custom transformation requires script", "custom")

        try:
            return self.evaluator.evaluate(
                script,
                {"data": data, "config": dict(transformation.config)}
            )
        except ExpressionError as e:
            raise TransformationError(f"Custom transformation script error: {e.message}", "custom") from e

    def _evaluate_item_expression(self, expression: str, item: Any) -> Any:
        names = dict(item) if isinstance(item, dict) else {}
        names["item"] = item
        try:
            return self.evaluator.evaluate(expression, names)
        except ExpressionError as e:
            logger.warning(
                "map_expression_evaluation_failed",
                expression=expression,
                error=e.message
            )
            return None

    # Compatibility helpers

    @staticmethod
    def _types_compatible(output_type: str, input_type: str) -> bool:
        output_type = (output_type or "any").lower()
        input_type = (input_type or "any").lower()
        if "any" in (output_type, input_type):
            return True
        if output_type == input_type:
            return True
        return output_type == "integer" and input_type == "number"

    @staticmethod
    def _suggest_transformations(
        output_pin: NodePinDefinition,
        input_pin: NodePinDefinition
    ) -> List[DataTransformation]:
        suggestions: List[DataTransformation] = []
        output_schema = output_pin.data_schema or {}
        input_schema = input_pin.data_schema or {}

        if output_pin.type == "array" and input_pin.type in ("number", "integer"):
            suggestions.append(DataTransformation(
                type=TransformationType.REDUCE,
                config={"operation": "count"}
            ))

        output_props = output_schema.get("properties") or {}
        input_props = input_schema.get("properties") or {}
        mappings: Dict[str, str] = {}
        for input_field in input_props:
            for output_field in output_props:
                if input_field == output_field or input_field.lower() == output_field.lower():
                    mappings[input_field] = output_field
                    break

        if mappings:
            suggestions.append(DataTransformation(
                type=TransformationType.MAP,
                config={"field_mappings": mappings}
            ))
        return suggestions

    def _emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.event_sink is None:
            return
        try:
            self.event_sink.emit(event_name, payload)
        except Exception as e:
            logger.warning("event_emit_failed", event_name=event_name, error=str(e))
