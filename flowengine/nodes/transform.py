"""
Built-in transformation nodes
"""

from typing import Any, Dict, List

from ..execution.dataflow import get_nested_value, matches_condition
from ..execution.exceptions import TransformationError
from ..execution.models import NodePinDefinition
from ..execution.results import NodeResult
from .base import BaseNode

STRING_FUNCTIONS = {
    "uppercase": lambda value: str(value).upper(),
    "lowercase": lambda value: str(value).lower(),
    "trim": lambda value: str(value).strip(),
}

CASTS = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}


class DataFilterNode(BaseNode):
    """Keeps items matching every condition"""

    type = "data-filter"
    inputs = [
        NodePinDefinition(name="data", type="array", required=True),
        NodePinDefinition(name="conditions", type="array"),
    ]
    outputs = [
        NodePinDefinition(name="filtered", type="array"),
        NodePinDefinition(name="filtered_count", type="integer"),
    ]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        data = inputs.get("data")
        conditions = inputs.get("conditions", self.config.get("conditions", []))
        if not isinstance(data, list) or not isinstance(conditions, list):
            return NodeResult.failure("data and conditions must be arrays", "ValidationError")

        try:
            filtered = [
                item for item in data
                if all(matches_condition(item, condition) for condition in conditions)
            ]
        except TransformationError as e:
            return NodeResult.failure(e)

        return NodeResult.ok(
            {"filtered": filtered, "filtered_count": len(filtered)},
            records_processed=len(filtered)
        )


class FieldMapperNode(BaseNode):
    """Renames, casts or normalizes fields of a record or list of records

    Each mapping is ``{source_field, target_field, transformation, transform_value}``
    where transformation is one of rename, cast, function or default.
    """

    type = "field-mapper"
    inputs = [
        NodePinDefinition(name="source", type="any", required=True),
        NodePinDefinition(name="mapping", type="array"),
    ]
    outputs = [NodePinDefinition(name="mapped", type="any")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        source = inputs.get("source")
        mappings: List[Dict[str, Any]] = inputs.get("mapping", self.config.get("mapping", []))
        is_list = isinstance(source, list)
        items = source if is_list else [source]

        try:
            mapped = [self._map_item(item, mappings) for item in items]
        except (TypeError, ValueError) as e:
            return NodeResult.failure(e)

        return NodeResult.ok(
            {"mapped": mapped if is_list else mapped[0]},
            records_processed=len(mapped)
        )

    @staticmethod
    def _map_item(item: Any, mappings: List[Dict[str, Any]]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for mapping in mappings:
            value = get_nested_value(item, mapping["source_field"])
            kind = mapping.get("transformation", "rename")
            option = mapping.get("transform_value")

            if kind == "cast" and option in CASTS and value is not None:
                value = CASTS[option](value)
            elif kind == "function" and option in STRING_FUNCTIONS:
                value = STRING_FUNCTIONS[option](value)
            elif kind == "default" and not value:
                value = option

            result[mapping.get("target_field", mapping["source_field"])] = value
        return result


BUILTIN_NODES = [DataFilterNode, FieldMapperNode]
