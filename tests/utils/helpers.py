"""
Flow builders and polling helpers
"""

import asyncio
import time
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

from flowengine.execution.models import Connection, DataTransformation, Flow, NodeInstance

from .nodes import NODE_CALLS, ROLLBACK_CALLS, ROLLBACK_STEPS

NodeSpec = Tuple[Any, ...]
ConnectionSpec = Tuple[Any, ...]


def make_flow(
    nodes: Sequence[NodeSpec],
    connections: Iterable[ConnectionSpec] = (),
    flow_id: str = "flow-1",
    **kwargs: Any
) -> Flow:
    """
    Build a Flow from compact tuples.

    Args:
        nodes: ``(id, type)`` or ``(id, type, config)`` tuples
        connections: ``(from_id, from_output, to_id, to_input)`` tuples with
            an optional fifth DataTransformation or dict element
        flow_id: Flow identifier
        **kwargs: Extra Flow fields (variables, secrets, metadata, ...)

    Returns:
        The constructed Flow
    """
    node_instances = []
    for spec in nodes:
        node_id, node_type = spec[0], spec[1]
        config: Dict[str, Any] = spec[2] if len(spec) > 2 else {}
        node_instances.append(NodeInstance(id=node_id, type=node_type, config=config))

    connection_models = []
    for spec in connections:
        transformation: Optional[DataTransformation] = None
        if len(spec) > 4:
            transformation = spec[4]
            if isinstance(transformation, dict):
                transformation = DataTransformation(**transformation)
        connection_models.append(Connection(
            from_node_id=spec[0],
            from_output=spec[1],
            to_node_id=spec[2],
            to_input=spec[3],
            transformation=transformation
        ))

    return Flow(
        id=flow_id,
        name=kwargs.pop("name", "Test flow"),
        nodes=node_instances,
        connections=connection_models,
        **kwargs
    )


def reset_call_logs() -> None:
    NODE_CALLS.clear()
    ROLLBACK_CALLS.clear()
    ROLLBACK_STEPS.clear()


async def wait_for_condition(
    condition_func: Callable[[], bool],
    timeout: float = 5.0,
    check_interval: float = 0.005,
    timeout_message: str = "Condition not met within timeout"
) -> bool:
    """
    Wait for a condition to become true within timeout.

    Raises:
        TimeoutError: If condition not met within timeout
    """
    start_time = time.monotonic()
    while time.monotonic() - start_time < timeout:
        if condition_func():
            return True
        await asyncio.sleep(check_interval)
    raise TimeoutError(timeout_message)
