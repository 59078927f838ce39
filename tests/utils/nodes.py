"""
Fake node implementations used across the test suites

Every node records its instance id in NODE_CALLS when it executes and,
where it supports compensation, in ROLLBACK_CALLS when rolled back.
"""

import asyncio
from typing import Any, Dict, List

from flowengine.execution.models import NodePinDefinition
from flowengine.execution.results import NodeResult
from flowengine.nodes import BaseNode

NODE_CALLS: List[str] = []
ROLLBACK_CALLS: List[str] = []
ROLLBACK_STEPS: List[str] = []

DEFAULT_RECORDS = [
    {"id": 1, "name": "Alice", "age": 20},
    {"id": 2, "name": "Bob", "age": 30},
    {"id": 3, "name": "Carol", "age": 40},
]


class SourceNode(BaseNode):
    """Emits a list of records"""

    type = "test-source"
    category = "source"
    outputs = [NodePinDefinition(name="records", type="array")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        records = inputs.get("records", DEFAULT_RECORDS)
        return NodeResult.ok(
            {"records": records},
            records_processed=len(records),
            rollback_data={"created": len(records)}
        )

    async def rollback(self, data: Dict[str, Any], context: Any) -> None:
        ROLLBACK_CALLS.append(context.node_id)


class PassThroughNode(BaseNode):
    """Forwards its data input and counts it"""

    type = "test-passthrough"
    inputs = [NodePinDefinition(name="data", type="array", required=True)]
    outputs = [
        NodePinDefinition(name="data", type="array"),
        NodePinDefinition(name="count", type="integer"),
    ]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        data = inputs["data"]
        return NodeResult.ok(
            {"data": data, "count": len(data)},
            records_processed=len(data),
            rollback_data={"passed": len(data)}
        )

    async def rollback(self, data: Dict[str, Any], context: Any) -> None:
        ROLLBACK_CALLS.append(context.node_id)


class FailingNode(BaseNode):
    """Reports a failure without raising"""

    type = "test-failing"
    inputs = [NodePinDefinition(name="data", type="any")]
    outputs = [NodePinDefinition(name="data", type="any")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        return NodeResult.failure(self.config.get("message", "boom"))


class RaisingNode(BaseNode):
    type = "test-raising"
    inputs = [NodePinDefinition(name="data", type="any")]
    outputs = [NodePinDefinition(name="data", type="any")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        raise RuntimeError("exploded")


class FlakyNode(BaseNode):
    """Fails until the attempt number exceeds ``fail_times``"""

    type = "test-flaky"
    inputs = [NodePinDefinition(name="data", type="any")]
    outputs = [NodePinDefinition(name="data", type="any")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        if context.attempt <= int(self.config.get("fail_times", 1)):
            return NodeResult.failure(f"attempt {context.attempt} failed")
        return NodeResult.ok({"data": inputs.get("data")}, attempt=context.attempt)


class SlowNode(BaseNode):
    """Sleeps for ``delay_ms`` before succeeding"""

    type = "test-slow"
    inputs = [NodePinDefinition(name="data", type="any")]
    outputs = [NodePinDefinition(name="data", type="any")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        await asyncio.sleep(self.config.get("delay_ms", 1000) / 1000)
        return NodeResult.ok({"data": inputs.get("data", [])})


class PlainNode(BaseNode):
    """Succeeds with rollback data but exposes no rollback hook"""

    type = "test-plain"
    inputs = [NodePinDefinition(name="data", type="any")]
    outputs = [NodePinDefinition(name="data", type="any")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        return NodeResult.ok({"data": inputs.get("data")}, rollback_data={"plain": True})


class BrokenRollbackNode(BaseNode):
    type = "test-broken-rollback"
    inputs = [NodePinDefinition(name="data", type="any")]
    outputs = [NodePinDefinition(name="data", type="any")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        return NodeResult.ok({"data": inputs.get("data")}, rollback_data={"undo": "nothing"})

    async def rollback(self, data: Dict[str, Any], context: Any) -> None:
        raise RuntimeError("compensation failed")


class QuerySourceNode(BaseNode):
    """Source whose required query arrives through its configuration"""

    type = "test-query-source"
    category = "source"
    inputs = [NodePinDefinition(name="query", type="string", required=True)]
    outputs = [NodePinDefinition(name="rows", type="array")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        return NodeResult.ok({"rows": [{"query": inputs["query"]}]}, records_processed=1)


class AwaitingRollbackNode(BaseNode):
    """Compensation hook that yields to the loop while it undoes work"""

    type = "test-awaiting-rollback"
    inputs = [NodePinDefinition(name="data", type="any")]
    outputs = [NodePinDefinition(name="data", type="any")]

    async def execute(self, inputs: Dict[str, Any], context: Any) -> NodeResult:
        NODE_CALLS.append(context.node_id)
        return NodeResult.ok({"data": inputs.get("data")}, rollback_data={"undo": context.node_id})

    async def rollback(self, data: Dict[str, Any], context: Any) -> None:
        ROLLBACK_STEPS.append(f"start:{context.node_id}")
        await asyncio.sleep(0.02)
        ROLLBACK_STEPS.append(f"end:{context.node_id}")
        ROLLBACK_CALLS.append(context.node_id)


TEST_NODES = [
    SourceNode,
    PassThroughNode,
    FailingNode,
    RaisingNode,
    FlakyNode,
    SlowNode,
    PlainNode,
    BrokenRollbackNode,
    QuerySourceNode,
    AwaitingRollbackNode,
]
