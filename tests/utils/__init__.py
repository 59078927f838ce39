"""
Test utilities

Fake node implementations, flow builders and polling helpers shared by
the execution and node test suites.
"""

from .nodes import (
    NODE_CALLS,
    ROLLBACK_CALLS,
    ROLLBACK_STEPS,
    TEST_NODES,
    AwaitingRollbackNode,
    BrokenRollbackNode,
    FailingNode,
    FlakyNode,
    PassThroughNode,
    PlainNode,
    QuerySourceNode,
    RaisingNode,
    SlowNode,
    SourceNode,
)
from .helpers import make_flow, reset_call_logs, wait_for_condition

__all__ = [
    'NODE_CALLS',
    'ROLLBACK_CALLS',
    'ROLLBACK_STEPS',
    'TEST_NODES',
    'AwaitingRollbackNode',
    'BrokenRollbackNode',
    'FailingNode',
    'FlakyNode',
    'PassThroughNode',
    'PlainNode',
    'QuerySourceNode',
    'RaisingNode',
    'SlowNode',
    'SourceNode',
    'make_flow',
    'reset_call_logs',
    'wait_for_condition',
]
