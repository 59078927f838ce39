"""
Test configuration and fixtures for the flow execution engine.
"""

import asyncio
from typing import List

import pytest

from config.log_config import configure_logging
from config.settings import Settings
from flowengine.catalog import InMemoryCatalog
from flowengine.events import InMemoryEventSink
from flowengine.execution.circuit_breaker import CircuitBreaker, InMemoryCircuitBreakerStore
from flowengine.execution.context import ExecutionContextManager
from flowengine.execution.dataflow import DataFlowManager
from flowengine.execution.node_manager import NodeExecutionManager
from flowengine.execution.orchestrator import ExecutionOrchestrator
from flowengine.nodes import BUILTIN_NODES, NodeRegistry
from flowengine.persistence import InMemoryExecutionRepository
from flowengine.secrets import EnvironmentSecretStore
from tests.utils import TEST_NODES, make_flow, reset_call_logs


class FakeClock:
    """Millisecond clock advanced by hand"""

    def __init__(self, start_ms: float = 1_000_000.0):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


@pytest.fixture(scope="session", autouse=True)
def configured_logging():
    """Route structlog through the engine's processor chain."""
    configure_logging(Settings(DEBUG=False, LOG_LEVEL="DEBUG"))


@pytest.fixture(autouse=True)
def clean_call_logs():
    """Clear fake node call records between tests."""
    reset_call_logs()
    yield
    reset_call_logs()


@pytest.fixture
def test_settings():
    """Create test settings."""
    return Settings(
        ENVIRONMENT="test",
        NODE_TIMEOUT_MS=5000,
        PAUSE_POLL_INTERVAL_MS=10,
        CIRCUIT_BREAKER_THRESHOLD=3,
        CIRCUIT_BREAKER_COOLDOWN_MS=1000,
        RETRY_MAX_ATTEMPTS=3,
        RETRY_BASE_DELAY_MS=1000,
        RETRY_JITTER=False,
    )


@pytest.fixture
def test_environ():
    """Process environment seen by contexts and the secret store."""
    return {
        "NODE_ENV": "test",
        "DB_HOST": "db.internal",
        "HOME": "/root",
        "API_TOKEN": "token-123",
        "VAULT_DB_PASSWORD": "vault-secret",
    }


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def sleep_calls() -> List[float]:
    return []


@pytest.fixture
def recorded_sleep(sleep_calls):
    """Sleep replacement that records the requested delay in seconds."""
    async def _sleep(seconds: float) -> None:
        sleep_calls.append(seconds)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
def registry():
    """Node registry with the fake and built-in nodes."""
    node_registry = NodeRegistry()
    for node_class in TEST_NODES + BUILTIN_NODES:
        node_registry.register(node_class)
    return node_registry


@pytest.fixture
def catalog(registry):
    return InMemoryCatalog(registry.definitions())


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def repository():
    return InMemoryExecutionRepository()


@pytest.fixture
def secret_store(test_environ, test_settings):
    return EnvironmentSecretStore(environ=test_environ, settings=test_settings)


@pytest.fixture
def circuit_breaker(fake_clock, test_settings):
    return CircuitBreaker(
        store=InMemoryCircuitBreakerStore(),
        clock=fake_clock,
        settings=test_settings
    )


@pytest.fixture
def context_manager(secret_store, test_settings, test_environ):
    return ExecutionContextManager(
        secret_store=secret_store,
        settings=test_settings,
        environ=test_environ
    )


@pytest.fixture
async def execution_context(context_manager):
    """Registered context for a one-node flow."""
    flow = make_flow([("source", "test-source")], flow_id="ctx-flow")
    context = await context_manager.create("exec-test", flow)
    yield context
    context_manager.cleanup("exec-test")


@pytest.fixture
def node_manager(registry, catalog, circuit_breaker, repository, event_sink, test_settings, recorded_sleep):
    return NodeExecutionManager(
        registry,
        catalog=catalog,
        circuit_breaker=circuit_breaker,
        repository=repository,
        event_sink=event_sink,
        settings=test_settings,
        sleep=recorded_sleep
    )


@pytest.fixture
def data_flow(catalog, event_sink):
    return DataFlowManager(catalog=catalog, event_sink=event_sink)


@pytest.fixture
def orchestrator(node_manager, data_flow, context_manager, catalog, repository, event_sink, test_settings):
    return ExecutionOrchestrator(
        node_manager,
        data_flow,
        context_manager,
        catalog,
        repository=repository,
        event_sink=event_sink,
        settings=test_settings
    )
