"""
Wiring helpers for the execution core
"""

from typing import Optional

import structlog

from config.settings import Settings, settings as default_settings
from ..catalog import InMemoryCatalog
from ..events import InMemoryEventSink
from ..interfaces import Catalog, EventSink, ExecutionRepository, NodeRuntime, SecretStore
from ..persistence import InMemoryExecutionRepository
from ..secrets import EnvironmentSecretStore
from .circuit_breaker import CircuitBreaker, CircuitBreakerStore, RedisCircuitBreakerStore
from .context import ExecutionContextManager
from .dataflow import DataFlowManager
from .node_manager import NodeExecutionManager
from .orchestrator import ExecutionOrchestrator

logger = structlog.get_logger(__name__)


def create_default_orchestrator(
    node_runtime: NodeRuntime,
    catalog: Optional[Catalog] = None,
    repository: Optional[ExecutionRepository] = None,
    event_sink: Optional[EventSink] = None,
    secret_store: Optional[SecretStore] = None,
    settings: Optional[Settings] = None,
    circuit_breaker_store: Optional[CircuitBreakerStore] = None
) -> ExecutionOrchestrator:
    """
    Build an orchestrator with in-process collaborators.

    Args:
        node_runtime: Factory that instantiates nodes by type
        catalog: Node definition catalog. Built from the runtime's
            definitions when the runtime exposes them.
        repository: Execution record store
        event_sink: Event destination
        secret_store: Secret resolver used for secret variables
        settings: Engine settings
        circuit_breaker_store: Explicit breaker store. When omitted the
            backend named by CIRCUIT_BREAKER_BACKEND is used.

    Returns:
        A fully wired ExecutionOrchestrator
    """
    settings = settings or default_settings

    if catalog is None:
        definitions = node_runtime.definitions() if hasattr(node_runtime, "definitions") else []
        catalog = InMemoryCatalog(definitions)
    repository = repository or InMemoryExecutionRepository()
    event_sink = event_sink or InMemoryEventSink()
    secret_store = secret_store or EnvironmentSecretStore(settings=settings)

    if circuit_breaker_store is None and settings.CIRCUIT_BREAKER_BACKEND == "redis":
        circuit_breaker_store = RedisCircuitBreakerStore.from_url(
            settings.REDIS_URL,
            settings.CIRCUIT_BREAKER_KEY_PREFIX
        )

    circuit_breaker = CircuitBreaker(store=circuit_breaker_store, settings=settings)

    node_manager = NodeExecutionManager(
        node_runtime,
        catalog=catalog,
        circuit_breaker=circuit_breaker,
        repository=repository,
        event_sink=event_sink,
        settings=settings
    )
    data_flow = DataFlowManager(catalog=catalog, event_sink=event_sink)
    context_manager = ExecutionContextManager(secret_store=secret_store, settings=settings)

    logger.info(
        "orchestrator_created",
        circuit_breaker_store=type(circuit_breaker.store).__name__,
        environment=settings.ENVIRONMENT
    )

    return ExecutionOrchestrator(
        node_manager,
        data_flow,
        context_manager,
        catalog,
        repository=repository,
        event_sink=event_sink,
        settings=settings
    )
