"""
Circuit Breaker
Per-node-type fault isolation shared by every run using the same store
"""

import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

import redis.asyncio as redis
import structlog

from config.settings import Settings, settings as default_settings
from .exceptions import CircuitOpenError

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Failure accounting for one node type"""

    failures: int = 0
    last_failure_time: float = 0.0  # epoch milliseconds
    state: CircuitState = CircuitState.CLOSED
    trial_in_flight: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failures": self.failures,
            "last_failure_time": self.last_failure_time,
            "state": self.state.value,
            "trial_in_flight": self.trial_in_flight,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CircuitBreakerState":
        return cls(
            failures=int(data.get("failures", 0)),
            last_failure_time=float(data.get("last_failure_time", 0.0)),
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            trial_in_flight=bool(data.get("trial_in_flight", False)),
        )


class CircuitBreakerStore(Protocol):
    """Persistence for breaker state keyed by node type"""

    async def get(self, node_type: str) -> Optional[CircuitBreakerState]:
        ...

    async def save(self, node_type: str, state: CircuitBreakerState) -> None:
        ...

    async def reset(self, node_type: str) -> None:
        ...


class InMemoryCircuitBreakerStore:
    """Process-local breaker store"""

    def __init__(self):
        self._states: Dict[str, CircuitBreakerState] = {}

    async def get(self, node_type: str) -> Optional[CircuitBreakerState]:
        state = self._states.get(node_type)
        return CircuitBreakerState.from_dict(state.to_dict()) if state else None

    async def save(self, node_type: str, state: CircuitBreakerState) -> None:
        self._states[node_type] = CircuitBreakerState.from_dict(state.to_dict())

    async def reset(self, node_type: str) -> None:
        self._states.pop(node_type, None)


class RedisCircuitBreakerStore:
    """
    Redis-backed breaker store so several processes share accounting.

    State is stored as a JSON document per node type.
    """

    def __init__(self, client: redis.Redis, key_prefix: Optional[str] = None):
        self.client = client
        self.key_prefix = key_prefix or default_settings.CIRCUIT_BREAKER_KEY_PREFIX

    @classmethod
    def from_url(cls, url: Optional[str] = None, key_prefix: Optional[str] = None) -> "RedisCircuitBreakerStore":
        pool = redis.ConnectionPool.from_url(
            url or default_settings.REDIS_URL,
            max_connections=20,
            retry_on_timeout=True
        )
        return cls(redis.Redis(connection_pool=pool), key_prefix)

    def _key(self, node_type: str) -> str:
        return f"{self.key_prefix}{node_type}"

    async def get(self, node_type: str) -> Optional[CircuitBreakerState]:
        raw = await self.client.get(self._key(node_type))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return CircuitBreakerState.from_dict(json.loads(raw))

    async def save(self, node_type: str, state: CircuitBreakerState) -> None:
        await self.client.set(self._key(node_type), json.dumps(state.to_dict()))

    async def reset(self, node_type: str) -> None:
        await self.client.delete(self._key(node_type))


class CircuitBreaker:
    """
    Closed / open / half-open breaker keyed by node type

    Features:
    - Opens after a threshold of consecutive failures
    - Fails fast while open, until the cooldown has elapsed
    - Half-open admits exactly one trial call
    - Rejections never count as failures
    """

    def __init__(
        self,
        store: Optional[CircuitBreakerStore] = None,
        threshold: Optional[int] = None,
        cooldown_ms: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
        settings: Optional[Settings] = None
    ):
        settings = settings or default_settings
        self.store = store or InMemoryCircuitBreakerStore()
        self.threshold = threshold if threshold is not None else settings.CIRCUIT_BREAKER_THRESHOLD
        self.cooldown_ms = cooldown_ms if cooldown_ms is not None else settings.CIRCUIT_BREAKER_COOLDOWN_MS
        self.clock = clock or (lambda: time.time() * 1000)
        self._lock = asyncio.Lock()

    async def get_state(self, node_type: str) -> CircuitBreakerState:
        return await self.store.get(node_type) or CircuitBreakerState()

    async def before_call(self, node_type: str) -> None:
        """
        Admit or reject a call for a node type.

        Raises:
            CircuitOpenError: If the breaker is open within its cooldown,
                or half-open with a trial already in flight
        """
        async with self._lock:
            state = await self.get_state(node_type)

            if state.state == CircuitState.CLOSED:
                return

            if state.state == CircuitState.OPEN:
                elapsed = self.clock() - state.last_failure_time
                if elapsed < self.cooldown_ms:
                    raise CircuitOpenError(
                        node_type,
                        retry_after_ms=int(self.cooldown_ms - elapsed)
                    )
                state.state = CircuitState.HALF_OPEN
                state.trial_in_flight = True
                await self.store.save(node_type, state)
                logger.info(
                    "circuit_breaker_half_open",
                    node_type=node_type,
                    failures=state.failures
                )
                return

            # Half-open: only the admitted trial may pass
            if state.trial_in_flight:
                raise CircuitOpenError(node_type)
            state.trial_in_flight = True
            await self.store.save(node_type, state)

    async def record_success(self, node_type: str) -> None:
        async with self._lock:
            state = await self.get_state(node_type)
            was_open = state.state != CircuitState.CLOSED
            await self.store.save(node_type, CircuitBreakerState())
            if was_open:
                logger.info("circuit_breaker_closed", node_type=node_type)

    async def record_failure(self, node_type: str) -> None:
        async with self._lock:
            state = await self.get_state(node_type)
            state.failures += 1
            state.last_failure_time = self.clock()
            state.trial_in_flight = False

            if state.state == CircuitState.HALF_OPEN or state.failures >= self.threshold:
                if state.state != CircuitState.OPEN:
                    logger.warning(
                        "circuit_breaker_opened",
                        node_type=node_type,
                        failures=state.failures,
                        threshold=self.threshold
                    )
                state.state = CircuitState.OPEN

            await self.store.save(node_type, state)

    async def release(self, node_type: str) -> None:
        """Free a half-open trial slot without recording an outcome"""
        async with self._lock:
            state = await self.get_state(node_type)
            if state.trial_in_flight:
                state.trial_in_flight = False
                await self.store.save(node_type, state)

    async def reset(self, node_type: str) -> None:
        async with self._lock:
            await self.store.reset(node_type)
