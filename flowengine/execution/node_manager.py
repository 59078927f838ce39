"""
Node Execution Manager
Runs one node instance with circuit breaking, validation, timeout and cancellation
"""

import asyncio
import inspect
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from config.settings import Settings, settings as default_settings
from ..interfaces import Catalog, EventSink, ExecutionRepository, NodeRuntime
from .circuit_breaker import CircuitBreaker
from .context import ExecutionContext
from .exceptions import (
    CancellationError,
    CircuitOpenError,
    NodeTimeoutError,
    RetryExhaustedError,
    RollbackError,
    ValidationError,
)
from .results import NodeExecutionLog, NodeResult

logger = structlog.get_logger(__name__)


class BackoffStrategy(str, Enum):
    """Delay growth between retry attempts"""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass
class RetryPolicy:
    """Node retry configuration"""

    max_attempts: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        settings = settings or default_settings
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            backoff_strategy=BackoffStrategy(settings.RETRY_BACKOFF_STRATEGY),
            base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            jitter=settings.RETRY_JITTER,
        )

    @classmethod
    def from_config(cls, config: Dict[str, Any], settings: Optional[Settings] = None) -> "RetryPolicy":
        """
        Build a policy from a node's ``retry`` configuration block.

        Raises:
            ValidationError: The block is not a mapping or holds invalid values
        """
        if not isinstance(config, dict):
            raise ValidationError("Retry configuration must be an object")

        base = cls.from_settings(settings)
        try:
            policy = cls(
                max_attempts=int(config.get("max_attempts", base.max_attempts)),
                backoff_strategy=BackoffStrategy(config.get("backoff_strategy", base.backoff_strategy)),
                base_delay_ms=float(config.get("base_delay_ms", base.base_delay_ms)),
                max_delay_ms=float(config.get("max_delay_ms", base.max_delay_ms)),
                jitter=bool(config.get("jitter", base.jitter)),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid retry configuration: {e}") from e

        if policy.max_attempts < 1:
            raise ValidationError("Invalid retry configuration: max_attempts must be at least 1")
        return policy

    def calculate_delay(self, retry_number: int) -> float:
        """
        Delay in milliseconds before the given retry (1 = first retry).

        fixed: base; linear: base * n; exponential: base * 2^(n-1).
        Capped at max_delay_ms, then perturbed by up to 10% when jitter is on.
        """
        retry_number = max(1, retry_number)

        if self.backoff_strategy == BackoffStrategy.FIXED:
            delay = self.base_delay_ms
        elif self.backoff_strategy == BackoffStrategy.LINEAR:
            delay = self.base_delay_ms * retry_number
        else:
            delay = self.base_delay_ms * (2 ** (retry_number - 1))

        delay = min(delay, self.max_delay_ms)

        if self.jitter:
            delay += delay * random.uniform(-0.1, 0.1)

        return max(0.0, delay)


@dataclass
class NodeExecutionOptions:
    """Per-call execution options"""

    timeout_ms: Optional[int] = None
    validate_inputs: bool = True
    retry_policy: Optional[RetryPolicy] = None


@dataclass
class InputValidationResult:
    """Outcome of validating a node's inputs"""

    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class CancellationToken:
    """Cooperative cancellation signal shared between a run and a node call"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise CancellationError(f"Operation cancelled: {self.reason}")


@dataclass
class NodeRunContext:
    """Context object passed to a node's execute and rollback hooks"""

    execution: ExecutionContext
    node_id: str
    node_type: str
    cancellation_token: CancellationToken
    attempt: int = 1

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id

    @property
    def flow_id(self) -> str:
        return self.execution.flow_id

    @property
    def variables(self) -> Dict[str, Any]:
        return self.execution.variables

    @property
    def secrets(self) -> Dict[str, Any]:
        return self.execution.secrets

    @property
    def logger(self):
        return logger.bind(node_id=self.node_id, node_type=self.node_type, **self.execution.log_context())


@dataclass
class ActiveNodeExecution:
    """Bookkeeping for an in-flight node call"""

    execution_id: str
    node_id: str
    node_type: str
    cancellation_token: CancellationToken
    started_at: datetime = field(default_factory=datetime.utcnow)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _node_input_data(inputs: Dict[str, Any], config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    input_data = dict(inputs)
    if not inputs and config:
        # Source nodes receive their configuration as inputs
        input_data.update(config)
    return input_data


def _coerce_result(value: Any) -> NodeResult:
    if isinstance(value, NodeResult):
        return value
    if isinstance(value, dict) and "success" in value:
        return NodeResult(
            success=bool(value.get("success")),
            data=dict(value.get("data") or {}),
            error=value.get("error"),
            records_processed=int(value.get("records_processed", 0) or 0),
            rollback_data=value.get("rollback_data"),
        )
    raise TypeError(f"Node returned unsupported result type {type(value).__name__}")


class NodeExecutionManager:
    """
    Executes exactly one node instance per call

    Features:
    - Circuit breaker per node type
    - Input validation against node hooks or catalog declarations
    - Timeout and cancellation race around the node call
    - Separate iterative retry driver with backoff
    - Compensation hook invocation for rollback
    """

    def __init__(
        self,
        node_runtime: NodeRuntime,
        catalog: Optional[Catalog] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        repository: Optional[ExecutionRepository] = None,
        event_sink: Optional[EventSink] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.node_runtime = node_runtime
        self.catalog = catalog
        self.settings = settings or default_settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker(settings=self.settings)
        self.repository = repository
        self.event_sink = event_sink
        self._sleep = sleep
        self._active: Dict[str, ActiveNodeExecution] = {}

    @staticmethod
    def execution_key(execution_id: str, node_id: str) -> str:
        return f"{execution_id}:{node_id}"

    async def execute(
        self,
        node_id: str,
        node_type: str,
        config: Optional[Dict[str, Any]],
        inputs: Dict[str, Any],
        context: ExecutionContext,
        options: Optional[NodeExecutionOptions] = None,
        cancellation_token: Optional[CancellationToken] = None,
        attempt: int = 1
    ) -> NodeResult:
        """
        Execute a node and wrap every outcome in a NodeResult.

        Args:
            node_id: Node instance id
            node_type: Catalog node type, also the circuit breaker key
            config: Node configuration
            inputs: Collected input values keyed by input pin
            context: Run context
            options: Timeout and validation options
            cancellation_token: Run-level token; a fresh one is created when omitted

        Returns:
            NodeResult carrying duration and, on failure, the error message
        """
        options = options or NodeExecutionOptions()
        config = dict(config or {})
        token = cancellation_token or CancellationToken()
        key = self.execution_key(context.execution_id, node_id)
        started_at = datetime.utcnow()
        start = time.perf_counter()

        self._active[key] = ActiveNodeExecution(
            execution_id=context.execution_id,
            node_id=node_id,
            node_type=node_type,
            cancellation_token=token
        )
        self._emit("node.execution.started", {
            "execution_id": context.execution_id,
            "node_id": node_id,
            "node_type": node_type,
            "attempt": attempt,
        })

        try:
            try:
                await self.circuit_breaker.before_call(node_type)
            except CircuitOpenError as e:
                e.execution_id = context.execution_id
                e.node_id = node_id
                logger.warning(
                    "node_execution_rejected",
                    execution_id=context.execution_id,
                    node_id=node_id,
                    node_type=node_type,
                    retry_after_ms=e.retry_after_ms
                )
                result = NodeResult.failure(e).with_duration(self._elapsed_ms(start))
                await self._record_outcome(context, node_id, node_type, result, started_at, attempt)
                return result

            try:
                result = await self._run_node(
                    node_id, node_type, config, inputs, context, options, token, attempt
                )
            except CancellationError as e:
                await self.circuit_breaker.release(node_type)
                result = NodeResult.failure(e)
            except Exception as e:
                await self.circuit_breaker.record_failure(node_type)
                result = NodeResult.failure(e)
            else:
                if result.success:
                    await self.circuit_breaker.record_success(node_type)
                else:
                    await self.circuit_breaker.record_failure(node_type)

            result = result.with_duration(self._elapsed_ms(start))
            await self._record_outcome(context, node_id, node_type, result, started_at, attempt)
            return result

        finally:
            self._active.pop(key, None)

    async def retry(
        self,
        node_id: str,
        node_type: str,
        config: Optional[Dict[str, Any]],
        inputs: Dict[str, Any],
        context: ExecutionContext,
        attempt: int = 1,
        options: Optional[NodeExecutionOptions] = None,
        cancellation_token: Optional[CancellationToken] = None
    ) -> NodeResult:
        """
        Execute a node until it succeeds or the retry budget runs out.

        Args:
            attempt: Attempt number to start from (1 = first attempt)

        Returns:
            The first successful NodeResult

        Raises:
            RetryExhaustedError: When every attempt up to max_attempts failed
            CancellationError: When the token fires between attempts
        """
        options = options or NodeExecutionOptions()
        policy = options.retry_policy or RetryPolicy.from_settings(self.settings)
        token = cancellation_token or CancellationToken()
        last_result: Optional[NodeResult] = None
        current = attempt

        while current <= policy.max_attempts:
            if current > 1:
                delay_ms = policy.calculate_delay(current - 1)
                logger.debug(
                    "node_retry_scheduled",
                    execution_id=context.execution_id,
                    node_id=node_id,
                    attempt=current,
                    max_attempts=policy.max_attempts,
                    delay_ms=round(delay_ms, 2)
                )
                await self._sleep(delay_ms / 1000)
                token.raise_if_cancelled()

            last_result = await self.execute(
                node_id, node_type, config, inputs, context, options, token, attempt=current
            )
            if last_result.success:
                return last_result
            if token.is_cancelled:
                return last_result

            logger.warning(
                "node_attempt_failed",
                execution_id=context.execution_id,
                node_id=node_id,
                attempt=current,
                max_attempts=policy.max_attempts,
                error=last_result.error
            )
            current += 1

        raise RetryExhaustedError(
            f"Maximum retry attempts ({policy.max_attempts}) exceeded for node {node_id}",
            attempts=policy.max_attempts,
            last_error=last_result.error if last_result else None,
            execution_id=context.execution_id,
            node_id=node_id
        )

    async def cancel(self, node_id: str, context: ExecutionContext) -> bool:
        """Signal the cancellation token of an active node call"""
        key = self.execution_key(context.execution_id, node_id)
        active = self._active.get(key)
        if active is None:
            return False

        active.cancellation_token.cancel("node execution cancelled")
        self._emit("node.execution.cancelled", {
            "execution_id": context.execution_id,
            "node_id": node_id,
            "node_type": active.node_type,
        })
        logger.info(
            "node_execution_cancelled",
            execution_id=context.execution_id,
            node_id=node_id
        )
        return True

    async def pause_node(self, node_id: str, context: ExecutionContext) -> None:
        """Advisory pause notification; node calls are never preempted"""
        self._emit("node.execution.paused", {
            "execution_id": context.execution_id,
            "node_id": node_id,
        })

    async def resume_node(self, node_id: str, context: ExecutionContext) -> None:
        self._emit("node.execution.resumed", {
            "execution_id": context.execution_id,
            "node_id": node_id,
        })

    async def rollback(
        self,
        node_id: str,
        rollback_data: Dict[str, Any],
        context: ExecutionContext
    ) -> bool:
        """
        Invoke a node's compensation hook.

        Returns:
            True if a hook ran, False if the node has none

        Raises:
            RollbackError: If the payload lacks a node type or the hook fails
        """
        node_type = rollback_data.get("node_type")
        if not node_type:
            raise RollbackError(
                "Rollback data does not record a node type",
                execution_id=context.execution_id,
                node_id=node_id
            )

        try:
            node = self.node_runtime.create(node_type, {})
            hook = getattr(node, "rollback", None)
            if hook is None:
                logger.debug(
                    "node_rollback_not_supported",
                    execution_id=context.execution_id,
                    node_id=node_id,
                    node_type=node_type
                )
                return False

            run_context = NodeRunContext(
                execution=context,
                node_id=node_id,
                node_type=node_type,
                cancellation_token=CancellationToken()
            )
            await _maybe_await(hook(rollback_data, run_context))

        except RollbackError:
            raise
        except Exception as e:
            raise RollbackError(
                f"Rollback failed: {e}",
                execution_id=context.execution_id,
                node_id=node_id
            ) from e

        logger.info(
            "node_rollback_completed",
            execution_id=context.execution_id,
            node_id=node_id,
            node_type=node_type
        )
        return True

    async def validate_node_input(
        self,
        node_type: str,
        inputs: Dict[str, Any],
        config: Optional[Dict[str, Any]] = None
    ) -> InputValidationResult:
        """Validate inputs with the node's own hook or the catalog's required pins"""
        try:
            node = self.node_runtime.create(node_type, dict(config or {}))
            configure = getattr(node, "configure", None)
            if configure is not None:
                await _maybe_await(configure(dict(config or {})))
            return await self._validate_inputs(node, node_type, _node_input_data(inputs, config))
        except Exception as e:
            return InputValidationResult(valid=False, errors=[f"Validation failed: {e}"])

    def get_active_executions(self) -> List[ActiveNodeExecution]:
        return list(self._active.values())

    # Internal helpers

    async def _run_node(
        self,
        node_id: str,
        node_type: str,
        config: Dict[str, Any],
        inputs: Dict[str, Any],
        context: ExecutionContext,
        options: NodeExecutionOptions,
        token: CancellationToken,
        attempt: int
    ) -> NodeResult:
        token.raise_if_cancelled()

        node = self.node_runtime.create(node_type, config)
        configure = getattr(node, "configure", None)
        if configure is not None:
            await _maybe_await(configure(config))

        input_data = _node_input_data(inputs, config)
        if options.validate_inputs:
            validation = await self._validate_inputs(node, node_type, input_data)
            if not validation.valid:
                raise ValidationError(
                    f"Input validation failed: {'; '.join(validation.errors)}",
                    errors=validation.errors,
                    execution_id=context.execution_id,
                    node_id=node_id
                )

        run_context = NodeRunContext(
            execution=context,
            node_id=node_id,
            node_type=node_type,
            cancellation_token=token,
            attempt=attempt
        )
        timeout_ms = options.timeout_ms or config.get("timeout_ms") or self.settings.NODE_TIMEOUT_MS

        value = await self._race(
            node.execute(input_data, run_context), token, timeout_ms, context, node_id
        )
        return _coerce_result(value)

    async def _race(
        self,
        call: Awaitable[Any],
        token: CancellationToken,
        timeout_ms: float,
        context: ExecutionContext,
        node_id: str
    ) -> Any:
        task = asyncio.ensure_future(call)
        cancel_waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter},
                timeout=timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return task.result()
            if cancel_waiter in done:
                raise CancellationError(
                    f"Node execution cancelled: {token.reason}",
                    execution_id=context.execution_id,
                    node_id=node_id
                )
            raise NodeTimeoutError(
                int(timeout_ms),
                execution_id=context.execution_id,
                node_id=node_id
            )
        finally:
            cancel_waiter.cancel()
            if not task.done():
                task.cancel()

    async def _validate_inputs(
        self,
        node: Any,
        node_type: str,
        inputs: Dict[str, Any]
    ) -> InputValidationResult:
        hook = getattr(node, "validate_inputs", None)
        if hook is not None:
            outcome = await _maybe_await(hook(inputs))
            if isinstance(outcome, InputValidationResult):
                return outcome
            if isinstance(outcome, dict):
                return InputValidationResult(
                    valid=bool(outcome.get("valid", False)),
                    errors=list(outcome.get("errors", [])),
                    warnings=list(outcome.get("warnings", []))
                )
            if outcome:
                return InputValidationResult(valid=True)
            return InputValidationResult(valid=False, errors=["Node rejected its inputs"])

        if self.catalog is None:
            return InputValidationResult(valid=True)

        definition = await self.catalog.get_node_definition(node_type)
        if definition is None:
            return InputValidationResult(
                valid=False,
                errors=[f"Node type '{node_type}' not found in catalog"]
            )

        errors = [
            f"Required input '{pin.name}' is missing"
            for pin in definition.inputs
            if pin.required and inputs.get(pin.name) is None
        ]
        return InputValidationResult(valid=not errors, errors=errors)

    async def _record_outcome(
        self,
        context: ExecutionContext,
        node_id: str,
        node_type: str,
        result: NodeResult,
        started_at: datetime,
        attempt: int
    ) -> None:
        status = "success" if result.success else "failed"
        entry = NodeExecutionLog(
            execution_id=context.execution_id,
            node_id=node_id,
            node_type=node_type,
            status=status,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            duration_ms=result.duration_ms,
            records_processed=result.records_processed,
            error=result.error,
            attempt=attempt
        )
        if self.repository is not None:
            try:
                await self.repository.append_node_execution_log(context.execution_id, entry.to_dict())
            except Exception as e:
                logger.error(
                    "node_execution_log_failed",
                    execution_id=context.execution_id,
                    node_id=node_id,
                    error=str(e)
                )

        payload = {
            "execution_id": context.execution_id,
            "node_id": node_id,
            "node_type": node_type,
            "duration_ms": result.duration_ms,
            "attempt": attempt,
        }
        if result.success:
            payload["records_processed"] = result.records_processed
            self._emit("node.execution.success", payload)
            logger.debug(
                "node_execution_completed",
                node_id=node_id,
                node_type=node_type,
                duration_ms=result.duration_ms,
                records_processed=result.records_processed,
                **context.log_context()
            )
        else:
            payload["error"] = result.error
            self._emit("node.execution.failure", payload)
            logger.error(
                "node_execution_failed",
                node_id=node_id,
                node_type=node_type,
                duration_ms=result.duration_ms,
                error=result.error,
                error_type=result.error_type,
                **context.log_context()
            )

    def _emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.event_sink is None:
            return
        try:
            self.event_sink.emit(event_name, payload)
        except Exception as e:
            logger.warning("event_emit_failed", event_name=event_name, error=str(e))

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return round((time.perf_counter() - start) * 1000, 3)
