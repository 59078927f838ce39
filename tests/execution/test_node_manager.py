"""
Tests for the node execution manager
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from flowengine.execution.circuit_breaker import CircuitBreaker, CircuitState, InMemoryCircuitBreakerStore
from flowengine.execution.exceptions import (
    CancellationError,
    RetryExhaustedError,
    RollbackError,
    ValidationError,
)
from flowengine.execution.node_manager import (
    BackoffStrategy,
    CancellationToken,
    NodeExecutionManager,
    NodeExecutionOptions,
    RetryPolicy,
)
from flowengine.execution.results import NodeResult
from tests.utils import NODE_CALLS, ROLLBACK_CALLS, wait_for_condition


@pytest.mark.unit
class TestRetryPolicy:
    """Test backoff delay calculation"""

    def test_exponential_delays(self):
        policy = RetryPolicy(base_delay_ms=1000, jitter=False)

        assert [policy.calculate_delay(n) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_linear_delays(self):
        policy = RetryPolicy(backoff_strategy=BackoffStrategy.LINEAR, base_delay_ms=500, jitter=False)

        assert [policy.calculate_delay(n) for n in (1, 2, 3)] == [500, 1000, 1500]

    def test_fixed_delays(self):
        policy = RetryPolicy(backoff_strategy=BackoffStrategy.FIXED, base_delay_ms=250, jitter=False)

        assert [policy.calculate_delay(n) for n in (1, 2, 5)] == [250, 250, 250]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=3000, jitter=False)

        assert policy.calculate_delay(10) == 3000

    def test_jitter_stays_within_ten_percent(self):
        policy = RetryPolicy(base_delay_ms=1000, jitter=True)

        for _ in range(50):
            assert 900 <= policy.calculate_delay(1) <= 1100

    def test_from_settings(self, test_settings):
        policy = RetryPolicy.from_settings(test_settings)

        assert policy.max_attempts == 3
        assert policy.backoff_strategy == BackoffStrategy.EXPONENTIAL
        assert policy.base_delay_ms == 1000
        assert policy.jitter is False

    def test_from_config_overrides(self, test_settings):
        policy = RetryPolicy.from_config(
            {"max_attempts": 5, "backoff_strategy": "linear", "base_delay_ms": 10},
            test_settings
        )

        assert policy.max_attempts == 5
        assert policy.backoff_strategy == BackoffStrategy.LINEAR
        assert policy.base_delay_ms == 10
        assert policy.max_delay_ms == test_settings.RETRY_MAX_DELAY_MS

    @pytest.mark.parametrize("retry_config, message", [
        ({"backoff_strategy": "quadratic"}, "not a valid BackoffStrategy"),
        ({"max_attempts": "many"}, "invalid literal"),
        ({"base_delay_ms": None}, "must be a string or"),
        ({"max_attempts": 0}, "max_attempts must be at least 1"),
        (["not", "a", "mapping"], "must be an object"),
    ])
    def test_from_config_rejects_invalid_values(self, test_settings, retry_config, message):
        with pytest.raises(ValidationError, match=message):
            RetryPolicy.from_config(retry_config, test_settings)


@pytest.mark.unit
class TestCancellationToken:
    """Test cooperative cancellation"""

    async def test_cancel_sets_reason(self):
        token = CancellationToken()
        assert not token.is_cancelled

        token.cancel("user request")
        token.cancel("second call ignored")

        assert token.is_cancelled
        assert token.reason == "user request"
        with pytest.raises(CancellationError, match="user request"):
            token.raise_if_cancelled()

    async def test_wait_returns_after_cancel(self):
        token = CancellationToken()
        waiter = asyncio.ensure_future(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)


@pytest.mark.unit
class TestNodeExecution:
    """Test single node execution"""

    async def test_successful_execution(self, node_manager, execution_context, event_sink, repository):
        result = await node_manager.execute(
            "pass", "test-passthrough", {}, {"data": [1, 2, 3]}, execution_context
        )

        assert result.success
        assert result.data == {"data": [1, 2, 3], "count": 3}
        assert result.records_processed == 3
        assert result.rollback_data == {"passed": 3}
        assert result.duration_ms >= 0
        assert event_sink.names() == ["node.execution.started", "node.execution.success"]

        logs = await repository.get_node_execution_logs("exec-test")
        assert logs[0]["node_id"] == "pass"
        assert logs[0]["status"] == "success"
        assert logs[0]["attempt"] == 1

    async def test_reported_failure(self, node_manager, execution_context, event_sink):
        result = await node_manager.execute(
            "fail", "test-failing", {"message": "bad data"}, {}, execution_context
        )

        assert not result.success
        assert result.error == "bad data"
        assert event_sink.names()[-1] == "node.execution.failure"

    async def test_raised_exception_becomes_result(self, node_manager, execution_context):
        result = await node_manager.execute("boom", "test-raising", {}, {}, execution_context)

        assert not result.success
        assert result.error == "exploded"
        assert result.error_type == "RuntimeError"

    async def test_unknown_node_type_fails(self, node_manager, execution_context):
        result = await node_manager.execute("x", "does-not-exist", {}, {}, execution_context)

        assert not result.success
        assert "not found" in result.error

    async def test_missing_required_input_fails(self, node_manager, execution_context):
        """Validation rejects the call before the node runs"""
        result = await node_manager.execute("pass", "test-passthrough", {}, {}, execution_context)

        assert not result.success
        assert result.error_type == "ValidationError"
        assert "Required input 'data' is missing" in result.error
        assert NODE_CALLS == []

    async def test_validation_can_be_skipped(self, node_manager, execution_context):
        result = await node_manager.execute(
            "fail", "test-failing", {}, {}, execution_context,
            options=NodeExecutionOptions(validate_inputs=False)
        )

        assert NODE_CALLS == ["fail"]
        assert not result.success

    async def test_source_node_receives_config_as_inputs(self, node_manager, execution_context):
        records = [{"id": 10}]

        result = await node_manager.execute(
            "src", "test-source", {"records": records}, {}, execution_context
        )

        assert result.data == {"records": records}

    async def test_required_input_supplied_by_source_config(self, node_manager, execution_context):
        """Config merged into a source node's inputs satisfies its required pins"""
        result = await node_manager.execute(
            "query", "test-query-source", {"query": "SELECT 1"}, {}, execution_context
        )

        assert result.success
        assert result.data == {"rows": [{"query": "SELECT 1"}]}
        assert NODE_CALLS == ["query"]

    async def test_source_without_required_config_fails(self, node_manager, execution_context):
        result = await node_manager.execute("query", "test-query-source", {}, {}, execution_context)

        assert result.error_type == "ValidationError"
        assert "Required input 'query' is missing" in result.error
        assert NODE_CALLS == []

    async def test_timeout(self, node_manager, execution_context):
        result = await node_manager.execute(
            "slow", "test-slow", {"delay_ms": 2000}, {}, execution_context,
            options=NodeExecutionOptions(timeout_ms=20)
        )

        assert not result.success
        assert result.error_type == "NodeTimeoutError"
        assert "timed out after 20ms" in result.error

    async def test_timeout_from_config(self, node_manager, execution_context):
        result = await node_manager.execute(
            "slow", "test-slow", {"delay_ms": 2000, "timeout_ms": 20}, {}, execution_context
        )

        assert result.error_type == "NodeTimeoutError"

    async def test_cancel_in_flight_node(self, node_manager, execution_context, event_sink):
        task = asyncio.ensure_future(node_manager.execute(
            "slow", "test-slow", {"delay_ms": 5000}, {}, execution_context
        ))
        await wait_for_condition(lambda: NODE_CALLS == ["slow"])

        cancelled = await node_manager.cancel("slow", execution_context)
        result = await asyncio.wait_for(task, timeout=1)

        assert cancelled
        assert not result.success
        assert result.error_type == "CancellationError"
        assert "node.execution.cancelled" in event_sink.names()
        assert node_manager.get_active_executions() == []

    async def test_cancel_unknown_node(self, node_manager, execution_context):
        assert await node_manager.cancel("ghost", execution_context) is False

    async def test_pre_cancelled_token(self, node_manager, execution_context):
        token = CancellationToken()
        token.cancel()

        result = await node_manager.execute(
            "pass", "test-passthrough", {}, {"data": []}, execution_context,
            cancellation_token=token
        )

        assert result.error_type == "CancellationError"
        assert NODE_CALLS == []

    async def test_active_execution_tracking(self, node_manager, execution_context):
        task = asyncio.ensure_future(node_manager.execute(
            "slow", "test-slow", {"delay_ms": 50}, {}, execution_context
        ))
        await wait_for_condition(lambda: NODE_CALLS == ["slow"])

        active = node_manager.get_active_executions()
        assert [entry.node_id for entry in active] == ["slow"]

        await task
        assert node_manager.get_active_executions() == []

    async def test_dict_results_are_accepted(self, execution_context):
        node = Mock()
        node.execute = AsyncMock(return_value={"success": True, "data": {"out": 1}, "records_processed": 1})
        node.configure = None
        node.validate_inputs = None
        node.rollback = None
        runtime = Mock()
        runtime.create.return_value = node
        manager = NodeExecutionManager(runtime)

        result = await manager.execute("n", "custom", {}, {"in": 1}, execution_context)

        assert result.success
        assert result.data == {"out": 1}

    async def test_repository_errors_do_not_fail_node(self, node_manager, execution_context, repository):
        with patch.object(repository, "append_node_execution_log", AsyncMock(side_effect=RuntimeError("db down"))):
            result = await node_manager.execute(
                "pass", "test-passthrough", {}, {"data": [1]}, execution_context
            )

        assert result.success


@pytest.mark.unit
class TestNodeCircuitBreaking:
    """Test circuit breaker integration"""

    async def test_failures_open_circuit(self, node_manager, execution_context, circuit_breaker):
        for _ in range(3):
            await node_manager.execute("fail", "test-failing", {}, {}, execution_context)

        assert (await circuit_breaker.get_state("test-failing")).state == CircuitState.OPEN

        NODE_CALLS.clear()
        result = await node_manager.execute("fail", "test-failing", {}, {}, execution_context)

        assert result.error_type == "CircuitOpenError"
        assert NODE_CALLS == []
        assert (await circuit_breaker.get_state("test-failing")).failures == 3

    async def test_success_after_cooldown_closes(self, node_manager, execution_context, circuit_breaker, fake_clock):
        for _ in range(3):
            await node_manager.execute("pass", "test-passthrough", {}, {}, execution_context)
        assert (await circuit_breaker.get_state("test-passthrough")).state == CircuitState.OPEN

        fake_clock.advance(1000)
        result = await node_manager.execute(
            "pass", "test-passthrough", {}, {"data": [1]}, execution_context
        )

        assert result.success
        assert (await circuit_breaker.get_state("test-passthrough")).state == CircuitState.CLOSED

    async def test_five_failures_then_cooldown(self, registry, execution_context, fake_clock):
        """Default threshold: the sixth call is rejected, the call after cooldown closes"""
        breaker = CircuitBreaker(
            store=InMemoryCircuitBreakerStore(),
            threshold=5,
            cooldown_ms=60000,
            clock=fake_clock
        )
        manager = NodeExecutionManager(registry, circuit_breaker=breaker)

        for _ in range(5):
            result = await manager.execute("flaky", "test-flaky", {"fail_times": 1}, {}, execution_context)
            assert result.error == "attempt 1 failed"
        assert len(NODE_CALLS) == 5

        rejected = await manager.execute("flaky", "test-flaky", {"fail_times": 1}, {}, execution_context)
        assert rejected.error_type == "CircuitOpenError"
        assert len(NODE_CALLS) == 5

        fake_clock.advance(60000)
        trial = await manager.execute(
            "flaky", "test-flaky", {"fail_times": 0}, {}, execution_context
        )

        assert trial.success
        state = await breaker.get_state("test-flaky")
        assert state.state == CircuitState.CLOSED
        assert state.failures == 0

    async def test_cancellation_does_not_count_as_failure(self, node_manager, execution_context, circuit_breaker):
        token = CancellationToken()
        token.cancel()

        await node_manager.execute(
            "pass", "test-passthrough", {}, {"data": []}, execution_context,
            cancellation_token=token
        )

        assert (await circuit_breaker.get_state("test-passthrough")).failures == 0


@pytest.mark.unit
class TestNodeRetry:
    """Test the retry driver"""

    async def test_retry_until_success(self, node_manager, execution_context, sleep_calls):
        result = await node_manager.retry(
            "flaky", "test-flaky", {"fail_times": 2}, {}, execution_context,
            options=NodeExecutionOptions(retry_policy=RetryPolicy(max_attempts=3, jitter=False))
        )

        assert result.success
        assert result.metadata["attempt"] == 3
        assert NODE_CALLS == ["flaky", "flaky", "flaky"]
        assert sleep_calls == [1.0, 2.0]

    async def test_retry_exhausted(self, node_manager, execution_context, sleep_calls):
        with pytest.raises(RetryExhaustedError) as exc_info:
            await node_manager.retry(
                "flaky", "test-flaky", {"fail_times": 10}, {}, execution_context,
                options=NodeExecutionOptions(retry_policy=RetryPolicy(max_attempts=3, jitter=False))
            )

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error == "attempt 3 failed"
        assert len(NODE_CALLS) == 3
        assert sleep_calls == [1.0, 2.0]

    async def test_retry_uses_settings_policy(self, node_manager, execution_context, sleep_calls):
        result = await node_manager.retry(
            "flaky", "test-flaky", {"fail_times": 1}, {}, execution_context
        )

        assert result.success
        assert sleep_calls == [1.0]

    async def test_retry_starting_attempt(self, node_manager, execution_context, sleep_calls):
        result = await node_manager.retry(
            "flaky", "test-flaky", {"fail_times": 1}, {}, execution_context, attempt=2,
            options=NodeExecutionOptions(retry_policy=RetryPolicy(max_attempts=3, jitter=False))
        )

        assert result.success
        assert NODE_CALLS == ["flaky"]
        assert sleep_calls == [1.0]

    async def test_retry_stops_on_cancellation(self, node_manager, execution_context):
        token = CancellationToken()
        token.cancel()

        result = await node_manager.retry(
            "flaky", "test-flaky", {"fail_times": 5}, {}, execution_context,
            cancellation_token=token
        )

        assert result.error_type == "CancellationError"
        assert NODE_CALLS == []


@pytest.mark.unit
class TestNodeRollback:
    """Test compensation hooks"""

    async def test_rollback_invokes_hook(self, node_manager, execution_context):
        ran = await node_manager.rollback(
            "src", {"node_type": "test-source", "created": 3}, execution_context
        )

        assert ran is True
        assert ROLLBACK_CALLS == ["src"]

    async def test_missing_hook_is_noop(self, node_manager, execution_context):
        ran = await node_manager.rollback("plain", {"node_type": "test-plain"}, execution_context)

        assert ran is False

    async def test_hook_failure_raises(self, node_manager, execution_context):
        with pytest.raises(RollbackError, match="compensation failed"):
            await node_manager.rollback(
                "broken", {"node_type": "test-broken-rollback"}, execution_context
            )

    async def test_missing_node_type(self, node_manager, execution_context):
        with pytest.raises(RollbackError, match="node type"):
            await node_manager.rollback("src", {"created": 3}, execution_context)


@pytest.mark.unit
class TestValidateNodeInput:
    """Test standalone input validation"""

    async def test_valid_inputs(self, node_manager):
        result = await node_manager.validate_node_input("test-passthrough", {"data": [1]})

        assert result.valid
        assert result.errors == []

    async def test_missing_required_input(self, node_manager):
        result = await node_manager.validate_node_input("test-passthrough", {})

        assert not result.valid
        assert result.errors == ["Required input 'data' is missing"]

    async def test_source_config_satisfies_required_input(self, node_manager):
        result = await node_manager.validate_node_input("test-query-source", {}, {"query": "SELECT 1"})

        assert result.valid
        assert result.errors == []

    async def test_source_without_config_is_invalid(self, node_manager):
        result = await node_manager.validate_node_input("test-query-source", {})

        assert not result.valid
        assert result.errors == ["Required input 'query' is missing"]

    async def test_unknown_node_type(self, node_manager):
        result = await node_manager.validate_node_input("nope", {})

        assert not result.valid
        assert "Validation failed" in result.errors[0]

    async def test_catalog_fallback_without_hook(self, catalog, execution_context):
        """Nodes without a validation hook are checked against catalog pins"""
        node = Mock(spec=["execute"])
        node.execute = AsyncMock(return_value=NodeResult.ok())
        runtime = Mock()
        runtime.create.return_value = node
        manager = NodeExecutionManager(runtime, catalog=catalog)

        result = await manager.validate_node_input("test-passthrough", {})

        assert not result.valid
        assert result.errors == ["Required input 'data' is missing"]
