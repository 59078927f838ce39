"""
Execution Orchestrator
Drives a flow run end to end: validation, ordered node execution,
pause / resume / cancel and best-effort rollback
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import structlog

from config.settings import Settings, settings as default_settings
from ..interfaces import Catalog, EventSink, ExecutionRepository
from .context import ExecutionContext, ExecutionContextManager
from .dataflow import DataFlowManager
from .exceptions import (
    BadRequestError,
    CancellationError,
    ExecutionError,
    ExecutionNotFoundError,
    FlowEngineError,
    RetryExhaustedError,
    RollbackError,
    StateConflictError,
    StructuralError,
    TransformationError,
    ValidationError,
)
from .graph import ExecutionGraph
from .models import ExecutionStatus, Flow, NodeInstance
from .node_manager import CancellationToken, NodeExecutionManager, NodeExecutionOptions, RetryPolicy
from .results import ExecutionLogEntry, ExecutionResult, NodeResult, RollbackOperation

logger = structlog.get_logger(__name__)

# Node config keys consumed by the engine rather than the node itself
ENGINE_CONFIG_KEYS = ("critical", "retry", "timeout_ms")


@dataclass
class RunOptions:
    """Options for a single run"""

    execution_id: Optional[str] = None
    resume_from_node: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    completed_nodes: List[str] = field(default_factory=list)
    previous_results: Dict[str, NodeResult] = field(default_factory=dict)


@dataclass
class ExecutionState:
    """Mutable state of one active run, owned by the orchestrator"""

    id: str
    flow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    context: Optional[ExecutionContext] = None
    current_node_id: Optional[str] = None

    completed_nodes: List[str] = field(default_factory=list)
    failed_nodes: List[str] = field(default_factory=list)
    node_results: Dict[str, NodeResult] = field(default_factory=dict)
    rollback_stack: List[RollbackOperation] = field(default_factory=list)
    rolled_back: List[str] = field(default_factory=list)
    execution_order: List[str] = field(default_factory=list)
    logs: List[ExecutionLogEntry] = field(default_factory=list)

    records_processed: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)
    paused_at: Optional[datetime] = None
    error: Optional[str] = None
    failed_node_id: Optional[str] = None
    cancellation_token: CancellationToken = field(default_factory=CancellationToken)
    rollback_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "completed_nodes": list(self.completed_nodes),
            "failed_nodes": list(self.failed_nodes),
            "records_processed": self.records_processed,
            "started_at": self.started_at.isoformat(),
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "pending_rollbacks": len(self.rollback_stack),
        }


class ExecutionOrchestrator:
    """
    Runs flows one node at a time in topological order

    Features:
    - Structural and catalog validation before any node runs
    - Critical / non-critical node failure handling
    - Cooperative pause and resume between nodes
    - Cancellation with reverse-order rollback
    - Resume from a given node, skipping completed ones
    """

    def __init__(
        self,
        node_manager: NodeExecutionManager,
        data_flow: DataFlowManager,
        context_manager: ExecutionContextManager,
        catalog: Catalog,
        repository: Optional[ExecutionRepository] = None,
        event_sink: Optional[EventSink] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.node_manager = node_manager
        self.data_flow = data_flow
        self.context_manager = context_manager
        self.catalog = catalog
        self.repository = repository
        self.event_sink = event_sink
        self.settings = settings or default_settings
        self._sleep = sleep
        self._executions: Dict[str, ExecutionState] = {}

    async def run(self, flow: Flow, options: Optional[RunOptions] = None) -> ExecutionResult:
        """
        Execute a flow.

        Args:
            flow: Flow to execute
            options: Execution id, resume point and context overrides

        Returns:
            ExecutionResult with terminal status and per-node results

        Raises:
            StructuralError: Empty flow, dangling connection or cycle
            ValidationError: Unknown node type or unknown resume node
            BadRequestError: Invalid connections, or execution id already active
        """
        options = options or RunOptions()
        execution_id = options.execution_id or f"exec_{uuid4().hex}"
        if execution_id in self._executions:
            raise BadRequestError("Execution is already active", execution_id=execution_id)

        state = ExecutionState(id=execution_id, flow_id=flow.id)
        self._executions[execution_id] = state
        start = time.perf_counter()

        logger.info(
            "flow_execution_started",
            execution_id=execution_id,
            flow_id=flow.id,
            node_count=len(flow.nodes),
            connection_count=len(flow.connections),
            resume_from_node=options.resume_from_node
        )

        try:
            state.context = await self.context_manager.create(execution_id, flow, options.context)

            try:
                graph = await self._validate(flow, state)
                remaining = await self._prepare_resume(state, options)
            except FlowEngineError as e:
                state.status = ExecutionStatus.FAILED
                state.error = str(e)
                await self._update_status(state, error=state.error)
                self._emit("execution.failed", {
                    "execution_id": execution_id,
                    "flow_id": flow.id,
                    "error": state.error,
                    "stage": "validation",
                })
                logger.error(
                    "flow_validation_failed",
                    execution_id=execution_id,
                    flow_id=flow.id,
                    error=state.error,
                    error_type=type(e).__name__
                )
                raise

            if state.status == ExecutionStatus.PENDING:
                state.status = ExecutionStatus.RUNNING

            # A run cancelled during validation never starts
            if state.status != ExecutionStatus.CANCELLED:
                await self._create_record(state, flow)
                self._emit("execution.started", {
                    "execution_id": execution_id,
                    "flow_id": flow.id,
                    "execution_order": list(state.execution_order),
                    "correlation_id": state.context.correlation_id,
                    "trace_id": state.context.trace_id,
                })

                try:
                    await self._execute_nodes(graph, remaining, state)
                    if state.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED):
                        state.status = ExecutionStatus.SUCCESS
                except ExecutionError as e:
                    state.status = ExecutionStatus.FAILED
                    state.error = e.message

            if state.status == ExecutionStatus.CANCELLED:
                # Waits for a rollback cancel() already started, then drains what is left
                await self._rollback(state)

            duration_ms = round((time.perf_counter() - start) * 1000, 3)
            await self._finalize(state, duration_ms)
            return self._build_result(state, duration_ms)

        finally:
            self.context_manager.cleanup(execution_id)
            self._executions.pop(execution_id, None)

    async def pause(self, execution_id: str) -> None:
        """Pause a running execution before its next node"""
        state = self._require_state(execution_id)
        if state.status != ExecutionStatus.RUNNING:
            raise StateConflictError(
                f"Cannot pause execution in status {state.status.value}",
                current_status=state.status.value,
                execution_id=execution_id
            )

        state.status = ExecutionStatus.PAUSED
        state.paused_at = datetime.utcnow()
        if state.current_node_id:
            await self.node_manager.pause_node(state.current_node_id, state.context)

        await self._update_status(state)
        self._emit("execution.paused", {"execution_id": execution_id, "flow_id": state.flow_id})
        logger.info("flow_execution_paused", execution_id=execution_id)

    async def resume(self, execution_id: str) -> None:
        """Resume a paused execution"""
        state = self._require_state(execution_id)
        if state.status != ExecutionStatus.PAUSED:
            raise StateConflictError(
                f"Cannot resume execution in status {state.status.value}",
                current_status=state.status.value,
                execution_id=execution_id
            )

        state.status = ExecutionStatus.RUNNING
        paused_for_ms = None
        if state.paused_at:
            paused_for_ms = (datetime.utcnow() - state.paused_at).total_seconds() * 1000
        state.paused_at = None
        if state.current_node_id:
            await self.node_manager.resume_node(state.current_node_id, state.context)

        await self._update_status(state)
        self._emit("execution.resumed", {"execution_id": execution_id, "flow_id": state.flow_id})
        logger.info("flow_execution_resumed", execution_id=execution_id, paused_for_ms=paused_for_ms)

    async def cancel(self, execution_id: str) -> None:
        """Cancel an execution and roll back completed nodes"""
        state = self._require_state(execution_id)
        if state.status.is_terminal:
            raise StateConflictError(
                f"Cannot cancel execution in status {state.status.value}",
                current_status=state.status.value,
                execution_id=execution_id
            )

        state.status = ExecutionStatus.CANCELLED
        state.cancellation_token.cancel("execution cancelled")
        if state.current_node_id and state.context is not None:
            await self.node_manager.cancel(state.current_node_id, state.context)

        logger.info(
            "flow_execution_cancelling",
            execution_id=execution_id,
            current_node_id=state.current_node_id,
            pending_rollbacks=len(state.rollback_stack)
        )

        await self._rollback(state)
        await self._update_status(state, end_time=datetime.utcnow())
        self._emit("execution.cancelled", {
            "execution_id": execution_id,
            "flow_id": state.flow_id,
            "rolled_back": list(state.rolled_back),
        })

    def get_execution_state(self, execution_id: str) -> Optional[ExecutionState]:
        return self._executions.get(execution_id)

    def list_active_executions(self) -> List[Dict[str, Any]]:
        return [state.to_dict() for state in self._executions.values()]

    # Validation

    async def _validate(self, flow: Flow, state: ExecutionState) -> ExecutionGraph:
        if not flow.nodes:
            raise StructuralError("Flow must contain at least one node", execution_id=state.id)

        unknown = []
        for node in flow.nodes:
            definition = await self.catalog.get_node_definition(node.type, node.version)
            if definition is None:
                unknown.append(f"{node.id} ({node.type})")
        if unknown:
            raise ValidationError(
                f"Unknown node types: {', '.join(unknown)}",
                errors=unknown,
                execution_id=state.id
            )

        invalid_retry = []
        for node in flow.nodes:
            retry_config = node.config.get("retry")
            if not retry_config:
                continue
            try:
                RetryPolicy.from_config(retry_config, self.settings)
            except ValidationError as e:
                invalid_retry.append(f"{node.id}: {e.message}")
        if invalid_retry:
            raise ValidationError(
                f"Invalid retry configuration: {'; '.join(invalid_retry)}",
                errors=invalid_retry,
                execution_id=state.id
            )

        graph = ExecutionGraph.from_flow(flow)
        graph.validate()
        await self.data_flow.validate_flow_connections(flow)

        state.execution_order = graph.topological_order()
        return graph

    async def _prepare_resume(self, state: ExecutionState, options: RunOptions) -> List[str]:
        order = state.execution_order
        completed = list(options.completed_nodes)
        state.node_results.update(options.previous_results)

        start_index = 0
        if options.resume_from_node:
            if options.resume_from_node not in order:
                raise ValidationError(
                    f"Resume node {options.resume_from_node} is not part of the flow",
                    execution_id=state.id
                )
            start_index = order.index(options.resume_from_node)

            record = await self._get_record(state.id)
            if record:
                completed.extend(record.get("completed_nodes") or [])

        for node_id in completed:
            if node_id in order and node_id not in state.completed_nodes:
                state.completed_nodes.append(node_id)

        return order[start_index:]

    # Main loop

    async def _execute_nodes(
        self,
        graph: ExecutionGraph,
        node_ids: List[str],
        state: ExecutionState
    ) -> None:
        poll_interval = self.settings.PAUSE_POLL_INTERVAL_MS / 1000

        for node_id in node_ids:
            if state.status == ExecutionStatus.CANCELLED:
                break

            while state.status == ExecutionStatus.PAUSED:
                await self._sleep(poll_interval)
            if state.status == ExecutionStatus.CANCELLED:
                break

            if node_id in state.completed_nodes:
                logger.debug("node_already_completed", execution_id=state.id, node_id=node_id)
                continue

            node: NodeInstance = graph.get_node(node_id)
            state.current_node_id = node_id
            try:
                result = await self._run_node(node, graph, state)
                self._record_result(node, result, state)

                if state.status == ExecutionStatus.CANCELLED:
                    break

                if not result.success:
                    if node.critical:
                        state.failed_node_id = node_id
                        raise ExecutionError(
                            f"Critical node {node_id} failed: {result.error}",
                            execution_id=state.id,
                            node_id=node_id
                        )
                    logger.warning(
                        "non_critical_node_failed",
                        execution_id=state.id,
                        node_id=node_id,
                        error=result.error
                    )
            finally:
                state.current_node_id = None

    async def _run_node(
        self,
        node: NodeInstance,
        graph: ExecutionGraph,
        state: ExecutionState
    ) -> NodeResult:
        try:
            inputs = await self.data_flow.collect_inputs(node.id, graph, state.node_results, state.id)
        except TransformationError as e:
            return NodeResult.failure(e)

        config = {k: v for k, v in node.config.items() if k not in ENGINE_CONFIG_KEYS}
        options = NodeExecutionOptions(timeout_ms=node.config.get("timeout_ms"))
        retry_config = node.config.get("retry")

        if not retry_config:
            return await self.node_manager.execute(
                node.id, node.type, config, inputs, state.context, options,
                cancellation_token=state.cancellation_token
            )

        try:
            options.retry_policy = RetryPolicy.from_config(retry_config, self.settings)
            return await self.node_manager.retry(
                node.id, node.type, config, inputs, state.context,
                options=options,
                cancellation_token=state.cancellation_token
            )
        except (RetryExhaustedError, CancellationError, ValidationError) as e:
            return NodeResult.failure(e)

    def _record_result(self, node: NodeInstance, result: NodeResult, state: ExecutionState) -> None:
        state.node_results[node.id] = result
        if result.success:
            state.completed_nodes.append(node.id)
            if result.rollback_data is not None:
                payload = {"node_type": node.type, **result.rollback_data}
                state.rollback_stack.append(RollbackOperation(
                    node_id=node.id,
                    data=payload,
                    operation=payload.get("operation", "rollback")
                ))
        else:
            state.failed_nodes.append(node.id)

        state.records_processed += result.records_processed
        state.logs.append(ExecutionLogEntry(
            node_id=node.id,
            status="success" if result.success else "failed",
            message=result.error or "",
            duration_ms=result.duration_ms,
            records_processed=result.records_processed
        ))

    # Rollback

    async def _rollback(self, state: ExecutionState) -> None:
        """
        Replay compensation entries newest first, skipping failures.

        Both cancel() and run() may call this; the state's rollback lock
        keeps a single drainer so hooks never interleave.
        """
        async with state.rollback_lock:
            if not state.rollback_stack:
                return

            logger.info(
                "flow_rollback_started",
                execution_id=state.id,
                entries=len(state.rollback_stack)
            )

            while state.rollback_stack:
                entry = state.rollback_stack.pop()
                try:
                    if await self.node_manager.rollback(entry.node_id, entry.data, state.context):
                        state.rolled_back.append(entry.node_id)
                except RollbackError as e:
                    logger.error(
                        "node_rollback_failed",
                        execution_id=state.id,
                        node_id=entry.node_id,
                        operation=entry.operation,
                        error=e.message
                    )

            logger.info(
                "flow_rollback_completed",
                execution_id=state.id,
                rolled_back=list(state.rolled_back)
            )

    # Persistence and events

    async def _finalize(self, state: ExecutionState, duration_ms: float) -> None:
        logger.info(
            "flow_execution_finished",
            execution_id=state.id,
            flow_id=state.flow_id,
            status=state.status.value,
            duration_ms=duration_ms,
            completed=len(state.completed_nodes),
            failed=len(state.failed_nodes),
            records_processed=state.records_processed
        )

        if state.status == ExecutionStatus.CANCELLED:
            # cancel() already persisted and announced the transition
            return

        await self._update_status(state, end_time=datetime.utcnow(), error=state.error)
        event = "execution.completed" if state.status == ExecutionStatus.SUCCESS else "execution.failed"
        self._emit(event, {
            "execution_id": state.id,
            "flow_id": state.flow_id,
            "status": state.status.value,
            "duration_ms": duration_ms,
            "records_processed": state.records_processed,
            "failed_node_id": state.failed_node_id,
            "error": state.error,
        })

    async def _create_record(self, state: ExecutionState, flow: Flow) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.create_execution_record({
                "id": state.id,
                "flow_id": flow.id,
                "flow_name": flow.name,
                "status": state.status.value,
                "started_at": state.started_at.isoformat(),
                "execution_order": list(state.execution_order),
                "completed_nodes": list(state.completed_nodes),
                "user_id": state.context.user_id if state.context else None,
                "correlation_id": state.context.correlation_id if state.context else None,
                "trace_id": state.context.trace_id if state.context else None,
            })
        except Exception as e:
            logger.error("execution_record_create_failed", execution_id=state.id, error=str(e))

    async def _update_status(
        self,
        state: ExecutionState,
        end_time: Optional[datetime] = None,
        error: Optional[str] = None
    ) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.update_status(
                state.id,
                state.status.value,
                end_time=end_time.isoformat() if end_time else None,
                error=error,
                completed_nodes=list(state.completed_nodes),
                failed_nodes=list(state.failed_nodes),
                records_processed=state.records_processed
            )
        except Exception as e:
            logger.error(
                "execution_status_update_failed",
                execution_id=state.id,
                status=state.status.value,
                error=str(e)
            )

    async def _get_record(self, execution_id: str) -> Optional[Dict[str, Any]]:
        if self.repository is None:
            return None
        try:
            return await self.repository.get_execution_record(execution_id)
        except Exception as e:
            logger.error("execution_record_load_failed", execution_id=execution_id, error=str(e))
            return None

    def _emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.event_sink is None:
            return
        try:
            self.event_sink.emit(event_name, payload)
        except Exception as e:
            logger.warning("event_emit_failed", event_name=event_name, error=str(e))

    # Helpers

    def _require_state(self, execution_id: str) -> ExecutionState:
        state = self._executions.get(execution_id)
        if state is None:
            raise ExecutionNotFoundError("Execution not found", execution_id=execution_id)
        return state

    @staticmethod
    def _build_result(state: ExecutionState, duration_ms: float) -> ExecutionResult:
        return ExecutionResult(
            execution_id=state.id,
            flow_id=state.flow_id,
            status=state.status,
            success=state.status == ExecutionStatus.SUCCESS,
            duration_ms=duration_ms,
            records_processed=state.records_processed,
            node_results=dict(state.node_results),
            completed_nodes=list(state.completed_nodes),
            failed_nodes=list(state.failed_nodes),
            execution_order=list(state.execution_order),
            rolled_back=list(state.rolled_back),
            logs=list(state.logs),
            error=state.error,
            failed_node_id=state.failed_node_id
        )
