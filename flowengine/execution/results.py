"""
Execution result records
Immutable node outcomes plus run-level results and log entries
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import ExecutionStatus


@dataclass(frozen=True)
class NodeResult:
    """Outcome of one node invocation"""

    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    records_processed: int = 0
    duration_ms: float = 0.0
    rollback_data: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        data: Optional[Dict[str, Any]] = None,
        records_processed: int = 0,
        rollback_data: Optional[Dict[str, Any]] = None,
        **metadata: Any
    ) -> "NodeResult":
        return cls(
            success=True,
            data=dict(data or {}),
            records_processed=records_processed,
            rollback_data=rollback_data,
            metadata=metadata
        )

    @classmethod
    def failure(cls, error: Any, error_type: Optional[str] = None) -> "NodeResult":
        if isinstance(error, BaseException):
            return cls(
                success=False,
                error=str(error),
                error_type=error_type or type(error).__name__
            )
        return cls(success=False, error=str(error), error_type=error_type)

    def with_duration(self, duration_ms: float) -> "NodeResult":
        return replace(self, duration_ms=duration_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_type": self.error_type,
            "records_processed": self.records_processed,
            "duration_ms": self.duration_ms,
            "has_rollback_data": self.rollback_data is not None,
        }


@dataclass
class RollbackOperation:
    """Compensation entry pushed for a successful node"""

    node_id: str
    data: Dict[str, Any]
    operation: str = "rollback"  # rollback, compensate
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ExecutionLogEntry:
    """Run-level log line kept on the execution result"""

    node_id: str
    status: str
    message: str = ""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    duration_ms: float = 0.0
    records_processed: int = 0


@dataclass
class NodeExecutionLog:
    """Per-node record appended to the execution repository"""

    execution_id: str
    node_id: str
    node_type: str
    status: str
    started_at: datetime
    completed_at: datetime
    duration_ms: float
    records_processed: int = 0
    error: Optional[str] = None
    attempt: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "records_processed": self.records_processed,
            "error": self.error,
            "attempt": self.attempt,
        }


@dataclass
class ExecutionResult:
    """Final outcome of a flow run"""

    execution_id: str
    flow_id: str
    status: ExecutionStatus
    success: bool
    duration_ms: float = 0.0
    records_processed: int = 0
    node_results: Dict[str, NodeResult] = field(default_factory=dict)
    completed_nodes: List[str] = field(default_factory=list)
    failed_nodes: List[str] = field(default_factory=list)
    execution_order: List[str] = field(default_factory=list)
    rolled_back: List[str] = field(default_factory=list)
    logs: List[ExecutionLogEntry] = field(default_factory=list)
    error: Optional[str] = None
    failed_node_id: Optional[str] = None

    def get_summary(self) -> Dict[str, Any]:
        """Get execution summary"""
        return {
            "execution_id": self.execution_id,
            "flow_id": self.flow_id,
            "status": self.status.value,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "records_processed": self.records_processed,
            "nodes_total": len(self.execution_order),
            "nodes_completed": len(self.completed_nodes),
            "nodes_failed": len(self.failed_nodes),
            "rolled_back": list(self.rolled_back),
            "failed_node_id": self.failed_node_id,
            "error": self.error,
        }
