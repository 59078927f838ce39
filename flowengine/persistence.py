"""
In-memory execution repository
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class InMemoryExecutionRepository:
    """Stores execution records and node execution logs in process memory"""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._node_logs: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def create_execution_record(self, record: Dict[str, Any]) -> None:
        async with self._lock:
            execution_id = record["id"]
            existing = self._records.get(execution_id, {})
            self._records[execution_id] = {**existing, **copy.deepcopy(record)}
        logger.debug("execution_record_created", execution_id=execution_id)

    async def update_status(self, execution_id: str, status: str, **fields: Any) -> None:
        """Update a record's status, creating a minimal record if none exists"""
        async with self._lock:
            record = self._records.setdefault(execution_id, {"id": execution_id})
            record["status"] = status
            for name, value in fields.items():
                if value is not None:
                    record[name] = copy.deepcopy(value)
        logger.debug("execution_status_updated", execution_id=execution_id, status=status)

    async def append_node_execution_log(self, execution_id: str, entry: Dict[str, Any]) -> None:
        async with self._lock:
            self._node_logs.setdefault(execution_id, []).append(copy.deepcopy(entry))

    async def get_execution_record(self, execution_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(execution_id)
        return copy.deepcopy(record) if record is not None else None

    async def get_node_execution_logs(self, execution_id: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._node_logs.get(execution_id, []))
