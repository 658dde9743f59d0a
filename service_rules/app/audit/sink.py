"""
Audit sinks for rule execution records.
"""

import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, List, Optional

from shared.logging import get_logger

from ..rules.models import ExecutionRecord


class AuditSink(ABC):
    """Receives one record per rule considered by a fire call."""

    @abstractmethod
    async def record(self, record: ExecutionRecord) -> None:
        """Persist or forward an execution record."""

    async def find_records(self, rule_id: Optional[str] = None,
                           limit: int = 50) -> List[ExecutionRecord]:
        """Most recent records first. Sinks that cannot query return nothing."""
        return []


class LoggingAuditSink(AuditSink):
    """Writes execution records to the structured log."""

    def __init__(self, logger_name: str = "rules.audit"):
        self.logger = get_logger(logger_name)

    async def record(self, record: ExecutionRecord) -> None:
        self.logger.info(
            "Rule execution recorded",
            rule_id=record.rule_id,
            rule_version=record.rule_version,
            event_type=record.event_type.value,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            matched=record.matched,
            error=record.error,
            actions=[a.to_dict() for a in record.action_results],
            execution_time_ms=record.execution_time_ms
        )


class InMemoryAuditSink(AuditSink):
    """Keeps the most recent records in a bounded buffer."""

    def __init__(self, max_records: int = 1000):
        self._records: Deque[ExecutionRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    async def record(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._records.append(record)

    async def find_records(self, rule_id: Optional[str] = None,
                           limit: int = 50) -> List[ExecutionRecord]:
        with self._lock:
            records = [r for r in reversed(self._records) if rule_id is None or r.rule_id == rule_id]
        return records[:limit]

    @property
    def records(self) -> List[ExecutionRecord]:
        return list(self._records)

    def clear(self):
        self._records.clear()
