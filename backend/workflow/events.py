"""
Execution lifecycle events.

The engine emits one ExecutionEvent per lifecycle step (started, node
executed, waiting, resumed, completed, error, expired). Sinks consume
them: the logging sink writes structured log lines, the journal sink
persists an audit trail to ``execution_journal``, and the fanout sink
forwards to several sinks at once. A failing sink is logged and never
fails an execution.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import EventType, LogLevel
from core.utils import safe_serialize, to_iso, utcnow
from db.models.execution_journal import ExecutionJournalEntry

logger = structlog.get_logger(__name__)

_SEVERITY = {
    EventType.ERROR: LogLevel.ERROR,
    EventType.EXPIRED: LogLevel.WARNING,
    EventType.NODE_EXECUTED: LogLevel.DEBUG,
}


@dataclass
class ExecutionEvent:
    """One lifecycle event of one execution."""

    type: EventType
    tenant_id: str
    execution_id: str
    workflow_id: str
    session_id: str
    contact_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def severity(self) -> LogLevel:
        return _SEVERITY.get(self.type, LogLevel.INFO)

    @property
    def node_id(self) -> Optional[str]:
        return self.payload.get("nodeId")

    def describe(self) -> str:
        label = self.type.value.split(".", 1)[-1].replace("_", " ")
        if self.node_id:
            return f"Execution {label} at node {self.node_id}"
        return f"Execution {label}"

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "tenantId": self.tenant_id,
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "sessionId": self.session_id,
            "contactId": self.contact_id,
            "timestamp": to_iso(self.timestamp),
            "payload": safe_serialize(self.payload),
        }


class EventSink(ABC):
    """Consumer of execution events."""

    @abstractmethod
    async def emit(self, event: ExecutionEvent) -> None:
        ...


class LoggingEventSink(EventSink):
    """Writes every event as a structured log line."""

    async def emit(self, event: ExecutionEvent) -> None:
        logger.log(
            _log_level(event.severity),
            event.describe(),
            event_type=event.type.value,
            execution_id=event.execution_id,
            tenant_id=event.tenant_id,
            workflow_id=event.workflow_id,
            node_id=event.node_id,
        )


def _log_level(severity: LogLevel) -> int:
    return getattr(logging, severity.value.upper(), logging.INFO)


class JournalEventSink(EventSink):
    """
    Persistent journal of all execution events.

    Every lifecycle event is appended to ``execution_journal`` in its own
    short transaction so the trail survives even when the execution row
    update that follows fails.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def emit(self, event: ExecutionEvent) -> None:
        async with self.session_factory() as session:
            session.add(ExecutionJournalEntry(
                execution_id=event.execution_id,
                tenant_id=event.tenant_id,
                event_type=event.type.value,
                message=event.describe(),
                details=safe_serialize(event.payload),
                node_id=event.node_id,
                severity=event.severity.value,
            ))
            await session.commit()

    async def get_journal(
        self,
        execution_id: str,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 100,
    ) -> List[dict]:
        """Retrieve journal entries for an execution, oldest first."""
        query = select(ExecutionJournalEntry).where(
            ExecutionJournalEntry.execution_id == execution_id
        )
        if event_type:
            query = query.where(ExecutionJournalEntry.event_type == event_type)
        if severity:
            query = query.where(ExecutionJournalEntry.severity == severity)
        query = query.order_by(ExecutionJournalEntry.created_at.asc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [
                {
                    "event_type": row.event_type,
                    "message": row.message,
                    "details": row.details or {},
                    "node_id": row.node_id,
                    "severity": row.severity,
                    "created_at": to_iso(row.created_at),
                }
                for row in result.scalars().all()
            ]


class FanoutEventSink(EventSink):
    """Forwards each event to every child sink; one failure does not stop the rest."""

    def __init__(self, sinks: List[EventSink]):
        self.sinks = list(sinks)

    async def emit(self, event: ExecutionEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.error(
                    "Event sink failed",
                    sink=type(sink).__name__,
                    event_type=event.type.value,
                    execution_id=event.execution_id,
                    error=str(e),
                )
