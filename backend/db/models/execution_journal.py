"""Execution event journal.

Append-only record of every lifecycle event an execution emits, written
by the journal event sink.
"""

from sqlalchemy import JSON, Column, Index, String, Text

from db.base import BaseModel


class ExecutionJournalEntry(BaseModel):
    """
    Journal row for one execution event.

    Records:
    - Starts and resumes
    - Node transitions
    - Suspensions on WAIT and WAIT_REPLY
    - Completion, expiry and failure
    """

    __tablename__ = "execution_journal"

    execution_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False)
    event_type = Column(String(50), nullable=False, index=True)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True, default=dict)
    node_id = Column(String(64), nullable=True)
    severity = Column(String(20), nullable=False, default="info", index=True)

    __table_args__ = (
        Index("ix_journal_exec_time", "execution_id", "created_at"),
        Index("ix_journal_severity", "severity", "created_at"),
    )
