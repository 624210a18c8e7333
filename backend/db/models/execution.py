"""Workflow execution model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus
from core.utils import utcnow
from db.base import BaseModel


def _empty_context() -> dict:
    return {"variables": {}, "input": {}, "output": {}}


class WorkflowExecution(BaseModel):
    """One durable run of a workflow against one contact.

    Attributes:
        tenant_id: Owning tenant
        workflow_id: Workflow being executed
        session_id: Chat session the contact talks through
        contact_id: Opaque contact identifier
        current_node_id: Node the run is positioned on (None once finished)
        status: RUNNING, WAITING, COMPLETED, ERROR or EXPIRED
        context: Serialized ExecutionContext {variables, input, output}
        interaction_count: Replies received so far
        started_at / expires_at / completed_at: lifecycle timestamps
        error: Failure text for ERROR executions
    """

    __tablename__ = "workflow_executions"

    tenant_id: Mapped[str] = mapped_column(nullable=False)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    session_id: Mapped[str] = mapped_column(nullable=False)
    contact_id: Mapped[str] = mapped_column(nullable=False)
    current_node_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        default=ExecutionStatus.RUNNING.value, index=True
    )
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=_empty_context)
    interaction_count: Mapped[int] = mapped_column(default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(nullable=True)

    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="executions", lazy="noload"
    )

    __table_args__ = (
        Index(
            "ix_workflow_executions_contact_status",
            "tenant_id", "session_id", "contact_id", "status",
        ),
    )
