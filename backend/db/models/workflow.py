"""Workflow model for the flow engine."""

from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class Workflow(BaseModel):
    """A tenant's node-and-edge automation graph.

    Attributes:
        id: Unique identifier (UUID string)
        tenant_id: Owning tenant
        name: Workflow name
        description: Workflow description
        nodes: JSON list of {id, type, config, position}
        edges: JSON list of {id, source, target, condition, label}
        is_active: Whether inbound messages may trigger it
        version: Bumped on every definition change
    """

    __tablename__ = "workflows"

    tenant_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)
    nodes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    edges: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(default=False, index=True)
    version: Mapped[int] = mapped_column(default=1)

    executions: Mapped[list["WorkflowExecution"]] = relationship(
        "WorkflowExecution",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="noload",
    )
