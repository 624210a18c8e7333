"""Per-contact bookkeeping tables."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class ContactFlowState(BaseModel):
    """Reverse lookup from a contact to the execution awaiting its reply.

    Written when an execution suspends on a human reply and removed on
    resume and on every terminal transition. Lives outside the execution
    context so inbound routing needs a single indexed read.
    """

    __tablename__ = "contact_flow_states"

    tenant_id: Mapped[str] = mapped_column(nullable=False, index=True)
    session_id: Mapped[str] = mapped_column(nullable=False)
    contact_id: Mapped[str] = mapped_column(nullable=False)
    workflow_id: Mapped[str] = mapped_column(nullable=False)
    execution_id: Mapped[str] = mapped_column(nullable=False, index=True)
    current_node_id: Mapped[str] = mapped_column(nullable=False)
    variables: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "contact_id", name="uq_contact_flow_states_session_contact"),
    )


class ContactTag(BaseModel):
    """Tags attached to a contact, seeded into every new execution."""

    __tablename__ = "contact_tags"

    tenant_id: Mapped[str] = mapped_column(nullable=False)
    session_id: Mapped[str] = mapped_column(nullable=False)
    contact_id: Mapped[str] = mapped_column(nullable=False)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("tenant_id", "session_id", "contact_id", name="uq_contact_tags_contact"),
        Index("ix_contact_tags_tenant", "tenant_id", "session_id"),
    )
