"""Database models for the flow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import Workflow
from db.models.execution import WorkflowExecution
from db.models.contact import ContactFlowState, ContactTag
from db.models.execution_journal import ExecutionJournalEntry

__all__ = [
    "Workflow",
    "WorkflowExecution",
    "ContactFlowState",
    "ContactTag",
    "ExecutionJournalEntry",
]
