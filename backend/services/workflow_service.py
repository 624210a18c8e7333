"""Workflow service: definitions, activation and execution rows."""

import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ExecutionStatus
from db.models.execution import WorkflowExecution
from db.models.workflow import Workflow
from services.base import BaseService
from workflow.definition import WorkflowGraph, validate_for_activation

logger = logging.getLogger(__name__)


class WorkflowService(BaseService[Workflow]):
    """Service for workflow definitions."""

    def __init__(self, db: AsyncSession):
        super().__init__(Workflow, db)

    async def get_for_tenant(self, tenant_id: str, workflow_id: str) -> Optional[Workflow]:
        return await self.get_by_id_and_tenant(workflow_id, tenant_id)

    async def create_workflow(
        self,
        tenant_id: str,
        name: str,
        nodes: list[dict] = None,
        edges: list[dict] = None,
        description: str = "",
        is_active: bool = False,
    ) -> Workflow:
        """Create a new workflow. Active workflows are validated first."""
        nodes = nodes or []
        edges = edges or []
        if is_active:
            validate_for_activation(WorkflowGraph.from_definition(nodes, edges))
        return await self.create({
            "tenant_id": tenant_id,
            "name": name,
            "description": description,
            "nodes": nodes,
            "edges": edges,
            "is_active": is_active,
            "version": 1,
        })

    async def update_definition(
        self,
        workflow_id: str,
        tenant_id: str,
        nodes: list[dict],
        edges: list[dict],
    ) -> Optional[Workflow]:
        """Replace the graph and bump version. Active workflows are re-validated."""
        wf = await self.get_for_tenant(tenant_id, workflow_id)
        if not wf:
            return None
        if wf.is_active:
            validate_for_activation(WorkflowGraph.from_definition(nodes, edges, workflow_id))
        wf.nodes = list(nodes)
        wf.edges = list(edges)
        wf.version = wf.version + 1
        await self.db.flush()
        await self.db.refresh(wf)
        return wf

    async def activate(self, workflow_id: str, tenant_id: str) -> Optional[Workflow]:
        """Validate the graph and make the workflow triggerable.

        Raises:
            WorkflowValidationError: If the graph cannot be executed
        """
        wf = await self.get_for_tenant(tenant_id, workflow_id)
        if not wf:
            return None
        validate_for_activation(WorkflowGraph.from_workflow(wf))
        wf.is_active = True
        await self.db.flush()
        await self.db.refresh(wf)
        logger.info(f"Workflow {workflow_id} activated (version {wf.version})")
        return wf

    async def deactivate(self, workflow_id: str, tenant_id: str) -> Optional[Workflow]:
        wf = await self.get_for_tenant(tenant_id, workflow_id)
        if not wf:
            return None
        wf.is_active = False
        await self.db.flush()
        return wf

    async def list_active(self, tenant_id: str) -> Sequence[Workflow]:
        """Active workflows of a tenant, oldest first (trigger priority order)."""
        result = await self.db.execute(
            select(Workflow)
            .where(Workflow.tenant_id == tenant_id, Workflow.is_active.is_(True))
            .order_by(Workflow.created_at.asc())
        )
        return result.scalars().all()


class ExecutionService(BaseService[WorkflowExecution]):
    """Service for execution rows."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowExecution, db)

    async def create_execution(
        self,
        tenant_id: str,
        workflow_id: str,
        session_id: str,
        contact_id: str,
        current_node_id: Optional[str],
        context: dict,
        expires_at: datetime,
        status: ExecutionStatus = ExecutionStatus.RUNNING,
    ) -> WorkflowExecution:
        return await self.create({
            "tenant_id": tenant_id,
            "workflow_id": workflow_id,
            "session_id": session_id,
            "contact_id": contact_id,
            "current_node_id": current_node_id,
            "status": ExecutionStatus(status).value,
            "context": context,
            "interaction_count": 0,
            "expires_at": expires_at,
        })

    async def get_execution(self, tenant_id: str, execution_id: str) -> Optional[WorkflowExecution]:
        return await self.get_by_id_and_tenant(execution_id, tenant_id)

    async def get_active_execution(
        self,
        tenant_id: str,
        session_id: str,
        contact_id: str,
        statuses: Sequence[ExecutionStatus] = ExecutionStatus.active(),
    ) -> Optional[WorkflowExecution]:
        """Most recent RUNNING or WAITING execution for one contact."""
        result = await self.db.execute(
            select(WorkflowExecution)
            .where(
                WorkflowExecution.tenant_id == tenant_id,
                WorkflowExecution.session_id == session_id,
                WorkflowExecution.contact_id == contact_id,
                WorkflowExecution.status.in_([ExecutionStatus(s).value for s in statuses]),
            )
            .order_by(WorkflowExecution.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update_execution(self, execution_id: str, **fields: Any) -> bool:
        """Persist the given fields. Status enums are stored by value."""
        if "status" in fields:
            fields["status"] = ExecutionStatus(fields["status"]).value
        return await self.update_fields(execution_id, **fields)

    async def increment_interaction_count(self, execution_id: str) -> int:
        """Atomically bump the interaction counter and return the new value."""
        await self.db.execute(
            update(WorkflowExecution)
            .where(WorkflowExecution.id == execution_id)
            .values(interaction_count=WorkflowExecution.interaction_count + 1)
        )
        result = await self.db.execute(
            select(WorkflowExecution.interaction_count).where(WorkflowExecution.id == execution_id)
        )
        return result.scalar_one()

    @staticmethod
    def is_interaction_limit_reached(interaction_count: int, max_interactions: int) -> bool:
        return interaction_count > max_interactions

    async def list_pending(self) -> Sequence[WorkflowExecution]:
        """Every RUNNING or WAITING execution across tenants, oldest update first."""
        result = await self.db.execute(
            select(WorkflowExecution)
            .where(WorkflowExecution.status.in_([s.value for s in ExecutionStatus.active()]))
            .order_by(WorkflowExecution.updated_at.asc())
        )
        return result.scalars().all()
