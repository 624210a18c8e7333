"""Per-contact services: reply routing state and tags."""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models.contact import ContactFlowState, ContactTag
from services.base import BaseService


class ContactFlowStateService(BaseService[ContactFlowState]):
    """Reverse lookup (session, contact) → execution awaiting a reply."""

    def __init__(self, db: AsyncSession):
        super().__init__(ContactFlowState, db)

    async def save(
        self,
        tenant_id: str,
        session_id: str,
        contact_id: str,
        workflow_id: str,
        execution_id: str,
        current_node_id: str,
        variables: dict,
        expires_at: datetime,
    ) -> ContactFlowState:
        """Insert or replace the row for this contact."""
        await self.db.execute(
            delete(ContactFlowState).where(
                ContactFlowState.session_id == session_id,
                ContactFlowState.contact_id == contact_id,
            )
        )
        return await self.create({
            "tenant_id": tenant_id,
            "session_id": session_id,
            "contact_id": contact_id,
            "workflow_id": workflow_id,
            "execution_id": execution_id,
            "current_node_id": current_node_id,
            "variables": dict(variables),
            "expires_at": expires_at,
        })

    async def get(self, session_id: str, contact_id: str) -> Optional[ContactFlowState]:
        result = await self.db.execute(
            select(ContactFlowState).where(
                ContactFlowState.session_id == session_id,
                ContactFlowState.contact_id == contact_id,
            )
        )
        return result.scalar_one_or_none()

    async def delete(
        self,
        session_id: str,
        contact_id: str,
        execution_id: Optional[str] = None,
    ) -> bool:
        """Remove the row. With ``execution_id``, only if it still points there."""
        query = delete(ContactFlowState).where(
            ContactFlowState.session_id == session_id,
            ContactFlowState.contact_id == contact_id,
        )
        if execution_id is not None:
            query = query.where(ContactFlowState.execution_id == execution_id)
        result = await self.db.execute(query)
        return (result.rowcount or 0) > 0


class ContactTagsService(BaseService[ContactTag]):
    """Tags attached to a contact."""

    def __init__(self, db: AsyncSession):
        super().__init__(ContactTag, db)

    async def _row(self, tenant_id: str, session_id: str, contact_id: str) -> Optional[ContactTag]:
        result = await self.db.execute(
            select(ContactTag).where(
                ContactTag.tenant_id == tenant_id,
                ContactTag.session_id == session_id,
                ContactTag.contact_id == contact_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_tags(self, tenant_id: str, session_id: str, contact_id: str) -> list[str]:
        row = await self._row(tenant_id, session_id, contact_id)
        return list(row.tags or []) if row else []

    async def add_tags(
        self,
        tenant_id: str,
        session_id: str,
        contact_id: str,
        tags: Iterable[str],
    ) -> list[str]:
        row = await self._row(tenant_id, session_id, contact_id)
        current = list(row.tags or []) if row else []
        for tag in tags:
            if tag not in current:
                current.append(tag)
        if row is None:
            await self.create({
                "tenant_id": tenant_id,
                "session_id": session_id,
                "contact_id": contact_id,
                "tags": current,
            })
        else:
            row.tags = current
            await self.db.flush()
        return current

    async def remove_tags(
        self,
        tenant_id: str,
        session_id: str,
        contact_id: str,
        tags: Iterable[str],
    ) -> list[str]:
        row = await self._row(tenant_id, session_id, contact_id)
        if row is None:
            return []
        drop = set(tags)
        row.tags = [t for t in (row.tags or []) if t not in drop]
        await self.db.flush()
        return list(row.tags)
