"""Base CRUD service with tenant-scoped queries.

All service classes inherit from this. Provides standard
create/read/update with tenant scoping (multi-tenant).
"""

from typing import Any, Generic, Optional, Type, TypeVar
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseService(Generic[ModelType]):
    """Generic CRUD service for any SQLAlchemy model.

    Usage:
        class WorkflowService(BaseService[Workflow]):
            def __init__(self, db: AsyncSession):
                super().__init__(Workflow, db)
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    # ─── Read ──────────────────────────────────────────────

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Get a single record by ID."""
        result = await self.db.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def get_by_id_and_tenant(self, id: str, tenant_id: str) -> Optional[ModelType]:
        """Get a single record scoped to a tenant."""
        query = select(self.model).where(
            self.model.id == id,
            self.model.tenant_id == tenant_id,
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    # ─── Create ────────────────────────────────────────────

    async def create(self, data: dict[str, Any]) -> ModelType:
        """Create a new record.

        Args:
            data: Dict of field values

        Returns:
            Created model instance
        """
        if "id" not in data:
            data["id"] = str(uuid4())

        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    # ─── Update ────────────────────────────────────────────

    async def update_fields(self, id: str, **fields: Any) -> bool:
        """Write fields straight to the row with a Core UPDATE.

        Unlike attribute assignment this does not need the instance to be
        loaded in the current session, and explicit None values are kept.

        Returns:
            True if a row was updated
        """
        if not fields:
            return False
        result = await self.db.execute(
            update(self.model).where(self.model.id == id).values(**fields)
        )
        return (result.rowcount or 0) > 0
