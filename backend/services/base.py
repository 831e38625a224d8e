"""Base CRUD service shared by the definition services.

Provides lookups, paginated listing and field updates for any model
built on ``db.base.BaseModel``. Models carrying ``SoftDeleteMixin`` get
soft-delete filtering automatically.
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFoundError
from db.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseService(Generic[ModelType]):
    """Generic CRUD service for any SQLAlchemy model.

    Usage:
        class TemplateService(BaseService[WorkflowTemplate]):
            def __init__(self, db: AsyncSession):
                super().__init__(WorkflowTemplate, db)
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    @property
    def _soft_deletes(self) -> bool:
        return hasattr(self.model, "is_deleted")

    # ─── Read ──────────────────────────────────────────────

    async def get_by_id(self, id: str, include_deleted: bool = False) -> Optional[ModelType]:
        """Get a single record by ID."""
        query = select(self.model).where(self.model.id == id)
        if self._soft_deletes and not include_deleted:
            query = query.where(self.model.is_deleted == False)  # noqa: E712
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_or_404(self, id: str) -> ModelType:
        instance = await self.get_by_id(id)
        if instance is None:
            raise NotFoundError(f"{self.model.__name__} {id} not found")
        return instance

    async def list(
        self,
        offset: int = 0,
        limit: int = 50,
        order_by: str = "created_at",
        order_desc: bool = True,
        filters: Optional[dict[str, Any]] = None,
    ) -> tuple[Sequence[ModelType], int]:
        """List records with pagination, filtering, and sorting.

        Returns:
            Tuple of (items, total_count)
        """
        conditions = []
        if self._soft_deletes:
            conditions.append(self.model.is_deleted == False)  # noqa: E712
        for field, value in (filters or {}).items():
            if value is None or not hasattr(self.model, field):
                continue
            col = getattr(self.model, field)
            conditions.append(col.in_(value) if isinstance(value, list) else col == value)

        query = select(self.model).where(*conditions)
        if hasattr(self.model, order_by):
            col = getattr(self.model, order_by)
            query = query.order_by(col.desc() if order_desc else col.asc())
        query = query.offset(offset).limit(limit)

        items = (await self.db.execute(query)).scalars().all()
        total = await self.db.scalar(
            select(func.count()).select_from(self.model).where(*conditions)
        )
        return items, total or 0

    # ─── Create / update ───────────────────────────────────

    async def create(self, data: dict[str, Any]) -> ModelType:
        """Create a new record and flush it so defaults are populated."""
        if "id" not in data:
            data["id"] = str(uuid4())

        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    async def apply(self, instance: ModelType, data: dict[str, Any]) -> ModelType:
        """Set the non-None fields of ``data`` on an instance."""
        for key, value in data.items():
            if value is not None and hasattr(instance, key):
                setattr(instance, key, value)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    # ─── Delete ────────────────────────────────────────────

    async def soft_delete(self, id: str) -> bool:
        """Soft-delete a record.

        Returns:
            True if deleted, False if not found
        """
        instance = await self.get_by_id(id)
        if not instance:
            return False

        instance.soft_delete()
        await self.db.flush()
        return True
