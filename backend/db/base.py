"""Base model class for all SQLAlchemy models."""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from core.utils import utc_now


class Base(DeclarativeBase):
    """Base model class with common fields for all models."""

    pass


class SoftDeleteMixin:
    """Mixin that adds soft delete capability to a model.

    Adds `deleted_at` and `is_deleted` columns. When an entity is
    "deleted", `deleted_at` is set to the current timestamp and
    `is_deleted` is flipped to True. The row remains in the DB so
    executions that reference it stay auditable.
    """

    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, index=True
    )

    def soft_delete(self) -> None:
        """Mark this record as deleted."""
        self.is_deleted = True
        self.deleted_at = utc_now()


class BaseModel(Base):
    """Abstract base model with common timestamp fields.

    All domain models inherit from this. Provides:
    - id: UUID primary key
    - created_at / updated_at: automatic timestamps
    """

    __abstract__ = True

    id: Mapped[str] = mapped_column(primary_key=True, default=lambda: str(uuid4()))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )
