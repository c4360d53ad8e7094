"""Counting collaborator model."""
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from stockcount.database import Base
from stockcount.db_types import UUIDType


class CountUser(Base):
    """
    A collaborator allowed to count stock and submit audits.

    Users are resolved by name when a count group is created and by id
    everywhere else. Inactive users are treated as unknown.
    """
    __tablename__ = "count_users"
    __table_args__ = (
        Index("idx_cu_name", "name"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
