"""Audit ledger model for count corrections."""
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, DateTime, ForeignKey, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockcount.database import Base
from stockcount.db_types import UUIDType
from stockcount.models.user import CountUser


class AuditMovement(str, Enum):
    """Corrective movement applied to system stock."""
    REDUCE = "REDUCE"  # Stock write-down (negative difference)
    INCLUDE = "INCLUDE"  # Stock found (positive difference)
    CORRECT = "CORRECT"  # Count matched, no movement


class AuditStatus(str, Enum):
    """Audit record status."""
    ACTIVE = "active"
    VOID = "void"


class AuditRecord(Base):
    """Corrective ledger entry for one product within one count group."""
    __tablename__ = "count_audits"
    __table_args__ = (
        Index("idx_ca_product_status", "product_code", "status"),
        Index("idx_ca_group", "group_key"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    group_key: Mapped[str] = mapped_column(String(64), nullable=False)
    product_code: Mapped[int] = mapped_column(Integer, nullable=False)

    movement: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # Always >= 0
    flagged_difference: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    note: Mapped[Optional[str]] = mapped_column(Text)

    user_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("count_users.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AuditStatus.ACTIVE.value
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    user: Mapped[CountUser] = relationship(lazy="selectin")
