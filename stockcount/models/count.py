"""
Stock Count Models - three-round recount workflow.

Models for progressive physical counting:
- Count rounds (three per group, released on divergence)
- Count items (one per product/location, shared by every round of a group)
- Count log entries (one counted quantity per round, item and user)
"""
from datetime import datetime, date
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    String, Integer, DateTime, Date, ForeignKey, Index, Boolean, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockcount.database import Base
from stockcount.db_types import UUIDType
from stockcount.models.user import CountUser


# ============================================================================
# ENUMS
# ============================================================================

class RoundStatus(str, Enum):
    """Soft-delete status of a count round."""
    ACTIVE = "active"
    DELETED = "deleted"


class RoundMode(str, Enum):
    """How the round was started."""
    SCHEDULED = "scheduled"
    AD_HOC = "ad_hoc"


FINAL_ROUND = 3
ROUND_NUMBERS = (1, 2, 3)


# ============================================================================
# MODELS
# ============================================================================

class CountRound(Base):
    """
    One physical counting pass of a group.

    A group is the set of rounds sharing a group key. Round 1 is created
    released; rounds 2 and 3 stay locked until the previous round closes with
    a divergence.
    """
    __tablename__ = "count_rounds"
    __table_args__ = (
        UniqueConstraint("group_key", "round_number", name="uq_cr_group_round"),
        Index("idx_cr_collaborator", "collaborator_id"),
        Index("idx_cr_created", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    group_key: Mapped[str] = mapped_column(String(64), nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)

    collaborator_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("count_users.id"), nullable=False
    )
    floor: Mapped[Optional[str]] = mapped_column(String(50))
    mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RoundMode.SCHEDULED.value
    )

    released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RoundStatus.ACTIVE.value
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    collaborator: Mapped[CountUser] = relationship(lazy="selectin")

    @property
    def is_active(self) -> bool:
        return self.status == RoundStatus.ACTIVE.value


class CountItem(Base):
    """
    One product at one location within a group.

    The item key is derived from (product code, count date) and shared by at
    most two location rows; the key slot records which of the two a row holds.
    """
    __tablename__ = "count_items"
    __table_args__ = (
        UniqueConstraint("item_key", "key_slot", name="uq_ci_key_slot"),
        Index("idx_ci_group", "group_key"),
        Index("idx_ci_product_date", "product_code", "count_date"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    item_key: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    key_slot: Mapped[int] = mapped_column(Integer, nullable=False)
    group_key: Mapped[str] = mapped_column(String(64), nullable=False)
    count_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Product
    product_code: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    brand: Mapped[Optional[str]] = mapped_column(String(200))
    manufacturer_ref: Mapped[Optional[str]] = mapped_column(String(100))
    supplier_ref: Mapped[Optional[str]] = mapped_column(String(100))
    location: Mapped[Optional[str]] = mapped_column(String(200))
    unit: Mapped[Optional[str]] = mapped_column(String(20))

    # Quantities
    exit_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stock_snapshot: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class CountLogEntry(Base):
    """
    One user's counted quantity for one item in one round.

    Resubmissions overwrite the entry; the unique constraint backs the upsert.
    """
    __tablename__ = "count_logs"
    __table_args__ = (
        UniqueConstraint("round_id", "item_id", "user_id", name="uq_cl_round_item_user"),
        Index("idx_cl_item_key", "item_key"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    round_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("count_rounds.id"), nullable=False
    )
    item_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("count_items.id"), nullable=False
    )
    item_key: Mapped[str] = mapped_column(String(80), nullable=False)
    user_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("count_users.id"), nullable=False
    )

    stock_at_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    counted: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
