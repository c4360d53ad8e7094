"""Audit ledger schemas."""
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import Field

from stockcount.models.audit import AuditMovement, AuditStatus
from stockcount.schemas.base import BaseCreateSchema, BaseResponseSchema
from stockcount.schemas.count import UserSummary


class AuditCreate(BaseCreateSchema):
    """Manual correction for a product of a count group."""
    group_key: str = Field(..., min_length=1)
    product_code: int
    movement: AuditMovement
    quantity: int = 0
    note: Optional[str] = None
    user_id: UUID


class AuditResponse(BaseResponseSchema):
    id: UUID
    group_key: str
    product_code: int
    movement: AuditMovement
    quantity: int
    flagged_difference: int
    note: Optional[str]
    user_id: UUID
    status: AuditStatus
    created_at: datetime
    voided_at: Optional[datetime] = None


class AuditHistoryEntry(AuditResponse):
    user: Optional[UserSummary] = None


class PendingLog(BaseResponseSchema):
    user: str
    quantity: int
    location: Optional[str]
    counted_at: datetime


class RoundHistory(BaseResponseSchema):
    total: int
    logs: List[PendingLog]


class PendingReviewEntry(BaseResponseSchema):
    group_key: str
    product_code: int
    description: str
    snapshot_stock: int
    live_stock: Optional[int]
    locations: List[Optional[str]]
    floor: Optional[str]
    history: Dict[int, RoundHistory]
    differences: Dict[int, int]
    already_audited: bool
    audit_id: Optional[UUID] = None
