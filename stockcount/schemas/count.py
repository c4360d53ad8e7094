"""
Stock Count Schemas.

Pydantic schemas for count groups, items, logs and review flags.
"""
from datetime import datetime, date
from typing import Optional, List, Union
from uuid import UUID

from pydantic import ConfigDict, Field

from stockcount.models.count import RoundMode, RoundStatus
from stockcount.schemas.base import BaseCreateSchema, BaseResponseSchema
from stockcount.services.divergence import ReviewSource


# ============================================================================
# USERS
# ============================================================================

class UserSummary(BaseResponseSchema):
    id: UUID
    name: str
    code: Optional[str] = None


# ============================================================================
# COUNT ITEM SCHEMAS
# ============================================================================

class CountItemIn(BaseCreateSchema):
    """Product row as exported by the ERP movement report."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    count_date: Optional[Union[datetime, date, str]] = Field(None, alias="date")
    product_code: int
    description: Optional[str] = None
    brand: Optional[str] = None
    manufacturer_ref: Optional[str] = None
    supplier_ref: Optional[str] = None
    location: Optional[str] = None
    unit: Optional[str] = None
    exit_quantity: float = 0
    stock: float = 0
    reserved: float = 0


class CountItemResponse(BaseResponseSchema):
    id: UUID
    item_key: str
    key_slot: int
    group_key: str
    count_date: date
    product_code: int
    description: str
    brand: Optional[str]
    manufacturer_ref: Optional[str]
    supplier_ref: Optional[str]
    location: Optional[str]
    unit: Optional[str]
    exit_quantity: int
    stock_snapshot: int
    reserved_quantity: int
    needs_review: bool


# ============================================================================
# COUNT ROUND / GROUP SCHEMAS
# ============================================================================

class CountGroupCreate(BaseCreateSchema):
    """Schema for creating a round of a count group."""
    collaborator: str = Field(..., min_length=1, max_length=200)
    round_number: int = Field(..., ge=1, le=3)
    group_key: Optional[str] = Field(None, max_length=64)
    floor: Optional[str] = Field(None, max_length=50)
    mode: RoundMode = RoundMode.SCHEDULED
    items: List[CountItemIn] = Field(default_factory=list)


class CountRoundResponse(BaseResponseSchema):
    id: UUID
    group_key: str
    round_number: int
    collaborator_id: UUID
    collaborator: Optional[UserSummary] = None
    floor: Optional[str]
    mode: RoundMode
    released: bool
    status: RoundStatus
    closed_at: Optional[datetime]
    created_at: datetime


class CountGroupResponse(CountRoundResponse):
    """A round together with the items shared by its group."""
    items: List[CountItemResponse] = Field(default_factory=list)


class GroupDetailResponse(BaseResponseSchema):
    group_key: str
    rounds: List[CountRoundResponse]
    items: List[CountItemResponse]


class RoundCloseRequest(BaseCreateSchema):
    """Close a round and ask the gate whether the next round opens."""
    group_key: str = Field(..., min_length=1)
    round_number: int = Field(..., ge=1, le=3)
    divergence: bool = False
    items_to_recheck: List[UUID] = Field(default_factory=list)


class GroupDeleteResponse(BaseResponseSchema):
    group_key: str
    deleted_count: int


# ============================================================================
# LOG SCHEMAS
# ============================================================================

class CountLogCreate(BaseCreateSchema):
    """A user's counted quantity; resubmission replaces the previous one."""
    round_id: UUID
    item_id: UUID
    user_id: UUID
    stock_at_time: int = 0
    counted: int = Field(..., ge=0)


class CountLogResponse(BaseResponseSchema):
    id: UUID
    round_id: UUID
    item_id: UUID
    item_key: str
    user_id: UUID
    stock_at_time: int
    counted: int
    created_at: datetime


class CountLogDetail(CountLogResponse):
    round_number: int
    group_key: str
    product_code: int
    location: Optional[str]
    user_name: str


class CountLogList(BaseResponseSchema):
    logs: List[CountLogDetail]


# ============================================================================
# REVIEW SCHEMAS
# ============================================================================

class ItemReviewUpdate(BaseCreateSchema):
    item_key: str = Field(..., min_length=1)
    needs_review: bool


class ReviewDecisionResponse(BaseResponseSchema):
    item_key: str
    round_number: int
    needs_review: bool
    real_sum: int
    reference_stock: int
    divergence: int
    location_count: int
    all_locations_counted: bool
    source: ReviewSource


class ItemReviewResponse(BaseResponseSchema):
    item: CountItemResponse
    decision: Optional[ReviewDecisionResponse] = None


class LiveStockResponse(BaseResponseSchema):
    product_code: int
    stock: int
