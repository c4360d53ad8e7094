"""
Stock Count API Endpoints.

Three-round blind counting:
- Count groups (rounds and their shared items)
- Count logs per user and location
- Needs-review flags and round closing
- Live stock lookup
"""
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stockcount.api.deps import get_counting_service
from stockcount.schemas.count import (
    CountGroupCreate, CountGroupResponse, CountRoundResponse, GroupDetailResponse,
    GroupDeleteResponse, RoundCloseRequest,
    CountLogCreate, CountLogResponse, CountLogDetail,
    ItemReviewUpdate, ItemReviewResponse, ReviewDecisionResponse,
    CountItemResponse, LiveStockResponse
)
from stockcount.services.count_service import CountingService

router = APIRouter()


def _group_response(count_round, items) -> CountGroupResponse:
    response = CountGroupResponse.model_validate(count_round)
    response.items = [CountItemResponse.model_validate(i) for i in items]
    return response


# ============================================================================
# COUNT GROUPS
# ============================================================================

@router.post(
    "/groups",
    response_model=CountGroupResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Count Round"
)
async def create_group(
    data: CountGroupCreate,
    service: CountingService = Depends(get_counting_service)
):
    """
    Create a round of a count group.

    Items are registered on the first round of the group and reused by the
    later ones.
    """
    count_round, items = await service.create_group(
        collaborator_name=data.collaborator,
        round_number=data.round_number,
        group_key=data.group_key,
        floor=data.floor,
        items=[item.model_dump(by_alias=True) for item in data.items],
        mode=data.mode,
    )
    return _group_response(count_round, items)


@router.get(
    "/groups",
    response_model=List[CountRoundResponse],
    summary="List Count Rounds"
)
async def list_groups(
    service: CountingService = Depends(get_counting_service)
):
    """List active rounds, most recent first."""
    return await service.list_groups()


@router.get(
    "/groups/{group_key}",
    response_model=GroupDetailResponse,
    summary="Get Count Group"
)
async def get_group(
    group_key: str,
    service: CountingService = Depends(get_counting_service)
):
    rounds, items = await service.get_group(group_key)
    return GroupDetailResponse(
        group_key=group_key,
        rounds=[CountRoundResponse.model_validate(r) for r in rounds],
        items=[CountItemResponse.model_validate(i) for i in items],
    )


@router.delete(
    "/groups/{group_key}",
    response_model=GroupDeleteResponse,
    summary="Delete Count Group"
)
async def delete_group(
    group_key: str,
    service: CountingService = Depends(get_counting_service)
):
    """Delete every round of a group. Refused once anything was counted."""
    deleted = await service.delete_group(group_key)
    return GroupDeleteResponse(group_key=group_key, deleted_count=deleted)


@router.get(
    "/users/{user_id}/groups",
    response_model=List[CountGroupResponse],
    summary="Get Rounds Assigned To User"
)
async def get_groups_by_user(
    user_id: UUID,
    service: CountingService = Depends(get_counting_service)
):
    groups = await service.get_groups_by_user(user_id)
    return [_group_response(count_round, items) for count_round, items in groups]


# ============================================================================
# ROUNDS
# ============================================================================

@router.post(
    "/rounds/close",
    response_model=Optional[CountRoundResponse],
    summary="Close Count Round"
)
async def close_round(
    data: RoundCloseRequest,
    service: CountingService = Depends(get_counting_service)
):
    """
    Close a round.

    Returns the released next round when any product diverged, the closed
    round otherwise, or null when there is no next round to release.
    """
    return await service.close_round(
        group_key=data.group_key,
        round_number=data.round_number,
        frontend_divergence=data.divergence,
        items_to_recheck=data.items_to_recheck,
    )


@router.get(
    "/rounds/{round_id}/logs",
    response_model=List[CountLogDetail],
    summary="List Round Logs"
)
async def list_logs(
    round_id: UUID,
    service: CountingService = Depends(get_counting_service)
):
    return await service.list_logs(round_id)


@router.get(
    "/rounds/{round_id}/logs/aggregated",
    response_model=List[CountLogDetail],
    summary="List Logs Sharing The Round's Item Keys"
)
async def aggregated_logs(
    round_id: UUID,
    service: CountingService = Depends(get_counting_service)
):
    """Logs of every group counting the same item keys, sibling groups included."""
    return await service.aggregated_logs(round_id)


# ============================================================================
# COUNT LOGS
# ============================================================================

@router.post(
    "/logs",
    response_model=CountLogResponse,
    summary="Record Count"
)
async def record_count(
    data: CountLogCreate,
    service: CountingService = Depends(get_counting_service)
):
    """Record a counted quantity. A second count by the same user replaces the first."""
    return await service.record_count(
        round_id=data.round_id,
        item_id=data.item_id,
        user_id=data.user_id,
        stock_at_time=data.stock_at_time,
        counted=data.counted,
    )


# ============================================================================
# REVIEW FLAGS
# ============================================================================

@router.patch(
    "/items/{item_id}/review",
    response_model=ItemReviewResponse,
    summary="Update Needs-Review Flag"
)
async def set_item_review_flag(
    item_id: UUID,
    data: ItemReviewUpdate,
    service: CountingService = Depends(get_counting_service)
):
    item, decision = await service.set_item_review_flag(
        item_key=data.item_key,
        frontend_flag=data.needs_review,
        item_id=item_id,
    )
    return ItemReviewResponse(
        item=CountItemResponse.model_validate(item),
        decision=ReviewDecisionResponse.model_validate(decision) if decision else None,
    )


# ============================================================================
# LIVE STOCK
# ============================================================================

@router.get(
    "/products/{product_code}/stock",
    response_model=LiveStockResponse,
    summary="Get Live Stock"
)
async def get_live_stock(
    product_code: int,
    company_code: Optional[str] = Query(None, pattern=r"^\d+$"),
    service: CountingService = Depends(get_counting_service)
):
    live = await service.get_live_stock(product_code, company_code)
    if not live:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Live stock unavailable"
        )
    return LiveStockResponse(product_code=live.product_code, stock=live.stock)
