"""Audit ledger API endpoints."""
from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from stockcount.api.deps import get_audit_ledger
from stockcount.schemas.audit import (
    AuditCreate, AuditResponse, AuditHistoryEntry, PendingReviewEntry
)
from stockcount.services.audit_ledger import AuditLedger

router = APIRouter()


@router.post(
    "",
    response_model=AuditResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit Audit"
)
async def submit_audit(
    data: AuditCreate,
    ledger: AuditLedger = Depends(get_audit_ledger)
):
    """Record the corrective movement for a product after its counts."""
    return await ledger.submit(
        group_key=data.group_key,
        product_code=data.product_code,
        movement=data.movement,
        quantity=data.quantity,
        note=data.note,
        user_id=data.user_id,
    )


@router.post(
    "/{audit_id}/void",
    response_model=AuditResponse,
    summary="Void Audit"
)
async def void_audit(
    audit_id: UUID,
    ledger: AuditLedger = Depends(get_audit_ledger)
):
    return await ledger.void(audit_id)


@router.get(
    "/pending",
    response_model=List[PendingReviewEntry],
    summary="Products Pending Review"
)
async def get_pending_review(
    count_date: date = Query(..., alias="date"),
    floor: Optional[str] = None,
    ledger: AuditLedger = Depends(get_audit_ledger)
):
    """Products flagged on a date whose third round has been closed."""
    return await ledger.pending_review(count_date, floor)


@router.get(
    "/history/{product_code}",
    response_model=List[AuditHistoryEntry],
    summary="Audit History"
)
async def get_audit_history(
    product_code: int,
    ledger: AuditLedger = Depends(get_audit_ledger)
):
    return await ledger.history(product_code)
