"""
Audit Ledger.

Records the corrective movement decided for a product after its counts.
A product has at most one active audit across every group that counted it
on the same item keys; resolving a product in one group resolves it in its
sibling groups too.
"""
import logging
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from stockcount.config import settings
from stockcount.core.exceptions import (
    DuplicateAuditError, NotFoundError, StockOracleError, ValidationError
)
from stockcount.models.audit import AuditMovement, AuditRecord, AuditStatus
from stockcount.models.count import (
    CountItem, CountLogEntry, CountRound, RoundStatus, FINAL_ROUND, ROUND_NUMBERS
)
from stockcount.models.user import CountUser
from stockcount.services.count_log_service import CountLogAggregator
from stockcount.services.stock_oracle import StockOracle

logger = logging.getLogger(__name__)

AUTO_AUDIT_NOTE = "Third count matched"

# First key of the two-key PostgreSQL advisory lock taken per product
AUDIT_LOCK_NAMESPACE = 7301


def flagged_difference(movement: AuditMovement, quantity: int) -> int:
    """Signed difference recorded for a movement."""
    if movement == AuditMovement.REDUCE:
        return -abs(quantity)
    if movement == AuditMovement.INCLUDE:
        return abs(quantity)
    return 0


def movement_quantity(movement: AuditMovement, quantity: int) -> int:
    """Stored movement quantity: an unsigned magnitude, zero for CORRECT."""
    if movement == AuditMovement.CORRECT:
        return 0
    return abs(quantity)


def product_lock_statement(group_keys: Sequence[str], product_code: int):
    """Row lock on the product's items across sibling groups."""
    return (
        select(CountItem.id)
        .where(
            CountItem.group_key.in_(list(group_keys)),
            CountItem.product_code == product_code,
        )
        .with_for_update()
    )


def parse_count_date(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError("Dates must be YYYY-MM-DD", details={"date": value})


class AuditLedger:
    """Audit submission, history, auto-resolution and the pending review list."""

    def __init__(
        self,
        db: AsyncSession,
        oracle: Optional[StockOracle] = None,
        system_user_id: Optional[UUID] = None,
        company_code: Optional[str] = None
    ):
        self.db = db
        self.oracle = oracle
        self.system_user_id = system_user_id or settings.SYSTEM_AUDIT_USER_ID
        self.company_code = company_code or settings.DEFAULT_COMPANY_CODE
        self.logs = CountLogAggregator(db)

    # ========================================================================
    # SIBLING LOOKUP
    # ========================================================================

    async def sibling_group_keys(self, group_key: str, product_code: int) -> List[str]:
        """
        Group keys sharing counted items with the product.

        Starts from the product's item keys in the given group and collects
        every group holding one of those keys.
        """
        keys = (await self.db.execute(
            select(CountItem.item_key)
            .where(
                CountItem.group_key == group_key,
                CountItem.product_code == product_code,
            )
            .distinct()
        )).scalars().all()

        groups = {group_key}
        if keys:
            result = await self.db.execute(
                select(CountItem.group_key)
                .where(CountItem.item_key.in_(list(keys)))
                .distinct()
            )
            groups.update(result.scalars().all())
        return sorted(groups)

    async def lock_product(self, group_keys: Sequence[str], product_code: int) -> None:
        """
        Serialize audit writers of a product until the transaction ends.

        PostgreSQL takes a transaction-scoped advisory lock on the product
        code, which also covers products without counted items. Other
        backends lock the product's item rows.
        """
        if self.db.get_bind().dialect.name == "postgresql":
            await self.db.execute(
                text("SELECT pg_advisory_xact_lock(:namespace, :product_code)"),
                {"namespace": AUDIT_LOCK_NAMESPACE, "product_code": int(product_code)},
            )
        else:
            await self.db.execute(product_lock_statement(group_keys, product_code))

    async def find_active_audit(
        self,
        product_code: int,
        group_keys: Sequence[str]
    ) -> Optional[AuditRecord]:
        result = await self.db.execute(
            select(AuditRecord)
            .where(
                AuditRecord.product_code == product_code,
                AuditRecord.group_key.in_(list(group_keys)),
                AuditRecord.status == AuditStatus.ACTIVE.value,
            )
            .order_by(AuditRecord.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ========================================================================
    # SUBMISSION
    # ========================================================================

    async def submit(
        self,
        group_key: str,
        product_code: int,
        movement: AuditMovement,
        quantity: int,
        note: Optional[str],
        user_id: UUID
    ) -> AuditRecord:
        """Record a manual correction for a product."""
        movement = AuditMovement(movement)

        user = await self.db.get(CountUser, user_id)
        if not user or not user.is_active:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})

        groups = await self.sibling_group_keys(group_key, product_code)
        await self.lock_product(groups, product_code)
        existing = await self.find_active_audit(product_code, groups)
        if existing:
            raise DuplicateAuditError(
                f"Product {product_code} already has an active audit",
                details={"audit_id": str(existing.id), "group_key": existing.group_key},
            )

        audit = AuditRecord(
            group_key=group_key,
            product_code=product_code,
            movement=movement.value,
            quantity=movement_quantity(movement, quantity),
            flagged_difference=flagged_difference(movement, quantity),
            note=note,
            user_id=user_id,
            status=AuditStatus.ACTIVE.value,
        )
        self.db.add(audit)
        await self.db.commit()
        await self.db.refresh(audit)

        logger.info(
            f"Audit {movement.value} recorded for product {product_code} in {group_key}: "
            f"difference {audit.flagged_difference}"
        )
        return audit

    async def void(self, audit_id: UUID) -> AuditRecord:
        """Void an active audit so the product can be corrected again."""
        audit = await self.db.get(AuditRecord, audit_id)
        if not audit:
            raise NotFoundError("Audit not found", details={"audit_id": str(audit_id)})
        if audit.status == AuditStatus.ACTIVE.value:
            audit.status = AuditStatus.VOID.value
            audit.voided_at = datetime.utcnow()
            await self.db.commit()
            await self.db.refresh(audit)
            logger.info(f"Audit {audit_id} voided")
        return audit

    async def history(self, product_code: int) -> List[AuditRecord]:
        """Active audits of a product, most recent first."""
        result = await self.db.execute(
            select(AuditRecord)
            .where(
                AuditRecord.product_code == product_code,
                AuditRecord.status == AuditStatus.ACTIVE.value,
            )
            .order_by(AuditRecord.created_at.desc())
        )
        return list(result.scalars().all())

    # ========================================================================
    # AUTO RESOLUTION
    # ========================================================================

    async def auto_resolve(
        self,
        group_key: str,
        product_code: int
    ) -> Optional[AuditRecord]:
        """
        Record a CORRECT audit when the third count matched the snapshot.

        Best effort: any failure is logged and the product simply stays
        pending for a manual audit.
        """
        if not self.system_user_id:
            logger.warning("SYSTEM_AUDIT_USER_ID not configured, skipping auto audit")
            return None

        try:
            groups = await self.sibling_group_keys(group_key, product_code)
            await self.lock_product(groups, product_code)
            if await self.find_active_audit(product_code, groups):
                return None

            items = await self._product_items(groups, product_code)
            if not items:
                return None
            snapshot = items[0].stock_snapshot or 0
            final_total = await self.logs.aggregate_keys(
                (i.item_key for i in items), FINAL_ROUND, groups
            )
            if final_total - snapshot != 0:
                return None

            async with self.db.begin_nested():
                audit = AuditRecord(
                    group_key=group_key,
                    product_code=product_code,
                    movement=AuditMovement.CORRECT.value,
                    quantity=0,
                    flagged_difference=0,
                    note=AUTO_AUDIT_NOTE,
                    user_id=self.system_user_id,
                    status=AuditStatus.ACTIVE.value,
                )
                self.db.add(audit)
            await self.db.commit()
        except Exception as e:
            logger.exception(f"Auto audit failed for product {product_code} in {group_key}: {e}")
            await self.db.rollback()
            return None

        logger.info(f"Auto audit CORRECT recorded for product {product_code} in {group_key}")
        return audit

    async def _product_items(self, group_keys: Sequence[str], product_code: int) -> List[CountItem]:
        result = await self.db.execute(
            select(CountItem)
            .where(
                CountItem.group_key.in_(list(group_keys)),
                CountItem.product_code == product_code,
            )
            .order_by(CountItem.created_at, CountItem.key_slot)
        )
        return list(result.scalars().all())

    # ========================================================================
    # PENDING REVIEW
    # ========================================================================

    async def _live_stock(self, product_code: int) -> Optional[int]:
        if not self.oracle:
            return None
        try:
            live = await self.oracle.fetch_live_stock(product_code, self.company_code)
        except StockOracleError as e:
            logger.warning(f"Live stock unavailable for product {product_code}: {e.message}")
            return None
        return live.stock if live else None

    async def pending_review(
        self,
        count_date: Union[str, date],
        floor: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Products flagged for review on a date whose third round has closed.

        Each entry carries the consolidated per-round history, the differences
        against the stock snapshot and whether the product is already audited.
        Products whose third count matched are auto-audited on the way.
        """
        day = parse_count_date(count_date)

        floor_groups: Optional[List[str]] = None
        if floor:
            start = datetime.combine(day, time.min)
            end = datetime.combine(day, time.max)
            result = await self.db.execute(
                select(CountRound.group_key)
                .where(
                    CountRound.created_at >= start,
                    CountRound.created_at <= end,
                    CountRound.floor == floor,
                )
                .distinct()
            )
            floor_groups = list(result.scalars().all())
            if not floor_groups:
                return []

        flagged = select(CountItem.product_code).where(
            CountItem.count_date == day,
            CountItem.needs_review.is_(True),
        )
        if floor_groups is not None:
            flagged = flagged.where(CountItem.group_key.in_(floor_groups))
        product_codes = (await self.db.execute(flagged.distinct())).scalars().all()
        if not product_codes:
            return []

        result = await self.db.execute(
            select(CountItem)
            .where(
                CountItem.count_date == day,
                CountItem.product_code.in_(list(product_codes)),
            )
            .order_by(CountItem.product_code, CountItem.created_at, CountItem.key_slot)
        )
        by_product: Dict[int, List[CountItem]] = {}
        for item in result.scalars().all():
            by_product.setdefault(item.product_code, []).append(item)

        entries = []
        for product_code, items in by_product.items():
            entry = await self._pending_entry(product_code, items)
            if entry:
                entries.append(entry)
        return entries

    async def _pending_entry(
        self,
        product_code: int,
        items: List[CountItem]
    ) -> Optional[Dict[str, Any]]:
        group_keys = sorted({i.group_key for i in items})

        result = await self.db.execute(
            select(CountRound)
            .where(
                CountRound.group_key.in_(group_keys),
                CountRound.round_number == FINAL_ROUND,
                CountRound.released.is_(False),
                CountRound.closed_at.is_not(None),
                CountRound.status == RoundStatus.ACTIVE.value,
            )
            .order_by(CountRound.created_at)
        )
        closed = list(result.scalars().all())
        if not closed:
            return None
        main = closed[0]

        history = {n: {"total": 0, "logs": []} for n in ROUND_NUMBERS}
        locations = {i.id: i.location for i in items}
        log_rows = await self.db.execute(
            select(CountLogEntry, CountRound.round_number, CountUser.name)
            .join(CountRound, CountRound.id == CountLogEntry.round_id)
            .join(CountUser, CountUser.id == CountLogEntry.user_id)
            .where(
                CountLogEntry.item_id.in_(list(locations)),
                CountRound.status == RoundStatus.ACTIVE.value,
            )
            .order_by(CountLogEntry.created_at)
        )
        for entry, round_number, user_name in log_rows.all():
            bucket = history.get(round_number)
            if bucket is None:
                continue
            bucket["logs"].append({
                "user": user_name,
                "quantity": entry.counted,
                "location": locations.get(entry.item_id),
                "counted_at": entry.created_at,
            })
            bucket["total"] += entry.counted

        # Every row carries the product's total system stock; never sum them
        snapshot = items[0].stock_snapshot or 0
        differences = {n: history[n]["total"] - snapshot for n in ROUND_NUMBERS}

        audit = await self.find_active_audit(product_code, group_keys)
        if audit is None and differences[FINAL_ROUND] == 0:
            audit = await self.auto_resolve(main.group_key, product_code)

        return {
            "group_key": main.group_key,
            "product_code": product_code,
            "description": items[0].description,
            "snapshot_stock": snapshot,
            "live_stock": await self._live_stock(product_code),
            "locations": [i.location for i in items],
            "floor": main.floor,
            "history": history,
            "differences": differences,
            "already_audited": audit is not None,
            "audit_id": audit.id if audit else None,
        }
