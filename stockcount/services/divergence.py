"""
Divergence Evaluator.

Compares the summed physical count of a product with its reference stock and
decides whether the product needs review.

Hybrid trust policy:
- a product at a single location: the counter's own flag is trusted;
- a product at several locations with one still uncounted in the current
  round: the counter's flag is trusted (the sum is still partial);
- a product at several locations, all counted: the computed divergence wins.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stockcount.config import settings
from stockcount.core.exceptions import NotFoundError, StockOracleError, ValidationError
from stockcount.models.count import CountItem
from stockcount.services.count_log_service import CountLogAggregator
from stockcount.services.stock_oracle import StockOracle

logger = logging.getLogger(__name__)


class ReviewSource(str, Enum):
    """Which side decided the needs-review flag."""
    CALLER = "caller"
    COMPUTED = "computed"


def resolve_needs_review(
    location_count: int,
    all_locations_counted: bool,
    caller_flag: bool,
    diverges: bool
) -> Tuple[bool, ReviewSource]:
    """Apply the hybrid trust policy."""
    if location_count <= 1:
        return caller_flag, ReviewSource.CALLER
    if not all_locations_counted:
        return caller_flag, ReviewSource.CALLER
    return diverges, ReviewSource.COMPUTED


@dataclass
class ReviewDecision:
    """Outcome of evaluating one item key in one round."""
    item_key: str
    round_number: int
    needs_review: bool
    real_sum: int
    reference_stock: int
    location_count: int
    all_locations_counted: bool
    source: ReviewSource

    @property
    def divergence(self) -> int:
        return self.real_sum - self.reference_stock

    @property
    def diverges(self) -> bool:
        return self.real_sum != self.reference_stock


class DivergenceEvaluator:
    """Computes divergence and persists the needs-review flag per product."""

    def __init__(
        self,
        db: AsyncSession,
        oracle: StockOracle,
        company_code: Optional[str] = None
    ):
        self.db = db
        self.oracle = oracle
        self.company_code = company_code or settings.DEFAULT_COMPANY_CODE
        self.logs = CountLogAggregator(db)

    async def items_for_key(self, item_key: str) -> List[CountItem]:
        result = await self.db.execute(
            select(CountItem)
            .where(CountItem.item_key == item_key)
            .order_by(CountItem.key_slot)
        )
        return list(result.scalars().all())

    async def refresh_reference(self, product_code: int, items: Sequence[CountItem]) -> int:
        """
        Reference stock for a product.

        Starts from the most recently persisted snapshot, then asks the stock
        oracle. A live figure is written back onto every given item; an oracle
        failure silently keeps the snapshot.
        """
        if not items:
            return 0
        latest = max(items, key=lambda i: (i.updated_at or i.created_at, i.key_slot))
        snapshot = latest.stock_snapshot or 0

        try:
            live = await self.oracle.fetch_live_stock(product_code, self.company_code)
        except StockOracleError as e:
            logger.warning(f"Using stored snapshot {snapshot} for product {product_code}: {e.message}")
            return snapshot

        if live is None:
            return snapshot

        stale = [i.id for i in items if i.stock_snapshot != live.stock]
        if stale:
            await self.db.execute(
                update(CountItem)
                .where(CountItem.id.in_(stale))
                .values(stock_snapshot=live.stock)
            )
            await self.db.commit()
            logger.info(f"Refreshed stock of product {product_code}: {snapshot} -> {live.stock}")
        return live.stock

    async def evaluate(
        self,
        item_key: str,
        round_number: int,
        frontend_flag: bool
    ) -> ReviewDecision:
        """Decide and persist needs-review for every item sharing the key."""
        items = await self.items_for_key(item_key)
        if not items:
            raise NotFoundError("No count items for item key", details={"item_key": item_key})

        reference_stock = await self.refresh_reference(items[0].product_code, items)
        real_sum = await self.logs.aggregate(item_key, round_number)

        counted = await self.logs.counted_item_ids([i.id for i in items], round_number)
        all_counted = all(i.id in counted for i in items)

        needs_review, source = resolve_needs_review(
            location_count=len(items),
            all_locations_counted=all_counted,
            caller_flag=frontend_flag,
            diverges=real_sum != reference_stock,
        )

        await self._persist_flag(item_key, needs_review)

        logger.info(
            f"Review {item_key} round {round_number}: sum={real_sum} ref={reference_stock} "
            f"locations={len(items)} complete={all_counted} -> {needs_review} ({source.value})"
        )
        return ReviewDecision(
            item_key=item_key,
            round_number=round_number,
            needs_review=needs_review,
            real_sum=real_sum,
            reference_stock=reference_stock,
            location_count=len(items),
            all_locations_counted=all_counted,
            source=source,
        )

    async def set_item_review_flag(
        self,
        item_key: str,
        frontend_flag: bool,
        item_id: UUID
    ) -> Tuple[CountItem, Optional[ReviewDecision]]:
        """
        Update the needs-review flag from a counter's report.

        The round is the one of the most recent log for the key. Without any
        log there is nothing to check and the caller's flag is stored.
        """
        item = await self.db.get(CountItem, item_id)
        if not item:
            raise NotFoundError("Count item not found", details={"item_id": str(item_id)})
        if item.item_key != item_key:
            raise ValidationError(
                "Item does not carry the given item key",
                details={"item_id": str(item_id), "item_key": item_key},
            )

        round_number = await self.logs.latest_round_number(item_key)
        decision = None
        if round_number is None:
            await self._persist_flag(item_key, frontend_flag)
        else:
            decision = await self.evaluate(item_key, round_number, frontend_flag)

        await self.db.refresh(item)
        return item, decision

    async def _persist_flag(self, item_key: str, needs_review: bool) -> None:
        await self.db.execute(
            update(CountItem)
            .where(CountItem.item_key == item_key)
            .values(needs_review=needs_review)
        )
        await self.db.commit()
