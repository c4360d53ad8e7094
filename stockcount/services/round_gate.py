"""
Count Round State Machine

This module is the single place where round states change.

    LOCKED  --release-->  RELEASED  --close-->  LOCKED
       \\                     /
        `----- delete ------'-->  DELETED (terminal)

Round 1 is created RELEASED, rounds 2 and 3 LOCKED. Closing a round locks
it; when the round's products diverge from the reference stock the next round
is released. Round 3 is final.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stockcount.core.exceptions import (
    GroupStartedError, NotFoundError, RoundTransitionError, ValidationError
)
from stockcount.models.count import (
    CountItem, CountRound, RoundStatus, FINAL_ROUND, ROUND_NUMBERS
)
from stockcount.services.count_log_service import CountLogAggregator
from stockcount.services.divergence import DivergenceEvaluator

logger = logging.getLogger(__name__)


# =============================================================================
# STATE DEFINITIONS
# =============================================================================

class RoundState:
    """Round state constants - derived from the released flag and status."""
    LOCKED = "LOCKED"
    RELEASED = "RELEASED"
    DELETED = "DELETED"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.LOCKED, cls.RELEASED, cls.DELETED]


ROUND_TRANSITIONS: Dict[str, List[str]] = {
    RoundState.LOCKED: [
        RoundState.RELEASED,   # Previous round diverged
        RoundState.DELETED,    # Group removed before any count
    ],
    RoundState.RELEASED: [
        RoundState.LOCKED,     # Own counting phase closed
        RoundState.DELETED,    # Group removed before any count
    ],
    RoundState.DELETED: [],    # Terminal state
}


def round_state(count_round: CountRound) -> str:
    if count_round.status == RoundStatus.DELETED.value:
        return RoundState.DELETED
    return RoundState.RELEASED if count_round.released else RoundState.LOCKED


def initial_state(round_number: int) -> str:
    return RoundState.RELEASED if round_number == 1 else RoundState.LOCKED


def can_transition(current_state: str, new_state: str) -> bool:
    return new_state in ROUND_TRANSITIONS.get(current_state, [])


def validate_transition(current_state: str, new_state: str) -> None:
    """Raise RoundTransitionError if the transition is not allowed."""
    if current_state == new_state:
        return  # No change, always allowed

    if not can_transition(current_state, new_state):
        allowed = ROUND_TRANSITIONS.get(current_state, [])
        if not allowed:
            raise RoundTransitionError(
                f"Round in '{current_state}' state cannot be modified. This is a terminal state."
            )
        raise RoundTransitionError(
            f"Cannot change round from '{current_state}' to '{new_state}'. "
            f"Allowed transitions: {', '.join(allowed)}"
        )


def apply_state(count_round: CountRound, new_state: str) -> None:
    """Move a loaded round to a new state after validating the transition."""
    validate_transition(round_state(count_round), new_state)
    if new_state == RoundState.DELETED:
        count_round.status = RoundStatus.DELETED.value
        count_round.released = False
    else:
        count_round.released = new_state == RoundState.RELEASED


def next_round_number(round_number: int) -> Optional[int]:
    if round_number >= FINAL_ROUND:
        return None
    return round_number + 1


# =============================================================================
# GATE
# =============================================================================

class RoundGate:
    """Closes rounds, releases follow-up rounds and deletes unstarted groups."""

    def __init__(self, db: AsyncSession, evaluator: DivergenceEvaluator):
        self.db = db
        self.evaluator = evaluator
        self.logs = CountLogAggregator(db)

    async def get_round(self, group_key: str, round_number: int) -> Optional[CountRound]:
        result = await self.db.execute(
            select(CountRound)
            .where(
                CountRound.group_key == group_key,
                CountRound.round_number == round_number,
                CountRound.status == RoundStatus.ACTIVE.value,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def close_round(
        self,
        group_key: str,
        round_number: int,
        frontend_divergence: bool = False,
        items_to_recheck: Optional[Sequence[UUID]] = None
    ) -> Optional[CountRound]:
        """
        Close a round and decide whether the next one is released.

        Every distinct product of the group is rechecked against the reference
        stock; the caller's divergence flag and item list never narrow that.
        Returns the released next round, the closed round itself when nothing
        diverged, or None when a divergence was found but the group has no
        next round to release.
        """
        if round_number not in ROUND_NUMBERS:
            raise ValidationError(f"Invalid round number: {round_number}")

        closing = await self.get_round(group_key, round_number)
        if not closing:
            raise NotFoundError(
                "Count round not found",
                details={"group_key": group_key, "round_number": round_number},
            )

        apply_state(closing, RoundState.LOCKED)
        closing.closed_at = datetime.utcnow()
        await self.db.commit()
        logger.info(f"Round {round_number} of group {group_key} locked")

        following = next_round_number(round_number)
        if following is None:
            return closing

        if items_to_recheck:
            named = await self._products_of_items(group_key, items_to_recheck)
            logger.info(f"Group {group_key} round {round_number} closed with products {named} flagged")
        server_divergence = await self.recheck_products(group_key, round_number)

        if not (frontend_divergence or server_divergence):
            logger.info(f"Group {group_key} round {round_number} closed without divergence")
            return closing

        return await self._release(group_key, following)

    async def recheck_products(
        self,
        group_key: str,
        round_number: int,
        product_codes: Optional[Iterable[int]] = None
    ) -> bool:
        """
        Recompute real divergence per product of the group.

        Products whose counted total differs from the reference stock get
        needs-review forced on their items. Each product commits on its own,
        so an interrupted run leaves consistent flags and can be repeated.
        """
        result = await self.db.execute(
            select(CountItem)
            .where(CountItem.group_key == group_key)
            .order_by(CountItem.product_code, CountItem.key_slot)
        )
        by_product: Dict[int, List[CountItem]] = OrderedDict()
        for item in result.scalars().all():
            by_product.setdefault(item.product_code, []).append(item)

        if product_codes is not None:
            wanted = set(product_codes)
            by_product = OrderedDict((k, v) for k, v in by_product.items() if k in wanted)

        diverged = False
        for product_code, items in by_product.items():
            reference_stock = await self.evaluator.refresh_reference(product_code, items)
            real_sum = await self.logs.aggregate_keys(
                (i.item_key for i in items), round_number
            )
            if real_sum == reference_stock:
                continue

            diverged = True
            await self.db.execute(
                update(CountItem)
                .where(CountItem.id.in_([i.id for i in items]))
                .values(needs_review=True)
            )
            await self.db.commit()
            logger.info(
                f"Group {group_key} product {product_code} diverges in round {round_number}: "
                f"counted {real_sum}, reference {reference_stock}"
            )
        return diverged

    async def _products_of_items(self, group_key: str, item_ids: Sequence[UUID]) -> List[int]:
        if not item_ids:
            return []
        result = await self.db.execute(
            select(CountItem.product_code)
            .where(CountItem.group_key == group_key, CountItem.id.in_(list(item_ids)))
            .distinct()
        )
        return list(result.scalars().all())

    async def _release(self, group_key: str, round_number: int) -> Optional[CountRound]:
        target = await self.get_round(group_key, round_number)
        if not target:
            logger.warning(f"Group {group_key} has no round {round_number} to release")
            return None

        if target.closed_at is not None:
            # Re-running an earlier close must not reopen a finished round
            logger.info(f"Round {round_number} of group {group_key} already closed, not released")
            return target

        apply_state(target, RoundState.RELEASED)
        await self.db.commit()
        logger.info(f"Round {round_number} of group {group_key} released")
        return target

    async def delete_group(self, group_key: str) -> int:
        """
        Soft-delete every round of a group that has not been counted yet.

        All rounds are read (and row-locked where supported) before anything
        is written; a single log in any round refuses the whole deletion.
        """
        result = await self.db.execute(
            select(CountRound)
            .where(
                CountRound.group_key == group_key,
                CountRound.status == RoundStatus.ACTIVE.value,
            )
            .with_for_update()
        )
        rounds = list(result.scalars().all())
        if not rounds:
            await self.db.rollback()
            raise NotFoundError("Count group not found", details={"group_key": group_key})

        log_count = await self.logs.count_logs_for_rounds(r.id for r in rounds)
        if log_count:
            await self.db.rollback()
            raise GroupStartedError(
                "Count group has already started and cannot be deleted",
                details={"group_key": group_key, "logs": log_count},
            )

        try:
            for count_round in rounds:
                apply_state(count_round, RoundState.DELETED)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Group {group_key} deleted ({len(rounds)} rounds)")
        return len(rounds)
