"""
Stock Count Service.

Entry point of the counting workflow used by the API layer: group creation,
count logging, review flags, round closing and group deletion.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stockcount.core.exceptions import ConflictError, NotFoundError, StockOracleError, ValidationError
from stockcount.models.count import (
    CountItem, CountLogEntry, CountRound, RoundMode, RoundStatus, FINAL_ROUND, ROUND_NUMBERS
)
from stockcount.models.user import CountUser
from stockcount.services.audit_ledger import AuditLedger
from stockcount.services.count_log_service import CountLogAggregator
from stockcount.services.divergence import DivergenceEvaluator, ReviewDecision
from stockcount.services.item_registry import ItemRegistry, ItemRow, clean_text
from stockcount.services.round_gate import RoundGate, RoundState, initial_state
from stockcount.services.stock_oracle import LiveStock, StockOracle, get_stock_oracle

logger = logging.getLogger(__name__)


class CountingService:
    """Service for the three-round counting workflow."""

    def __init__(
        self,
        db: AsyncSession,
        oracle: Optional[StockOracle] = None,
        system_user_id: Optional[UUID] = None
    ):
        self.db = db
        self.oracle = oracle or get_stock_oracle()
        self.registry = ItemRegistry(db)
        self.logs = CountLogAggregator(db)
        self.evaluator = DivergenceEvaluator(db, self.oracle)
        self.gate = RoundGate(db, self.evaluator)
        self.ledger = AuditLedger(db, self.oracle, system_user_id=system_user_id)

    # ========================================================================
    # GROUPS
    # ========================================================================

    async def _get_user_by_name(self, name: str) -> CountUser:
        clean_name = clean_text(name) or ""
        result = await self.db.execute(
            select(CountUser)
            .where(CountUser.name == clean_name, CountUser.is_active.is_(True))
            .limit(1)
        )
        user = result.scalar_one_or_none()
        if not user:
            raise ValidationError(
                f'Collaborator "{clean_name}" not found',
                details={"collaborator": clean_name},
            )
        return user

    async def get_round_by_id(self, round_id: UUID) -> Optional[CountRound]:
        result = await self.db.execute(
            select(CountRound)
            .where(CountRound.id == round_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_group(
        self,
        collaborator_name: str,
        round_number: int,
        group_key: Optional[str],
        floor: Optional[str],
        items: Sequence[Dict[str, Any]],
        mode: RoundMode = RoundMode.SCHEDULED
    ) -> Tuple[CountRound, List[CountItem]]:
        """
        Create a round of a count group, and the group's items if new.

        Items are shared by the three rounds: creating round 2 or 3 with the
        same group key reuses the items of round 1.
        """
        if round_number not in ROUND_NUMBERS:
            raise ValidationError(f"Invalid round number: {round_number}")

        user = await self._get_user_by_name(collaborator_name)
        group_key = clean_text(group_key) or str(uuid4())
        rows = [ItemRow.sanitize(dict(row)) for row in items or []]

        existing = await self.db.scalar(
            select(CountRound.id).where(
                CountRound.group_key == group_key,
                CountRound.round_number == round_number,
            )
        )
        if existing:
            raise ConflictError(
                f"Round {round_number} already exists for group {group_key}",
                details={"group_key": group_key, "round_number": round_number},
            )

        try:
            count_round = CountRound(
                group_key=group_key,
                round_number=round_number,
                collaborator_id=user.id,
                floor=clean_text(floor),
                mode=RoundMode(mode).value,
                released=initial_state(round_number) == RoundState.RELEASED,
                status=RoundStatus.ACTIVE.value,
            )
            self.db.add(count_round)
            await self.db.flush()

            group_items = await self.registry.create_items(group_key, rows)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.error(f"Integrity error creating group {group_key}: {e}")
            raise ConflictError(
                f"Round {round_number} already exists for group {group_key}",
                details={"group_key": group_key, "round_number": round_number},
            )
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Group {group_key} round {round_number} created by {user.name} "
            f"with {len(group_items)} items"
        )
        return await self.get_round_by_id(count_round.id), group_items

    async def list_groups(self) -> List[CountRound]:
        """All active rounds, most recent first."""
        result = await self.db.execute(
            select(CountRound)
            .where(CountRound.status == RoundStatus.ACTIVE.value)
            .order_by(CountRound.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_groups_by_user(self, user_id: UUID) -> List[Tuple[CountRound, List[CountItem]]]:
        """Rounds assigned to a collaborator, each with its group's items."""
        user = await self.db.get(CountUser, user_id)
        if not user or not user.is_active:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})

        result = await self.db.execute(
            select(CountRound)
            .where(
                CountRound.collaborator_id == user_id,
                CountRound.status == RoundStatus.ACTIVE.value,
            )
            .order_by(CountRound.created_at.desc())
        )
        rounds = list(result.scalars().all())

        items_by_group: Dict[str, List[CountItem]] = {}
        for count_round in rounds:
            if count_round.group_key not in items_by_group:
                items_by_group[count_round.group_key] = await self.registry.get_group_items(
                    count_round.group_key
                )
        return [(r, items_by_group[r.group_key]) for r in rounds]

    async def get_group(self, group_key: str) -> Tuple[List[CountRound], List[CountItem]]:
        """Rounds of a group ordered by round number, and the shared items."""
        result = await self.db.execute(
            select(CountRound)
            .where(
                CountRound.group_key == group_key,
                CountRound.status == RoundStatus.ACTIVE.value,
            )
            .order_by(CountRound.round_number)
        )
        rounds = list(result.scalars().all())
        if not rounds:
            raise NotFoundError("Count group not found", details={"group_key": group_key})
        return rounds, await self.registry.get_group_items(group_key)

    async def delete_group(self, group_key: str) -> int:
        return await self.gate.delete_group(group_key)

    # ========================================================================
    # COUNTING
    # ========================================================================

    async def record_count(
        self,
        round_id: UUID,
        item_id: UUID,
        user_id: UUID,
        stock_at_time: int,
        counted: int
    ) -> CountLogEntry:
        return await self.logs.record_count(round_id, item_id, user_id, stock_at_time, counted)

    async def list_logs(self, round_id: UUID) -> List[Dict[str, Any]]:
        return await self.logs.list_logs(round_id)

    async def aggregated_logs(self, round_id: UUID) -> List[Dict[str, Any]]:
        return await self.logs.aggregated_logs(round_id)

    async def set_item_review_flag(
        self,
        item_key: str,
        frontend_flag: bool,
        item_id: UUID
    ) -> Tuple[CountItem, Optional[ReviewDecision]]:
        return await self.evaluator.set_item_review_flag(item_key, frontend_flag, item_id)

    async def get_live_stock(
        self,
        product_code: int,
        company_code: Optional[str] = None
    ) -> Optional[LiveStock]:
        """Live stock of a product; None when the ERP is unreachable."""
        try:
            return await self.oracle.fetch_live_stock(product_code, company_code)
        except StockOracleError as e:
            logger.warning(f"Live stock lookup failed for product {product_code}: {e.message}")
            return None

    # ========================================================================
    # ROUND GATE
    # ========================================================================

    async def close_round(
        self,
        group_key: str,
        round_number: int,
        frontend_divergence: bool = False,
        items_to_recheck: Optional[Sequence[UUID]] = None
    ) -> Optional[CountRound]:
        """
        Close a round; after the final round, auto-resolve flagged products.
        """
        result = await self.gate.close_round(
            group_key, round_number, frontend_divergence, items_to_recheck
        )

        if round_number == FINAL_ROUND:
            result_id = result.id if result else None
            flagged = (await self.db.execute(
                select(CountItem.product_code)
                .where(
                    CountItem.group_key == group_key,
                    CountItem.needs_review.is_(True),
                )
                .distinct()
            )).scalars().all()
            for product_code in flagged:
                await self.ledger.auto_resolve(group_key, product_code)
            # A failed auto audit rolls back and expires the loaded round
            return await self.get_round_by_id(result_id) if result_id else None

        return result
