"""
Count Log Aggregator.

Stores one counted quantity per (round, item, user) and sums counted
quantities per item key and round number. Sums are always computed from the
current log rows; nothing keeps a running total.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set
from uuid import UUID, uuid4

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from stockcount.core.exceptions import ConflictError, NotFoundError, ValidationError
from stockcount.models.count import CountItem, CountLogEntry, CountRound, RoundStatus
from stockcount.models.user import CountUser

logger = logging.getLogger(__name__)


class CountLogAggregator:
    """Log upserts and per-key aggregation."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========================================================================
    # WRITES
    # ========================================================================

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise ValidationError(f"Log upsert is not supported on {dialect}")

    async def record_count(
        self,
        round_id: UUID,
        item_id: UUID,
        user_id: UUID,
        stock_at_time: int,
        counted: int
    ) -> CountLogEntry:
        """
        Record a user's counted quantity for an item in a round.

        A second submission by the same user for the same round and item
        replaces the first one (value, stock and timestamp).
        """
        count_round = await self.db.get(CountRound, round_id)
        if not count_round or not count_round.is_active:
            raise NotFoundError("Count round not found", details={"round_id": str(round_id)})
        if not count_round.released:
            raise ConflictError(
                f"Round {count_round.round_number} of group {count_round.group_key} is locked",
                details={"round_id": str(round_id)},
            )

        item = await self.db.get(CountItem, item_id)
        if not item:
            raise NotFoundError("Count item not found", details={"item_id": str(item_id)})
        if item.group_key != count_round.group_key:
            raise ValidationError(
                "Item does not belong to the round's group",
                details={"item_id": str(item_id), "group_key": count_round.group_key},
            )

        user = await self.db.get(CountUser, user_id)
        if not user or not user.is_active:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})

        insert = self._insert()
        stmt = insert(CountLogEntry).values(
            id=uuid4(),
            round_id=round_id,
            item_id=item_id,
            item_key=item.item_key,
            user_id=user_id,
            stock_at_time=int(stock_at_time),
            counted=int(counted),
            created_at=datetime.utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["round_id", "item_id", "user_id"],
            set_={
                "stock_at_time": stmt.excluded.stock_at_time,
                "counted": stmt.excluded.counted,
                "created_at": stmt.excluded.created_at,
            },
        )
        await self.db.execute(stmt)
        await self.db.commit()

        result = await self.db.execute(
            select(CountLogEntry)
            .where(
                CountLogEntry.round_id == round_id,
                CountLogEntry.item_id == item_id,
                CountLogEntry.user_id == user_id,
            )
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one()
        logger.info(
            f"Count recorded: round={count_round.group_key}/{count_round.round_number} "
            f"key={entry.item_key} user={user_id} counted={entry.counted}"
        )
        return entry

    # ========================================================================
    # AGGREGATION
    # ========================================================================

    async def aggregate(
        self,
        item_key: str,
        round_number: int,
        group_keys: Optional[Sequence[str]] = None
    ) -> int:
        """Sum of counted quantities for an item key in rounds with the given number."""
        query = (
            select(func.coalesce(func.sum(CountLogEntry.counted), 0))
            .join(CountRound, CountRound.id == CountLogEntry.round_id)
            .where(
                CountLogEntry.item_key == item_key,
                CountRound.round_number == round_number,
                CountRound.status == RoundStatus.ACTIVE.value,
            )
        )
        if group_keys is not None:
            query = query.where(CountRound.group_key.in_(list(group_keys)))
        return int(await self.db.scalar(query) or 0)

    async def aggregate_keys(
        self,
        item_keys: Iterable[str],
        round_number: int,
        group_keys: Optional[Sequence[str]] = None
    ) -> int:
        """
        Sum over several item keys.

        Keys are de-duplicated first: two locations sharing a key would
        otherwise count the same logs twice.
        """
        total = 0
        for item_key in sorted(set(k for k in item_keys if k)):
            total += await self.aggregate(item_key, round_number, group_keys)
        return total

    async def counted_item_ids(self, item_ids: Iterable[UUID], round_number: int) -> Set[UUID]:
        """Items having at least one log in an active round with the given number."""
        ids = list(item_ids)
        if not ids:
            return set()
        result = await self.db.execute(
            select(CountLogEntry.item_id)
            .join(CountRound, CountRound.id == CountLogEntry.round_id)
            .where(
                CountLogEntry.item_id.in_(ids),
                CountRound.round_number == round_number,
                CountRound.status == RoundStatus.ACTIVE.value,
            )
            .distinct()
        )
        return set(result.scalars().all())

    async def latest_round_number(self, item_key: str) -> Optional[int]:
        """Round number of the most recent log for an item key."""
        result = await self.db.execute(
            select(CountRound.round_number)
            .join(CountLogEntry, CountLogEntry.round_id == CountRound.id)
            .where(
                CountLogEntry.item_key == item_key,
                CountRound.status == RoundStatus.ACTIVE.value,
            )
            .order_by(CountLogEntry.created_at.desc(), CountRound.round_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_logs_for_rounds(self, round_ids: Iterable[UUID]) -> int:
        ids = list(round_ids)
        if not ids:
            return 0
        return await self.db.scalar(
            select(func.count()).select_from(CountLogEntry).where(CountLogEntry.round_id.in_(ids))
        ) or 0

    # ========================================================================
    # LISTINGS
    # ========================================================================

    def _log_query(self):
        return (
            select(
                CountLogEntry,
                CountRound.round_number,
                CountRound.group_key,
                CountItem.product_code,
                CountItem.location,
                CountUser.name,
            )
            .join(CountRound, CountRound.id == CountLogEntry.round_id)
            .join(CountItem, CountItem.id == CountLogEntry.item_id)
            .join(CountUser, CountUser.id == CountLogEntry.user_id)
        )

    @staticmethod
    def _log_row(row) -> Dict[str, Any]:
        entry, round_number, group_key, product_code, location, user_name = row
        return {
            "id": entry.id,
            "round_id": entry.round_id,
            "round_number": round_number,
            "group_key": group_key,
            "item_id": entry.item_id,
            "item_key": entry.item_key,
            "product_code": product_code,
            "location": location,
            "user_id": entry.user_id,
            "user_name": user_name,
            "stock_at_time": entry.stock_at_time,
            "counted": entry.counted,
            "created_at": entry.created_at,
        }

    async def list_logs(self, round_id: UUID) -> List[Dict[str, Any]]:
        """Logs of one round with item location and user name."""
        result = await self.db.execute(
            self._log_query()
            .where(CountLogEntry.round_id == round_id)
            .order_by(CountLogEntry.created_at.desc())
        )
        return [self._log_row(row) for row in result.all()]

    async def aggregated_logs(self, round_id: UUID) -> List[Dict[str, Any]]:
        """
        Every log sharing an item key with the items of the round's group.

        Sibling groups counting the same product on the same day show up here
        even though they have a different group key.
        """
        count_round = await self.db.get(CountRound, round_id)
        if not count_round:
            raise NotFoundError("Count round not found", details={"round_id": str(round_id)})

        keys = (await self.db.execute(
            select(CountItem.item_key)
            .where(CountItem.group_key == count_round.group_key)
            .distinct()
        )).scalars().all()
        if not keys:
            return []

        result = await self.db.execute(
            self._log_query()
            .where(
                CountLogEntry.item_key.in_(list(keys)),
                CountRound.status == RoundStatus.ACTIVE.value,
            )
            .order_by(CountRound.round_number, CountLogEntry.created_at.desc())
        )
        return [self._log_row(row) for row in result.all()]
