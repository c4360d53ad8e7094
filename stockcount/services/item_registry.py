"""
Count Item Registry.

Creates the items of a count group and assigns their item keys.

An item key is derived from (product code, count date). A product may be
counted at two locations on the same day, so each key holds at most
ITEM_KEY_SLOTS rows; further rows roll over to "-v2", "-v3", ... . The slot a
row occupies is unique per key, so two concurrent creations can never claim
the same slot: the loser gets an integrity error inside its savepoint and
re-probes.
"""
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stockcount.config import settings
from stockcount.core.exceptions import ConflictError
from stockcount.models.count import CountItem

logger = logging.getLogger(__name__)


# ==== row sanitation ====

def strip_nulls(value: str) -> str:
    return value.replace("\x00", "")


def clean_text(value: Any) -> Optional[str]:
    """Convert any text-like value to a trimmed string without NULs, or None."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    text = strip_nulls(str(value)).strip()
    return text or None


def clean_number(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(round(number))


def clean_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value:
        text = clean_text(value) or ""
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            try:
                return date.fromisoformat(text[:10])
            except ValueError:
                pass
    return date.today()


@dataclass
class ItemRow:
    """A sanitized product row ready to become a CountItem."""
    count_date: date
    product_code: int
    description: str
    brand: Optional[str] = None
    manufacturer_ref: Optional[str] = None
    supplier_ref: Optional[str] = None
    location: Optional[str] = None
    unit: Optional[str] = None
    exit_quantity: int = 0
    stock: int = 0
    reserved: int = 0

    @classmethod
    def sanitize(cls, raw: dict) -> "ItemRow":
        return cls(
            count_date=clean_date(raw.get("date")),
            product_code=clean_number(raw.get("product_code")),
            description=clean_text(raw.get("description")) or "",
            brand=clean_text(raw.get("brand")),
            manufacturer_ref=clean_text(raw.get("manufacturer_ref")),
            supplier_ref=clean_text(raw.get("supplier_ref")),
            location=clean_text(raw.get("location")),
            unit=clean_text(raw.get("unit")),
            exit_quantity=clean_number(raw.get("exit_quantity")),
            stock=clean_number(raw.get("stock")),
            reserved=clean_number(raw.get("reserved")),
        )


# ==== key derivation ====

def base_item_key(product_code: int, count_date: date) -> str:
    return f"{product_code}-{count_date.isoformat()}"


def versioned_item_key(base_key: str, version: int) -> str:
    if version <= 1:
        return base_key
    return f"{base_key}-v{version}"


class ItemRegistry:
    """Creates and versions the count items of a group."""

    def __init__(
        self,
        db: AsyncSession,
        slots: Optional[int] = None,
        max_attempts: Optional[int] = None
    ):
        self.db = db
        self.slots = slots or settings.ITEM_KEY_SLOTS
        self.max_attempts = max_attempts or settings.ITEM_KEY_MAX_ATTEMPTS

    async def get_group_items(self, group_key: str) -> List[CountItem]:
        result = await self.db.execute(
            select(CountItem)
            .where(CountItem.group_key == group_key)
            .order_by(CountItem.product_code, CountItem.key_slot)
        )
        return list(result.scalars().all())

    async def create_items(self, group_key: str, rows: Iterable[ItemRow]) -> List[CountItem]:
        """
        Create one item per row for a new group.

        Re-submitting rows for a group that already has items returns the
        existing items untouched. Does not commit; the caller owns the
        transaction so that a partial item set is never visible.
        """
        existing = await self.get_group_items(group_key)
        if existing:
            logger.info(f"Group {group_key} already has {len(existing)} items, skipping creation")
            return existing

        items = []
        for row in rows:
            items.append(await self._claim_slot(group_key, row))
        return items

    async def _slot_usage(self, item_key: str) -> int:
        """Number of rows already holding the item key."""
        return await self.db.scalar(
            select(func.count()).select_from(CountItem).where(CountItem.item_key == item_key)
        ) or 0

    async def _claim_slot(self, group_key: str, row: ItemRow) -> CountItem:
        base_key = base_item_key(row.product_code, row.count_date)
        version = 1
        conflicts = 0

        while True:
            item_key = versioned_item_key(base_key, version)
            usage = await self._slot_usage(item_key)
            if usage >= self.slots:
                # Never step back to a lower version: logs may already point at it
                version += 1
                continue

            item = CountItem(
                item_key=item_key,
                key_slot=usage + 1,
                group_key=group_key,
                count_date=row.count_date,
                product_code=row.product_code,
                description=row.description,
                brand=row.brand,
                manufacturer_ref=row.manufacturer_ref,
                supplier_ref=row.supplier_ref,
                location=row.location,
                unit=row.unit,
                exit_quantity=row.exit_quantity,
                stock_snapshot=row.stock,
                reserved_quantity=row.reserved,
                needs_review=False,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(item)
            except IntegrityError:
                conflicts += 1
                logger.warning(
                    f"Slot {usage + 1} of {item_key} claimed concurrently, "
                    f"re-probing (attempt {conflicts})"
                )
                if conflicts >= self.max_attempts:
                    raise ConflictError(
                        "Could not allocate an item key slot",
                        details={"item_key": item_key, "attempts": conflicts},
                    )
                continue

            if version > 1:
                logger.info(
                    f"Product {row.product_code} exceeded {self.slots} locations "
                    f"for {row.count_date}, using {item_key}"
                )
            return item
