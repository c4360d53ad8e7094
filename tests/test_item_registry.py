# tests/test_item_registry.py
from datetime import date

import pytest
from sqlalchemy import select

from stockcount.core.exceptions import ConflictError
from stockcount.models import CountItem
from stockcount.services.item_registry import (
    ItemRegistry, ItemRow, base_item_key, clean_date, clean_number, clean_text,
    versioned_item_key,
)
from tests._helpers import COUNT_DATE, item_row


def test_item_keys():
    base = base_item_key(23251, date(2026, 3, 14))
    assert base == "23251-2026-03-14"
    assert versioned_item_key(base, 1) == base
    assert versioned_item_key(base, 3) == "23251-2026-03-14-v3"


def test_row_sanitation():
    row = ItemRow.sanitize({
        "date": "2026-03-14T10:22:00Z",
        "product_code": "100",
        "description": "  Parafuso\x00 M6 ",
        "brand": b"ACME",
        "location": "",
        "stock": "12.6",
        "reserved": float("nan"),
        "exit_quantity": None,
    })
    assert row.count_date == date(2026, 3, 14)
    assert row.product_code == 100
    assert row.description == "Parafuso M6"
    assert row.brand == "ACME"
    assert row.location is None
    assert row.stock == 13
    assert row.reserved == 0
    assert row.exit_quantity == 0


def test_clean_helpers_fall_back():
    assert clean_text(None) is None
    assert clean_text("   ") is None
    assert clean_number("abc") == 0
    assert clean_number(float("inf")) == 0
    assert clean_date("not a date") == date.today()


@pytest.mark.asyncio
async def test_two_slots_then_rollover(session):
    registry = ItemRegistry(session)

    first = await registry.create_items("G-A", [
        ItemRow.sanitize(item_row(100, "A-01", 10)),
        ItemRow.sanitize(item_row(100, "A-02", 10)),
    ])
    second = await registry.create_items("G-B", [
        ItemRow.sanitize(item_row(100, "B-01", 10)),
    ])
    await session.commit()

    base = base_item_key(100, COUNT_DATE)
    assert [(i.item_key, i.key_slot) for i in first] == [(base, 1), (base, 2)]
    assert second[0].item_key == f"{base}-v2"
    assert second[0].key_slot == 1


@pytest.mark.asyncio
async def test_existing_group_items_are_reused(session):
    registry = ItemRegistry(session)
    created = await registry.create_items("G-A", [ItemRow.sanitize(item_row(100, "A-01", 10))])
    again = await registry.create_items("G-A", [
        ItemRow.sanitize(item_row(100, "A-01", 10)),
        ItemRow.sanitize(item_row(200, "A-02", 4)),
    ])
    await session.commit()

    assert [i.id for i in again] == [i.id for i in created]
    total = (await session.execute(select(CountItem))).scalars().all()
    assert len(total) == 1


@pytest.mark.asyncio
async def test_concurrent_claim_reprobes(session, monkeypatch):
    """A slot taken between probe and insert is retried, never duplicated."""
    registry = ItemRegistry(session)
    await registry.create_items("G-A", [
        ItemRow.sanitize(item_row(100, "A-01", 10)),
        ItemRow.sanitize(item_row(100, "A-02", 10)),
    ])
    await registry.create_items("G-B", [ItemRow.sanitize(item_row(100, "B-01", 10))])
    await session.commit()

    real_usage = registry._slot_usage
    stale = {"served": False}

    async def stale_usage(item_key):
        # First probe misses both committed rows, as a racing request would
        if not stale["served"]:
            stale["served"] = True
            return 0
        return await real_usage(item_key)

    monkeypatch.setattr(registry, "_slot_usage", stale_usage)
    items = await registry.create_items("G-C", [ItemRow.sanitize(item_row(100, "C-01", 10))])
    await session.commit()

    base = base_item_key(100, COUNT_DATE)
    assert items[0].item_key == f"{base}-v2"
    assert items[0].key_slot == 2

    rows = (await session.execute(
        select(CountItem.item_key, CountItem.key_slot).order_by(CountItem.item_key, CountItem.key_slot)
    )).all()
    assert len(rows) == len(set(rows)) == 4


@pytest.mark.asyncio
async def test_claim_gives_up_after_max_attempts(session, monkeypatch):
    registry = ItemRegistry(session, max_attempts=2)
    await registry.create_items("G-A", [ItemRow.sanitize(item_row(100, "A-01", 10))])
    await session.commit()

    async def always_empty(item_key):
        return 0

    monkeypatch.setattr(registry, "_slot_usage", always_empty)
    with pytest.raises(ConflictError):
        await registry.create_items("G-B", [ItemRow.sanitize(item_row(100, "B-01", 10))])
