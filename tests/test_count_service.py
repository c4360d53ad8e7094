# tests/test_count_service.py
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from stockcount.core.exceptions import ConflictError, NotFoundError, ValidationError
from stockcount.models import CountItem, CountLogEntry, RoundMode
from tests._helpers import item_row


# ============================================================
# Groups
# ============================================================

@pytest.mark.asyncio
async def test_round_one_released_later_rounds_locked(service):
    rows = [item_row(100, "A-01", 18)]
    r1, items = await service.create_group("Ana", 1, "G1", "T1", rows)
    r2, items2 = await service.create_group("Ana", 2, "G1", "T1", rows)
    r3, _ = await service.create_group("Bruno", 3, "G1", "T1", rows, mode=RoundMode.AD_HOC)

    assert r1.released is True
    assert r2.released is False
    assert r3.released is False
    assert r3.mode == "ad_hoc"
    assert r3.collaborator.name == "Bruno"
    # Later rounds share the items of the group
    assert [i.id for i in items2] == [i.id for i in items]


@pytest.mark.asyncio
async def test_unknown_or_inactive_collaborator_rejected(service, session):
    with pytest.raises(ValidationError):
        await service.create_group("Nobody", 1, "G1", None, [item_row(100, "A-01", 1)])
    with pytest.raises(ValidationError):
        await service.create_group("Retired", 1, "G1", None, [item_row(100, "A-01", 1)])

    assert await session.scalar(select(func.count()).select_from(CountItem)) == 0


@pytest.mark.asyncio
async def test_duplicate_round_conflicts(service):
    await service.create_group("Ana", 1, "G1", None, [item_row(100, "A-01", 1)])
    with pytest.raises(ConflictError):
        await service.create_group("Bruno", 1, "G1", None, [item_row(100, "A-01", 1)])


@pytest.mark.asyncio
async def test_group_key_generated_when_missing(service):
    count_round, _ = await service.create_group("Ana", 1, "  ", None, [])
    assert count_round.group_key.strip()
    assert len(count_round.group_key) == 36


@pytest.mark.asyncio
async def test_groups_listing(service, users):
    await service.create_group("Ana", 1, "G1", "T1", [item_row(100, "A-01", 5)])
    await service.create_group("Bruno", 1, "G2", "T2", [item_row(200, "B-01", 3)])

    assert {r.group_key for r in await service.list_groups()} == {"G1", "G2"}

    assigned = await service.get_groups_by_user(users["ana"].id)
    assert [(r.group_key, [i.product_code for i in items]) for r, items in assigned] == [
        ("G1", [100])
    ]

    rounds, items = await service.get_group("G2")
    assert [r.round_number for r in rounds] == [1]
    assert items[0].location == "B-01"

    with pytest.raises(NotFoundError):
        await service.get_group("missing")
    with pytest.raises(NotFoundError):
        await service.get_groups_by_user(uuid4())


# ============================================================
# Count logs
# ============================================================

@pytest.mark.asyncio
async def test_resubmission_overwrites(service, session, users):
    r1, items = await service.create_group("Ana", 1, "G1", None, [item_row(100, "A-01", 18)])
    item = items[0]

    first = await service.record_count(r1.id, item.id, users["ana"].id, 18, 10)
    second = await service.record_count(r1.id, item.id, users["ana"].id, 18, 7)

    assert second.id == first.id
    assert second.counted == 7
    assert await service.logs.aggregate(item.item_key, 1) == 7
    assert await session.scalar(select(func.count()).select_from(CountLogEntry)) == 1


@pytest.mark.asyncio
async def test_aggregate_sums_users(service, users):
    r1, items = await service.create_group("Ana", 1, "G1", None, [item_row(100, "A-01", 18)])
    await service.record_count(r1.id, items[0].id, users["ana"].id, 18, 10)
    await service.record_count(r1.id, items[0].id, users["bruno"].id, 18, 8)

    assert await service.logs.aggregate(items[0].item_key, 1) == 18
    assert await service.logs.aggregate(items[0].item_key, 2) == 0


@pytest.mark.asyncio
async def test_record_count_validation(service, users):
    r1, items = await service.create_group("Ana", 1, "G1", None, [item_row(100, "A-01", 18)])
    r2, _ = await service.create_group("Ana", 2, "G1", None, [])
    other, other_items = await service.create_group("Bruno", 1, "G2", None, [item_row(200, "B-01", 3)])

    with pytest.raises(ConflictError):
        await service.record_count(r2.id, items[0].id, users["ana"].id, 18, 1)
    with pytest.raises(NotFoundError):
        await service.record_count(uuid4(), items[0].id, users["ana"].id, 18, 1)
    with pytest.raises(NotFoundError):
        await service.record_count(r1.id, uuid4(), users["ana"].id, 18, 1)
    with pytest.raises(NotFoundError):
        await service.record_count(r1.id, items[0].id, users["retired"].id, 18, 1)
    with pytest.raises(ValidationError):
        await service.record_count(r1.id, other_items[0].id, users["ana"].id, 3, 1)


@pytest.mark.asyncio
async def test_log_listings(service, users):
    g1, items = await service.create_group("Ana", 1, "G1", None, [item_row(100, "A-01", 18)])
    g2, sibling = await service.create_group("Bruno", 1, "G2", None, [item_row(100, "B-01", 18)])
    assert sibling[0].item_key == items[0].item_key

    await service.record_count(g1.id, items[0].id, users["ana"].id, 18, 10)
    await service.record_count(g2.id, sibling[0].id, users["bruno"].id, 18, 8)

    own = await service.list_logs(g1.id)
    assert [(row["user_name"], row["counted"], row["location"]) for row in own] == [("Ana", 10, "A-01")]

    shared = await service.aggregated_logs(g1.id)
    assert sorted((row["group_key"], row["counted"]) for row in shared) == [("G1", 10), ("G2", 8)]

    with pytest.raises(NotFoundError):
        await service.aggregated_logs(uuid4())


@pytest.mark.asyncio
async def test_live_stock_lookup_falls_back_to_none(service, oracle):
    oracle.stocks[100] = 42
    live = await service.get_live_stock(100, "3")
    assert live.stock == 42

    oracle.fail = True
    assert await service.get_live_stock(100) is None

    with pytest.raises(ValidationError):
        await service.get_live_stock(100, "3a")
