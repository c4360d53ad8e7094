# tests/test_api.py
import pytest

from tests._helpers import COUNT_DATE, item_row

BASE = "/api/v1"


async def _create_round(client, round_number, group_key="G1", collaborator="Ana", stock=20):
    resp = await client.post(f"{BASE}/counts/groups", json={
        "collaborator": collaborator,
        "round_number": round_number,
        "group_key": group_key,
        "floor": "T1",
        "items": [item_row(100, "A-01", stock)],
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["checks"]["database"] == "connected"


@pytest.mark.asyncio
async def test_counting_flow(client, users):
    r1 = await _create_round(client, 1)
    r2 = await _create_round(client, 2)
    assert r1["released"] is True
    assert r2["released"] is False
    assert r1["collaborator"]["name"] == "Ana"
    item = r1["items"][0]
    assert item["stock_snapshot"] == 20

    for user, counted in (("ana", 10), ("bruno", 8)):
        resp = await client.post(f"{BASE}/counts/logs", json={
            "round_id": r1["id"],
            "item_id": item["id"],
            "user_id": str(users[user].id),
            "stock_at_time": 20,
            "counted": counted,
        })
        assert resp.status_code == 200, resp.text

    resp = await client.get(f"{BASE}/counts/rounds/{r1['id']}/logs")
    assert sorted(log["counted"] for log in resp.json()) == [8, 10]

    resp = await client.patch(f"{BASE}/counts/items/{item['id']}/review", json={
        "item_key": item["item_key"],
        "needs_review": True,
    })
    assert resp.status_code == 200, resp.text
    assert resp.json()["decision"]["real_sum"] == 18
    assert resp.json()["decision"]["source"] == "caller"

    resp = await client.post(f"{BASE}/counts/rounds/close", json={
        "group_key": "G1",
        "round_number": 1,
        "divergence": False,
    })
    assert resp.status_code == 200, resp.text
    assert resp.json()["id"] == r2["id"]
    assert resp.json()["released"] is True

    resp = await client.get(f"{BASE}/counts/groups/G1")
    assert [r["released"] for r in resp.json()["rounds"]] == [False, True]
    assert resp.json()["items"][0]["needs_review"] is True

    resp = await client.get(f"{BASE}/counts/users/{users['ana'].id}/groups")
    assert {g["round_number"] for g in resp.json()} == {1, 2}

    # Started groups cannot be deleted
    resp = await client.delete(f"{BASE}/counts/groups/G1")
    assert resp.status_code == 409
    assert resp.json()["type"] == "GroupStartedError"


@pytest.mark.asyncio
async def test_locked_round_rejects_counts(client, users):
    await _create_round(client, 1)
    r2 = await _create_round(client, 2)

    resp = await client.post(f"{BASE}/counts/logs", json={
        "round_id": r2["id"],
        "item_id": r2["items"][0]["id"],
        "user_id": str(users["ana"].id),
        "counted": 3,
    })
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_delete_unstarted_group(client):
    await _create_round(client, 1)
    await _create_round(client, 2)

    resp = await client.delete(f"{BASE}/counts/groups/G1")
    assert resp.status_code == 200
    assert resp.json() == {"group_key": "G1", "deleted_count": 2}

    resp = await client.get(f"{BASE}/counts/groups/G1")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_error_mapping(client):
    resp = await client.post(f"{BASE}/counts/groups", json={
        "collaborator": "Nobody",
        "round_number": 1,
        "items": [],
    })
    assert resp.status_code == 400
    assert resp.json()["details"] == {"collaborator": "Nobody"}

    resp = await client.post(f"{BASE}/counts/groups", json={
        "collaborator": "Ana",
        "round_number": 4,
    })
    assert resp.status_code == 422

    await _create_round(client, 1)
    resp = await client.post(f"{BASE}/counts/groups", json={
        "collaborator": "Bruno",
        "round_number": 1,
        "group_key": "G1",
    })
    assert resp.status_code == 409

    resp = await client.post(f"{BASE}/counts/rounds/close", json={
        "group_key": "G9",
        "round_number": 1,
    })
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_live_stock(client, oracle):
    oracle.stocks[100] = 7
    resp = await client.get(f"{BASE}/counts/products/100/stock", params={"company_code": "3"})
    assert resp.json() == {"product_code": 100, "stock": 7}

    resp = await client.get(f"{BASE}/counts/products/200/stock")
    assert resp.status_code == 404

    resp = await client.get(f"{BASE}/counts/products/100/stock", params={"company_code": "3a"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_audit_endpoints(client, users):
    resp = await client.post(f"{BASE}/audits", json={
        "group_key": "G1",
        "product_code": 100,
        "movement": "REDUCE",
        "quantity": 5,
        "note": "damaged",
        "user_id": str(users["bruno"].id),
    })
    assert resp.status_code == 201, resp.text
    audit = resp.json()
    assert audit["quantity"] == 5
    assert audit["flagged_difference"] == -5

    resp = await client.post(f"{BASE}/audits", json={
        "group_key": "G1",
        "product_code": 100,
        "movement": "INCLUDE",
        "quantity": 1,
        "user_id": str(users["ana"].id),
    })
    assert resp.status_code == 409

    resp = await client.get(f"{BASE}/audits/history/100")
    assert [(a["id"], a["user"]["name"]) for a in resp.json()] == [(audit["id"], "Bruno")]

    resp = await client.post(f"{BASE}/audits/{audit['id']}/void")
    assert resp.json()["status"] == "void"
    assert (await client.get(f"{BASE}/audits/history/100")).json() == []


@pytest.mark.asyncio
async def test_pending_review_endpoint(client):
    resp = await client.get(f"{BASE}/audits/pending", params={"date": COUNT_DATE.isoformat()})
    assert resp.status_code == 200
    assert resp.json() == []

    resp = await client.get(f"{BASE}/audits/pending", params={"date": "14/03/2026"})
    assert resp.status_code == 422
