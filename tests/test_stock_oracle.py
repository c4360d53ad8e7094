# tests/test_stock_oracle.py
import httpx
import pytest

from stockcount.core.exceptions import StockOracleError, ValidationError
from stockcount.services.stock_oracle import (
    DisabledStockOracle, HttpStockOracle, StockOracle, get_stock_oracle, validate_company_code,
)


def _oracle(handler) -> HttpStockOracle:
    return HttpStockOracle("http://erp.test/", timeout=5, transport=httpx.MockTransport(handler))


def test_company_code_must_be_numeric():
    assert validate_company_code(" 3 ") == "3"
    for bad in ("", "3a", "3;DROP", "-1"):
        with pytest.raises(ValidationError):
            validate_company_code(bad)


def test_oracle_disabled_without_url():
    assert isinstance(get_stock_oracle(), DisabledStockOracle)


def test_oracle_interface_is_abstract():
    with pytest.raises(TypeError):
        StockOracle()

    class NoLookup(StockOracle):
        pass

    with pytest.raises(TypeError):
        NoLookup()


@pytest.mark.asyncio
async def test_fetch_live_stock():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"product_code": 23251, "stock": 42})

    live = await _oracle(handler).fetch_live_stock(23251, "7")

    assert live.product_code == 23251
    assert live.stock == 42
    assert seen[0].url.path == "/products/23251/stock"
    assert seen[0].url.params["company"] == "7"


@pytest.mark.asyncio
async def test_default_company_code():
    seen = []

    def handler(request):
        seen.append(request.url.params["company"])
        return httpx.Response(200, json={"stock": "5"})

    live = await _oracle(handler).fetch_live_stock(1)
    assert live.stock == 5
    assert seen == ["3"]


@pytest.mark.asyncio
async def test_missing_product_is_none():
    oracle = _oracle(lambda request: httpx.Response(404))
    assert await oracle.fetch_live_stock(1, "3") is None

    oracle = _oracle(lambda request: httpx.Response(200, json={}))
    assert await oracle.fetch_live_stock(1, "3") is None


@pytest.mark.asyncio
async def test_failures_raise_oracle_error():
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(StockOracleError):
        await _oracle(unreachable).fetch_live_stock(1, "3")

    with pytest.raises(StockOracleError) as exc:
        await _oracle(lambda request: httpx.Response(503, text="down")).fetch_live_stock(1, "3")
    assert exc.value.status_code == 503

    with pytest.raises(StockOracleError):
        await _oracle(lambda request: httpx.Response(200, text="<html>")).fetch_live_stock(1, "3")

    with pytest.raises(StockOracleError):
        await _oracle(lambda request: httpx.Response(200, json={"stock": "n/a"})).fetch_live_stock(1, "3")


@pytest.mark.asyncio
async def test_invalid_company_code_is_rejected_before_lookup():
    def handler(request):
        raise AssertionError("ERP must not be called")

    with pytest.raises(ValidationError):
        await _oracle(handler).fetch_live_stock(1, "3 OR 1=1")
    with pytest.raises(ValidationError):
        await DisabledStockOracle().fetch_live_stock(1, "x")
    with pytest.raises(StockOracleError):
        await DisabledStockOracle().fetch_live_stock(1, "3")
