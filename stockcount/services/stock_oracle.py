"""
Live stock lookup against the legacy ERP.

The ERP is reached through an HTTP gateway exposing one query: the current
available stock of a product for a company. Lookups are slow and may fail;
callers treat every lookup as best effort and fall back to stored snapshots.
"""
import httpx
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from stockcount.config import settings
from stockcount.core.exceptions import StockOracleError, ValidationError

logger = logging.getLogger(__name__)

_COMPANY_CODE_RE = re.compile(r"^\d+$")


@dataclass
class LiveStock:
    """Live stock figure for one product."""
    product_code: int
    stock: int


def validate_company_code(company_code: str) -> str:
    """Company codes are numeric strings; anything else is rejected."""
    company_code = str(company_code).strip()
    if not _COMPANY_CODE_RE.match(company_code):
        raise ValidationError(
            "Invalid company code",
            details={"company_code": company_code},
        )
    return company_code


class StockOracle(ABC):
    """Interface of the live stock lookup."""

    @abstractmethod
    async def fetch_live_stock(
        self,
        product_code: int,
        company_code: Optional[str] = None
    ) -> Optional[LiveStock]:
        """
        Return the live stock of a product, or None if the ERP has no row.

        Raises:
            ValidationError: company code is not numeric
            StockOracleError: the lookup failed
        """
        pass


class DisabledStockOracle(StockOracle):
    """Used when no ERP gateway is configured; every lookup falls back."""

    async def fetch_live_stock(self, product_code, company_code=None):
        validate_company_code(company_code or settings.DEFAULT_COMPANY_CODE)
        raise StockOracleError("Stock oracle is not configured")


class HttpStockOracle(StockOracle):
    """
    ERP stock lookup over HTTP.

    Usage:
        oracle = HttpStockOracle("http://erp-gateway:8080")
        live = await oracle.fetch_live_stock(23251, "3")
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def fetch_live_stock(
        self,
        product_code: int,
        company_code: Optional[str] = None
    ) -> Optional[LiveStock]:
        company = validate_company_code(company_code or settings.DEFAULT_COMPANY_CODE)
        url = f"{self.base_url}/products/{int(product_code)}/stock"

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(
                    url,
                    params={"company": company},
                    timeout=self.timeout
                )
        except httpx.HTTPError as e:
            logger.warning(f"Stock oracle request failed for product {product_code}: {e}")
            raise StockOracleError(f"Stock lookup failed: {e}") from e

        if response.status_code == 404:
            return None

        if response.status_code >= 400:
            logger.warning(
                f"Stock oracle error for product {product_code}: "
                f"{response.status_code} - {response.text}"
            )
            raise StockOracleError(
                f"Stock lookup failed with status {response.status_code}",
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise StockOracleError("Stock oracle returned invalid JSON") from e

        if not data:
            return None

        stock = data.get("stock")
        if stock is None:
            return None

        try:
            return LiveStock(product_code=int(product_code), stock=int(stock))
        except (TypeError, ValueError) as e:
            raise StockOracleError(f"Stock oracle returned invalid stock: {stock!r}") from e


def get_stock_oracle() -> StockOracle:
    """Build the oracle configured for this deployment."""
    if not settings.STOCK_ORACLE_URL:
        return DisabledStockOracle()
    return HttpStockOracle(settings.STOCK_ORACLE_URL, timeout=settings.STOCK_ORACLE_TIMEOUT)
