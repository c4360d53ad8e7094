from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stockcount.config import settings
from stockcount.database import get_db
from stockcount.services.audit_ledger import AuditLedger
from stockcount.services.count_service import CountingService
from stockcount.services.stock_oracle import StockOracle, get_stock_oracle


def get_oracle() -> StockOracle:
    """Dependency returning the configured ERP stock lookup."""
    return get_stock_oracle()


async def get_counting_service(
    db: AsyncSession = Depends(get_db),
    oracle: StockOracle = Depends(get_oracle),
) -> CountingService:
    return CountingService(db, oracle, system_user_id=settings.SYSTEM_AUDIT_USER_ID)


async def get_audit_ledger(
    db: AsyncSession = Depends(get_db),
    oracle: StockOracle = Depends(get_oracle),
) -> AuditLedger:
    return AuditLedger(db, oracle, system_user_id=settings.SYSTEM_AUDIT_USER_ID)
