# tests/conftest.py
import os
from typing import AsyncGenerator, Dict

# Settings are read at import time: point them at SQLite before importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["STOCK_ORACLE_URL"] = ""
os.environ.pop("SYSTEM_AUDIT_USER_ID", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from stockcount.api.deps import get_oracle  # noqa: E402
from stockcount.database import create_engine_for, get_db, init_db  # noqa: E402
from stockcount.main import app  # noqa: E402
from stockcount.models import CountUser  # noqa: E402
from stockcount.services.count_service import CountingService  # noqa: E402
from tests._helpers import FakeStockOracle  # noqa: E402


# =========================================
# One in-memory database per test
# =========================================
@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine_for("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(bind=engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(engine: AsyncEngine):
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture(scope="function")
async def session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as sess:
        try:
            yield sess
        finally:
            if sess.in_transaction():
                await sess.rollback()


@pytest.fixture
def oracle() -> FakeStockOracle:
    return FakeStockOracle()


# =========================================
# Users
# =========================================
@pytest_asyncio.fixture
async def users(session: AsyncSession) -> Dict[str, CountUser]:
    created = {
        "ana": CountUser(name="Ana", code="C01"),
        "bruno": CountUser(name="Bruno", code="C02"),
        "system": CountUser(name="System", code="SYS"),
        "retired": CountUser(name="Retired", code="C99", is_active=False),
    }
    session.add_all(created.values())
    await session.commit()
    return created


@pytest.fixture
def service(session, oracle, users) -> CountingService:
    return CountingService(session, oracle, system_user_id=users["system"].id)


# =========================================
# HTTP client
# =========================================
@pytest_asyncio.fixture
async def client(session_maker, oracle, users) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def _get_db():
        async with session_maker() as sess:
            try:
                yield sess
                await sess.commit()
            except Exception:
                await sess.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_oracle] = lambda: oracle

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
