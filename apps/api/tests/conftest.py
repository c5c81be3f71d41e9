import sys
from pathlib import Path

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from carsa_api.api.dependencies.orchestration import get_orchestrators  # noqa: E402
from carsa_api.app import create_app  # noqa: E402
from carsa_api.db.base import Base  # noqa: E402
from carsa_api.db.session import get_session  # noqa: E402
from carsa_api.models import Merchant  # noqa: E402
from carsa_api.observability.orchestration import get_orchestration_store  # noqa: E402
from carsa_api.services.ledger import InMemoryLedgerClient  # noqa: E402
from carsa_api.services.orchestration import build_orchestrators  # noqa: E402

MERCHANT_WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
CUSTOMER_WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
NEW_MERCHANT_WALLET = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # A file database gives each session its own connection, so concurrent
    # inserts race on the real primary-key constraint.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'carsa.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def ledger():
    return InMemoryLedgerClient()


@pytest_asyncio.fixture
async def orchestrators(session_factory, ledger):
    store = get_orchestration_store()
    store.reset()
    return build_orchestrators(session_factory, ledger, observability=store)


@pytest_asyncio.fixture
async def merchant(session_factory, ledger):
    async with session_factory() as session:
        record = Merchant(
            wallet_address=MERCHANT_WALLET,
            name="Corner Cafe",
            category="food",
            cashback_rate_bps=1000,
            is_active=True,
            address_line1="1 Main St",
            city="Lisbon",
        )
        session.add(record)
        await session.commit()
    ledger.ensure_merchant(MERCHANT_WALLET, cashback_rate_bps=1000, name="Corner Cafe", category="food")
    return record


@pytest_asyncio.fixture
async def app_with_db(session_factory, orchestrators):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_orchestrators] = lambda: orchestrators

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
