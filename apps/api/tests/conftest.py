import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from main import app
from config import settings
from database import Base, get_db
from models.account import Account
from routers import rate_limit
from services.pricing import CreditPackageCatalog, OperationCostCatalog
from services.session_token import create_session_token


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def ledger_settings(monkeypatch):
    monkeypatch.setattr(settings, "WELCOME_BONUS_CREDITS", 100)
    monkeypatch.setattr(settings, "CREDIT_HISTORY_LIMIT", 50)
    monkeypatch.setattr(settings, "LEDGER_MAX_RETRIES", 3)
    monkeypatch.setattr(settings, "AUTH_PROVIDER_SECRET", "test-provider-secret")


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def seeded_db(db):
    await OperationCostCatalog(db).initialize_defaults()
    await CreditPackageCatalog(db).initialize_defaults()
    return db


@pytest_asyncio.fixture
async def integration_client(session_maker):
    async with session_maker() as session:
        await OperationCostCatalog(session).initialize_defaults()
        await CreditPackageCatalog(session).initialize_defaults()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)


async def make_account(session, account_id: str, email: str, credits: int = 0, **fields) -> Account:
    """Insert an account row directly, bypassing the welcome bonus."""
    account = Account(id=account_id, email=email, credits=credits, bonus_emails=[], **fields)
    session.add(account)
    await session.commit()
    return account


def auth_headers(account_id: str) -> dict:
    token = create_session_token(account_id).token
    return {"Authorization": f"Bearer {token}"}
