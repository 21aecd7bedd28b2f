import asyncio
import os
from typing import Any, AsyncGenerator, Generator, List

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("HELIUS_API_KEY", "test-api-key")
os.environ.setdefault("HELIUS_WEBHOOK_ID", "wh-test")
os.environ.setdefault("WEBHOOK_RECEIVER_URL", "https://indexer.test/api/webhooks/helius")

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from factories import make_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.api import deps
from app.db.session import init_db
from app.services.helius import SubscriptionEditError


class FakeSubscriptionClient:
    """Records every full-replacement edit instead of calling Helius."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.failures = 0

    @property
    def addresses(self) -> List[str] | None:
        return self.calls[-1] if self.calls else None

    def fail_next(self, times: int = 1) -> None:
        self.failures = times

    async def edit_webhook(self, addresses: List[str]) -> dict[str, Any]:
        self.calls.append(list(addresses))
        if self.failures:
            self.failures -= 1
            raise SubscriptionEditError("Helius API edit request failed with status 500")
        return {"webhookID": "wh-test", "accountAddresses": list(addresses)}


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}"


@pytest.fixture
def dest_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'destination.db'}"


@pytest_asyncio.fixture
async def engine(db_url: str) -> AsyncGenerator[AsyncEngine, None]:
    engine = make_engine(db_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def subscription() -> FakeSubscriptionClient:
    return FakeSubscriptionClient()


@pytest.fixture
def client(db_url: str, subscription: FakeSubscriptionClient) -> Generator[TestClient, None, None]:
    from app.main import app

    engine = make_engine(db_url)
    asyncio.run(init_db(engine))
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[deps.get_db] = override_db
    app.dependency_overrides[deps.get_subscription_client] = lambda: subscription

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


@pytest.fixture
def auth_headers(client: TestClient) -> dict[str, str]:
    client.post("/api/auth/register", json={"email": "owner@example.com", "password": "s3cret-pass"})
    response = client.post("/api/auth/login", json={"email": "owner@example.com", "password": "s3cret-pass"})
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
