import os
import uuid
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory Mongo has no replica set, so the ledger runs its non-transactional path.
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "animate_test")
os.environ.setdefault("MONGODB_TRANSACTIONS", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("GENERATION_API_URL", "https://provider.test")
os.environ.setdefault("GENERATION_API_KEY", "test-provider-key")


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the rate limiter."""

    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    async def incr(self, key: str) -> int:
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True


@pytest_asyncio.fixture(autouse=True)
async def db() -> AsyncGenerator[None, None]:
    from mongomock_motor import AsyncMongoMockClient

    from app.db.init import init_db
    await init_db(AsyncMongoMockClient())
    yield


@pytest.fixture
def make_user():
    from app.models.user import User
    from app.services import credits as credits_service
    from app.services.users import generate_referral_code

    async def _make(credits: int = 0, **fields) -> User:
        user = User(
            google_sub=f"sub-{uuid.uuid4().hex}",
            email=fields.pop("email", f"{uuid.uuid4().hex[:8]}@example.com"),
            name=fields.pop("name", "Test User"),
            referral_code=generate_referral_code(),
            **fields,
        )
        await user.insert()
        if credits:
            await credits_service.earn(user.id, credits, "admin_award", description="test funding")
        return await User.get(user.id)

    return _make


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def provider():
    """Build a GenerationClient backed by a MockTransport; handler(request) -> httpx.Response."""
    from app.services.generation_client import GenerationClient

    clients = []

    def _make(handler, max_retries: int = 2) -> GenerationClient:
        client = GenerationClient(
            base_url="https://provider.test",
            api_key="test-provider-key",
            max_retries=max_retries,
            retry_base_delay=0,
            retry_max_delay=0,
            transport=httpx.MockTransport(handler),
        )
        clients.append(client)
        return client

    yield _make
    for c in clients:
        await c.close()


@pytest.fixture
def auth_headers():
    """Session cookie header for a user, as set by POST /v1/auth/google."""
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME
    from app.services.users import session_payload_for_user

    def _headers(user) -> dict[str, str]:
        cookie = create_session_cookie(session_payload_for_user(user))
        return {"Cookie": f"{SESSION_COOKIE_NAME}={cookie}"}

    return _headers


@pytest_asyncio.fixture
async def client(fake_redis) -> AsyncGenerator[AsyncClient, None]:
    from app.deps import get_redis
    from app.main import app
    app.dependency_overrides[get_redis] = lambda: fake_redis
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
