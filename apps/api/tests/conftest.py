import time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit
from services import accounts
from services.ledger_errors import ProviderError
from services.providers import get_ai_provider, get_messaging_provider
from services.providers.types import BaseAIProvider, BaseMessagingProvider, ProviderResult
from services.session_token import create_session_token
from services.transactions import settled_credit_sum


class FakeAIProvider(BaseAIProvider):
    """Reports a fixed token count; ``during_call`` runs while the call is in flight."""

    provider_name = "openai"

    def __init__(self, tokens: int = 500):
        self.tokens = tokens
        self.error = None
        self.during_call = None
        self.calls = []

    async def generate(self, request, *, budget_credits):
        self.calls.append((request, budget_credits))
        if self.during_call is not None:
            await self.during_call()
        if self.error is not None:
            raise self.error
        return ProviderResult(
            success=True,
            units_consumed=self.tokens,
            latency_ms=12,
            output="Generated campaign copy",
            external_ref="chatcmpl-test",
            provider="openai",
            details={"input_tokens": 20, "output_tokens": self.tokens - 20},
        )

    def available(self):
        return {"openai": True, "anthropic": False}


class FakeMessagingProvider(BaseMessagingProvider):
    """Delivers everything except the recipients listed in ``failing``."""

    provider_name = "fake-messaging"

    def __init__(self):
        self.failing = set()
        self.sent = []

    async def send(self, message):
        if message.recipient in self.failing:
            raise ProviderError(self.provider_name, f"Recipient {message.recipient} rejected")
        self.sent.append(message)
        return ProviderResult(
            success=True,
            units_consumed=1,
            latency_ms=3,
            external_ref=f"msg-{len(self.sent)}",
            provider=self.provider_name,
        )


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


IDENTITY_SECRET = "identity-provider-test-signing-key"


@pytest.fixture(autouse=True)
def identity_provider(monkeypatch):
    monkeypatch.setattr(settings, "IDENTITY_JWT_SECRET", IDENTITY_SECRET)
    monkeypatch.setattr(settings, "IDENTITY_JWT_AUDIENCE", "")
    monkeypatch.setattr(settings, "IDENTITY_JWT_ISSUER", "")


@pytest.fixture
def identity_token():
    """Sign an identity-provider token the way the external sign-in service would."""

    def _token(email, secret=IDENTITY_SECRET, **claims):
        now = int(time.time())
        payload = {"sub": f"idp|{email}", "email": email, "iat": now, "exp": now + 600, **claims}
        return jwt.encode(payload, secret, algorithm="HS256")

    return _token


@pytest.fixture(autouse=True)
def no_bulk_send_delay(monkeypatch):
    monkeypatch.setattr(settings, "BULK_SMS_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "BULK_EMAIL_DELAY_SECONDS", 0)


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


@pytest.fixture
def make_account(session_maker, monkeypatch):
    """Create an account whose whole balance comes from the signup bonus."""

    async def _make(email="owner@example.com", balance=10, role=None):
        monkeypatch.setattr(settings, "SIGNUP_BONUS_CREDITS", balance)
        async with session_maker() as session:
            account = await accounts.create_account(session, email=email, role=role)
        return account.id

    return _make


@pytest.fixture
def ledger_totals(session_maker):
    """Return (settled delta sum, credited - debited, balance) for an account."""

    async def _totals(account_id):
        async with session_maker() as session:
            account = await accounts.get_account(account_id, session)
            settled = await settled_credit_sum(account_id, session)
            return settled, account.total_credited - account.total_debited, account.balance

    return _totals


@pytest.fixture
def fake_ai():
    return FakeAIProvider()


@pytest.fixture
def fake_messaging():
    return FakeMessagingProvider()


@pytest.fixture
def auth_header():
    def _header(account_id, role="user"):
        token = create_session_token(account_id, role=role)["token"]
        return {"Authorization": f"Bearer {token}"}

    return _header


@pytest_asyncio.fixture
async def client(session_maker, fake_ai, fake_messaging):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ai_provider] = lambda: fake_ai
    app.dependency_overrides[get_messaging_provider] = lambda: fake_messaging
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_ai_provider, None)
    app.dependency_overrides.pop(get_messaging_provider, None)
