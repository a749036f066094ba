"""Pytest configuration and shared fixtures."""

from typing import AsyncGenerator, Optional
from urllib.parse import parse_qs, urlparse
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from linkbio.core.database import Base, get_db
from linkbio.core.security import hash_password
from linkbio.main import app
from linkbio.models.user import User
from linkbio.services.identity.errors import ProviderAuthFailed
from linkbio.services.identity.providers import OAuthProvider, ProviderProfile, get_oauth_provider

# StaticPool keeps the in-memory database on one shared connection
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_BASE_URL = "https://test"
TEST_PASSWORD = "correct horse battery"


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign keys for SQLite."""
    if hasattr(dbapi_conn, "execute"):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class StubOAuthProvider(OAuthProvider):
    """Provider double: no network, profile chosen by the test."""

    provider_name = "stub"

    def __init__(self, profile: Optional[ProviderProfile] = None) -> None:
        super().__init__(
            client_id="test-client",
            client_secret="test-secret",
            authorize_url="https://idp.test/authorize",
            token_url="https://idp.test/token",
            userinfo_url="https://idp.test/userinfo",
            redirect_uri=f"{TEST_BASE_URL}/auth/oauth/callback",
            scopes=["openid", "email", "profile"],
        )
        self.profile = profile or make_profile()
        self.exchanged_codes: list[str] = []

    async def fetch_profile(self, code: str) -> ProviderProfile:
        self.exchanged_codes.append(code)
        if code == "bad-code":
            raise ProviderAuthFailed()
        return self.profile

    def parse_profile(self, userinfo):
        return self.profile


def make_profile(
    provider_id: str = "google-sub-1",
    email: Optional[str] = "newcomer@example.com",
    name: str = "New Comer",
) -> ProviderProfile:
    return ProviderProfile(
        provider_id=provider_id,
        email=email,
        name=name,
        avatar="https://img.test/avatar.png",
        email_verified=True,
    )


def state_from_location(location: str) -> str:
    """Pull the ``state`` parameter out of a provider authorization URL."""
    return parse_qs(urlparse(location).query)["state"][0]


async def run_oauth_flow(
    client: httpx.AsyncClient,
    username: Optional[str] = None,
    code: str = "good-code",
) -> httpx.Response:
    """Drive start + callback and return the callback response (not followed)."""
    params = {"username": username} if username else {}
    start = await client.get("/auth/oauth/start", params=params)
    assert start.status_code == 302
    state = state_from_location(start.headers["location"])
    return await client.get("/auth/oauth/callback", params={"state": state, "code": code})


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    import linkbio.models  # noqa: F401

    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def stub_provider() -> StubOAuthProvider:
    return StubOAuthProvider()


@pytest.fixture(scope="function")
def override_dependencies(db_session: AsyncSession, stub_provider: StubOAuthProvider):
    """Point the app at the test database and the stub provider."""

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_oauth_provider] = lambda: stub_provider
    yield
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def async_client(override_dependencies) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async client over the ASGI app (https so secure cookies round-trip)."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url=TEST_BASE_URL
    ) as ac:
        yield ac


@pytest_asyncio.fixture(scope="function")
async def second_client(override_dependencies) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Independent browser: its own cookie jar against the same app and database."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url=TEST_BASE_URL
    ) as ac:
        yield ac


async def create_user(
    db: AsyncSession,
    username: str,
    email: Optional[str] = None,
    password: Optional[str] = TEST_PASSWORD,
    provider_id: Optional[str] = None,
) -> User:
    user = User(
        id=uuid4(),
        username=username,
        email=email,
        name=username.title(),
        provider_id=provider_id,
        password_hash=hash_password(password) if password else None,
        is_active=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a password user."""
    return await create_user(db_session, "alice", email="alice@example.com")


@pytest_asyncio.fixture
async def second_user(db_session: AsyncSession) -> User:
    """Create a second, unrelated password user."""
    return await create_user(db_session, "bob", email="bob@example.com")


@pytest.fixture
def oauth_flow():
    """The ``run_oauth_flow`` helper, as a fixture."""
    return run_oauth_flow


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Create extra users: ``await user_factory("carol", email=...)``."""

    async def _create(username: str, **kwargs) -> User:
        return await create_user(db_session, username, **kwargs)

    return _create


@pytest.fixture
def profile_factory():
    return make_profile
