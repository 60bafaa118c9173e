import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from portal.core.cache import InMemoryPermissionCache
from portal.core.database import Base, DirectoryConfiguration, Role
from portal.services.token_issuer import TokenIssuer

TEST_SECRET = "test-access-secret-with-at-least-32-bytes"
TEST_REFRESH_SECRET = "test-refresh-secret-with-at-least-32-bytes"


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine for tests."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Async session bound to the in-memory engine."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache():
    return InMemoryPermissionCache(default_ttl=60)


@pytest.fixture
def token_issuer():
    return TokenIssuer(
        secret=TEST_SECRET,
        refresh_secret=TEST_REFRESH_SECRET,
        expiration="1h",
        refresh_expiration="7d",
        rotate_refresh=False,
    )


@pytest_asyncio.fixture
async def directory_config(db_session):
    """An active default directory configuration."""
    config = DirectoryConfiguration(
        name="corp",
        host="ldap.example.com",
        port=389,
        base_dn="DC=x,DC=com",
        bind_dn="CN=svc,DC=x,DC=com",
        bind_credentials="svc-password",
        search_filter="(sAMAccountName={{username}})",
        is_default=True,
        is_active=True,
    )
    db_session.add(config)
    await db_session.commit()
    return config


@pytest_asyncio.fixture
async def user_role(db_session):
    role = Role(name="user", description="Default role")
    db_session.add(role)
    await db_session.commit()
    return role


@pytest_asyncio.fixture
async def app_with_db(db_engine, monkeypatch):
    """FastAPI app wired to the in-memory test database."""
    import portal.core.database as db_module
    from portal.config import settings

    test_session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(db_module, "engine", db_engine)
    monkeypatch.setattr(db_module, "async_session", test_session_factory)
    monkeypatch.setattr(settings, "jwt_secret", TEST_SECRET)
    monkeypatch.setattr(settings, "jwt_refresh_secret", TEST_REFRESH_SECRET)
    monkeypatch.setattr(settings, "jwt_refresh_rotation", False)

    from portal.main import app

    monkeypatch.setattr(app.state, "permission_cache", InMemoryPermissionCache(default_ttl=60), raising=False)
    monkeypatch.setattr(app.state, "config_store", None, raising=False)

    yield app


def _make_access_token(user_id: str = "admin", roles: list[str] | None = None, username: str = "admin") -> str:
    issuer = TokenIssuer(secret=TEST_SECRET, refresh_secret=TEST_REFRESH_SECRET)
    tokens = issuer.issue({"id": user_id, "username": username, "email": None, "roles": roles if roles is not None else ["admin"]})
    return tokens["access_token"]


@pytest_asyncio.fixture
async def admin_client(app_with_db):
    """Async HTTP client carrying an admin access token."""
    transport = ASGITransport(app=app_with_db)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.headers["Authorization"] = f"Bearer {_make_access_token()}"
        yield client


@pytest_asyncio.fixture
async def anon_client(app_with_db):
    """Unauthenticated async HTTP client."""
    transport = ASGITransport(app=app_with_db)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def make_token():
    """Factory for access tokens signed with the test secret."""
    return _make_access_token
