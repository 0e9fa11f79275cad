"""
Shared test configuration and fixtures for the atproto-handle tests.

Provides fake collaborators (clock, identity resolver), the PostgreSQL database fixtures for the
database binding store, and Redis clients for the Redis TTL store.
"""

import os
import uuid
from typing import Dict, Optional
from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social.graze.handles.claims.matcher import DomainAuthorizationMatcher
from social.graze.handles.claims.persistence import BindingStore, Bindings
from social.graze.handles.claims.registry import ClaimRegistry
from social.graze.handles.errors import ResolutionError
from social.graze.handles.model.base import Base


class FakeClock:
    """A monotonic clock the test advances by hand."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentityResolver:
    """Resolves handles and DIDs from a fixed table."""

    def __init__(self, identities: Dict[str, str]) -> None:
        self.identities = identities
        self.calls = []

    async def resolve(self, value: str) -> str:
        self.calls.append(value)
        value = value.strip().lstrip("@")
        if value.startswith("did:"):
            if value in self.identities.values():
                return value
            raise ResolutionError.did_did_not_resolve(value)
        did = self.identities.get(value, None)
        if did is None:
            raise ResolutionError.handle_did_not_resolve(value)
        return did


class MemoryBindingStore(BindingStore):
    """Binding store kept in a dict, with switchable failures."""

    def __init__(self, bindings: Optional[Bindings] = None) -> None:
        self.bindings: Bindings = dict(bindings or {})
        self.writes = 0
        self.fail_reads: Optional[Exception] = None
        self.fail_writes: Optional[Exception] = None

    async def read(self) -> Bindings:
        if self.fail_reads is not None:
            raise self.fail_reads
        return dict(self.bindings)

    async def write(self, bindings: Bindings) -> None:
        if self.fail_writes is not None:
            raise self.fail_writes
        self.writes += 1
        self.bindings = dict(bindings)


IDENTITIES = {
    "alice.bsky.social": "did:plc:AAA",
    "alice.example.net": "did:plc:AAA",
    "bob.bsky.social": "did:plc:BBB",
}


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_resolver():
    return FakeIdentityResolver(dict(IDENTITIES))


@pytest.fixture
def memory_binding_store():
    return MemoryBindingStore()


@pytest.fixture
def make_binding_store():
    return MemoryBindingStore


@pytest.fixture
def matcher():
    return DomainAuthorizationMatcher(["*.example.com"])


@pytest_asyncio.fixture
async def registry(memory_binding_store, fake_resolver, matcher):
    claim_registry = ClaimRegistry(memory_binding_store, fake_resolver, matcher)
    await claim_registry.reload()
    return claim_registry


@pytest.fixture
def mock_oauth_client():
    client = AsyncMock()
    client.authorize.return_value = "https://auth.example.com/oauth/authorize?request_uri=urn%3Aabc"
    return client


# Test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    try:
        admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await admin_engine.dispose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture(scope="function")
async def test_database():
    """Create and clean up test database for each test function."""
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    unique_db_name = f"handles_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def engine(test_database):
    """Create async SQLAlchemy engine with all tables."""
    engine = create_async_engine(test_database, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def database_session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()
