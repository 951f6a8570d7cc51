import socket
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobengine.core.config import settings
from jobengine.models.base import Base
from jobengine.providers.backends.mock import MockTextBackend
from jobengine.providers.catalog import BackendProvider
from jobengine.providers.rate_limiter import RateLimiterRegistry
from jobengine.providers.router import ProviderRouter
from jobengine.services.balance_store import InMemoryBalanceStore
from jobengine.services.reservation_ledger import ReservationLedger

# Use separate test database
TEST_DATABASE_URL = settings.database_url.replace(
    settings.database_name, f"{settings.database_name}_test"
)

# Test account ID (consistent across tests)
TEST_ACCOUNT_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def _is_postgres_available() -> bool:
    """Check if PostgreSQL is accepting connections.

    Returns:
        True if PostgreSQL is reachable on the configured port, False otherwise.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex((settings.database_host, settings.database_port))
        sock.close()
        return result == 0
    except OSError:
        return False


# Check once at module load time
_POSTGRES_AVAILABLE = _is_postgres_available()


def skip_if_no_postgres() -> None:
    """Skip test if PostgreSQL is not available.

    Called by fixtures that require database connection.
    """
    if not _POSTGRES_AVAILABLE:
        pytest.skip(
            f"PostgreSQL not available on port {settings.database_port}. "
            "Start database with: docker compose up -d"
        )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine.

    Skips test if PostgreSQL is not available (e.g., Docker not running).
    """
    skip_if_no_postgres()

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# =============================================================================
# In-memory fixtures
# =============================================================================


@pytest.fixture
def account_id() -> uuid.UUID:
    return TEST_ACCOUNT_ID


@pytest.fixture
def memory_store() -> InMemoryBalanceStore:
    """Balance store with TEST_ACCOUNT_ID holding 1000 units."""
    return InMemoryBalanceStore({TEST_ACCOUNT_ID: 1000})


@pytest.fixture
def ledger(memory_store: InMemoryBalanceStore) -> ReservationLedger:
    return ReservationLedger(memory_store)


@pytest.fixture
def rate_limiters() -> RateLimiterRegistry:
    """Isolated registry with the published quota table."""
    return RateLimiterRegistry()


@pytest.fixture
def deepseek_backend() -> MockTextBackend:
    return MockTextBackend(BackendProvider.DEEPSEEK)


@pytest.fixture
def router(
    deepseek_backend: MockTextBackend, rate_limiters: RateLimiterRegistry
) -> ProviderRouter:
    """Router with only the DeepSeek mock wired up."""
    return ProviderRouter(
        backends={BackendProvider.DEEPSEEK: deepseek_backend},
        rate_limiters=rate_limiters,
    )
