"""
Test Suite Configuration
"""
import pytest
from typing import AsyncGenerator

from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine

from src.common.retry import RetryPolicy
from src.config import Settings
from src.config.settings import WebhookSettings
from src.database.connection import build_engine, build_session_factory, create_tables
from src.events.publisher import QueueEventPublisher
from src.serving.api.dependencies import ServiceContainer, build_container
from src.serving.api.main import create_api_app
from src.storage.memory import MemoryRepository
from src.storage.sql import SqlRepository
from tests.support import (
    RAZORPAY_SECRET,
    STRIPE_SECRET,
    FakeClock,
    YieldingRepository,
    seed,
)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
        storage_backend="memory",
        webhooks=WebhookSettings(stripe_secret=STRIPE_SECRET, razorpay_secret=RAZORPAY_SECRET),
    )


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(attempts=3, min_wait=0, max_wait=0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def publisher() -> QueueEventPublisher:
    return QueueEventPublisher(maxsize=1000)


@pytest.fixture
async def repo() -> MemoryRepository:
    repository = MemoryRepository()
    await seed(repository)
    return repository


@pytest.fixture
async def yielding_repo() -> YieldingRepository:
    repository = YieldingRepository()
    await seed(repository)
    return repository


@pytest.fixture
def container(test_settings, repo, publisher, policy) -> ServiceContainer:
    return build_container(test_settings, repo, publisher, policy=policy)


@pytest.fixture
def client(container) -> TestClient:
    """HTTP client over the app with a pre-built container (no lifespan)"""
    return TestClient(create_api_app(container))


@pytest.fixture
async def sql_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine"""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def sql_repo(sql_engine) -> SqlRepository:
    repository = SqlRepository(build_session_factory(sql_engine))
    await seed(repository)
    return repository
