"""
Pytest configuration and fixtures.

Every test gets its own SQLite database under tmp_path. The gateway and
the order service are faked with httpx.MockTransport handlers.
"""
from typing import Any, AsyncGenerator, Dict

import httpx
import pytest
import pytest_asyncio

from paymentservice.api.dependencies import ServiceContainer
from paymentservice.api.main import create_app
from paymentservice.config import Settings
from paymentservice.database.connection import Database

from .fakes import FakeDaraja, FakeOrderService, make_settings


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond SQLite")
    config.addinivalue_line("markers", "integration: tests that drive the HTTP API")
    config.addinivalue_line("markers", "race: concurrency tests")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by a per-test SQLite file."""
    return make_settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Create test database with all tables."""
    db = Database.from_settings(test_settings)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def fake_daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest.fixture
def fake_orders() -> FakeOrderService:
    return FakeOrderService()


@pytest_asyncio.fixture
async def container(
    test_settings: Settings,
    database: Database,
    fake_daraja: FakeDaraja,
    fake_orders: FakeOrderService,
) -> AsyncGenerator[ServiceContainer, Any]:
    """Fully wired services talking to the fakes."""
    mpesa_http = httpx.AsyncClient(transport=httpx.MockTransport(fake_daraja))
    orders_http = httpx.AsyncClient(transport=httpx.MockTransport(fake_orders))
    services = ServiceContainer.build(
        test_settings,
        database=database,
        mpesa_http_client=mpesa_http,
        orders_http_client=orders_http,
    )
    yield services
    await mpesa_http.aclose()
    await orders_http.aclose()


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(container.settings, container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def sample_payment_data() -> Dict[str, Any]:
    """Sample payment request data."""
    return {"order_id": 42, "amount": "100", "phone": "254700000000"}
