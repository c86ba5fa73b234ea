import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from saheli.domain.bookings import db_models as booking_db_models  # noqa: F401
from saheli.domain.catalog import db_models as catalog_db_models  # noqa: F401
from saheli.domain.ops import db_models as ops_db_models  # noqa: F401
from saheli.domain.payments import db_models as payment_db_models  # noqa: F401
from saheli.domain.users import db_models as user_db_models  # noqa: F401
from saheli.infra.db import Base, get_db_session
from saheli.main import app
from saheli.settings import settings
from tests.factories import RecordingEmailAdapter, StubRazorpay


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {
        "testing": settings.testing,
        "app_env": settings.app_env,
        "metrics_enabled": settings.metrics_enabled,
        "metrics_token": settings.metrics_token,
        "job_heartbeat_required": settings.job_heartbeat_required,
        "job_heartbeat_ttl_seconds": settings.job_heartbeat_ttl_seconds,
        "email_mode": settings.email_mode,
        "razorpay_webhook_secret": settings.razorpay_webhook_secret,
    }
    settings.testing = True
    settings.app_env = "dev"
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    for name in ("rate_limiter", "booking_rate_limiter"):
        limiter = getattr(app.state, name, None)
        if limiter is not None:
            asyncio.run(limiter.reset())
    yield


@pytest.fixture()
def gateway():
    return StubRazorpay()


@pytest.fixture()
def email_adapter():
    return RecordingEmailAdapter()


@pytest.fixture()
def client(async_session_maker, gateway, email_adapter):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_gateway = getattr(app.state, "razorpay_client", None)
    original_adapter = getattr(app.state, "email_adapter", None)
    app.state.db_session_factory = async_session_maker
    app.state.razorpay_client = gateway
    app.state.email_adapter = email_adapter
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.razorpay_client = original_gateway
    app.state.email_adapter = original_adapter
