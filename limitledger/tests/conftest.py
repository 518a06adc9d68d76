from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from limitledger.apps.api.deps import get_db
from limitledger.apps.api.main import app
from limitledger.core.config import get_settings
from limitledger.domain.models import Base
from limitledger.persistence.db import build_engine
from limitledger.services.limits import reset_limit_guard
from limitledger.services.telemetry import reset_telemetry


ADMIN_TOKEN = "test-admin-token"


@pytest.fixture(autouse=True)
def _reset_process_state(monkeypatch):
    # Keep analytics off and cached settings/services fresh for every test.
    monkeypatch.setenv("ANALYTICS_ENABLED", "false")
    monkeypatch.setenv("ADMIN_API_TOKEN", ADMIN_TOKEN)
    get_settings.cache_clear()
    reset_limit_guard()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_limit_guard()
    reset_telemetry()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    # File-backed SQLite per test; the schema comes straight from the ORM metadata.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'limitledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as db_session:
        yield db_session


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as db_session:
            yield db_session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN, "X-Actor-Id": "admin-1"}
