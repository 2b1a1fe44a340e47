from __future__ import annotations

import pytest
from sqlalchemy.pool import StaticPool

from assistant0.core.config import Settings
from assistant0.persistence.db import create_database
from assistant0.services import telemetry


TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
def settings() -> Settings:
    # Pin integration settings so a local .env never leaks into tests.
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        step_up_behavior="interrupt",
        step_up_poll_interval_s=0.01,
        shop_api_url=None,
        serpapi_api_key=None,
        auth0_domain=None,
        auth0_client_id=None,
        auth0_client_secret=None,
        fga_store_id=None,
        openai_api_key=None,
        embedding_provider="openai",
    )


@pytest.fixture
async def database():
    # One shared in-memory SQLite database per test via a static pool.
    db = create_database(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture(autouse=True)
def reset_telemetry() -> None:
    # Counters are process-global; isolate them per test.
    telemetry.reset()
    yield
    telemetry.reset()
