"""
tests/conftest.py -- Shared fixtures for gatekeeper unit and integration tests.

This module provides:
  - settings:   Settings over a fresh file-backed SQLite database per test
  - database:   an opened Database for component-level tests
  - services:   the full component graph (build_services) over that database
  - operator:   one provisioned operator account (OPERATOR_EMAIL / OPERATOR_SECRET)
  - api_client: (client, services, operator) -- TestClient over create_app()

Design: each test gets its own SQLite file under tmp_path rather than a
shared-memory URI. TestClient runs sync handlers in a thread pool and the
concurrency tests hammer the store from many threads; a WAL-mode file DB
gives each thread a real connection with a busy timeout.

Settings are built explicitly (never from the environment) so a developer's
.env cannot leak into the suite. bcrypt runs at its minimum work factor and
the AUTH slowdown step is zero to keep the suite fast.
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from api.main import Services, build_services, create_app
from auth.models import OperatorAccount
from core.config import Settings
from core.database import Database

OPERATOR_EMAIL = "ops@example.com"
OPERATOR_SECRET = "Corr3ct!Horse"
OPERATOR_NAME = "Ops Team"

TEST_ACCESS_KEY = "test-access-signing-key-0123456789abcdef"
TEST_REFRESH_KEY = "test-refresh-signing-key-0123456789abcdef"


def make_settings(db_path: Path, **overrides) -> Settings:
    """Settings for tests. Keyword overrides win over the test defaults."""
    values = {
        "debug": False,
        "access_secret_key": TEST_ACCESS_KEY,
        "refresh_secret_key": TEST_REFRESH_KEY,
        "database_url": f"sqlite:///{db_path}",
        "bcrypt_rounds": 4,
        "auth_slowdown_step_ms": 0,
        "token_sweep_interval_seconds": 0,
        "log_level": "DEBUG",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path / "gatekeeper.db")


@pytest.fixture
def database(settings: Settings) -> Generator[Database, None, None]:
    db = Database(settings.database_url, timeout=settings.database_timeout_seconds).open()
    yield db
    db.close()


@pytest.fixture
def services(settings: Settings, database: Database) -> Services:
    return build_services(settings, database)


@pytest.fixture
def operator(services: Services) -> OperatorAccount:
    return services.sessions.provision_operator(OPERATOR_EMAIL, OPERATOR_SECRET, OPERATOR_NAME)


# ---------------------------------------------------------------------------
# Integration fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def api_client(settings: Settings) -> Generator[tuple[TestClient, Services, OperatorAccount], None, None]:
    """Yield (client, services, operator) over the real app and lifespan.

    The lifespan opens its own Database on the per-test file, so the
    services seen here are exactly the ones the route handlers use. The
    operator is provisioned after startup, before the first request.
    """
    app = create_app(settings)
    with TestClient(app, raise_server_exceptions=True) as client:
        services: Services = app.state.services
        operator = services.sessions.provision_operator(OPERATOR_EMAIL, OPERATOR_SECRET, OPERATOR_NAME)
        yield client, services, operator


@pytest.fixture
def login_tokens(api_client: tuple[TestClient, Services, OperatorAccount]) -> dict:
    """Log the seeded operator in over HTTP and return the response body."""
    client, _services, _operator = api_client
    resp = client.post("/api/v1/auth/login", json={"email": OPERATOR_EMAIL, "secret": OPERATOR_SECRET})
    assert resp.status_code == 200, resp.text
    return resp.json()
