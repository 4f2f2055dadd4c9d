"""
tests/conftest.py -- Shared test fixtures for EduCheck unit and integration tests.

This module provides:
  - make_settings(): Settings with a fixed signing key and optional overrides
  - make_user_store(): isolated named shared-memory SQLite UserStore
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient over the real app with isolated stores
  - register_student / register_admin / auth_headers: request helpers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG, SECRET_KEY and ALLOWED_HOSTS must be set before api.main is imported:
the app reads its middleware configuration at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any core/api import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-educheck-suite-0123456789")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.store import UserStore, users
from cache.store import UserScopedCache
from core.config import Settings, get_settings
from student.models import Institute

STRONG_PASSWORD = "Str0ng!Pass"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": "test-secret-key-for-educheck-suite-0123456789"}
    values.update(overrides)
    return Settings(**values)


def make_user_store(db_suffix: str | None = None) -> UserStore:
    """Create an isolated named shared-memory UserStore.

    A random suffix is used when none is given so stores never share state.
    """
    suffix = db_suffix or uuid.uuid4().hex
    return UserStore(f"sqlite:///file:test_educheck_{suffix}?mode=memory&cache=shared&uri=true")


def unique_email(prefix: str = "student") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def deactivate(user_store: UserStore, principal_id: str) -> None:
    """Flip is_active off the way an operator would, straight in the table."""
    with user_store.engine.begin() as conn:
        conn.execute(users.update().where(users.c.id == principal_id).values(is_active=0))


def _patch_lifespan(user_store: UserStore, cache: UserScopedCache):
    """Return an async context manager that replaces the real lifespan.

    Wires the same service graph as production around the test stores.
    The purge_task is a long-sleeping coroutine so shutdown can cancel a real
    asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, get_settings(), user_store, cache)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> Generator[None, None, None]:
    """Start every test with empty slowapi counters."""
    limiter.reset()
    yield


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with isolated in-memory stores.

    One client per test module; each module gets its own database.
    """
    user_store = make_user_store()
    cache = UserScopedCache()
    app.router.lifespan_context = _patch_lifespan(user_store, cache)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    cache.close()
    user_store.close()


@pytest.fixture(scope="module")
def institute_ids(api_client: TestClient) -> list[int]:
    """Seed three active institutes and one inactive one; return the active ids."""
    store = api_client.app.state.student_store
    ids = [
        store.add_institute(
            Institute(
                name=f"Institute {n}",
                accreditation_number=f"ACC-{n:04d}",
                accreditation_period="2024-2030",
                province="Gauteng",
                city="Johannesburg",
            )
        )
        for n in range(1, 4)
    ]
    store.add_institute(Institute(name="Closed College", accreditation_number="ACC-9999", is_active=False))
    return ids


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def register_student(client: TestClient, email: str | None = None, password: str = STRONG_PASSWORD) -> dict:
    """Register a student through the API and return the response data."""
    resp = client.post(
        "/api/v1/auth/register/student",
        json={
            "email": email or unique_email(),
            "password": password,
            "first_name": "Thandi",
            "last_name": "Nkosi",
            "province": "Gauteng",
            "city": "Pretoria",
        },
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def register_admin(client: TestClient, email: str | None = None, password: str = STRONG_PASSWORD) -> dict:
    resp = client.post(
        "/api/v1/auth/register/admin",
        json={
            "email": email or unique_email("admin"),
            "password": password,
            "first_name": "Sipho",
            "last_name": "Dlamini",
            "department": "Compliance",
            "employee_id": "EMP-001",
        },
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def auth_headers(data: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {data['access_token']}"}
