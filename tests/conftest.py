"""
tests/conftest.py -- Shared test fixtures for Turnstile.

This module provides:
  - settings: explicit Settings with distinct secrets and a cheap bcrypt cost
  - db: a throwaway file-backed Database per test
  - service: an AuthService wired from `settings`
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api_client: TestClient plus an Admin access token for HTTP integration tests

Design: file-backed SQLite under pytest's tmp_path rather than :memory:.
TestClient runs sync route handlers in a thread pool, and the Database turns
on WAL and BEGIN IMMEDIATE, both of which need a real file shared by every
connection in the pool.

The env vars below must be set before any api/core import: api/main.py reads
get_settings() at import time to configure middleware.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager, suppress

# CRITICAL: set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ["LOGIN_RATE_LIMIT"] = "1000/minute"

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Role
from auth.service import AuthService, build_auth_service
from auth.store import Database
from core.config import Settings, get_settings

ADMIN_EMAIL = "root@turnstile.test"
ADMIN_PASSWORD = "adminpass123"

_ACCESS_SECRET = "a" * 16 + "access-secret-for-tests"
_REFRESH_SECRET = "r" * 16 + "refresh-secret-for-tests"


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings built explicitly -- the codec never reads the environment."""
    return Settings(
        debug=False,
        access_secret_key=_ACCESS_SECRET,
        refresh_secret_key=_REFRESH_SECRET,
        bcrypt_rounds=4,
    )


@pytest.fixture
def db(tmp_path) -> Generator[Database, None, None]:
    database = Database(f"sqlite:///{tmp_path / 'turnstile.db'}")
    yield database
    database.close()


@pytest.fixture
def service(settings: Settings) -> AuthService:
    return build_auth_service(settings)


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(db: Database, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine standing in for the real
    sweep loop (a real asyncio.Task is required; MagicMock would fail on
    .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.db = db
        app.state.auth_service = service
        app.state.codec = service.codec
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.sweep_task

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    One TestClient and one database per test module. The Admin account is
    registered directly through the service before the client starts, and
    its access token is minted with the same codec the app verifies with.
    """
    db = Database(f"sqlite:///{tmp_path_factory.mktemp('api') / 'turnstile.db'}")
    service = build_auth_service(get_settings())

    with db.transaction() as conn:
        admin = service.register(conn, "Root Admin", ADMIN_EMAIL, ADMIN_PASSWORD, Role.ADMIN)
        admin_user = service.users.find_by_id(conn, admin.id)
    token = service.codec.issue_access_token(admin_user)

    app.router.lifespan_context = _patch_lifespan(db, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    db.close()
