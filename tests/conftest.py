"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - clock / notifier: FakeClock and CapturingNotifier from tests/helpers.py
  - engine / manager / role_store: isolated in-memory store per test
  - alice, bob, carol: seeded principals (editor, viewer, editor+MFA)
  - api_client: TestClient over the real app with a patched lifespan

Design: unit tests use a plain in-memory SQLite engine. Everything runs on
the test thread, so the single pooled connection is the whole database.
HTTP tests cannot do that: TestClient runs sync route handlers in a worker
thread pool, so the api_client fixture uses a file-backed SQLite database in
a pytest tmp directory.

The environment must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set the environment before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app
from auth.manager import AuthSessionManager, build_auth_manager
from auth.models import Principal
from auth.schema import make_engine
from auth.store import RoleStore
from core.config import Settings
from helpers import (
    ALICE_PASSWORD,
    BOB_PASSWORD,
    CAROL_PASSWORD,
    CapturingNotifier,
    FakeClock,
    make_settings,
    seed_catalog,
)

# ---------------------------------------------------------------------------
# Unit fixtures -- fresh in-memory store per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> CapturingNotifier:
    return CapturingNotifier()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = make_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def role_store(engine: Engine) -> RoleStore:
    roles = RoleStore(engine)
    seed_catalog(roles)
    return roles


@pytest.fixture
def manager(
    settings: Settings,
    engine: Engine,
    role_store: RoleStore,
    notifier: CapturingNotifier,
    clock: FakeClock,
) -> AuthSessionManager:
    mgr = build_auth_manager(settings, engine=engine, notifier=notifier, clock=clock)
    mgr.sleep = lambda seconds: None
    return mgr


@pytest.fixture
def alice(manager: AuthSessionManager) -> Principal:
    return manager.register_principal("alice", ALICE_PASSWORD, roles=["editor"])


@pytest.fixture
def bob(manager: AuthSessionManager) -> Principal:
    return manager.register_principal("bob", BOB_PASSWORD, roles=["viewer"])


@pytest.fixture
def carol(manager: AuthSessionManager) -> Principal:
    return manager.register_principal("carol", CAROL_PASSWORD, roles=["editor"], mfa_enabled=True)


# ---------------------------------------------------------------------------
# HTTP fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(manager: AuthSessionManager):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test manager into app.state. The purge_task is a
    long-sleeping coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = manager
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(
    tmp_path_factory: pytest.TempPathFactory,
) -> Generator[tuple[TestClient, AuthSessionManager, CapturingNotifier], None, None]:
    """Yield (client, manager, notifier) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers against an isolated file-backed store seeded with
    alice (editor), bob (viewer) and carol (editor, MFA).
    """
    db_path = tmp_path_factory.mktemp("api") / "gatehouse.db"
    eng = make_engine(f"sqlite:///{db_path}")
    seed_catalog(RoleStore(eng))
    notifier = CapturingNotifier()
    mgr = build_auth_manager(make_settings(), engine=eng, notifier=notifier)
    mgr.register_principal("alice", ALICE_PASSWORD, roles=["editor"])
    mgr.register_principal("bob", BOB_PASSWORD, roles=["viewer"])
    mgr.register_principal("carol", CAROL_PASSWORD, roles=["editor"], mfa_enabled=True)

    app.router.lifespan_context = _patch_lifespan(mgr)

    # base_url must be an allowed host for TrustedHostMiddleware.
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, mgr, notifier

    eng.dispose()
