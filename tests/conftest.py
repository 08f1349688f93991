"""
tests/conftest.py -- Shared test fixtures for TenantGuard.

This module provides:
  - clock: a FakeClock (tests/helpers.py) injected into services for TTL / skew tests
  - _make_test_stores(): isolated in-memory DBs for auth, tenants and audit
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - stores / services: function-scoped unit-test fixtures
  - api_client: module-scoped TestClient over the real app with seeded tenants

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG, BCRYPT_ROUNDS and ALLOWED_HOSTS must be set before any auth/core
import: get_settings() is cached on first call, DEBUG lets it generate
SECRET_KEY, a low bcrypt cost keeps the suite fast, and ALLOWED_HOSTS admits
the TestClient host.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
# TestClient sends Host: testserver, which production never needs to accept.
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from audit.logger import AuditLogger
from audit.store import AuditStore
from auth.credentials import CredentialVerifier
from auth.devices import DeviceTrustStore
from auth.login import LoginFlow
from auth.second_factor import SecondFactorEngine
from auth.sessions import SessionIssuer
from auth.store import UserStore
from tenants.models import Company, Store
from tenants.store import TenantStore
from tests.helpers import ApiHarness, FakeClock, Services

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_suffix: str) -> tuple[UserStore, TenantStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to each DB name so test modules
                   (and function-scoped fixtures) never share state.
    """
    return (
        UserStore(db_url=_memory_url(f"test_auth_{db_suffix}")),
        TenantStore(db_url=_memory_url(f"test_tenants_{db_suffix}")),
        AuditStore(db_url=_memory_url(f"test_audit_{db_suffix}")),
    )


def _patch_lifespan(user_store: UserStore, tenant_store: TenantStore, audit_store: AuditStore):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can .cancel() a
    real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, user_store, tenant_store, audit_store)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Each test starts with empty slowapi counters."""
    limiter.reset()


@pytest.fixture(autouse=True)
def _fresh_cookies(request) -> None:
    """API tests start without the auth cookie a previous test's login left behind.

    The cookie wins over an Authorization header, so a stale one would make
    later requests run as the wrong user.
    """
    if "api_client" in request.fixturenames:
        request.getfixturevalue("api_client").client.cookies.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stores() -> Generator[tuple[UserStore, TenantStore, AuditStore], None, None]:
    user_store, tenant_store, audit_store = _make_test_stores(uuid.uuid4().hex)
    yield user_store, tenant_store, audit_store
    user_store.close()
    tenant_store.close()
    audit_store.close()


@pytest.fixture
def services(stores, clock: FakeClock) -> Services:
    """Every auth service built on one fake clock."""
    user_store, _tenant_store, audit_store = stores
    verifier = CredentialVerifier(user_store, clock=clock)
    second_factor = SecondFactorEngine(user_store, clock=clock)
    devices = DeviceTrustStore(user_store, clock=clock)
    sessions = SessionIssuer(user_store, clock=clock)
    audit = AuditLogger(audit_store, clock=clock)
    return Services(
        user_store=user_store,
        audit_store=audit_store,
        clock=clock,
        verifier=verifier,
        second_factor=second_factor,
        devices=devices,
        sessions=sessions,
        audit=audit,
        login_flow=LoginFlow(verifier, second_factor, devices, sessions, audit),
    )


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness over the real app with isolated in-memory stores."""
    suffix = f"{request.module.__name__.rsplit('.', 1)[-1]}_{uuid.uuid4().hex[:8]}"
    user_store, tenant_store, audit_store = _make_test_stores(suffix)

    acme_id = tenant_store.create_company(Company(name="Acme", email="ops@acme.io", max_stores=2))
    acme_store_id = tenant_store.create_store(Store(name="acme-north", company_id=acme_id))
    globex_id = tenant_store.create_company(Company(name="Globex", email="ops@globex.io"))
    globex_store_id = tenant_store.create_store(Store(name="globex-main", company_id=globex_id))

    app.router.lifespan_context = _patch_lifespan(user_store, tenant_store, audit_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(
            client=client,
            user_store=user_store,
            tenant_store=tenant_store,
            audit_store=audit_store,
            acme_id=acme_id,
            acme_store_id=acme_store_id,
            globex_id=globex_id,
            globex_store_id=globex_store_id,
        )

    user_store.close()
    tenant_store.close()
    audit_store.close()
