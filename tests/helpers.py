"""
tests/helpers.py -- Plain helpers shared by the test modules and conftest.py.

Kept out of conftest.py so test modules can import them directly without
importing conftest a second time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pyotp
from fastapi.testclient import TestClient

from audit.logger import AuditLogger
from audit.store import AuditStore
from auth.credentials import CredentialVerifier
from auth.devices import DeviceTrustStore
from auth.login import LoginFlow
from auth.models import Role, User
from auth.second_factor import SecondFactorEngine
from auth.sessions import SessionIssuer
from auth.store import UserStore
from auth.tokens import hash_password
from tenants.store import TenantStore

DEFAULT_PASSWORD = "correct-horse-battery"


class FakeClock:
    """Callable clock. Starts at the current minute; advance() moves it forward.

    Starting near real time keeps session JWTs (whose exp python-jose checks
    against the wall clock) decodable in unit tests.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(second=0, microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_user(
    user_store: UserStore,
    email: str,
    role: Role = Role.SUPER_ADMIN,
    password: str = DEFAULT_PASSWORD,
    company_id: int | None = None,
    store_id: int | None = None,
    is_active: bool = True,
) -> User:
    uid = user_store.create_user(
        User(
            email=email,
            role=role,
            password_hash=hash_password(password),
            company_id=company_id,
            store_id=store_id,
            is_active=is_active,
        )
    )
    return user_store.get_by_id(uid)


def enroll_two_factor(engine: SecondFactorEngine, user_store: UserStore, user: User, at: datetime | None = None):
    """Enroll user in 2FA. Returns (secret, backup_codes, refreshed user)."""
    material = engine.generate_secret(user.email)
    totp = pyotp.TOTP(material.secret)
    code = totp.at(at) if at is not None else totp.now()
    codes = engine.enroll(user, material.secret, code)
    return material.secret, codes, user_store.get_by_id(user.id)


@dataclass
class Services:
    user_store: UserStore
    audit_store: AuditStore
    clock: FakeClock
    verifier: CredentialVerifier
    second_factor: SecondFactorEngine
    devices: DeviceTrustStore
    sessions: SessionIssuer
    audit: AuditLogger
    login_flow: LoginFlow


@dataclass
class ApiHarness:
    """Client plus direct store access and the seeded tenant ids.

    Seed: company 'Acme' (max_stores=2) with store 'acme-north';
    company 'Globex' with store 'globex-main'.
    """

    client: TestClient
    user_store: UserStore
    tenant_store: TenantStore
    audit_store: AuditStore
    acme_id: int
    acme_store_id: int
    globex_id: int
    globex_store_id: int

    def login(self, email: str, password: str = DEFAULT_PASSWORD, headers: dict | None = None, **extra):
        return self.client.post(
            "/api/v1/auth/login",
            json={"email": email, "password": password, **extra},
            headers=headers or {},
        )

    def token_for(self, email: str, password: str = DEFAULT_PASSWORD) -> dict[str, str]:
        """Log in a user without 2FA and return Bearer headers. Clears client cookies."""
        resp = self.login(email, password)
        assert resp.status_code == 200, resp.text
        self.client.cookies.clear()
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}
