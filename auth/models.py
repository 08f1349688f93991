"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond invariant checks).
Dataclasses own domain shape; stores and services do the work.

Layer rule: no imports from api/, audit/, or tenants/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    COMPANY_ADMIN = "company_admin"
    STORE_OWNER = "store_owner"
    MANAGER = "manager"


# Roles that must always be scoped to a company.
COMPANY_SCOPED_ROLES = frozenset({Role.STORE_OWNER, Role.MANAGER})


class AuthPath(str, Enum):
    """How a session was earned. All three paths produce the same Session shape."""

    PASSWORD = "password"  # no 2FA enrolled
    TWO_FACTOR = "two_factor"  # password + TOTP or backup code
    TRUSTED_DEVICE = "trusted_device"  # password + valid X-Device-Token


@dataclass
class User:
    """An identity record. Credential fields live here but are only written
    through the explicit credential operations on UserStore.

    totp_secret is None until 2FA enrollment completes.
    """

    email: str
    role: Role
    id: int | None = None
    password_hash: str | None = None
    totp_secret: str | None = None
    company_id: int | None = None
    store_id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None

    @property
    def two_factor_enabled(self) -> bool:
        return self.totp_secret is not None


@dataclass(frozen=True)
class Principal:
    """The identity a session carries. Immutable for the life of the session."""

    subject_id: int
    email: str
    role: Role
    company_id: int | None = None
    store_id: int | None = None

    def __post_init__(self) -> None:
        if self.role in COMPANY_SCOPED_ROLES and self.company_id is None:
            raise ValueError(f"{self.role.value} principals must carry a company_id")
        if self.store_id is not None and self.role is not Role.MANAGER and self.role is not Role.STORE_OWNER:
            raise ValueError(f"{self.role.value} principals cannot be scoped to a store")

    @classmethod
    def from_user(cls, user: User) -> Principal:
        return cls(
            subject_id=user.id,
            email=user.email,
            role=user.role,
            company_id=user.company_id,
            store_id=user.store_id,
        )


@dataclass(frozen=True)
class VerifiedIdentity:
    """Result of a successful password check. Only CredentialVerifier builds these."""

    user: User
    verified_at: datetime

    @property
    def subject_id(self) -> int:
        return self.user.id


@dataclass
class PendingChallenge:
    """A password-verified subject waiting for its second factor.

    expires_at is checked on every read; consumed_at is set exactly once.
    """

    id: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    consumed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class TrustedDevice:
    """A device allowed to skip the second factor until expires_at.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token); the raw token is returned
    once at issuance and never persisted.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    device_name: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    created_at: datetime | None = None


@dataclass
class Session:
    """Server-side session record. The JWT only references it by id."""

    id: str
    principal: Principal
    auth_path: AuthPath
    created_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


@dataclass
class TwoFactorSetup:
    """Enrollment material shown once to the user."""

    secret: str
    provisioning_uri: str
    manual_entry_key: str
    qr_code_data_url: str


@dataclass
class LoginResult:
    """Outcome of LoginFlow.login().

    Exactly one of session / challenge is set. device_token is set only when a
    new trusted-device token was minted for this response.
    """

    principal: Principal | None = None
    session: Session | None = None
    access_token: str | None = None
    challenge: PendingChallenge | None = None
    device_token: str | None = None

    @property
    def requires_second_factor(self) -> bool:
        return self.session is None and self.challenge is not None
