"""
audit/events.py -- The closed set of auditable actions.

Each kind is a frozen dataclass tagged with its AuditAction, entity type and
default severity, carrying a typed payload. AuditLogger only accepts these,
so every entry in the trail has a known shape:

    audit.record(principal, StoreUpdated(store_id=3, company_id=7, before=old, after=new))

Snapshots (before/after) are passed through as-is; redaction of secret fields
happens inside AuditLogger, never here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from audit.models import Severity


class AuditAction(str, Enum):
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    LOGIN_FAILED = "login_failed"
    USER_CREATE = "user_create"
    USER_UPDATE = "user_update"
    USER_DELETE = "user_delete"
    PASSWORD_CHANGE = "password_change"
    TWO_FACTOR_ENABLE = "two_factor_enable"
    TWO_FACTOR_DISABLE = "two_factor_disable"
    BACKUP_CODES_REGENERATE = "backup_codes_regenerate"
    DEVICE_TRUST = "device_trust"
    DEVICE_REVOKE = "device_revoke"
    COMPANY_CREATE = "company_create"
    COMPANY_UPDATE = "company_update"
    COMPANY_DELETE = "company_delete"
    STORE_CREATE = "store_create"
    STORE_UPDATE = "store_update"
    STORE_DELETE = "store_delete"
    SECURITY_EVENT = "security_event"


@dataclass(frozen=True)
class AuditEvent:
    """Base class. Subclasses set the ClassVars and override what they carry."""

    action: ClassVar[AuditAction]
    entity_type: ClassVar[str | None] = None
    severity: ClassVar[Severity] = Severity.INFO

    def entity_id(self) -> str | None:
        return None

    def describe(self) -> str:
        raise NotImplementedError

    def before(self) -> dict[str, Any] | None:
        return None

    def after(self) -> dict[str, Any] | None:
        return None

    def metadata(self) -> dict[str, Any]:
        return {}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserLogin(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.USER_LOGIN
    entity_type: ClassVar[str | None] = "user"

    user_id: int
    email: str
    auth_path: str

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"User {self.email} logged in"

    def metadata(self) -> dict[str, Any]:
        return {"auth_path": self.auth_path}


@dataclass(frozen=True)
class UserLogout(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.USER_LOGOUT
    entity_type: ClassVar[str | None] = "user"

    user_id: int
    email: str

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"User {self.email} logged out"


@dataclass(frozen=True)
class LoginFailed(AuditEvent):
    """A failed authentication step. stage is password, second_factor or challenge."""

    action: ClassVar[AuditAction] = AuditAction.LOGIN_FAILED
    severity: ClassVar[Severity] = Severity.WARNING

    attempted_email: str
    stage: str

    def describe(self) -> str:
        return f"Failed login for {self.attempted_email} at {self.stage} step"

    def metadata(self) -> dict[str, Any]:
        return {"attempted_email": self.attempted_email, "stage": self.stage}


@dataclass(frozen=True)
class PasswordChanged(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.PASSWORD_CHANGE
    entity_type: ClassVar[str | None] = "user"
    severity: ClassVar[Severity] = Severity.WARNING

    user_id: int
    email: str
    by_admin: bool = False
    devices_revoked: int = 0

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        if self.by_admin:
            return f"Password for {self.email} reset by administrator"
        return f"User {self.email} changed their password"

    def metadata(self) -> dict[str, Any]:
        return {"by_admin": self.by_admin, "devices_revoked": self.devices_revoked}


@dataclass(frozen=True)
class TwoFactorEnabled(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.TWO_FACTOR_ENABLE
    entity_type: ClassVar[str | None] = "user"

    user_id: int
    email: str

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"Two-factor authentication enabled for {self.email}"


@dataclass(frozen=True)
class TwoFactorDisabled(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.TWO_FACTOR_DISABLE
    entity_type: ClassVar[str | None] = "user"
    severity: ClassVar[Severity] = Severity.WARNING

    user_id: int
    email: str

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"Two-factor authentication disabled for {self.email}"


@dataclass(frozen=True)
class BackupCodesRegenerated(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.BACKUP_CODES_REGENERATE
    entity_type: ClassVar[str | None] = "user"

    user_id: int
    email: str
    count: int

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"{self.count} new backup codes generated for {self.email}"


@dataclass(frozen=True)
class DeviceTrusted(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.DEVICE_TRUST
    entity_type: ClassVar[str | None] = "user"

    user_id: int
    email: str
    device_name: str | None = None

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"Device {self.device_name or 'unnamed'} trusted for {self.email}"


@dataclass(frozen=True)
class DevicesRevoked(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.DEVICE_REVOKE
    entity_type: ClassVar[str | None] = "user"
    severity: ClassVar[Severity] = Severity.WARNING

    user_id: int
    email: str
    count: int

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"{self.count} trusted device(s) revoked for {self.email}"


# ---------------------------------------------------------------------------
# Identity management
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserCreated(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.USER_CREATE
    entity_type: ClassVar[str | None] = "user"

    user_id: int
    email: str
    role: str
    values: dict[str, Any] = field(default_factory=dict)

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"User {self.email} created with role {self.role}"

    def after(self) -> dict[str, Any] | None:
        return self.values

    def metadata(self) -> dict[str, Any]:
        meta: dict[str, Any] = {"new_user_role": self.role}
        if self.values.get("company_id") is not None:
            meta["company_id"] = self.values["company_id"]
        if self.values.get("store_id") is not None:
            meta["store_id"] = self.values["store_id"]
        return meta


@dataclass(frozen=True)
class UserUpdated(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.USER_UPDATE
    entity_type: ClassVar[str | None] = "user"

    user_id: int
    email: str
    company_id: int | None = None
    store_id: int | None = None
    old: dict[str, Any] = field(default_factory=dict)
    new: dict[str, Any] = field(default_factory=dict)

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"User {self.email} updated"

    def before(self) -> dict[str, Any] | None:
        return self.old

    def after(self) -> dict[str, Any] | None:
        return self.new

    def metadata(self) -> dict[str, Any]:
        return {"company_id": self.company_id, "store_id": self.store_id, "fields": sorted(self.new)}


@dataclass(frozen=True)
class UserDeleted(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.USER_DELETE
    entity_type: ClassVar[str | None] = "user"
    severity: ClassVar[Severity] = Severity.WARNING

    user_id: int
    email: str
    company_id: int | None = None
    store_id: int | None = None
    old: dict[str, Any] = field(default_factory=dict)

    def entity_id(self) -> str | None:
        return str(self.user_id)

    def describe(self) -> str:
        return f"User {self.email} deleted"

    def before(self) -> dict[str, Any] | None:
        return self.old

    def metadata(self) -> dict[str, Any]:
        return {"company_id": self.company_id, "store_id": self.store_id}


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompanyCreated(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.COMPANY_CREATE
    entity_type: ClassVar[str | None] = "company"

    company_id: int
    name: str
    values: dict[str, Any] = field(default_factory=dict)

    def entity_id(self) -> str | None:
        return str(self.company_id)

    def describe(self) -> str:
        return f'Company "{self.name}" created'

    def after(self) -> dict[str, Any] | None:
        return self.values

    def metadata(self) -> dict[str, Any]:
        return {"company_id": self.company_id}


@dataclass(frozen=True)
class CompanyUpdated(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.COMPANY_UPDATE
    entity_type: ClassVar[str | None] = "company"

    company_id: int
    name: str
    old: dict[str, Any] = field(default_factory=dict)
    new: dict[str, Any] = field(default_factory=dict)

    def entity_id(self) -> str | None:
        return str(self.company_id)

    def describe(self) -> str:
        return f'Company "{self.name}" updated'

    def before(self) -> dict[str, Any] | None:
        return self.old

    def after(self) -> dict[str, Any] | None:
        return self.new

    def metadata(self) -> dict[str, Any]:
        return {"company_id": self.company_id}


@dataclass(frozen=True)
class CompanyDeleted(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.COMPANY_DELETE
    entity_type: ClassVar[str | None] = "company"
    severity: ClassVar[Severity] = Severity.WARNING

    company_id: int
    name: str
    old: dict[str, Any] = field(default_factory=dict)

    def entity_id(self) -> str | None:
        return str(self.company_id)

    def describe(self) -> str:
        return f'Company "{self.name}" deleted'

    def before(self) -> dict[str, Any] | None:
        return self.old

    def metadata(self) -> dict[str, Any]:
        return {"company_id": self.company_id}


@dataclass(frozen=True)
class StoreCreated(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.STORE_CREATE
    entity_type: ClassVar[str | None] = "store"

    store_id: int
    company_id: int
    name: str
    values: dict[str, Any] = field(default_factory=dict)

    def entity_id(self) -> str | None:
        return str(self.store_id)

    def describe(self) -> str:
        return f'Store "{self.name}" created'

    def after(self) -> dict[str, Any] | None:
        return self.values

    def metadata(self) -> dict[str, Any]:
        return {"company_id": self.company_id, "store_id": self.store_id}


@dataclass(frozen=True)
class StoreUpdated(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.STORE_UPDATE
    entity_type: ClassVar[str | None] = "store"

    store_id: int
    company_id: int
    name: str
    old: dict[str, Any] = field(default_factory=dict)
    new: dict[str, Any] = field(default_factory=dict)

    def entity_id(self) -> str | None:
        return str(self.store_id)

    def describe(self) -> str:
        return f'Store "{self.name}" updated'

    def before(self) -> dict[str, Any] | None:
        return self.old

    def after(self) -> dict[str, Any] | None:
        return self.new

    def metadata(self) -> dict[str, Any]:
        return {"company_id": self.company_id, "store_id": self.store_id}


@dataclass(frozen=True)
class StoreDeleted(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.STORE_DELETE
    entity_type: ClassVar[str | None] = "store"
    severity: ClassVar[Severity] = Severity.WARNING

    store_id: int
    company_id: int
    name: str
    old: dict[str, Any] = field(default_factory=dict)

    def entity_id(self) -> str | None:
        return str(self.store_id)

    def describe(self) -> str:
        return f'Store "{self.name}" deleted'

    def before(self) -> dict[str, Any] | None:
        return self.old

    def metadata(self) -> dict[str, Any]:
        return {"company_id": self.company_id, "store_id": self.store_id}


# ---------------------------------------------------------------------------
# Everything else
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecurityEvent(AuditEvent):
    """Free-text security notice, e.g. a rejected device token."""

    action: ClassVar[AuditAction] = AuditAction.SECURITY_EVENT
    severity: ClassVar[Severity] = Severity.WARNING

    event: str
    details: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        return self.event

    def metadata(self) -> dict[str, Any]:
        return dict(self.details)
