"""
audit/models.py -- Domain dataclasses for the audit trail.

Layer rule: no imports from api/ or tenants/. auth.models is imported for the
Principal type only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from auth.models import Principal


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AuditActor:
    """Who performed the action. All fields are None for anonymous actors (failed logins)."""

    id: int | None = None
    email: str | None = None
    role: str | None = None
    company_id: int | None = None
    store_id: int | None = None

    @classmethod
    def from_principal(cls, principal: Principal | None) -> AuditActor:
        if principal is None:
            return cls()
        return cls(
            id=principal.subject_id,
            email=principal.email,
            role=principal.role.value,
            company_id=principal.company_id,
            store_id=principal.store_id,
        )


@dataclass(frozen=True)
class AuditContext:
    """Request details captured alongside an entry."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class AuditLogEntry:
    """One append-only audit record. Never updated or deleted once written."""

    action: str
    description: str
    severity: Severity
    created_at: datetime
    entity_type: str | None = None
    entity_id: str | None = None
    user_id: int | None = None
    user_email: str | None = None
    user_role: str | None = None
    company_id: int | None = None
    store_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
