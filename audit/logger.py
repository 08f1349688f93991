"""
audit/logger.py -- AuditLogger: best-effort, redacting writer for the audit trail.

Contract:
  record(actor, event, metadata=None, severity=None, context=None) -> None

  - Never raises. A failed write (AuditWriteFailed or anything unexpected)
    is logged on the "tenantguard.audit" logger and dropped, so the business
    operation that triggered it completes normally.
  - Secret fields in before/after/metadata are replaced with REDACTED before
    the entry reaches the store, whatever the caller passed in. Matching is
    by key name, case-insensitive, at any nesting depth.
  - Entries are written synchronously in call order. created_at is taken at
    call time and forced strictly increasing across calls.
  - Tenant scope comes from the actor; when the actor is unscoped
    (super_admin, anonymous) the event/metadata company_id and store_id are
    used instead.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from audit.events import AuditEvent
from audit.models import AuditActor, AuditContext, AuditLogEntry, Severity
from audit.store import AuditStore
from auth.models import Principal
from core.errors import AuditWriteFailed

logger = logging.getLogger("tenantguard.audit")

REDACTED = "[REDACTED]"

# Compared after lower-casing and dropping "_" / "-".
_SECRET_KEYS = frozenset(
    {
        "password",
        "passwordhash",
        "hashedpassword",
        "newpassword",
        "currentpassword",
        "companypassword",
        "totpsecret",
        "twofactorsecret",
        "secret",
        "backupcodes",
        "backupcode",
        "token",
        "accesstoken",
        "devicetoken",
        "twofactortoken",
        "tokenhash",
        "codehash",
    }
)


def _is_secret(key: str) -> bool:
    return key.lower().replace("_", "").replace("-", "") in _SECRET_KEYS


def redact(value: Any) -> Any:
    """Return a copy of value with every secret-named field replaced by REDACTED."""
    if isinstance(value, dict):
        return {k: (REDACTED if _is_secret(str(k)) else redact(v)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLogger:
    def __init__(self, store: AuditStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._last_ts: datetime | None = None

    def record(
        self,
        actor: Principal | AuditActor | None,
        event: AuditEvent,
        metadata: dict[str, Any] | None = None,
        severity: Severity | None = None,
        context: AuditContext | None = None,
    ) -> None:
        try:
            entry = self._build(actor, event, metadata, severity, context)
            with self._lock:
                entry.created_at = self._next_timestamp()
                self._store.append(entry)
        except AuditWriteFailed:
            logger.exception("Audit write failed for action=%s", getattr(event, "action", None))
        except Exception:
            logger.exception("Unexpected error while recording audit action=%s", getattr(event, "action", None))

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    def _build(
        self,
        actor: Principal | AuditActor | None,
        event: AuditEvent,
        metadata: dict[str, Any] | None,
        severity: Severity | None,
        context: AuditContext | None,
    ) -> AuditLogEntry:
        if not isinstance(actor, AuditActor):
            actor = AuditActor.from_principal(actor)
        context = context or AuditContext()
        meta = {**event.metadata(), **(metadata or {})}
        before = event.before()
        after = event.after()
        return AuditLogEntry(
            action=event.action.value,
            entity_type=event.entity_type,
            entity_id=event.entity_id(),
            user_id=actor.id,
            user_email=actor.email,
            user_role=actor.role,
            company_id=actor.company_id if actor.company_id is not None else meta.get("company_id"),
            store_id=actor.store_id if actor.store_id is not None else meta.get("store_id"),
            ip_address=context.ip_address,
            user_agent=context.user_agent[:500] if context.user_agent else None,
            description=event.describe(),
            old_values=redact(before) if before is not None else None,
            new_values=redact(after) if after is not None else None,
            metadata=redact(meta),
            severity=severity or event.severity,
            created_at=self._clock(),
        )
