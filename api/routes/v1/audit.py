"""
api/routes/v1/audit.py -- Read access to the audit trail.

GET /api/v1/audit-logs  AUDIT_READERS

Visibility is narrowed by the caller's scope before the query runs:
  super_admin       every entry
  company_admin     entries for their company
  store_owner       entries for their store (their company when not store-scoped)
Managers are rejected by the role set.

Read only. Nothing in the API can modify or delete entries.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditLogPage, AuditLogResponse
from audit.models import AuditLogEntry
from audit.store import AuditStore
from auth.dependencies import require_roles
from auth.models import Principal, Role
from auth.rbac import AUDIT_READERS
from auth.store import iso
from core.errors import Unauthorized

router = APIRouter()


@router.get("/audit-logs", response_model=AuditLogPage)
def list_audit_logs(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    action: Optional[str] = Query(default=None, max_length=100),
    entity_type: Optional[str] = Query(default=None, max_length=50),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    principal: Principal = Depends(require_roles(AUDIT_READERS)),
) -> AuditLogPage:
    filters = {
        "action": action,
        "entity_type": entity_type,
        "start": start,
        "end": end,
    }
    if principal.role is not Role.SUPER_ADMIN:
        if principal.company_id is None:
            raise Unauthorized()
        filters["company_id"] = principal.company_id
        if principal.role is Role.STORE_OWNER and principal.store_id is not None:
            filters["store_id"] = principal.store_id

    audit_store: AuditStore = request.app.state.audit_store
    entries = audit_store.list_entries(limit=limit, offset=offset, **filters)
    total = audit_store.count_entries(**filters)
    return AuditLogPage(
        total=total,
        limit=limit,
        offset=offset,
        entries=[_entry_to_response(e) for e in entries],
    )


def _entry_to_response(entry: AuditLogEntry) -> AuditLogResponse:
    return AuditLogResponse(
        id=entry.id,
        action=entry.action,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        user_id=entry.user_id,
        user_email=entry.user_email,
        user_role=entry.user_role,
        company_id=entry.company_id,
        store_id=entry.store_id,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        description=entry.description,
        old_values=entry.old_values,
        new_values=entry.new_values,
        metadata=entry.metadata,
        severity=entry.severity.value,
        created_at=iso(entry.created_at),
    )
