"""
audit/store.py -- SQLAlchemy Core persistence for the audit trail.

Append-only: AuditStore exposes append() and read queries. There is no update
or delete method, and nothing else in the service writes to audit_logs.

Any database error during append() is re-raised as AuditWriteFailed so the
logger can handle one exception type.

Layer rule: no imports from api/ or tenants/.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import JSON, Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from audit.models import AuditLogEntry, Severity
from auth.store import iso, make_engine, parse_iso
from core.errors import AuditWriteFailed

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'tenantguard_audit.db'}"

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(100), nullable=False, index=True),
    Column("entity_type", String(50)),
    Column("entity_id", String(100)),
    Column("user_id", Integer),
    Column("user_email", String(255)),
    Column("user_role", String(20)),
    Column("company_id", Integer, index=True),
    Column("store_id", Integer, index=True),
    Column("ip_address", String(45)),
    Column("user_agent", String(500)),
    Column("description", Text, nullable=False),
    Column("old_values", JSON),
    Column("new_values", JSON),
    Column("metadata", JSON),
    Column("severity", String(20), nullable=False, server_default="info"),
    Column("created_at", String(32), nullable=False, index=True),
)


class AuditStore:
    """Repository for AuditLogEntry records.

    Usage:
        store = AuditStore()
        entry_id = store.append(entry)
        entries = store.list_entries(company_id=7, limit=50)
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def append(self, entry: AuditLogEntry) -> int:
        """Insert one entry and return its id. Raises AuditWriteFailed on any DB error."""
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _audit_logs.insert().values(
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
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except SQLAlchemyError as exc:
            raise AuditWriteFailed(str(exc)) from exc

    def list_entries(
        self,
        *,
        company_id: int | None = None,
        store_id: int | None = None,
        action: str | None = None,
        entity_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        """Return entries newest first, filtered by any combination of arguments."""
        query = (
            _audit_logs.select()
            .where(*self._filters(company_id, store_id, action, entity_type, start, end))
            .order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count_entries(
        self,
        *,
        company_id: int | None = None,
        store_id: int | None = None,
        action: str | None = None,
        entity_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        query = (
            select(func.count())
            .select_from(_audit_logs)
            .where(*self._filters(company_id, store_id, action, entity_type, start, end))
        )
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    @staticmethod
    def _filters(company_id, store_id, action, entity_type, start, end) -> list:
        conditions = []
        if company_id is not None:
            conditions.append(_audit_logs.c.company_id == company_id)
        if store_id is not None:
            conditions.append(_audit_logs.c.store_id == store_id)
        if action:
            conditions.append(_audit_logs.c.action == action)
        if entity_type:
            conditions.append(_audit_logs.c.entity_type == entity_type)
        if start is not None:
            conditions.append(_audit_logs.c.created_at >= iso(start))
        if end is not None:
            conditions.append(_audit_logs.c.created_at <= iso(end))
        return conditions

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        user_id=row.user_id,
        user_email=row.user_email,
        user_role=row.user_role,
        company_id=row.company_id,
        store_id=row.store_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        description=row.description,
        old_values=row.old_values,
        new_values=row.new_values,
        metadata=row.metadata or {},
        severity=Severity(row.severity),
        created_at=parse_iso(row.created_at),
    )
