"""
tenants/store.py -- SQLAlchemy Core persistence for companies and stores.

Pattern: Repository + Data Mapper, same as auth/store.py.

The stores table carries a NOT NULL company_id, which is how the hierarchy
invariant (every Store has exactly one Company) is held at the DB level.
delete_company() refuses while stores still reference the company.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.store import iso, make_engine
from tenants.models import Company, Store

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'tenantguard_tenants.db'}"

_metadata = MetaData()

_companies = Table(
    "companies",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("phone", String(50)),
    Column("address", Text),
    Column("contact_person", String(255)),
    Column("max_stores", Integer, nullable=False, server_default="5"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_stores = Table(
    "stores",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("company_id", Integer, ForeignKey("companies.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("address", Text),
    Column("phone", String(50)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_COMPANY_FIELDS = frozenset({"name", "email", "phone", "address", "contact_person", "max_stores", "is_active"})
_STORE_FIELDS = frozenset({"name", "address", "phone", "is_active"})


class CompanyHasStores(Exception):
    """Raised by delete_company() while stores still belong to the company."""


def _now_iso() -> str:
    return iso(datetime.now(timezone.utc))


class TenantStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    def create_company(self, company: Company) -> int:
        """Insert a company. Raises IntegrityError on a duplicate email."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _companies.insert().values(
                    name=company.name,
                    email=company.email.strip().lower(),
                    phone=company.phone,
                    address=company.address,
                    contact_person=company.contact_person,
                    max_stores=company.max_stores,
                    is_active=1 if company.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_company(self, company_id: int) -> Company | None:
        with self.engine.connect() as conn:
            row = conn.execute(_companies.select().where(_companies.c.id == company_id)).fetchone()
        return _row_to_company(row) if row is not None else None

    def list_companies(self) -> list[Company]:
        with self.engine.connect() as conn:
            rows = conn.execute(_companies.select().order_by(_companies.c.name)).fetchall()
        return [_row_to_company(r) for r in rows]

    def update_company(self, company_id: int, **fields) -> bool:
        unknown = set(fields) - _COMPANY_FIELDS
        if unknown:
            raise ValueError(f"Unknown company fields: {sorted(unknown)!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_companies.update().where(_companies.c.id == company_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_company(self, company_id: int) -> bool:
        with self.engine.connect() as conn:
            remaining = conn.execute(
                select(func.count()).select_from(_stores).where(_stores.c.company_id == company_id)
            ).scalar()
            if remaining:
                raise CompanyHasStores(f"company {company_id} still owns {remaining} store(s)")
            result = conn.execute(_companies.delete().where(_companies.c.id == company_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    def create_store(self, store: Store) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _stores.insert().values(
                    company_id=store.company_id,
                    name=store.name,
                    address=store.address,
                    phone=store.phone,
                    is_active=1 if store.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_store(self, store_id: int) -> Store | None:
        with self.engine.connect() as conn:
            row = conn.execute(_stores.select().where(_stores.c.id == store_id)).fetchone()
        return _row_to_store(row) if row is not None else None

    def list_stores(self, company_id: int | None = None) -> list[Store]:
        query = _stores.select().order_by(_stores.c.name)
        if company_id is not None:
            query = query.where(_stores.c.company_id == company_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_store(r) for r in rows]

    def count_stores(self, company_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_stores).where(_stores.c.company_id == company_id)
            ).scalar()
        return result or 0

    def update_store(self, store_id: int, **fields) -> bool:
        """Update mutable store fields. company_id is not one of them."""
        unknown = set(fields) - _STORE_FIELDS
        if unknown:
            raise ValueError(f"Unknown store fields: {sorted(unknown)!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_stores.update().where(_stores.c.id == store_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_store(self, store_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_stores.delete().where(_stores.c.id == store_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


def _row_to_company(row) -> Company:
    return Company(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        address=row.address,
        contact_person=row.contact_person,
        max_stores=row.max_stores,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_store(row) -> Store:
    return Store(
        id=row.id,
        company_id=row.company_id,
        name=row.name,
        address=row.address,
        phone=row.phone,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )
