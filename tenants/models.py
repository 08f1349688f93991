"""
tenants/models.py -- Company and Store dataclasses.

Every Store belongs to exactly one Company (company_id is required).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass
class Company:
    name: str
    email: str
    id: int | None = None
    phone: str | None = None
    address: str | None = None
    contact_person: str | None = None
    max_stores: int = 5
    is_active: bool = True
    created_at: str | None = None

    def snapshot(self) -> dict:
        return asdict(self)


@dataclass
class Store:
    name: str
    company_id: int
    id: int | None = None
    address: str | None = None
    phone: str | None = None
    is_active: bool = True
    created_at: str | None = None

    def snapshot(self) -> dict:
        return asdict(self)
