"""
api/routes/v1/tenants.py -- Company and store administration.

Routes and the role sets they declare:
  POST   /api/v1/companies               PLATFORM_ADMIN
  GET    /api/v1/companies               PLATFORM_ADMIN
  GET    /api/v1/companies/{id}          COMPANY_MANAGEMENT   (own company)
  PATCH  /api/v1/companies/{id}          COMPANY_MANAGEMENT   (own company)
  DELETE /api/v1/companies/{id}          PLATFORM_ADMIN
  POST   /api/v1/companies/{id}/stores   STORE_MANAGEMENT     (own company, max_stores)
  GET    /api/v1/stores                  STORE_ACCESS         (filtered to own scope)
  PATCH  /api/v1/stores/{id}             STORE_MANAGEMENT     (own company / store)
  DELETE /api/v1/stores/{id}             STORE_MANAGEMENT     (own company / store)

The role dependency rejects the wrong roles up front. Routes that touch one
company or store then call rbac.enforce() with that target's scope, so a
company_admin of company 7 cannot reach company 9 by id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import CompanyCreate, CompanyPatch, CompanyResponse, StoreCreate, StorePatch, StoreResponse
from audit.events import CompanyCreated, CompanyDeleted, CompanyUpdated, StoreCreated, StoreDeleted, StoreUpdated
from auth.dependencies import audit_context, require_roles
from auth.models import Principal, Role
from auth.rbac import COMPANY_MANAGEMENT, PLATFORM_ADMIN, STORE_ACCESS, STORE_MANAGEMENT, TargetScope
from tenants.models import Company, Store
from tenants.store import CompanyHasStores, TenantStore

# Company fields only a super_admin may change.
_PLATFORM_ONLY_FIELDS = frozenset({"max_stores", "is_active"})

router = APIRouter()


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------


@router.post("/companies", response_model=CompanyResponse, status_code=201)
def create_company(
    request: Request,
    body: CompanyCreate,
    principal: Principal = Depends(require_roles(PLATFORM_ADMIN)),
) -> CompanyResponse:
    tenant_store: TenantStore = request.app.state.tenant_store
    company = Company(
        name=body.name,
        email=body.email,
        phone=body.phone,
        address=body.address,
        contact_person=body.contact_person,
        max_stores=body.max_stores,
    )
    try:
        company_id = tenant_store.create_company(company)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A company with that email already exists."},
        ) from exc
    created = tenant_store.get_company(company_id)
    request.app.state.audit.record(
        principal,
        CompanyCreated(company_id=company_id, name=created.name, values=created.snapshot()),
        context=audit_context(request),
    )
    return _company_to_response(created)


@router.get("/companies", response_model=list[CompanyResponse])
def list_companies(
    request: Request,
    principal: Principal = Depends(require_roles(PLATFORM_ADMIN)),
) -> list[CompanyResponse]:
    return [_company_to_response(c) for c in request.app.state.tenant_store.list_companies()]


@router.get("/companies/{company_id}", response_model=CompanyResponse)
def get_company(
    request: Request,
    company_id: int,
    principal: Principal = Depends(require_roles(COMPANY_MANAGEMENT)),
) -> CompanyResponse:
    company = _load_company(request, company_id)
    request.app.state.rbac.enforce(principal, COMPANY_MANAGEMENT, TargetScope(company_id=company.id))
    return _company_to_response(company)


@router.patch("/companies/{company_id}", response_model=CompanyResponse)
def update_company(
    request: Request,
    company_id: int,
    body: CompanyPatch,
    principal: Principal = Depends(require_roles(COMPANY_MANAGEMENT)),
) -> CompanyResponse:
    """Update company details. Plan limits and activation stay with super_admin."""
    company = _load_company(request, company_id)
    request.app.state.rbac.enforce(principal, COMPANY_MANAGEMENT, TargetScope(company_id=company.id))

    updates = body.model_dump(exclude_none=True)
    if principal.role is not Role.SUPER_ADMIN and _PLATFORM_ONLY_FIELDS & set(updates):
        request.app.state.rbac.enforce(principal, PLATFORM_ADMIN)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    tenant_store: TenantStore = request.app.state.tenant_store
    tenant_store.update_company(company.id, **updates)
    updated = tenant_store.get_company(company.id)
    request.app.state.audit.record(
        principal,
        CompanyUpdated(
            company_id=company.id,
            name=updated.name,
            old={k: getattr(company, k) for k in updates},
            new={k: getattr(updated, k) for k in updates},
        ),
        context=audit_context(request),
    )
    return _company_to_response(updated)


@router.delete("/companies/{company_id}", status_code=204)
def delete_company(
    request: Request,
    company_id: int,
    principal: Principal = Depends(require_roles(PLATFORM_ADMIN)),
) -> Response:
    """Delete a company. Refused (409) while it still owns stores."""
    company = _load_company(request, company_id)
    try:
        request.app.state.tenant_store.delete_company(company.id)
    except CompanyHasStores as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "has_stores", "message": "Delete the company's stores first."},
        ) from exc
    request.app.state.audit.record(
        principal,
        CompanyDeleted(company_id=company.id, name=company.name, old=company.snapshot()),
        context=audit_context(request),
    )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@router.post("/companies/{company_id}/stores", response_model=StoreResponse, status_code=201)
def create_store(
    request: Request,
    company_id: int,
    body: StoreCreate,
    principal: Principal = Depends(require_roles(STORE_MANAGEMENT)),
) -> StoreResponse:
    """Open a new store under a company, up to the company's max_stores."""
    company = _load_company(request, company_id)
    request.app.state.rbac.enforce(principal, STORE_MANAGEMENT, TargetScope(company_id=company.id))

    tenant_store: TenantStore = request.app.state.tenant_store
    if tenant_store.count_stores(company.id) >= company.max_stores:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "store_limit_reached",
                "message": f"Store limit reached. Maximum {company.max_stores} stores allowed.",
            },
        )

    store_id = tenant_store.create_store(
        Store(name=body.name, company_id=company.id, address=body.address, phone=body.phone)
    )
    created = tenant_store.get_store(store_id)
    request.app.state.audit.record(
        principal,
        StoreCreated(store_id=store_id, company_id=company.id, name=created.name, values=created.snapshot()),
        context=audit_context(request),
    )
    return _store_to_response(created)


@router.get("/stores", response_model=list[StoreResponse])
def list_stores(
    request: Request,
    principal: Principal = Depends(require_roles(STORE_ACCESS)),
) -> list[StoreResponse]:
    """List the stores visible to the caller: all, their company's, or their own store."""
    tenant_store: TenantStore = request.app.state.tenant_store
    if principal.role is Role.SUPER_ADMIN:
        stores = tenant_store.list_stores()
    else:
        stores = tenant_store.list_stores(company_id=principal.company_id)
        if principal.store_id is not None:
            stores = [s for s in stores if s.id == principal.store_id]
    return [_store_to_response(s) for s in stores]


@router.patch("/stores/{store_id}", response_model=StoreResponse)
def update_store(
    request: Request,
    store_id: int,
    body: StorePatch,
    principal: Principal = Depends(require_roles(STORE_MANAGEMENT)),
) -> StoreResponse:
    store = _load_store(request, store_id)
    request.app.state.rbac.enforce(
        principal, STORE_MANAGEMENT, TargetScope(company_id=store.company_id, store_id=store.id)
    )
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    tenant_store: TenantStore = request.app.state.tenant_store
    tenant_store.update_store(store.id, **updates)
    updated = tenant_store.get_store(store.id)
    request.app.state.audit.record(
        principal,
        StoreUpdated(
            store_id=store.id,
            company_id=store.company_id,
            name=updated.name,
            old={k: getattr(store, k) for k in updates},
            new={k: getattr(updated, k) for k in updates},
        ),
        context=audit_context(request),
    )
    return _store_to_response(updated)


@router.delete("/stores/{store_id}", status_code=204)
def delete_store(
    request: Request,
    store_id: int,
    principal: Principal = Depends(require_roles(STORE_MANAGEMENT)),
) -> Response:
    store = _load_store(request, store_id)
    request.app.state.rbac.enforce(
        principal, STORE_MANAGEMENT, TargetScope(company_id=store.company_id, store_id=store.id)
    )
    request.app.state.tenant_store.delete_store(store.id)
    request.app.state.audit.record(
        principal,
        StoreDeleted(store_id=store.id, company_id=store.company_id, name=store.name, old=store.snapshot()),
        context=audit_context(request),
    )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_company(request: Request, company_id: int) -> Company:
    company = request.app.state.tenant_store.get_company(company_id)
    if company is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Company not found."},
        )
    return company


def _load_store(request: Request, store_id: int) -> Store:
    store = request.app.state.tenant_store.get_store(store_id)
    if store is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Store not found."},
        )
    return store


def _company_to_response(company: Company) -> CompanyResponse:
    return CompanyResponse(
        id=company.id,
        name=company.name,
        email=company.email,
        phone=company.phone,
        address=company.address,
        contact_person=company.contact_person,
        max_stores=company.max_stores,
        is_active=company.is_active,
        created_at=company.created_at,
    )


def _store_to_response(store: Store) -> StoreResponse:
    return StoreResponse(
        id=store.id,
        company_id=store.company_id,
        name=store.name,
        address=store.address,
        phone=store.phone,
        is_active=store.is_active,
        created_at=store.created_at,
    )
