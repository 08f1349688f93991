"""
api/routes/v1/auth.py -- Authentication, credential and device endpoints.

Routes:
  POST   /api/v1/auth/login                         -- password (+2FA / device token) login
  POST   /api/v1/auth/logout                        -- revoke session, clear cookie
  GET    /api/v1/auth/me                            -- current user
  POST   /api/v1/auth/password                      -- change own password
  POST   /api/v1/auth/users                         -- create user (scoped)
  GET    /api/v1/auth/users                         -- list users (scoped)
  PATCH  /api/v1/auth/users/{id}                    -- update profile, role, placement, status (scoped)
  DELETE /api/v1/auth/users/{id}                    -- delete user (scoped)
  POST   /api/v1/auth/users/{id}/reset-password     -- administrative reset (scoped)
  POST   /api/v1/auth/users/{id}/revoke-devices     -- drop every trusted device (scoped)
  GET    /api/v1/auth/devices                       -- list own trusted devices
  DELETE /api/v1/auth/devices/{id}                  -- forget one own device

Security:
  POST /login is rate-limited per client address (LOGIN_RATE_LIMIT).
  Every authentication failure is the same 401 "Invalid credentials"
  (rendered by the AuthError handler in api/main.py).
  Cache-Control: no-store on login responses.
  A password change or reset revokes every trusted device and every other
  session of the subject.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    PasswordChange,
    PasswordReset,
    RevokedDevicesResponse,
    TrustedDeviceResponse,
    TwoFactorRequiredResponse,
    UserCreate,
    UserPatch,
    UserResponse,
)
from audit.events import DevicesRevoked, PasswordChanged, UserCreated, UserDeleted, UserUpdated
from auth.dependencies import (
    audit_context,
    get_current_principal,
    get_current_session,
    require_roles,
    try_get_current_session,
)
from auth.models import COMPANY_SCOPED_ROLES, Principal, Role, Session, User
from auth.rbac import COMPANY_MANAGEMENT, TargetScope
from auth.store import UserStore, iso
from auth.tokens import clear_auth_cookie, hash_password, set_auth_cookie
from core.config import get_settings
from core.errors import Unauthorized

_settings = get_settings()

DEVICE_TOKEN_HEADER = "X-Device-Token"

# Which roles each administrator may hand out and manage. super_admin is unrestricted.
_CREATABLE_ROLES: dict[Role, frozenset[Role]] = {
    Role.COMPANY_ADMIN: frozenset({Role.STORE_OWNER, Role.MANAGER}),
    Role.STORE_OWNER: frozenset({Role.MANAGER}),
}

# Auth policy:
# - POST   /auth/login, /auth/logout:          public
# - GET    /auth/me, /auth/password, devices:  any authenticated session
# - POST   /auth/users:                        super_admin, company_admin, store_owner (+ scope)
# - GET /auth/users, PATCH|DELETE /auth/users/{id}: super_admin, company_admin (+ scope)
# - POST   /auth/users/{id}/...:               super_admin, company_admin (+ scope)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate and, when every required factor is satisfied, open a session.

    Without 2FA enrolled the password alone is enough. With 2FA enrolled the
    first call answers {requires2FA, challengeId}; the client repeats the
    request with twoFactorToken and challengeId. A valid X-Device-Token header
    skips the second step. With rememberDevice set, a successful 2FA response
    carries a new device token in the X-Device-Token response header.
    """
    result = request.app.state.login_flow.login(
        email=body.email,
        password=body.password,
        two_factor_token=body.two_factor_token,
        challenge_id=body.challenge_id,
        remember_device=body.remember_device,
        device_token=request.headers.get(DEVICE_TOKEN_HEADER),
        device_name=body.device_name,
        context=audit_context(request),
    )

    if result.requires_second_factor:
        resp = JSONResponse(
            status_code=200,
            content=TwoFactorRequiredResponse(challenge_id=result.challenge.id).model_dump(by_alias=True),
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    user = request.app.state.user_store.get_by_id(result.principal.subject_id)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=_user_to_response(user),
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_at=iso(result.session.expires_at),
        ).model_dump(),
    )
    set_auth_cookie(resp, result.access_token, result.session.expires_at)
    if result.device_token:
        resp.headers[DEVICE_TOKEN_HEADER] = result.device_token
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """Revoke the current session (if any) and clear the cookie."""
    session = try_get_current_session(request)
    if session is not None:
        request.app.state.login_flow.logout(session, audit_context(request))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
async def me(request: Request, principal: Principal = Depends(get_current_principal)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return _user_to_response(request.app.state.user_store.get_by_id(principal.subject_id))


@router.post("/auth/password")
def change_password(
    request: Request,
    body: PasswordChange,
    session: Session = Depends(get_current_session),
) -> JSONResponse:
    """Change the caller's own password.

    The current password is re-verified. Trusted devices and every other
    session are revoked; the calling session stays valid.
    """
    principal = session.principal
    request.app.state.verifier.verify(principal.email, body.current_password)

    user_store: UserStore = request.app.state.user_store
    user_store.set_password(principal.subject_id, hash_password(body.new_password))
    revoked = request.app.state.devices.revoke_all(principal.subject_id)
    request.app.state.sessions.revoke_all(principal.subject_id, keep_session_id=session.id)
    request.app.state.audit.record(
        principal,
        PasswordChanged(user_id=principal.subject_id, email=principal.email, devices_revoked=revoked),
        context=audit_context(request),
    )
    return JSONResponse(content={"message": "Password updated."})


@router.get("/auth/devices", response_model=list[TrustedDeviceResponse])
async def list_devices(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[TrustedDeviceResponse]:
    """List the caller's trusted devices. Token values are never returned."""
    devices = request.app.state.devices.list_devices(principal.subject_id)
    return [
        TrustedDeviceResponse(
            id=d.id,
            device_name=d.device_name,
            user_agent=d.user_agent,
            ip_address=d.ip_address,
            created_at=iso(d.created_at) if d.created_at else None,
            expires_at=iso(d.expires_at),
        )
        for d in devices
    ]


@router.delete("/auth/devices/{device_id}", status_code=204)
async def forget_device(
    request: Request,
    device_id: int,
    principal: Principal = Depends(get_current_principal),
) -> Response:
    """Revoke one of the caller's own trusted devices.

    The store's WHERE clause matches on both device id and user id, so a
    caller cannot revoke another user's device by guessing its id.
    """
    if not request.app.state.devices.revoke(principal.subject_id, device_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Device not found."},
        )
    request.app.state.audit.record(
        principal,
        DevicesRevoked(user_id=principal.subject_id, email=principal.email, count=1),
        context=audit_context(request),
    )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# User administration (scoped)
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    principal: Principal = Depends(require_roles({Role.SUPER_ADMIN, Role.COMPANY_ADMIN, Role.STORE_OWNER})),
) -> UserResponse:
    """Create an account.

    super_admin may create any role anywhere. company_admin may create
    store owners and managers inside its own company; store_owner may create
    managers inside its own company (and store, when it is store-scoped).
    """
    role = Role(body.role.value)
    company_id, store_id = body.company_id, body.store_id

    if principal.role is not Role.SUPER_ADMIN:
        if role not in _CREATABLE_ROLES.get(principal.role, frozenset()):
            raise Unauthorized()
        company_id = company_id if company_id is not None else principal.company_id
        if principal.store_id is not None and store_id is None:
            store_id = principal.store_id
        request.app.state.rbac.enforce(
            principal, {principal.role}, TargetScope(company_id=company_id, store_id=store_id)
        )

    _validate_placement(request, role, company_id, store_id)

    user_store: UserStore = request.app.state.user_store
    new_user = User(
        email=body.email,
        role=role,
        password_hash=hash_password(body.password),
        company_id=company_id,
        store_id=store_id,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that email already exists."},
        ) from exc

    created = user_store.get_by_id(user_id)
    request.app.state.audit.record(
        principal,
        UserCreated(
            user_id=user_id,
            email=created.email,
            role=role.value,
            values={
                "email": created.email,
                "role": role.value,
                "company_id": company_id,
                "store_id": store_id,
                "first_name": body.first_name,
                "last_name": body.last_name,
            },
        ),
        context=audit_context(request),
    )
    return _user_to_response(created)


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    company_id: int | None = None,
    principal: Principal = Depends(require_roles(COMPANY_MANAGEMENT)),
) -> list[UserResponse]:
    """List accounts. super_admin sees every account (optionally one company); company_admin its own company."""
    if principal.role is not Role.SUPER_ADMIN:
        company_id = principal.company_id
    users = request.app.state.user_store.list_users(company_id=company_id)
    return [_user_to_response(u) for u in users]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    principal: Principal = Depends(require_roles(COMPANY_MANAGEMENT)),
) -> UserResponse:
    """Change a user's profile, role, placement or active flag.

    company_admin may only edit and assign the roles it can create, and
    cannot move anyone to another company. A role, placement or is_active
    change revokes the user's sessions and trusted devices. Promoting a
    user out of a store-scoped role detaches it from its store.
    """
    target = _managed_user(request, principal, user_id)
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if "role" in updates:
        updates["role"] = Role(updates["role"].value)

    if principal.role is not Role.SUPER_ADMIN:
        allowed = _CREATABLE_ROLES.get(principal.role, frozenset())
        if target.role not in allowed or updates.get("role", target.role) not in allowed:
            raise Unauthorized()
        if updates.get("company_id", target.company_id) != target.company_id:
            raise Unauthorized()

    if target.id == principal.subject_id and {"role", "company_id", "store_id", "is_active"} & set(updates):
        raise HTTPException(
            status_code=400,
            detail={"code": "cannot_modify_self", "message": "You cannot change your own role, placement or status."},
        )

    role = updates.get("role", target.role)
    if "role" in updates and role not in COMPANY_SCOPED_ROLES:
        updates["store_id"] = None
        if role is Role.SUPER_ADMIN:
            updates["company_id"] = None
    company_id = updates.get("company_id", target.company_id)
    store_id = updates.get("store_id", target.store_id)
    _validate_placement(request, role, company_id, store_id)

    user_store: UserStore = request.app.state.user_store
    user_store.update_user(target.id, **updates)
    if {"role", "company_id", "store_id"} & set(updates) or updates.get("is_active") is False:
        request.app.state.sessions.revoke_all(target.id)
        request.app.state.devices.revoke_all(target.id)

    after = user_store.get_by_id(target.id)
    request.app.state.audit.record(
        principal,
        UserUpdated(
            user_id=target.id,
            email=target.email,
            company_id=after.company_id,
            store_id=after.store_id,
            old={k: _user_field(target, k) for k in updates},
            new={k: _user_field(after, k) for k in updates},
        ),
        context=audit_context(request),
    )
    return _user_to_response(after)


@router.delete("/auth/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_roles(COMPANY_MANAGEMENT)),
) -> Response:
    """Delete an account together with its sessions, devices and 2FA material."""
    target = _managed_user(request, principal, user_id)
    if target.id == principal.subject_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "cannot_modify_self", "message": "You cannot delete your own account."},
        )
    if principal.role is not Role.SUPER_ADMIN and target.role not in _CREATABLE_ROLES.get(principal.role, frozenset()):
        raise Unauthorized()

    snapshot = {k: _user_field(target, k) for k in ("email", "role", "company_id", "store_id", "is_active")}
    request.app.state.user_store.delete_user(target.id)
    request.app.state.audit.record(
        principal,
        UserDeleted(
            user_id=target.id,
            email=target.email,
            company_id=target.company_id,
            store_id=target.store_id,
            old=snapshot,
        ),
        context=audit_context(request),
    )
    return Response(status_code=204)


@router.post("/auth/users/{user_id}/reset-password")
def reset_password(
    request: Request,
    user_id: int,
    body: PasswordReset,
    principal: Principal = Depends(require_roles(COMPANY_MANAGEMENT)),
) -> JSONResponse:
    """Set a new password for another user and revoke their devices and sessions."""
    target = _managed_user(request, principal, user_id)
    request.app.state.user_store.set_password(target.id, hash_password(body.new_password))
    revoked = request.app.state.devices.revoke_all(target.id)
    request.app.state.sessions.revoke_all(target.id)
    request.app.state.audit.record(
        principal,
        PasswordChanged(user_id=target.id, email=target.email, by_admin=True, devices_revoked=revoked),
        metadata={"company_id": target.company_id, "store_id": target.store_id},
        context=audit_context(request),
    )
    return JSONResponse(content={"message": "Password reset."})


@router.post("/auth/users/{user_id}/revoke-devices", response_model=RevokedDevicesResponse)
def revoke_user_devices(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_roles(COMPANY_MANAGEMENT)),
) -> RevokedDevicesResponse:
    """Drop every trusted device of a user, forcing 2FA on their next login."""
    target = _managed_user(request, principal, user_id)
    revoked = request.app.state.devices.revoke_all(target.id)
    request.app.state.audit.record(
        principal,
        DevicesRevoked(user_id=target.id, email=target.email, count=revoked),
        metadata={"company_id": target.company_id, "store_id": target.store_id},
        context=audit_context(request),
    )
    return RevokedDevicesResponse(revoked=revoked)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _managed_user(request: Request, principal: Principal, user_id: int) -> User:
    """Load a user the principal administers, or raise 404 / Unauthorized.

    Platform-level accounts (no company) are reachable only by super_admin.
    """
    target = request.app.state.user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    if principal.role is not Role.SUPER_ADMIN and (target.company_id is None or target.role is Role.SUPER_ADMIN):
        raise Unauthorized()
    request.app.state.rbac.enforce(
        principal, COMPANY_MANAGEMENT, TargetScope(company_id=target.company_id, store_id=target.store_id)
    )
    return target


def _validate_placement(request: Request, role: Role, company_id: int | None, store_id: int | None) -> None:
    """Check the company/store a new account is attached to exists and fits its role."""
    tenant_store = request.app.state.tenant_store
    if role is Role.SUPER_ADMIN:
        if company_id is not None or store_id is not None:
            _bad_request("super_admin accounts are not attached to a company.")
        return
    if company_id is None:
        _bad_request("company_id is required for this role.")
    if tenant_store.get_company(company_id) is None:
        _bad_request("Company not found.")
    if store_id is not None:
        if role not in COMPANY_SCOPED_ROLES:
            _bad_request("Only store owners and managers can be attached to a store.")
        store = tenant_store.get_store(store_id)
        if store is None or store.company_id != company_id:
            _bad_request("Store not found in that company.")


def _bad_request(message: str) -> None:
    raise HTTPException(status_code=400, detail={"code": "invalid_placement", "message": message})


def _user_to_response(user: User | None) -> UserResponse:
    if user is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role.value,
        company_id=user.company_id,
        store_id=user.store_id,
        first_name=user.first_name,
        last_name=user.last_name,
        is_active=user.is_active,
        two_factor_enabled=user.two_factor_enabled,
        created_at=user.created_at or "",
        last_login=user.last_login,
    )


def _user_field(user: User, name: str):
    value = getattr(user, name)
    return value.value if isinstance(value, Role) else value
