"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and RBAC.

Two token carriers are checked in priority order:
  1. JWT cookie ("access_token") -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a Session resolved through SessionIssuer, which re-reads the
sessions row on every request. A revoked or expired session is the same as
no token.

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() / get_current_principal() raise HTTP 401.
require_roles(roles) adds an RBAC check and raises HTTP 403 with no detail
about which role was missing.

Layer rule: no imports from api/ or tenants/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from fastapi import Depends, HTTPException, Request

from audit.models import AuditContext
from auth.models import Principal, Role, Session
from auth.tokens import ACCESS_TOKEN_COOKIE


def _extract_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_session(request: Request) -> Session | None:
    """Resolve the request's session via cookie or Bearer token.

    Returns the live Session on success, None on any failure. Never raises.
    """
    token = _extract_token(request)
    if token is None:
        return None
    return request.app.state.sessions.resolve(token)


def get_current_session(request: Request) -> Session:
    """Require authentication. Raises HTTP 401 if there is no live session."""
    session = try_get_current_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return session


def get_current_principal(session: Session = Depends(get_current_session)) -> Principal:
    return session.principal


def require_roles(roles: Iterable[Role]) -> Callable[..., Principal]:
    """Build a dependency that admits only principals holding one of roles.

    The role set is checked without a target scope here; routes that act on
    a specific company or store call rbac.enforce() again with the target.

        @router.get("/companies")
        async def route(principal: Principal = Depends(require_roles({Role.SUPER_ADMIN}))): ...
    """
    required = frozenset(roles)

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        if not request.app.state.rbac.authorize(principal, required):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Access denied"},
            )
        return principal

    return dependency


def get_client_ip(request: Request) -> str:
    """Client address, honouring the first X-Forwarded-For hop when present."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def audit_context(request: Request) -> AuditContext:
    return AuditContext(ip_address=get_client_ip(request), user_agent=request.headers.get("User-Agent"))
