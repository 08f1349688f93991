"""
auth/rbac.py -- RBACEvaluator: role + tenant-scope authorization, fail-closed.

Every protected operation declares the set of roles it accepts (the policy
constants below, or an explicit frozenset). A request is allowed when:

  1. the principal's effective roles intersect the required set, where the
     effective roles are its own role plus whatever CAPABILITY_EQUIVALENCE
     grants it, and
  2. the principal is super_admin (unscoped), or the target scope lies inside
     the principal's tenant: same company id, and same store id when both the
     principal and the target name a store.

Anything else is denied. A target that names a company cannot be reached by a
scoped principal without a company id.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from auth.models import Principal, Role
from core.errors import Unauthorized

logger = logging.getLogger("tenantguard.auth")

# Company-level actors are a superset of store owners over their own stores.
# Scope is still checked afterwards, so the grant never crosses companies.
CAPABILITY_EQUIVALENCE: dict[Role, frozenset[Role]] = {
    Role.SUPER_ADMIN: frozenset(),
    Role.COMPANY_ADMIN: frozenset({Role.STORE_OWNER}),
    Role.STORE_OWNER: frozenset(),
    Role.MANAGER: frozenset(),
}

# ---------------------------------------------------------------------------
# Required-role sets used by the routes
# ---------------------------------------------------------------------------

PLATFORM_ADMIN = frozenset({Role.SUPER_ADMIN})
COMPANY_MANAGEMENT = frozenset({Role.SUPER_ADMIN, Role.COMPANY_ADMIN})
STORE_MANAGEMENT = frozenset({Role.SUPER_ADMIN, Role.STORE_OWNER})
STORE_ACCESS = frozenset({Role.SUPER_ADMIN, Role.STORE_OWNER, Role.MANAGER})
AUDIT_READERS = frozenset({Role.SUPER_ADMIN, Role.COMPANY_ADMIN, Role.STORE_OWNER})


@dataclass(frozen=True)
class TargetScope:
    """The tenant a resource lives in. None fields mean "not tied to one"."""

    company_id: int | None = None
    store_id: int | None = None


PLATFORM = TargetScope()


def effective_roles(role: Role) -> frozenset[Role]:
    return frozenset({role}) | CAPABILITY_EQUIVALENCE.get(role, frozenset())


def in_scope(principal: Principal, target: TargetScope) -> bool:
    if principal.role is Role.SUPER_ADMIN:
        return True
    if target.company_id is None and target.store_id is None:
        return True
    if principal.company_id is None or target.company_id is None:
        return False
    if principal.company_id != target.company_id:
        return False
    if principal.store_id is not None and target.store_id is not None:
        return principal.store_id == target.store_id
    return True


class RBACEvaluator:
    """Stateless. One shared instance is wired on app.state."""

    def authorize(
        self,
        principal: Principal | None,
        required_roles: Iterable[Role],
        target: TargetScope = PLATFORM,
    ) -> bool:
        if principal is None:
            return False
        required = frozenset(required_roles)
        if not required or not (effective_roles(principal.role) & required):
            return False
        return in_scope(principal, target)

    def enforce(
        self,
        principal: Principal | None,
        required_roles: Iterable[Role],
        target: TargetScope = PLATFORM,
    ) -> None:
        """Raise Unauthorized unless authorize() allows the request."""
        if not self.authorize(principal, required_roles, target):
            logger.info(
                "RBAC denied user id=%s role=%s target=%s",
                principal.subject_id if principal else None,
                principal.role.value if principal else None,
                target,
            )
            raise Unauthorized()
