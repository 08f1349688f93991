"""
core/errors.py -- Error taxonomy shared by auth/, audit/ and the API layer.

Authentication failures (AuthError subclasses) surface as HTTP 401 with one
generic message. Unauthorized surfaces as HTTP 403 with no detail about the
missing role. AuditWriteFailed never leaves the audit logger.

Layer rule: core/ is the kernel. No imports from api/, auth/, audit/, tenants/.
"""

from __future__ import annotations


class TenantGuardError(Exception):
    """Base class for every error raised by this service."""


class AuthError(TenantGuardError):
    """An authentication step failed. Rendered as a uniform 401."""


class InvalidCredentials(AuthError):
    """Unknown email, wrong password or inactive account -- indistinguishable on purpose."""


class ChallengeExpired(AuthError):
    """The pending 2FA challenge is unknown, consumed, or past its TTL.

    The caller must restart the login from the password step.
    """


class SecondFactorFailed(AuthError):
    """The submitted TOTP or backup code did not verify.

    challenge_id is the still-valid challenge the caller may retry against.
    It is None when the failure happened outside a login (e.g. 2FA disable).
    """

    def __init__(self, challenge_id: str | None = None) -> None:
        super().__init__("second factor verification failed")
        self.challenge_id = challenge_id


class DeviceTokenInvalid(AuthError):
    """A presented X-Device-Token is unknown, expired, or bound to another subject.

    reason is one of "missing", "unknown" or "expired". LoginFlow catches it
    and falls through to the 2FA path, so it never reaches a client.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(f"device token rejected: {reason}")
        self.reason = reason


class IncompleteAuthentication(AuthError):
    """Session issuance was requested for an attempt that never verified a password."""


class InvalidLoginTransition(TenantGuardError):
    """A login attempt tried to move between states the state machine does not allow."""


class Unauthorized(TenantGuardError):
    """RBAC denial. Rendered as a 403 without naming the missing role."""


class AuditWriteFailed(TenantGuardError):
    """Persisting an audit entry failed. Internal only -- logged, never raised to callers."""
