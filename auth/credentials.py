"""
auth/credentials.py -- CredentialVerifier: email + password -> VerifiedIdentity.

Unknown email, missing password hash, wrong password and inactive account all
raise the same InvalidCredentials. bcrypt runs in every branch (against
DUMMY_HASH when there is no real hash) so response time does not reveal
whether an account exists.

Read only: this module never writes to the store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from auth.models import VerifiedIdentity
from auth.store import UserStore
from auth.tokens import DUMMY_HASH, verify_password
from core.errors import InvalidCredentials

logger = logging.getLogger("tenantguard.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialVerifier:
    def __init__(self, store: UserStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock

    def verify(self, email: str, password: str) -> VerifiedIdentity:
        """Return the verified identity or raise InvalidCredentials."""
        user = self._store.get_by_email(email)
        if user is None or user.password_hash is None:
            # Same bcrypt cost as a real check.
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials()
        if not user.is_active:
            logger.info("Login refused for inactive account id=%s", user.id)
            raise InvalidCredentials()
        return VerifiedIdentity(user=user, verified_at=self._clock())
