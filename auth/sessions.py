"""
auth/sessions.py -- SessionIssuer: turns a completed LoginAttempt into a Session.

Three paths converge on one Session shape:
  PASSWORD        password only, user has no 2FA enrolled
  TWO_FACTOR      password + TOTP or backup code
  TRUSTED_DEVICE  password + valid device token

issue() refuses any attempt whose password step did not complete in the same
request (IncompleteAuthentication). The session row is the authority for
every later request: resolve() re-reads it each time, and revoke() (logout)
takes effect on the very next request.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.attempts import LoginAttempt
from auth.models import Principal, Session
from auth.store import UserStore
from auth.tokens import create_access_token, decode_access_token
from core.config import Settings, get_settings
from core.errors import IncompleteAuthentication

logger = logging.getLogger("tenantguard.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionIssuer:
    def __init__(
        self,
        store: UserStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock

    def issue(self, attempt: LoginAttempt) -> tuple[Session, str]:
        """Create and persist a session. Returns (session, signed access token)."""
        path = attempt.completed_path()
        if path is None:
            raise IncompleteAuthentication()
        now = self._clock()
        session = Session(
            id=secrets.token_urlsafe(32),
            principal=Principal.from_user(attempt.identity.user),
            auth_path=path,
            created_at=now,
            expires_at=now + timedelta(seconds=self._settings.session_ttl_seconds),
        )
        self._store.create_session(session)
        self._store.update_last_login(session.principal.subject_id)
        token = create_access_token(session.id, session.principal.subject_id, session.principal.role.value, session.expires_at)
        logger.info("Session issued for user id=%s via %s", session.principal.subject_id, path.value)
        return session, token

    def resolve(self, token: str | None) -> Session | None:
        """Return the live session a token points at, or None."""
        if not token:
            return None
        payload = decode_access_token(token)
        if payload is None:
            return None
        session = self._store.get_session(payload["sid"])
        if session is None or not session.is_active(self._clock()):
            return None
        return session

    def revoke(self, session_id: str) -> bool:
        return self._store.revoke_session(session_id, self._clock())

    def revoke_all(self, user_id: int, keep_session_id: str | None = None) -> int:
        return self._store.revoke_sessions_for_user(user_id, self._clock(), keep_session_id=keep_session_id)

    def purge_expired(self) -> int:
        return self._store.purge_sessions(self._clock())
