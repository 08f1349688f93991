"""
auth/login.py -- LoginFlow: one login request from password to session.

    CredentialVerifier  ->  (no 2FA)            -> SessionIssuer [password]
                        ->  valid device token  -> SessionIssuer [trusted_device]
                        ->  no code submitted   -> PendingChallenge, requires2FA
                        ->  code submitted      -> SecondFactorEngine.verify
                                                   (claims the challenge) -> SessionIssuer [two_factor]

A second-factor submission re-sends email + password together with the
challenge id, so every session-issuing request has verified the password
itself. When a code arrives without a challenge id a fresh challenge is
issued and checked in the same request.

Audit: each successful login records exactly one UserLogin. Failures record
LoginFailed with the stage that failed. A rejected device token is recorded
as a SecurityEvent and the request continues down the 2FA path.

This is the one auth/ module that talks to audit/; the lower-level services
stay audit-free.
"""

from __future__ import annotations

import logging

from audit.events import DeviceTrusted, LoginFailed, SecurityEvent, UserLogin, UserLogout
from audit.logger import AuditLogger
from audit.models import AuditContext
from auth.attempts import LoginAttempt
from auth.credentials import CredentialVerifier
from auth.devices import DeviceTrustStore
from auth.models import LoginResult, PendingChallenge, Principal, Session, User
from auth.second_factor import SecondFactorEngine
from auth.sessions import SessionIssuer
from core.errors import ChallengeExpired, DeviceTokenInvalid, InvalidCredentials, SecondFactorFailed

logger = logging.getLogger("tenantguard.auth")


class LoginFlow:
    def __init__(
        self,
        verifier: CredentialVerifier,
        second_factor: SecondFactorEngine,
        devices: DeviceTrustStore,
        sessions: SessionIssuer,
        audit: AuditLogger,
    ) -> None:
        self._verifier = verifier
        self._second_factor = second_factor
        self._devices = devices
        self._sessions = sessions
        self._audit = audit

    def login(
        self,
        email: str,
        password: str,
        two_factor_token: str | None = None,
        challenge_id: str | None = None,
        remember_device: bool = False,
        device_token: str | None = None,
        device_name: str | None = None,
        context: AuditContext | None = None,
    ) -> LoginResult:
        """Run one login request.

        Returns a LoginResult carrying either a session + access token or a
        pending challenge. Raises InvalidCredentials, SecondFactorFailed or
        ChallengeExpired.
        """
        context = context or AuditContext()
        attempt = LoginAttempt()

        try:
            identity = self._verifier.verify(email, password)
        except InvalidCredentials:
            self._audit.record(None, LoginFailed(attempted_email=email, stage="password"), context=context)
            raise
        attempt.password_verified(identity)
        user = identity.user
        principal = Principal.from_user(user)

        if not user.two_factor_enabled:
            return self._complete(attempt, context)

        if device_token:
            try:
                self._devices.require(device_token, user.id)
            except DeviceTokenInvalid as exc:
                logger.info("Rejected device token for user id=%s: %s", user.id, exc.reason)
                self._audit.record(
                    principal,
                    SecurityEvent(
                        event="Invalid or expired device token presented",
                        details={"user_id": user.id, "reason": exc.reason},
                    ),
                    context=context,
                )
            else:
                attempt.device_trusted()
                return self._complete(attempt, context)

        if not two_factor_token:
            challenge = self._second_factor.issue_challenge(user)
            attempt.challenge_issued(challenge)
            return LoginResult(principal=principal, challenge=challenge)

        challenge = self._load_or_issue(user, principal, challenge_id, context)
        attempt.challenge_issued(challenge)

        try:
            accepted = self._second_factor.verify(challenge, two_factor_token)
        except ChallengeExpired:
            attempt.challenge_expired()
            self._audit.record(principal, LoginFailed(attempted_email=user.email, stage="challenge"), context=context)
            raise

        if not accepted:
            attempt.second_factor_failed()
            self._audit.record(
                principal, LoginFailed(attempted_email=user.email, stage="second_factor"), context=context
            )
            raise SecondFactorFailed(challenge.id)

        attempt.second_factor_verified()

        new_device_token = None
        if remember_device:
            new_device_token = self._devices.issue(
                user.id,
                device_name=device_name,
                user_agent=context.user_agent,
                ip_address=context.ip_address,
            )
            self._audit.record(
                principal,
                DeviceTrusted(user_id=user.id, email=user.email, device_name=device_name),
                context=context,
            )

        result = self._complete(attempt, context)
        result.device_token = new_device_token
        return result

    def logout(self, session: Session, context: AuditContext | None = None) -> None:
        """Revoke the session. The access token stops resolving on the next request."""
        self._sessions.revoke(session.id)
        principal = session.principal
        self._audit.record(
            principal,
            UserLogout(user_id=principal.subject_id, email=principal.email),
            context=context,
        )

    def _load_or_issue(
        self,
        user: User,
        principal: Principal,
        challenge_id: str | None,
        context: AuditContext,
    ) -> PendingChallenge:
        if not challenge_id:
            return self._second_factor.issue_challenge(user)
        try:
            return self._second_factor.load_challenge(challenge_id, user.id)
        except ChallengeExpired:
            self._audit.record(principal, LoginFailed(attempted_email=user.email, stage="challenge"), context=context)
            raise

    def _complete(self, attempt: LoginAttempt, context: AuditContext) -> LoginResult:
        session, token = self._sessions.issue(attempt)
        principal = session.principal
        self._audit.record(
            principal,
            UserLogin(user_id=principal.subject_id, email=principal.email, auth_path=session.auth_path.value),
            context=context,
        )
        return LoginResult(principal=principal, session=session, access_token=token)
