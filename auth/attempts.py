"""
auth/attempts.py -- The per-request login state machine.

    STARTED
      -> PASSWORD_VERIFIED                    (CredentialVerifier succeeded)
           -> CHALLENGE_ISSUED                (2FA enrolled, no trusted device)
                -> VERIFIED                   (TOTP / backup code accepted)
                -> FAILED                     (wrong code, challenge still live)
                -> EXPIRED                    (challenge past TTL or consumed)
           -> DEVICE_TRUSTED                  (valid X-Device-Token)

A LoginAttempt lives for exactly one request. SessionIssuer reads it to decide
which authentication path, if any, has been completed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from auth.models import AuthPath, PendingChallenge, VerifiedIdentity
from core.errors import InvalidLoginTransition


class LoginState(str, Enum):
    STARTED = "started"
    PASSWORD_VERIFIED = "password_verified"
    CHALLENGE_ISSUED = "challenge_issued"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"
    DEVICE_TRUSTED = "device_trusted"


_TRANSITIONS: dict[LoginState, frozenset[LoginState]] = {
    LoginState.STARTED: frozenset({LoginState.PASSWORD_VERIFIED}),
    LoginState.PASSWORD_VERIFIED: frozenset({LoginState.CHALLENGE_ISSUED, LoginState.DEVICE_TRUSTED}),
    LoginState.CHALLENGE_ISSUED: frozenset({LoginState.VERIFIED, LoginState.FAILED, LoginState.EXPIRED}),
    LoginState.VERIFIED: frozenset(),
    LoginState.FAILED: frozenset(),
    LoginState.EXPIRED: frozenset(),
    LoginState.DEVICE_TRUSTED: frozenset(),
}


@dataclass
class LoginAttempt:
    state: LoginState = LoginState.STARTED
    identity: VerifiedIdentity | None = None
    challenge: PendingChallenge | None = None
    history: list[LoginState] = field(default_factory=list)

    def _move(self, target: LoginState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidLoginTransition(f"{self.state.value} -> {target.value}")
        self.history.append(self.state)
        self.state = target

    def password_verified(self, identity: VerifiedIdentity) -> None:
        self._move(LoginState.PASSWORD_VERIFIED)
        self.identity = identity

    def challenge_issued(self, challenge: PendingChallenge) -> None:
        self._move(LoginState.CHALLENGE_ISSUED)
        self.challenge = challenge

    def second_factor_verified(self) -> None:
        self._move(LoginState.VERIFIED)

    def second_factor_failed(self) -> None:
        self._move(LoginState.FAILED)

    def challenge_expired(self) -> None:
        self._move(LoginState.EXPIRED)

    def device_trusted(self) -> None:
        self._move(LoginState.DEVICE_TRUSTED)

    @property
    def second_factor_required(self) -> bool:
        return self.identity is not None and self.identity.user.two_factor_enabled

    def completed_path(self) -> AuthPath | None:
        """The authentication path this attempt has fully satisfied, if any."""
        if self.identity is None:
            return None
        if self.state is LoginState.PASSWORD_VERIFIED and not self.second_factor_required:
            return AuthPath.PASSWORD
        if self.state is LoginState.VERIFIED:
            return AuthPath.TWO_FACTOR
        if self.state is LoginState.DEVICE_TRUSTED and self.second_factor_required:
            return AuthPath.TRUSTED_DEVICE
        return None
