"""
tests/test_sessions.py -- Unit tests for LoginAttempt and SessionIssuer.

Coverage:
  - The state machine only allows the documented transitions
  - completed_path() names exactly one path, or None for unfinished attempts
  - issue() refuses incomplete attempts and records the path it saw
  - resolve() re-reads the session row: revoke and expiry take effect at once
  - Garbage, tampered and foreign tokens resolve to None
"""

from __future__ import annotations

import pytest

from auth.attempts import LoginAttempt, LoginState
from auth.models import AuthPath, PendingChallenge, Role
from core.errors import IncompleteAuthentication, InvalidLoginTransition
from tests.helpers import DEFAULT_PASSWORD, FakeClock, Services, enroll_two_factor, make_user


def _verified_attempt(services: Services, email: str, **user_kwargs) -> LoginAttempt:
    make_user(services.user_store, email, **user_kwargs)
    attempt = LoginAttempt()
    attempt.password_verified(services.verifier.verify(email, DEFAULT_PASSWORD))
    return attempt


class TestLoginAttempt:
    def test_password_only_path(self, services: Services) -> None:
        attempt = _verified_attempt(services, "alice@example.com")
        assert attempt.state is LoginState.PASSWORD_VERIFIED
        assert attempt.completed_path() is AuthPath.PASSWORD

    def test_fresh_attempt_has_no_path(self) -> None:
        assert LoginAttempt().completed_path() is None

    def test_cannot_skip_password_step(self) -> None:
        attempt = LoginAttempt()
        with pytest.raises(InvalidLoginTransition):
            attempt.device_trusted()
        with pytest.raises(InvalidLoginTransition):
            attempt.second_factor_verified()

    def test_two_factor_user_needs_second_step(self, services: Services) -> None:
        user = make_user(services.user_store, "bob@example.com")
        enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        attempt = LoginAttempt()
        attempt.password_verified(services.verifier.verify("bob@example.com", DEFAULT_PASSWORD))
        assert attempt.second_factor_required
        assert attempt.completed_path() is None

        challenge = services.second_factor.issue_challenge(attempt.identity.user)
        attempt.challenge_issued(challenge)
        assert attempt.completed_path() is None
        attempt.second_factor_verified()
        assert attempt.completed_path() is AuthPath.TWO_FACTOR
        assert attempt.history == [LoginState.STARTED, LoginState.PASSWORD_VERIFIED, LoginState.CHALLENGE_ISSUED]

    def test_failed_and_expired_are_terminal(self, services: Services) -> None:
        attempt = _verified_attempt(services, "carol@example.com")
        now = services.clock()
        attempt.challenge_issued(PendingChallenge(id="c", user_id=1, created_at=now, expires_at=now))
        attempt.second_factor_failed()
        assert attempt.completed_path() is None
        with pytest.raises(InvalidLoginTransition):
            attempt.second_factor_verified()

    def test_device_trusted_path(self, services: Services) -> None:
        user = make_user(services.user_store, "dave@example.com")
        enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        attempt = LoginAttempt()
        attempt.password_verified(services.verifier.verify("dave@example.com", DEFAULT_PASSWORD))
        attempt.device_trusted()
        assert attempt.completed_path() is AuthPath.TRUSTED_DEVICE


class TestSessionIssuer:
    def test_incomplete_attempt_rejected(self, services: Services) -> None:
        with pytest.raises(IncompleteAuthentication):
            services.sessions.issue(LoginAttempt())

    def test_challenge_pending_attempt_rejected(self, services: Services) -> None:
        user = make_user(services.user_store, "erin@example.com")
        enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        attempt = LoginAttempt()
        attempt.password_verified(services.verifier.verify("erin@example.com", DEFAULT_PASSWORD))
        attempt.challenge_issued(services.second_factor.issue_challenge(attempt.identity.user))
        with pytest.raises(IncompleteAuthentication):
            services.sessions.issue(attempt)

    def test_issue_and_resolve(self, services: Services) -> None:
        attempt = _verified_attempt(
            services, "frank@acme.test", role=Role.MANAGER, company_id=7, store_id=3
        )
        session, token = services.sessions.issue(attempt)
        assert session.auth_path is AuthPath.PASSWORD
        assert session.principal.role is Role.MANAGER
        assert session.principal.company_id == 7
        assert session.principal.store_id == 3

        resolved = services.sessions.resolve(token)
        assert resolved is not None
        assert resolved.id == session.id
        assert resolved.principal == session.principal

    def test_issue_updates_last_login(self, services: Services) -> None:
        attempt = _verified_attempt(services, "gina@example.com")
        assert attempt.identity.user.last_login is None
        services.sessions.issue(attempt)
        assert services.user_store.get_by_id(attempt.identity.subject_id).last_login is not None

    def test_revoked_session_stops_resolving(self, services: Services) -> None:
        session, token = services.sessions.issue(_verified_attempt(services, "hank@example.com"))
        assert services.sessions.revoke(session.id)
        assert services.sessions.resolve(token) is None
        assert not services.sessions.revoke(session.id)

    def test_expired_session_stops_resolving(self, services: Services, clock: FakeClock) -> None:
        session, token = services.sessions.issue(_verified_attempt(services, "ivy@example.com"))
        clock.advance(hours=23, minutes=59)
        assert services.sessions.resolve(token) is not None
        clock.advance(minutes=1)
        assert services.sessions.resolve(token) is None

    def test_revoke_all_keeps_current(self, services: Services) -> None:
        first, first_token = services.sessions.issue(_verified_attempt(services, "jack@example.com"))
        attempt = LoginAttempt()
        attempt.password_verified(services.verifier.verify("jack@example.com", DEFAULT_PASSWORD))
        second, second_token = services.sessions.issue(attempt)

        assert services.sessions.revoke_all(first.principal.subject_id, keep_session_id=second.id) == 1
        assert services.sessions.resolve(first_token) is None
        assert services.sessions.resolve(second_token) is not None

    @pytest.mark.parametrize("token", [None, "", "not-a-jwt", "a.b.c"])
    def test_garbage_tokens_resolve_to_none(self, services: Services, token) -> None:
        assert services.sessions.resolve(token) is None

    def test_tampered_token_resolves_to_none(self, services: Services) -> None:
        _session, token = services.sessions.issue(_verified_attempt(services, "kate@example.com"))
        head, payload, signature = token.split(".")
        flipped = signature[:-2] + ("AA" if not signature.endswith("AA") else "BB")
        assert services.sessions.resolve(f"{head}.{payload}.{flipped}") is None

    def test_purge_expired_sessions(self, services: Services, clock: FakeClock) -> None:
        revoked, _ = services.sessions.issue(_verified_attempt(services, "liam@example.com"))
        services.sessions.revoke(revoked.id)
        attempt = LoginAttempt()
        attempt.password_verified(services.verifier.verify("liam@example.com", DEFAULT_PASSWORD))
        live, _ = services.sessions.issue(attempt)
        assert services.sessions.purge_expired() == 1
        assert services.user_store.get_session(live.id) is not None
