"""
tests/test_second_factor.py -- Unit tests for SecondFactorEngine.

Coverage:
  - Enrollment: provisioning material, wrong code rejected, backup codes issued
  - TOTP skew window: one 30-second step either side accepted, three rejected
  - Backup codes: single use, normalized input, regeneration replaces the set
  - Challenges: none for unenrolled users, TTL enforced, bound to one user
  - consume(): one winner under concurrent submissions (file-backed SQLite)
  - A backup code submitted against an already-claimed challenge is kept
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pyotp
import pytest

from auth.models import Role
from auth.second_factor import SecondFactorEngine
from auth.store import UserStore
from core.errors import ChallengeExpired, SecondFactorFailed
from tests.helpers import FakeClock, Services, enroll_two_factor, make_user


class TestEnrollment:
    def test_generate_secret_returns_provisioning_material(self, services: Services) -> None:
        material = services.second_factor.generate_secret("alice@example.com")
        assert len(material.secret) == 32
        assert material.manual_entry_key == material.secret
        assert material.provisioning_uri.startswith("otpauth://totp/")
        assert "alice%40example.com" in material.provisioning_uri
        assert material.qr_code_data_url.startswith("data:image/png;base64,")

    def test_generate_secret_persists_nothing(self, services: Services) -> None:
        user = make_user(services.user_store, "bob@example.com")
        services.second_factor.generate_secret(user.email)
        assert not services.user_store.get_by_id(user.id).two_factor_enabled

    def test_enroll_with_valid_code(self, services: Services) -> None:
        user = make_user(services.user_store, "carol@example.com")
        _secret, codes, refreshed = enroll_two_factor(
            services.second_factor, services.user_store, user, at=services.clock()
        )
        assert refreshed.two_factor_enabled
        assert len(codes) == 8
        assert len(set(codes)) == 8
        assert services.user_store.count_backup_codes(user.id) == 8

    def test_enroll_with_wrong_code_raises(self, services: Services) -> None:
        user = make_user(services.user_store, "dave@example.com")
        material = services.second_factor.generate_secret(user.email)
        with pytest.raises(SecondFactorFailed):
            services.second_factor.enroll(user, material.secret, "000000")
        assert not services.user_store.get_by_id(user.id).two_factor_enabled

    def test_disable_clears_secret_and_codes(self, services: Services) -> None:
        user = make_user(services.user_store, "erin@example.com")
        _s, _c, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        services.second_factor.disable(enrolled)
        assert not services.user_store.get_by_id(user.id).two_factor_enabled
        assert services.user_store.count_backup_codes(user.id) == 0


class TestTotpWindow:
    """Codes from one step either side of the server clock verify; further drift does not."""

    @pytest.fixture
    def secret(self) -> str:
        return pyotp.random_base32(length=32)

    @pytest.mark.parametrize("offset", [-30, 0, 30])
    def test_code_within_one_step_accepted(self, services: Services, secret: str, offset: int) -> None:
        code = pyotp.TOTP(secret).at(services.clock() + timedelta(seconds=offset))
        assert services.second_factor.verify_code(secret, code)

    @pytest.mark.parametrize("offset", [-90, 90])
    def test_code_three_steps_away_rejected(self, services: Services, secret: str, offset: int) -> None:
        code = pyotp.TOTP(secret).at(services.clock() + timedelta(seconds=offset))
        assert not services.second_factor.verify_code(secret, code)

    def test_non_numeric_code_rejected(self, services: Services, secret: str) -> None:
        assert not services.second_factor.verify_code(secret, "abcdef")

    def test_spaced_code_accepted(self, services: Services, secret: str) -> None:
        code = pyotp.TOTP(secret).at(services.clock())
        assert services.second_factor.verify_code(secret, f"{code[:3]} {code[3:]}")


class TestBackupCodes:
    def test_backup_code_works_once(self, services: Services) -> None:
        user = make_user(services.user_store, "frank@example.com")
        _s, codes, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())

        first = services.second_factor.issue_challenge(enrolled)
        assert services.second_factor.verify(first, codes[0])
        assert first.consumed_at is not None

        second = services.second_factor.issue_challenge(enrolled)
        assert not services.second_factor.verify(second, codes[0])
        assert services.user_store.count_backup_codes(user.id) == 7

    def test_backup_code_case_and_dashes_ignored(self, services: Services) -> None:
        user = make_user(services.user_store, "gina@example.com")
        _s, codes, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        mangled = f"{codes[1][:4].lower()}-{codes[1][4:].lower()}"
        challenge = services.second_factor.issue_challenge(enrolled)
        assert services.second_factor.verify(challenge, mangled)

    def test_backup_codes_use_unambiguous_alphabet(self, services: Services) -> None:
        codes = services.second_factor.generate_backup_codes(count=50)
        assert all(len(c) == 8 for c in codes)
        assert not any(ch in c for c in codes for ch in "01OI")

    def test_regenerate_requires_current_totp(self, services: Services) -> None:
        user = make_user(services.user_store, "hank@example.com")
        secret, old_codes, enrolled = enroll_two_factor(
            services.second_factor, services.user_store, user, at=services.clock()
        )
        with pytest.raises(SecondFactorFailed):
            services.second_factor.regenerate_backup_codes(enrolled, "000000")

        new_codes = services.second_factor.regenerate_backup_codes(enrolled, pyotp.TOTP(secret).at(services.clock()))
        assert set(new_codes).isdisjoint(old_codes)
        engine = services.second_factor
        assert not engine.verify(engine.issue_challenge(enrolled), old_codes[0])
        assert engine.verify(engine.issue_challenge(enrolled), new_codes[0])


class TestChallenges:
    def test_no_challenge_without_enrollment(self, services: Services) -> None:
        user = make_user(services.user_store, "ivy@example.com")
        assert services.second_factor.issue_challenge(user) is None

    def test_challenge_carries_expiry(self, services: Services) -> None:
        user = make_user(services.user_store, "jack@example.com")
        _s, _c, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        challenge = services.second_factor.issue_challenge(enrolled)
        assert challenge.user_id == user.id
        assert challenge.expires_at - challenge.created_at == timedelta(minutes=5)

    def test_expired_challenge_raises_on_verify(self, services: Services, clock: FakeClock) -> None:
        user = make_user(services.user_store, "kate@example.com")
        secret, _c, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=clock())
        challenge = services.second_factor.issue_challenge(enrolled)
        clock.advance(minutes=5, seconds=1)
        with pytest.raises(ChallengeExpired):
            services.second_factor.verify(challenge, pyotp.TOTP(secret).at(clock()))

    def test_expired_challenge_raises_on_load(self, services: Services, clock: FakeClock) -> None:
        user = make_user(services.user_store, "liam@example.com")
        _s, _c, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=clock())
        challenge = services.second_factor.issue_challenge(enrolled)
        clock.advance(minutes=6)
        with pytest.raises(ChallengeExpired):
            services.second_factor.load_challenge(challenge.id, user.id)

    def test_challenge_bound_to_its_user(self, services: Services) -> None:
        alice = make_user(services.user_store, "mia@example.com")
        bob = make_user(services.user_store, "noah@example.com")
        _s, _c, enrolled = enroll_two_factor(services.second_factor, services.user_store, alice, at=services.clock())
        challenge = services.second_factor.issue_challenge(enrolled)
        with pytest.raises(ChallengeExpired):
            services.second_factor.load_challenge(challenge.id, bob.id)

    def test_unknown_challenge_raises(self, services: Services) -> None:
        with pytest.raises(ChallengeExpired):
            services.second_factor.load_challenge("does-not-exist", 1)

    def test_consumed_challenge_cannot_be_reused(self, services: Services) -> None:
        user = make_user(services.user_store, "olga@example.com")
        secret, _c, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        challenge = services.second_factor.issue_challenge(enrolled)
        assert services.second_factor.verify(challenge, pyotp.TOTP(secret).at(services.clock()))
        with pytest.raises(ChallengeExpired):
            services.second_factor.load_challenge(challenge.id, user.id)
        with pytest.raises(ChallengeExpired):
            services.second_factor.consume(challenge)

    def test_wrong_code_leaves_challenge_live(self, services: Services) -> None:
        user = make_user(services.user_store, "paul@example.com")
        _s, _c, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        challenge = services.second_factor.issue_challenge(enrolled)
        assert not services.second_factor.verify(challenge, "000000")
        assert services.second_factor.load_challenge(challenge.id, user.id).consumed_at is None

    def test_purge_removes_expired_and_consumed(self, services: Services, clock: FakeClock) -> None:
        user = make_user(services.user_store, "quinn@example.com")
        _s, _c, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=clock())
        consumed = services.second_factor.issue_challenge(enrolled)
        services.second_factor.consume(consumed)
        services.second_factor.issue_challenge(enrolled)
        clock.advance(minutes=10)
        live_later = services.second_factor.issue_challenge(enrolled)
        assert services.second_factor.purge_expired() == 2
        assert services.user_store.get_challenge(live_later.id) is not None


class TestConcurrentConsume:
    """Two submissions racing on one challenge: exactly one consume() succeeds."""

    def test_single_winner(self, tmp_path, clock: FakeClock) -> None:
        store = UserStore(db_url=f"sqlite:///{tmp_path / 'race.db'}")
        try:
            engine = SecondFactorEngine(store, clock=clock)
            user = make_user(store, "race@example.com", role=Role.SUPER_ADMIN)
            _s, _c, enrolled = enroll_two_factor(engine, store, user, at=clock())
            challenge = engine.issue_challenge(enrolled)

            workers = 8
            barrier = threading.Barrier(workers)
            outcomes: list[bool] = []
            lock = threading.Lock()

            def submit() -> None:
                barrier.wait()
                try:
                    engine.consume(store.get_challenge(challenge.id))
                    won = True
                except ChallengeExpired:
                    won = False
                with lock:
                    outcomes.append(won)

            threads = [threading.Thread(target=submit) for _ in range(workers)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=10)

            assert len(outcomes) == workers
            assert outcomes.count(True) == 1
        finally:
            store.close()


class TestBackupCodeRace:
    """A backup code is spent only by the request that actually claims the challenge."""

    def test_code_kept_when_challenge_already_claimed(self, services: Services) -> None:
        user = make_user(services.user_store, "rosa@example.com")
        _s, codes, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        challenge = services.second_factor.issue_challenge(enrolled)
        stale = services.user_store.get_challenge(challenge.id)

        assert services.second_factor.verify(challenge, codes[0])
        with pytest.raises(ChallengeExpired):
            services.second_factor.verify(stale, codes[1])

        assert services.user_store.count_backup_codes(user.id) == 7
        retry = services.second_factor.issue_challenge(enrolled)
        assert services.second_factor.verify(retry, codes[1])

    def test_unknown_code_leaves_challenge_live(self, services: Services) -> None:
        user = make_user(services.user_store, "sam@example.com")
        _s, _codes, enrolled = enroll_two_factor(services.second_factor, services.user_store, user, at=services.clock())
        challenge = services.second_factor.issue_challenge(enrolled)
        assert not services.second_factor.verify(challenge, "ZZZZZZZZ")
        assert services.second_factor.load_challenge(challenge.id, user.id).consumed_at is None
        assert services.user_store.count_backup_codes(user.id) == 8

    def test_concurrent_backup_codes_spend_one(self, tmp_path, clock: FakeClock) -> None:
        store = UserStore(db_url=f"sqlite:///{tmp_path / 'backup-race.db'}")
        try:
            engine = SecondFactorEngine(store, clock=clock)
            user = make_user(store, "race2@example.com", role=Role.SUPER_ADMIN)
            _s, codes, enrolled = enroll_two_factor(engine, store, user, at=clock())
            challenge = engine.issue_challenge(enrolled)

            workers = len(codes)
            barrier = threading.Barrier(workers)
            outcomes: list[bool] = []
            lock = threading.Lock()

            def submit(code: str) -> None:
                barrier.wait()
                try:
                    won = engine.verify(store.get_challenge(challenge.id), code)
                except ChallengeExpired:
                    won = False
                with lock:
                    outcomes.append(won)

            threads = [threading.Thread(target=submit, args=(code,)) for code in codes]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=10)

            assert len(outcomes) == workers
            assert outcomes.count(True) == 1
            assert store.count_backup_codes(user.id) == workers - 1
        finally:
            store.close()
