"""
tests/test_device_trust.py -- Unit tests for DeviceTrustStore.

Coverage:
  - A fresh token validates for its owner only
  - Validity ends at device_trust_days and presenting the token never extends it
  - Tokens are additive: a second device does not invalidate the first
  - revoke() / revoke_all() / purge_expired()
  - Only the HMAC digest is stored
  - require() names why a token was rejected
"""

from __future__ import annotations

import pytest

from auth.tokens import hash_token
from core.errors import DeviceTokenInvalid
from tests.helpers import FakeClock, Services, make_user


class TestDeviceTrustStore:
    def test_issued_token_validates_for_owner(self, services: Services) -> None:
        user = make_user(services.user_store, "alice@example.com")
        token = services.devices.issue(user.id, device_name="laptop")
        assert services.devices.validate(token, user.id)

    def test_token_rejected_for_other_user(self, services: Services) -> None:
        alice = make_user(services.user_store, "bob@example.com")
        mallory = make_user(services.user_store, "mallory@example.com")
        token = services.devices.issue(alice.id)
        assert not services.devices.validate(token, mallory.id)

    def test_unknown_and_empty_tokens_rejected(self, services: Services) -> None:
        user = make_user(services.user_store, "carol@example.com")
        assert not services.devices.validate("not-a-real-token", user.id)
        assert not services.devices.validate("", user.id)
        assert not services.devices.validate(None, user.id)

    def test_expired_token_rejected(self, services: Services, clock: FakeClock) -> None:
        user = make_user(services.user_store, "dave@example.com")
        token = services.devices.issue(user.id)
        clock.advance(days=29, hours=23)
        assert services.devices.validate(token, user.id)
        clock.advance(hours=1)
        assert not services.devices.validate(token, user.id)

    def test_validation_does_not_extend_expiry(self, services: Services, clock: FakeClock) -> None:
        user = make_user(services.user_store, "erin@example.com")
        token = services.devices.issue(user.id)
        before = services.devices.list_devices(user.id)[0].expires_at
        clock.advance(days=10)
        assert services.devices.validate(token, user.id)
        assert services.devices.list_devices(user.id)[0].expires_at == before

    def test_tokens_are_additive(self, services: Services) -> None:
        user = make_user(services.user_store, "frank@example.com")
        laptop = services.devices.issue(user.id, device_name="laptop")
        phone = services.devices.issue(user.id, device_name="phone")
        assert laptop != phone
        assert services.devices.validate(laptop, user.id)
        assert services.devices.validate(phone, user.id)
        assert {d.device_name for d in services.devices.list_devices(user.id)} == {"laptop", "phone"}

    def test_only_digest_is_stored(self, services: Services) -> None:
        user = make_user(services.user_store, "gina@example.com")
        token = services.devices.issue(user.id)
        device = services.devices.list_devices(user.id)[0]
        assert device.token_hash == hash_token(token)
        assert device.token_hash != token

    def test_revoke_one_device(self, services: Services) -> None:
        user = make_user(services.user_store, "hank@example.com")
        keep = services.devices.issue(user.id, device_name="keep")
        drop = services.devices.issue(user.id, device_name="drop")
        drop_id = next(d.id for d in services.devices.list_devices(user.id) if d.device_name == "drop")
        assert services.devices.revoke(user.id, drop_id)
        assert not services.devices.validate(drop, user.id)
        assert services.devices.validate(keep, user.id)

    def test_revoke_ignores_other_users_device(self, services: Services) -> None:
        owner = make_user(services.user_store, "ivy@example.com")
        other = make_user(services.user_store, "jack@example.com")
        token = services.devices.issue(owner.id)
        device_id = services.devices.list_devices(owner.id)[0].id
        assert not services.devices.revoke(other.id, device_id)
        assert services.devices.validate(token, owner.id)

    def test_revoke_all(self, services: Services) -> None:
        user = make_user(services.user_store, "kate@example.com")
        tokens = [services.devices.issue(user.id) for _ in range(3)]
        assert services.devices.revoke_all(user.id) == 3
        assert not any(services.devices.validate(t, user.id) for t in tokens)
        assert services.devices.list_devices(user.id) == []

    def test_purge_expired(self, services: Services, clock: FakeClock) -> None:
        user = make_user(services.user_store, "liam@example.com")
        services.devices.issue(user.id, device_name="old")
        clock.advance(days=31)
        fresh = services.devices.issue(user.id, device_name="new")
        assert services.devices.purge_expired() == 1
        assert services.devices.validate(fresh, user.id)
        assert [d.device_name for d in services.devices.list_devices(user.id)] == ["new"]


class TestRejectionReasons:
    def test_require_returns_device_record(self, services: Services) -> None:
        user = make_user(services.user_store, "tess@example.com")
        token = services.devices.issue(user.id, device_name="desktop")
        assert services.devices.require(token, user.id).device_name == "desktop"

    @pytest.mark.parametrize("token, reason", [(None, "missing"), ("", "missing"), ("bogus", "unknown")])
    def test_missing_and_unknown(self, services: Services, token, reason) -> None:
        user = make_user(services.user_store, "uma@example.com")
        with pytest.raises(DeviceTokenInvalid) as rejected:
            services.devices.require(token, user.id)
        assert rejected.value.reason == reason

    def test_other_users_token_reported_as_unknown(self, services: Services) -> None:
        owner = make_user(services.user_store, "vic@example.com")
        other = make_user(services.user_store, "wes@example.com")
        token = services.devices.issue(owner.id)
        with pytest.raises(DeviceTokenInvalid) as rejected:
            services.devices.require(token, other.id)
        assert rejected.value.reason == "unknown"

    def test_expired(self, services: Services, clock: FakeClock) -> None:
        user = make_user(services.user_store, "xena@example.com")
        token = services.devices.issue(user.id)
        clock.advance(days=30)
        with pytest.raises(DeviceTokenInvalid) as rejected:
            services.devices.require(token, user.id)
        assert rejected.value.reason == "expired"
