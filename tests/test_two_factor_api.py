"""
tests/test_two_factor_api.py -- Integration tests for the /2fa enrollment routes.

Coverage:
  - setup returns a secret, otpauth URI and PNG QR code and persists nothing
  - verify-setup enables 2FA only for a matching code and returns backup codes once
  - the next login then requires the second factor
  - backup-code regeneration needs a current TOTP code
  - disable needs the password and drops trusted devices
  - the code-checking endpoints are rate limited like login
"""

from __future__ import annotations

import pyotp

from tests.helpers import DEFAULT_PASSWORD, ApiHarness, make_user


def _setup(api_client: ApiHarness, email: str) -> tuple[dict[str, str], str]:
    """Create a user, start enrollment, return (auth headers, secret)."""
    make_user(api_client.user_store, email)
    headers = api_client.token_for(email)
    resp = api_client.client.post("/api/v1/2fa/setup", headers=headers)
    assert resp.status_code == 200, resp.text
    return headers, resp.json()["secret"]


def _enable(api_client: ApiHarness, email: str) -> tuple[dict[str, str], str, list[str]]:
    headers, secret = _setup(api_client, email)
    resp = api_client.client.post(
        "/api/v1/2fa/verify-setup",
        json={"secret": secret, "token": pyotp.TOTP(secret).now()},
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    return headers, secret, resp.json()["backup_codes"]


class TestEnrollment:
    def test_setup_returns_material_without_enabling(self, api_client: ApiHarness) -> None:
        make_user(api_client.user_store, "setup@platform.test")
        headers = api_client.token_for("setup@platform.test")
        data = api_client.client.post("/api/v1/2fa/setup", headers=headers).json()
        assert data["provisioning_uri"].startswith("otpauth://totp/")
        assert data["manual_entry_key"] == data["secret"]
        assert data["qr_code"].startswith("data:image/png;base64,")
        me = api_client.client.get("/api/v1/auth/me", headers=headers).json()
        assert me["two_factor_enabled"] is False

    def test_setup_requires_authentication(self, api_client: ApiHarness) -> None:
        assert api_client.client.post("/api/v1/2fa/setup").status_code == 401

    def test_wrong_code_does_not_enable(self, api_client: ApiHarness) -> None:
        headers, secret = _setup(api_client, "typo@platform.test")
        resp = api_client.client.post(
            "/api/v1/2fa/verify-setup", json={"secret": secret, "token": "000000"}, headers=headers
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_code"
        assert not api_client.user_store.get_by_email("typo@platform.test").two_factor_enabled

    def test_enable_returns_backup_codes_and_is_audited(self, api_client: ApiHarness) -> None:
        _headers, _secret, codes = _enable(api_client, "enable@platform.test")
        assert len(codes) == 8
        user = api_client.user_store.get_by_email("enable@platform.test")
        assert user.two_factor_enabled
        entries = api_client.audit_store.list_entries(action="two_factor_enable", limit=500)
        entry = next(e for e in entries if e.user_email == "enable@platform.test")
        assert all(code not in str(entry.metadata) for code in codes)

    def test_login_requires_second_factor_after_enable(self, api_client: ApiHarness) -> None:
        _headers, secret, _codes = _enable(api_client, "after@platform.test")
        first = api_client.login("after@platform.test")
        assert first.json()["requires2FA"] is True
        second = api_client.login(
            "after@platform.test",
            twoFactorToken=pyotp.TOTP(secret).now(),
            challengeId=first.json()["challengeId"],
        )
        assert second.status_code == 200

    def test_setup_refused_when_already_enabled(self, api_client: ApiHarness) -> None:
        headers, _secret, _codes = _enable(api_client, "twice@platform.test")
        resp = api_client.client.post("/api/v1/2fa/setup", headers=headers)
        assert resp.status_code == 400
        assert resp.json()["code"] == "already_enabled"


class TestBackupCodes:
    def test_regenerate_requires_totp(self, api_client: ApiHarness) -> None:
        headers, secret, old_codes = _enable(api_client, "regen@platform.test")
        bad = api_client.client.post("/api/v1/2fa/backup-codes", json={"token": "000000"}, headers=headers)
        assert bad.status_code == 401

        good = api_client.client.post(
            "/api/v1/2fa/backup-codes", json={"token": pyotp.TOTP(secret).now()}, headers=headers
        )
        assert good.status_code == 200
        new_codes = good.json()["backup_codes"]
        assert set(new_codes).isdisjoint(old_codes)

        stale = api_client.login("regen@platform.test", twoFactorToken=old_codes[0])
        assert stale.status_code == 401
        fresh = api_client.login("regen@platform.test", twoFactorToken=new_codes[0])
        assert fresh.status_code == 200


class TestDisable:
    def test_disable_requires_password(self, api_client: ApiHarness) -> None:
        headers, _secret, _codes = _enable(api_client, "keep@platform.test")
        resp = api_client.client.post("/api/v1/2fa/disable", json={"password": "wrong"}, headers=headers)
        assert resp.status_code == 401
        assert api_client.user_store.get_by_email("keep@platform.test").two_factor_enabled

    def test_disable_turns_off_and_drops_devices(self, api_client: ApiHarness) -> None:
        headers, secret, _codes = _enable(api_client, "off@platform.test")
        remembered = api_client.login("off@platform.test", twoFactorToken=pyotp.TOTP(secret).now(), rememberDevice=True)
        assert remembered.headers.get("X-Device-Token")
        api_client.client.cookies.clear()

        resp = api_client.client.post("/api/v1/2fa/disable", json={"password": DEFAULT_PASSWORD}, headers=headers)
        assert resp.status_code == 200
        user = api_client.user_store.get_by_email("off@platform.test")
        assert not user.two_factor_enabled
        assert api_client.client.app.state.devices.list_devices(user.id) == []

        plain = api_client.login("off@platform.test")
        assert plain.status_code == 200
        assert "access_token" in plain.json()

    def test_disable_when_not_enabled(self, api_client: ApiHarness) -> None:
        make_user(api_client.user_store, "never@platform.test")
        headers = api_client.token_for("never@platform.test")
        resp = api_client.client.post("/api/v1/2fa/disable", json={"password": DEFAULT_PASSWORD}, headers=headers)
        assert resp.status_code == 400


class TestRateLimit:
    def test_backup_code_regeneration_limited(self, api_client: ApiHarness) -> None:
        headers, _secret, _codes = _enable(api_client, "guess@platform.test")
        statuses = [
            api_client.client.post("/api/v1/2fa/backup-codes", json={"token": "000000"}, headers=headers).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429
