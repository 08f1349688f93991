"""
auth/devices.py -- DeviceTrustStore: opaque tokens that let a known device skip 2FA.

Policy:
  - A token is minted only when the user opts in ("remember this device") at
    the moment a second factor verifies.
  - Validity is a fixed window from issuance (device_trust_days, default 30).
    Presenting the token never extends it; after expiry the next login from
    that device goes through 2FA again.
  - Issuance is additive: each remembered device holds its own live token and
    a new one never invalidates the others.
  - revoke_all() drops every token for a subject. Password changes and
    resets call it, and administrators can call it directly.

Only HMAC digests reach the database.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.models import TrustedDevice
from auth.store import UserStore
from auth.tokens import generate_device_token, hash_token
from core.config import Settings, get_settings
from core.errors import DeviceTokenInvalid

logger = logging.getLogger("tenantguard.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceTrustStore:
    def __init__(
        self,
        store: UserStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock

    def issue(
        self,
        user_id: int,
        device_name: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> str:
        """Mint and record a new device token. Returns the raw token (shown once)."""
        raw = generate_device_token()
        now = self._clock()
        self._store.create_trusted_device(
            TrustedDevice(
                user_id=user_id,
                token_hash=hash_token(raw),
                device_name=device_name,
                user_agent=user_agent[:500] if user_agent else None,
                ip_address=ip_address,
                created_at=now,
                expires_at=now + timedelta(days=self._settings.device_trust_days),
            )
        )
        logger.info("Trusted device issued for user id=%s", user_id)
        return raw

    def require(self, token: str | None, user_id: int) -> TrustedDevice:
        """Return the live device record for token or raise DeviceTokenInvalid.

        A token bound to another user is reported as "unknown", the same as
        one that never existed.
        """
        if not token:
            raise DeviceTokenInvalid("missing")
        device = self._store.get_trusted_device(hash_token(token))
        if device is None or device.user_id != user_id:
            raise DeviceTokenInvalid("unknown")
        if self._clock() >= device.expires_at:
            raise DeviceTokenInvalid("expired")
        return device

    def validate(self, token: str | None, user_id: int) -> bool:
        """True only if token exists, is unexpired, and belongs to user_id."""
        try:
            self.require(token, user_id)
        except DeviceTokenInvalid:
            return False
        return True

    def list_devices(self, user_id: int) -> list[TrustedDevice]:
        return self._store.list_trusted_devices(user_id)

    def revoke(self, user_id: int, device_id: int) -> bool:
        return self._store.delete_trusted_device(device_id, user_id)

    def revoke_all(self, user_id: int) -> int:
        count = self._store.delete_trusted_devices_for_user(user_id)
        logger.info("Revoked %d trusted device(s) for user id=%s", count, user_id)
        return count

    def purge_expired(self) -> int:
        return self._store.purge_trusted_devices(self._clock())
