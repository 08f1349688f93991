"""
auth/second_factor.py -- SecondFactorEngine: TOTP secrets, backup codes, 2FA challenges.

Per login attempt the engine drives:
    PasswordVerified -> ChallengeIssued -> {Verified | Failed | Expired}
(the state bookkeeping itself lives on LoginAttempt in auth/attempts.py).

TOTP: pyotp, 30-second steps, verified with valid_window from settings
(default 1 = one step either side, +-30 s of clock drift). Verification reads
the stored secret only; a failed attempt writes nothing. Repeated attempts are
throttled upstream by the rate limiter.

Backup codes: a fixed set (backup_code_count, default 8) of 8-character codes.
Only HMAC digests are stored. A matching code is deleted in the same
transaction that claims the challenge, so each code works exactly once and a
request that loses the race for a challenge keeps its code.

Challenges: created only for users with an enrolled secret, with an explicit
expires_at. A read of an expired, consumed, or unknown challenge raises
ChallengeExpired. verify() claims the challenge on success through consume(),
a single conditional UPDATE, so two concurrent submissions for one challenge
id cannot both succeed.
"""

from __future__ import annotations

import base64
import io
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import pyotp
import qrcode

from auth.models import PendingChallenge, TwoFactorSetup, User
from auth.store import UserStore
from auth.tokens import hash_token
from core.config import Settings, get_settings
from core.errors import ChallengeExpired, SecondFactorFailed

logger = logging.getLogger("tenantguard.auth")

# No 0/O or 1/I so codes survive being read aloud or copied by hand.
_BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_BACKUP_CODE_LENGTH = 8


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize(code: str) -> str:
    return code.replace(" ", "").replace("-", "").strip()


class SecondFactorEngine:
    def __init__(
        self,
        store: UserStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def generate_secret(self, subject_label: str) -> TwoFactorSetup:
        """Create a new shared secret and its provisioning material.

        Nothing is persisted: the secret becomes active only once
        enroll() sees a valid code for it.
        """
        secret = pyotp.random_base32(length=32)
        uri = pyotp.TOTP(secret).provisioning_uri(name=subject_label, issuer_name=self._settings.totp_issuer)
        return TwoFactorSetup(
            secret=secret,
            provisioning_uri=uri,
            manual_entry_key=secret,
            qr_code_data_url=_qr_data_url(uri),
        )

    def enroll(self, user: User, secret: str, code: str) -> list[str]:
        """Activate 2FA for user if code verifies against secret.

        Returns the raw backup codes (shown once). Raises SecondFactorFailed
        on a wrong code.
        """
        if not self.verify_code(secret, code):
            raise SecondFactorFailed()
        codes = self.generate_backup_codes()
        self._store.enable_two_factor(user.id, secret, [hash_token(c) for c in codes])
        logger.info("2FA enrolled for user id=%s", user.id)
        return codes

    def disable(self, user: User) -> None:
        self._store.disable_two_factor(user.id)
        logger.info("2FA disabled for user id=%s", user.id)

    def regenerate_backup_codes(self, user: User, code: str) -> list[str]:
        """Replace the backup-code set. Requires a current TOTP code."""
        if not user.two_factor_enabled or not self.verify_code(user.totp_secret, code):
            raise SecondFactorFailed()
        codes = self.generate_backup_codes()
        self._store.replace_backup_codes(user.id, [hash_token(c) for c in codes])
        return codes

    def generate_backup_codes(self, count: int | None = None) -> list[str]:
        n = count if count is not None else self._settings.backup_code_count
        return ["".join(secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(_BACKUP_CODE_LENGTH)) for _ in range(n)]

    # ------------------------------------------------------------------
    # Code checks
    # ------------------------------------------------------------------

    def verify_code(self, secret: str, code: str) -> bool:
        """Check a TOTP code against secret within the configured skew window."""
        code = _normalize(code)
        if not code.isdigit():
            return False
        return pyotp.TOTP(secret).verify(code, for_time=self._clock(), valid_window=self._settings.totp_valid_window)

    # ------------------------------------------------------------------
    # Login challenges
    # ------------------------------------------------------------------

    def issue_challenge(self, user: User) -> PendingChallenge | None:
        """Create a pending challenge, or None when the user has no 2FA enrolled."""
        if not user.two_factor_enabled:
            return None
        now = self._clock()
        challenge = PendingChallenge(
            id=secrets.token_urlsafe(32),
            user_id=user.id,
            created_at=now,
            expires_at=now + timedelta(seconds=self._settings.challenge_ttl_seconds),
        )
        self._store.create_challenge(challenge)
        return challenge

    def load_challenge(self, challenge_id: str, user_id: int) -> PendingChallenge:
        """Return a live challenge for user_id or raise ChallengeExpired."""
        challenge = self._store.get_challenge(challenge_id)
        if (
            challenge is None
            or challenge.user_id != user_id
            or challenge.consumed_at is not None
            or challenge.is_expired(self._clock())
        ):
            raise ChallengeExpired()
        return challenge

    def verify(self, challenge: PendingChallenge, submitted: str) -> bool:
        """Check a TOTP code or unused backup code and claim the challenge with it.

        True only for the request that claimed the challenge. A wrong code
        returns False and leaves the challenge and every backup code as they
        were. Raises ChallengeExpired if the challenge is past its TTL or was
        claimed by another request first.
        """
        if challenge.consumed_at is not None or challenge.is_expired(self._clock()):
            raise ChallengeExpired()
        user = self._store.get_by_id(challenge.user_id)
        if user is None or not user.two_factor_enabled:
            raise ChallengeExpired()
        if self.verify_code(user.totp_secret, submitted):
            self.consume(challenge)
            return True

        code = _normalize(submitted).upper()
        if len(code) != _BACKUP_CODE_LENGTH:
            return False
        now = self._clock()
        if self._store.redeem_backup_code(user.id, hash_token(code), challenge.id, now):
            challenge.consumed_at = now
            logger.info("Backup code used for user id=%s", user.id)
            return True
        current = self._store.get_challenge(challenge.id)
        if current is None or current.consumed_at is not None or current.is_expired(now):
            raise ChallengeExpired()
        return False

    def consume(self, challenge: PendingChallenge) -> None:
        """Mark the challenge used. Raises ChallengeExpired if someone else got there first."""
        now = self._clock()
        if not self._store.consume_challenge(challenge.id, now):
            raise ChallengeExpired()
        challenge.consumed_at = now

    def purge_expired(self) -> int:
        return self._store.purge_challenges(self._clock())


def _qr_data_url(uri: str) -> str:
    """Render a provisioning URI as a base64 PNG data URL."""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
