"""
auth/tokens.py -- JWT, password hashing, and opaque-token utilities.

Security design decisions:
  JWT: python-jose with HS256. A session JWT carries the session id ("sid")
       plus identity claims and expiry. The JWT is only a pointer: the
       sessions table is the authority, so logout revokes the row and the
       token stops working on the next request. Verification returns None on
       any failure -- the dependency layer turns that into a 401.

  Passwords: bcrypt directly (no passlib wrapper). DUMMY_HASH enables timing
       equalization in CredentialVerifier so response time does not reveal
       whether an email exists.

  Opaque tokens (device tokens, backup codes): high-entropy values from
       secrets. We store HMAC-SHA256(SECRET_KEY, raw) so lookup is O(1) and a
       leaked database does not yield usable tokens.

Layer rule: no imports from api/, audit/, or tenants/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("tenantguard.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_TOKEN_COOKIE = "access_token"


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    New passwords are capped at 72 characters by the request models, which
    keeps ASCII input inside bcrypt's 72-byte limit. Longer non-ASCII input
    raises ValueError from bcrypt.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the record; treat as a mismatch.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("tenantguard_timing_dummy")


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(session_id: str, user_id: int, role: str, expires_at: datetime) -> str:
    """Encode a signed JWT that points at a server-side session row."""
    payload = {
        "sid": session_id,
        "sub": str(user_id),
        "role": role,
        "exp": expires_at,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "sid" not in payload or "sub" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_device_token() -> str:
    """Return a new device-trust token: td_<64 hex chars>, 256 bits of entropy."""
    return f"td_{secrets.token_hex(32)}"


def hash_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string.

    Deterministic, so the store can look a token up by digest.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expires_at: datetime) -> None:
    """Write the session JWT as an httpOnly cookie that expires with the session."""
    max_age = max(int((expires_at - datetime.now(timezone.utc)).total_seconds()), 0)
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(ACCESS_TOKEN_COOKIE)
