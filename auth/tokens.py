"""
auth/tokens.py -- JWT, password hashing, and one-time code utilities.

Security design decisions:
  JWT: python-jose with HS256. Two token types share SECRET_KEY and are told
       apart by the "typ" claim, so an access token can never be replayed as a
       refresh token or vice versa.
         access  -- user_id, role, iat, exp. Stateless; no revocation list.
         refresh -- user_id, iat, exp, jti. The jti makes every refresh token
                    unique even when two are minted in the same second, which
                    the exact-match check in CredentialStore relies on.
       Verification returns None on any failure -- callers turn that into the
       appropriate domain error.

  Passwords: bcrypt directly (no passlib wrapper). The DUMMY_HASH constant
       enables timing equalization in CredentialStore.verify_credentials() so
       response time does not reveal whether an email is registered.

  One-time codes: 6 random digits from the secrets module, never the random
       module.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
from jose import JWTError, jwt

from core.clock import utcnow
from core.config import get_settings

logger = logging.getLogger("authguard.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps password length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a match.
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# email does not exist.
DUMMY_HASH: str = hash_password("authguard_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int,
    role: str,
    *,
    issued_at: Optional[datetime] = None,
    expire_seconds: int = 0,
) -> str:
    """Encode a signed short-lived access token.

    Args:
        user_id:        Numeric user ID stored in the DB.
        role:           User role ("user", "admin", "superadmin").
        issued_at:      Issue time; defaults to now. The iat claim is compared
                        against passwordChangedAt by the auth dependency.
        expire_seconds: Lifetime in seconds. If 0 (default), uses
                        Settings.access_token_expire_seconds.
    """
    issued = issued_at or utcnow()
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "role": role,
        "typ": ACCESS,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=duration)).timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def create_refresh_token(
    user_id: int,
    *,
    issued_at: Optional[datetime] = None,
    expire_seconds: int = 0,
) -> str:
    """Encode a signed long-lived refresh token with a unique jti."""
    issued = issued_at or utcnow()
    duration = expire_seconds if expire_seconds > 0 else _settings.refresh_token_expire_seconds
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "typ": REFRESH,
        "jti": secrets.token_hex(16),
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=duration)).timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_token(token: str, expected_type: str = ACCESS) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    Signature, expiry and the typ claim are all checked. Returning None
    (rather than raising) keeps callers simple: any invalid token is treated
    as unauthenticated.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError as exc:
        logger.debug("Rejected %s token: %s", expected_type, exc)
        return None
    if payload.get("typ") != expected_type or "user_id" not in payload or "iat" not in payload:
        logger.debug("Rejected token: expected typ=%s, got %s", expected_type, payload.get("typ"))
        return None
    if expected_type == ACCESS and "role" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def generate_code(length: int = 6) -> str:
    """Return a numeric code of exactly `length` digits (no leading zero)."""
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
