"""
auth/tokens.py -- JWT issuance and password hashing utilities.

Token and password handling:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and stamped
       with iss, aud, iat and exp from Settings. The caller supplies the
       identity claims (sub, email, roles, display claims); this module only
       signs and verifies. Verification returns None on any failure -- the
       route layer turns that into a 401.

  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
       brute-force of low-entropy secrets expensive. The _DUMMY_HASH constant
       enables timing equalization so response time does not reveal whether an
       email is registered [C1].

  SECRET_KEY: Settings.secret_key, already checked by core.config at startup
       (length and presence) [M6][M7].

Layer rule: no imports from api/ or cache/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("accounts.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# Claims stamped by create_access_token(); callers may not override them.
_RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp"})

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps passwords at 255 characters (Pydantic field).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store -- never a match.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first sign-in attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("accounts_timing_dummy")


def equalize_password_timing(plain: str) -> None:
    """Spend one bcrypt comparison on a throwaway hash.

    Call on every path that rejects a sign-in *without* checking a real hash
    (unknown email, account with no local password) so it costs the same as
    a wrong password [C1].
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(claims: dict[str, Any], expire_seconds: int = 0) -> str:
    """Sign a JWT carrying the given claims plus issuer, audience and expiry.

    Args:
        claims:         Identity claims. Must include "sub" (the identity id).
                        iss/aud/iat/exp are always set here and cannot be
                        overridden by the caller.
        expire_seconds: Token lifetime in seconds. If 0 (default), uses
                        Settings.token_expire_seconds.
    """
    if "sub" not in claims:
        raise ValueError("Token claims must include 'sub'.")
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
    payload.update(
        {
            "iss": _settings.jwt_issuer,
            "aud": _settings.jwt_audience,
            "iat": now,
            "exp": now + timedelta(seconds=duration),
        }
    )
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    Signature, expiry, issuer and audience are all checked. Returning None
    (rather than raising) keeps the caller simple: any invalid token is
    treated as unauthenticated.
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            audience=_settings.jwt_audience,
            issuer=_settings.jwt_issuer,
        )
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": cookie not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
