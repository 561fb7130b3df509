"""
auth/tokens.py -- Password hashing and access-token minting.

Security design decisions:
  JWT: python-jose with HS256. One shared symmetric secret signs every access
       token; resource servers validate with the same secret. The secret is
       passed to TokenMinter explicitly (api/main.py builds it from Settings at
       startup) -- nothing here reads configuration at import time.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       lets the credential check run bcrypt even for unknown usernames, so
       response time does not reveal whether a username exists [C1].

  Verification: decode() returns None on any failure -- the dependency layer
       turns that into a 401.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import SigningError
from auth.models import AccessToken, ClaimType, TokenClaimSet

logger = logging.getLogger("keyfob.auth")

ALGORITHM = "HS256"
MIN_SECRET_LENGTH = 32

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt only looks at the first 72 bytes; bcrypt>=5 raises past that.
MAX_PASSWORD_BYTES = 72


def password_too_long(plain: str) -> bool:
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords over MAX_PASSWORD_BYTES UTF-8 bytes. The
    API request models reject those with a 400 before they get here.
    """
    if password_too_long(plain):
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if password_too_long(plain):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- a mismatch, never a match.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than later ones.
DUMMY_HASH: str = hash_password("keyfob_timing_dummy")


# ---------------------------------------------------------------------------
# Access-token minting
# ---------------------------------------------------------------------------


class TokenMinter:
    """Signs claim sets into time-bounded bearer tokens.

    Stateless apart from the secret. Safe to share across threads.

    Raises SigningError at construction if the secret is absent or too short,
    so a misconfigured process fails at startup rather than on first login.
    """

    def __init__(self, secret: str | None, algorithm: str = ALGORITHM) -> None:
        if not secret or not isinstance(secret, str):
            raise SigningError("Signing secret is not configured.")
        if len(secret) < MIN_SECRET_LENGTH:
            raise SigningError(f"Signing secret must be at least {MIN_SECRET_LENGTH} characters.")
        self._secret = secret
        self.algorithm = algorithm

    def mint(self, claims: TokenClaimSet, ttl: int) -> AccessToken:
        """Sign claims with an expiry of now + ttl seconds."""
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl)
        payload = claims.to_payload()
        payload["iat"] = int(now.timestamp())
        payload["exp"] = int(expires_at.timestamp())
        try:
            token = jwt.encode(payload, self._secret, algorithm=self.algorithm)
        except JWTError as exc:
            raise SigningError(str(exc)) from exc
        return AccessToken(token=token, expires_at=expires_at, claims=claims, ttl_seconds=ttl)

    def decode(self, token: str) -> dict | None:
        """Verify signature + expiry. Returns the payload dict or None on any failure.

        Tokens without a subject are rejected even when the signature is good.
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self.algorithm])
        except JWTError:
            return None
        if ClaimType.SUB.value not in payload:
            return None
        return payload
