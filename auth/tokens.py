"""
auth/tokens.py -- Secret and token primitives. No state beyond the signing key.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry user_id, roles and expiry
       and are verified without a database round-trip. Pending tokens (handed
       to TOTP users between the password step and the code step) carry only
       user_id and a tfa marker. Every token has a typ claim and each decoder
       refuses the other type, so a pending token can never be replayed as an
       access token.

  Passwords: bcrypt directly (no passlib wrapper). bcrypt.checkpw compares in
       constant time. _DUMMY_HASH lets the credential verifier spend the same
       bcrypt work on early rejections [C1].

  Refresh tokens and request ids: secrets.token_hex gives fixed-width hex with
       the requested entropy. Refresh tokens are persisted as
       HMAC-SHA256(SECRET_KEY, raw) so a leaked table cannot be replayed.

  Numeric codes: secrets.randbelow(10) per digit, uniform over 0-9.

  TOTP: pyotp (RFC 6238), 30-second steps, tolerance window configurable.

Layer rule: no imports from api/. The signing key is passed in by the caller;
nothing here reads configuration.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import bcrypt
import pyotp
from jose import JWTError, jwt

from auth.errors import InvalidTokenError, TokenGenerationFailedError

logger = logging.getLogger("gatekeeper.auth.tokens")

_ALGORITHM = "HS256"
_ACCESS = "access"
_PENDING = "pending"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock for every component that compares against stored expiries."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Computed once at module load so the first rejected login is not measurably
# faster than later ones.
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt comparison without a real hash to compare against."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Random values
# ---------------------------------------------------------------------------


def generate_opaque_token(nbytes: int = 32) -> str:
    """Return nbytes of CSPRNG output as 2*nbytes lowercase hex characters."""
    return secrets.token_hex(nbytes)


def generate_numeric_code(length: int = 6) -> str:
    """Return a string of length decimal digits, leading zeros allowed."""
    if length < 1:
        raise ValueError("code length must be positive")
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def hash_refresh_token(secret_key: str, raw_token: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a 64-char hex string.

    Deterministic, so the store can look a presented token up by its hash.
    """
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


def generate_totp_secret() -> str:
    """Return a new base32 TOTP secret."""
    return pyotp.random_base32()


def totp_provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    """Return the otpauth:// URI an authenticator app scans to enroll."""
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer)


def verify_totp(secret: str, code: str, at: datetime | None = None, window: int = 1) -> bool:
    """Check a TOTP code against the secret at time `at` (default: now).

    window is the number of 30-second steps accepted either side of `at`.
    """
    if not secret or not code:
        return False
    code = code.strip()
    if not code.isdigit():
        return False
    return pyotp.TOTP(secret).verify(code, for_time=at or utc_now(), valid_window=window)


# ---------------------------------------------------------------------------
# Signed tokens
# ---------------------------------------------------------------------------


class TokenSigner:
    """Mints and verifies HS256 access and pending tokens with one key.

    Usage:
        signer = TokenSigner(settings.secret_key)
        token = signer.create_access_token(user_id=1, roles=["user"], expire_seconds=3600)
        claims = signer.decode_access_token(token)
    """

    def __init__(self, secret_key: str) -> None:
        self._key = secret_key

    def _encode(self, payload: dict, now: datetime, expire_seconds: int) -> str:
        payload = {**payload, "iat": now, "exp": now + timedelta(seconds=expire_seconds)}
        try:
            return jwt.encode(payload, self._key, algorithm=_ALGORITHM)
        except JWTError as exc:
            logger.exception("JWT signing failed for user_id=%s", payload.get("user_id"))
            raise TokenGenerationFailedError() from exc

    def _decode(self, token: str, expected_type: str) -> dict:
        try:
            payload = jwt.decode(token, self._key, algorithms=[_ALGORITHM])
        except JWTError as exc:
            raise InvalidTokenError() from exc
        if payload.get("typ") != expected_type or "user_id" not in payload:
            raise InvalidTokenError()
        return payload

    def create_access_token(
        self, user_id: int, roles: list[str], expire_seconds: int, now: datetime | None = None
    ) -> str:
        """Encode a signed access token carrying identity and role claims."""
        return self._encode(
            {"user_id": user_id, "roles": list(roles), "typ": _ACCESS},
            now or utc_now(),
            expire_seconds,
        )

    def decode_access_token(self, token: str) -> dict:
        """Verify an access token. Raises InvalidTokenError on any failure."""
        payload = self._decode(token, _ACCESS)
        if not isinstance(payload.get("roles"), list):
            raise InvalidTokenError()
        return payload

    def create_pending_token(self, user_id: int, expire_seconds: int, now: datetime | None = None) -> str:
        """Encode a short-lived token that says "password ok, TOTP still required"."""
        return self._encode({"user_id": user_id, "typ": _PENDING, "tfa": "TOTP"}, now or utc_now(), expire_seconds)

    def decode_pending_token(self, token: str) -> int:
        """Verify a pending token and return the user id it was issued for."""
        payload = self._decode(token, _PENDING)
        if payload.get("tfa") != "TOTP":
            raise InvalidTokenError()
        return int(payload["user_id"])
