"""
security helpers:
- Argon2 password hashing via argon2-cffi
- Access token (JWT) creation/verification via PyJWT
- Opaque refresh token secrets, stored server-side only as a SHA-256 hash
"""
from __future__ import annotations

import hashlib
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from flask import current_app

from utils.exceptions import TokenInvalidOrExpired

logger = logging.getLogger(__name__)

ph = PasswordHasher()

REFRESH_TOKEN_BYTES = 32  # 256 bits
ACCESS_TOKEN_TYPE = "access"

# Compared against when the email is unknown so both login failure paths cost one argon2 verify
_DUMMY_HASH = ph.hash(secrets.token_hex(16))


def _utf8(value: str) -> bytes:
    # JSON can carry lone surrogates; they must hash instead of raising
    return value.encode("utf-8", "surrogatepass")


def hash_password(password: str) -> str:
    """Hash a plaintext password using Argon2
    """
    return ph.hash(_utf8(password))


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """ Verify a plaintext password using argon2
    """
    try:
        return ph.verify(password_hash or _DUMMY_HASH, _utf8(password)) and password_hash is not None
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHashError):
        logger.warning("Stored password hash could not be verified")
        return False


def needs_rehash(password_hash: str) -> bool:
    return ph.check_needs_rehash(password_hash)


def generate_jti() -> str:
    """Generate a unique JTI (JWT ID).
    """
    return str(uuid.uuid4())


def generate_refresh_secret() -> str:
    """High-entropy opaque refresh token, returned to the client exactly once."""
    return secrets.token_hex(REFRESH_TOKEN_BYTES)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(_utf8(token)).hexdigest()


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int


class TokenIssuer:
    """
    Mints access tokens and admits new sessions.

    Access tokens embed identity and role claims and are only time-bound.
    Refresh tokens are delegated to the RefreshTokenStore, which evicts the
    oldest sessions before recording a new one.
    """

    def __init__(
        self,
        secret: str,
        store,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(hours=4),
        issuer: str = "school-admin-api",
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("JWT secret must be configured")
        self._secret = secret
        self._store = store
        self._algorithm = algorithm
        self._access_ttl = access_ttl
        self._issuer = issuer
        self._clock = clock

    @property
    def expires_in(self) -> int:
        return int(self._access_ttl.total_seconds())

    def create_access_token(self, user) -> str:
        now = int(self._clock())
        role = getattr(user.role, "value", user.role)
        payload = {
            "iss": self._issuer,
            "sub": str(user.id),
            "email": user.email,
            "role": role,
            "tenant": user.school_id,
            "type": ACCESS_TOKEN_TYPE,
            "iat": now,
            "exp": now + self.expires_in,
            "jti": generate_jti(),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode_access_token(self, token: str) -> Dict[str, Any]:
        """
        Decode and validate an access token.
        Every failure raises the same TokenInvalidOrExpired; the cause is only
        kept on the exception for server-side logging.
        """
        try:
            decoded = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["exp", "iat", "sub", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenInvalidOrExpired(reason="expired")
        except jwt.InvalidTokenError:
            raise TokenInvalidOrExpired(reason="invalid")

        if decoded.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenInvalidOrExpired(reason="wrong_type")
        return decoded

    def issue_session(self, user, device_info: Optional[str] = None) -> AuthTokens:
        """Login: admit a new session for user and pair it with an access token."""
        raw_refresh, _record = self._store.create(user.id, device_info)
        return AuthTokens(
            access_token=self.create_access_token(user),
            refresh_token=raw_refresh,
            expires_in=self.expires_in,
        )


def get_token_issuer() -> TokenIssuer:
    return current_app.extensions["token_issuer"]
