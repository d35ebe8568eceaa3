"""
shared/utils/security.py
JWT creation/verification, Google ID token checks, password hashing,
and token helpers.
"""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import DecodeError, InvalidClaimError
from jose import JWTError, jwt
from passlib.context import CryptContext

from config.settings import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# ── JWT ───────────────────────────────────────────────────────

def create_access_token(
    user_id: str,
    role: str,
    email: str,
    extra: Optional[dict] = None,
) -> tuple[str, str]:
    """
    Create a signed JWT access token.
    Returns (token, jti). jti is used for deny-listing on logout.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "jti": jti,
        "iat": now,
        "exp": expire,
        "type": "access",
        **(extra or {}),
    }

    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def create_refresh_token() -> tuple[str, str]:
    """
    Create a cryptographically random refresh token.
    Returns (raw_token, hashed_token). Store only the hash in DB.
    """
    raw_token = secrets.token_urlsafe(64)
    return raw_token, hash_token(raw_token)


def hash_token(token: str) -> str:
    """SHA-256 hash for securely storing refresh tokens."""
    return hashlib.sha256(token.encode()).hexdigest()


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload


def get_token_remaining_ttl(payload: dict) -> int:
    """Returns seconds until token expiry. Used for JWT deny-list TTL."""
    exp = payload.get("exp", 0)
    remaining = exp - datetime.now(timezone.utc).timestamp()
    return max(0, int(remaining))


# ── Password ──────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


# ── Session tokens ────────────────────────────────────────────

def generate_session_id() -> str:
    """16 random bytes, hex encoded. Identifies a video session."""
    return secrets.token_hex(16)


def generate_participant_token() -> str:
    """32 random bytes, hex encoded. One per video participant."""
    return secrets.token_hex(32)


# ── Google ID tokens ──────────────────────────────────────────

GOOGLE_ISSUERS = ["https://accounts.google.com", "accounts.google.com"]

google_jwt = JsonWebToken(["RS256"])


def verify_google_id_token(id_token: str, certs: dict) -> dict:
    """
    Verify a Google ID token against Google's published signing keys.
    Checks signature, issuer, audience (our client id), expiry and that
    the email address is verified. Raises JoseError on any failure.
    """
    if not settings.GOOGLE_CLIENT_ID:
        raise InvalidClaimError("aud")
    try:
        key_set = JsonWebKey.import_key_set(certs)
        claims = google_jwt.decode(
            id_token,
            key_set,
            claims_options={
                "iss": {"essential": True, "values": GOOGLE_ISSUERS},
                "aud": {"essential": True, "value": settings.GOOGLE_CLIENT_ID},
                "sub": {"essential": True},
                "email": {"essential": True},
                "exp": {"essential": True},
            },
        )
    except ValueError as e:
        # unknown kid or malformed key set
        raise DecodeError(str(e))
    claims.validate()

    if claims.get("email_verified") not in (True, "true"):
        raise InvalidClaimError("email_verified")
    return dict(claims)
