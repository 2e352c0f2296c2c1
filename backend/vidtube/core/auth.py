"""Password hashing and JWT creation/verification."""

import hashlib
import secrets
from datetime import datetime, timezone, timedelta
from typing import Any

import bcrypt
from jose import jwt

from vidtube.config import settings

REFRESH_TOKEN_ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    """Hash password with bcrypt. Bytes truncated to 72 (bcrypt limit); no passlib re-encoding."""
    pwd_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(pwd_bytes, bcrypt.gensalt(rounds=settings.bcrypt_rounds))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify password with bcrypt. Plain password truncated to 72 bytes."""
    plain_bytes = plain_password.encode("utf-8")[:72]
    return bcrypt.checkpw(plain_bytes, password_hash.encode("utf-8"))


def _get_jwt_signing_key_and_algorithm() -> tuple[str, str]:
    """Return (key, algorithm) for signing access tokens."""
    if settings.use_rs256:
        return settings.jwt_private_key.strip(), "RS256"
    return settings.secret_key, settings.jwt_algorithm


def _encode(payload: dict[str, Any], key: str, algorithm: str) -> str:
    result = jwt.encode(payload, key, algorithm=algorithm)
    return result if isinstance(result, str) else result.decode("utf-8")


def create_access_token(user_id: int, email: str, username: str, full_name: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {
        "sub": str(user_id),
        "email": email,
        "username": username,
        "full_name": full_name,
        "exp": expire,
    }
    key, algorithm = _get_jwt_signing_key_and_algorithm()
    return _encode(payload, key, algorithm)


def create_refresh_token(user_id: int) -> str:
    """Signed refresh token. `jti` keeps two tokens minted in the same second distinct."""
    expire = datetime.now(timezone.utc) + timedelta(days=settings.refresh_token_expire_days)
    payload = {"sub": str(user_id), "jti": secrets.token_hex(16), "exp": expire}
    return _encode(payload, settings.refresh_token_secret, REFRESH_TOKEN_ALGORITHM)


def hash_refresh_token(token: str) -> str:
    """SHA256 hash of refresh token for storage."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _get_jwt_verification_key_and_algorithms() -> tuple[str, list[str]]:
    """Return (key, algorithms) for verifying access tokens."""
    if settings.use_rs256:
        return settings.jwt_public_key.strip(), ["RS256"]
    return settings.secret_key, [settings.jwt_algorithm]


def decode_token(token: str) -> dict[str, Any]:
    """Decode an access token. Raises jose.JWTError (ExpiredSignatureError when past exp)."""
    key, algorithms = _get_jwt_verification_key_and_algorithms()
    return jwt.decode(token, key, algorithms=algorithms)


def decode_refresh_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, settings.refresh_token_secret, algorithms=[REFRESH_TOKEN_ALGORITHM])
