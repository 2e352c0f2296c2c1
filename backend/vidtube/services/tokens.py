"""Access/refresh token pairs and rotation."""

import logging
from typing import Any

from jose import ExpiredSignatureError, JWTError

from vidtube.core.auth import create_access_token, create_refresh_token, decode_refresh_token, decode_token
from vidtube.core.errors import NotFoundError, TokenExpiredError, TokenInvalidError
from vidtube.schemas.user import TokenPair
from vidtube.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)


def _claims_or_raise(decode, token: str, kind: str) -> dict[str, Any]:
    try:
        claims = decode(token)
    except ExpiredSignatureError as e:
        raise TokenExpiredError(f"{kind} token has expired") from e
    except JWTError as e:
        raise TokenInvalidError(f"Invalid {kind.lower()} token") from e
    sub = claims.get("sub")
    if not sub or not str(sub).isdigit():
        raise TokenInvalidError(f"Invalid {kind.lower()} token")
    return claims


class TokenIssuer:
    def __init__(self, credentials: CredentialStore):
        self.credentials = credentials

    @staticmethod
    def verify_access_token(token: str) -> dict[str, Any]:
        return _claims_or_raise(decode_token, token, "Access")

    @staticmethod
    def verify_refresh_token(token: str) -> dict[str, Any]:
        """Signature and expiry only; whether the token is still the live one is the caller's check."""
        return _claims_or_raise(decode_refresh_token, token, "Refresh")

    async def rotate(self, user_id: int) -> TokenPair:
        """Issue a new pair and make its refresh token the only valid one for the user."""
        user = await self.credentials.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        access = create_access_token(user.id, user.email, user.username, user.full_name)
        refresh = create_refresh_token(user.id)
        await self.credentials.set_refresh_token(user.id, refresh)
        logger.debug("Rotated tokens for user_id=%s", user.id)
        return TokenPair(access_token=access, refresh_token=refresh)
