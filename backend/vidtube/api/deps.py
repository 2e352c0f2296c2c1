"""FastAPI dependencies: current user from JWT, service wiring."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from vidtube.core.errors import UnauthorizedError
from vidtube.db.session import get_db
from vidtube.models.user import User
from vidtube.services.credential_store import CredentialStore
from vidtube.services.mailer import Mailer, get_mailer
from vidtube.services.otp import ChallengeStore, OtpChallengeService, get_otp_store
from vidtube.services.session_coordinator import SessionCoordinator
from vidtube.services.storage import ObjectStorage, get_object_storage
from vidtube.services.tokens import TokenIssuer

ACCESS_TOKEN_COOKIE = "accessToken"
REFRESH_TOKEN_COOKIE = "refreshToken"


def get_credential_store(session: Annotated[AsyncSession, Depends(get_db)]) -> CredentialStore:
    return CredentialStore(session)


def get_otp_service(
    store: Annotated[ChallengeStore, Depends(get_otp_store)],
    mailer: Annotated[Mailer, Depends(get_mailer)],
) -> OtpChallengeService:
    return OtpChallengeService(store, mailer)


def get_session_coordinator(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
    otp: Annotated[OtpChallengeService, Depends(get_otp_service)],
    storage: Annotated[ObjectStorage, Depends(get_object_storage)],
) -> SessionCoordinator:
    return SessionCoordinator(
        session=session,
        credentials=credentials,
        otp=otp,
        tokens=TokenIssuer(credentials),
        storage=storage,
        client_ip=request.client.host if request.client else None,
    )


async def get_current_user(
    request: Request,
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
) -> User:
    """Access token from the accessToken cookie or an Authorization: Bearer header."""
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    if not token:
        raise UnauthorizedError("Unauthorized request")
    try:
        claims = TokenIssuer.verify_access_token(token)
    except UnauthorizedError as e:
        raise UnauthorizedError("Invalid access token") from e
    user = await credentials.get_by_id(int(claims["sub"]))
    if not user:
        raise UnauthorizedError("Invalid access token")
    return user
