"""User endpoints: OTP registration/login, session, profile, channel, history."""

from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Request, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from vidtube.api.deps import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    get_credential_store,
    get_current_user,
    get_session_coordinator,
)
from vidtube.config import settings
from vidtube.db.session import get_db
from vidtube.models.user import User
from vidtube.schemas.common import Acknowledgement, ApiResponse
from vidtube.schemas.user import (
    ChangePasswordBody,
    ChannelProfile,
    LoginBody,
    LoginResult,
    OtpVerifyBody,
    RefreshBody,
    RegistrationFields,
    TokenPair,
    UpdateAccountBody,
    UserOut,
    WatchedVideo,
)
from vidtube.services import profile
from vidtube.services.credential_store import CredentialStore
from vidtube.services.session_coordinator import SessionCoordinator
from vidtube.services.storage import ObjectStorage, get_object_storage
from vidtube.services.uploads import save_registration_files, save_upload

router = APIRouter(prefix="/users", tags=["users"])


def _set_session_cookies(response: Response, pair: TokenPair) -> None:
    common = {"httponly": True, "secure": settings.cookie_secure, "samesite": "lax"}
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        pair.access_token,
        max_age=settings.access_token_expire_minutes * 60,
        **common,
    )
    response.set_cookie(
        REFRESH_TOKEN_COOKIE,
        pair.refresh_token,
        max_age=settings.refresh_token_expire_days * 24 * 3600,
        **common,
    )


def _clear_session_cookies(response: Response) -> None:
    for name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
        response.delete_cookie(name, httponly=True, secure=settings.cookie_secure, samesite="lax")


@router.post(
    "/register",
    response_model=ApiResponse[Acknowledgement],
    summary="Request registration (sends OTP)",
    responses={
        400: {"description": "Missing field or avatar"},
        409: {"description": "Username or email already taken"},
        500: {"description": "OTP e-mail could not be delivered"},
    },
)
async def register(
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    full_name: Annotated[str | None, Form(alias="fullName")] = None,
    email: Annotated[str | None, Form()] = None,
    username: Annotated[str | None, Form()] = None,
    password: Annotated[str | None, Form()] = None,
    avatar: Annotated[UploadFile | None, File()] = None,
    cover_image: Annotated[UploadFile | None, File(alias="coverImage")] = None,
) -> ApiResponse[Acknowledgement]:
    """Step 1 of 2. Validates the form and e-mails a 6-digit code; no account is created yet."""
    files = await save_registration_files(avatar, cover_image)
    ack = await coordinator.request_registration(
        RegistrationFields(full_name=full_name, email=email, username=username, password=password),
        files,
    )
    return ApiResponse(code=status.HTTP_200_OK, data=ack, message="OTP sent to your email")


@router.post(
    "/register/verify",
    response_model=ApiResponse[UserOut],
    status_code=status.HTTP_201_CREATED,
    summary="Verify registration OTP and create the account",
    responses={
        400: {"description": "Missing email/OTP or avatar upload failed"},
        401: {"description": "Wrong OTP"},
        404: {"description": "No pending OTP"},
        409: {"description": "Username or email taken meanwhile"},
        410: {"description": "OTP expired"},
    },
)
async def verify_registration(
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    body: OtpVerifyBody,
) -> ApiResponse[UserOut]:
    user = await coordinator.verify_registration(body.email, body.otp)
    return ApiResponse(code=status.HTTP_201_CREATED, data=user, message="User registered successfully")


@router.post(
    "/login",
    response_model=ApiResponse[Acknowledgement],
    summary="Request login (checks password, sends OTP)",
    responses={
        400: {"description": "Username or email required"},
        401: {"description": "Invalid credentials"},
        404: {"description": "User does not exist"},
    },
)
async def login(
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    body: LoginBody,
) -> ApiResponse[Acknowledgement]:
    ack = await coordinator.request_login(body.email, body.username, body.password)
    return ApiResponse(code=status.HTTP_200_OK, data=ack, message="OTP sent to your email")


@router.post(
    "/login/verify",
    response_model=ApiResponse[LoginResult],
    summary="Verify login OTP and start a session",
    responses={
        401: {"description": "Wrong OTP"},
        404: {"description": "No pending OTP"},
        410: {"description": "OTP expired"},
    },
)
async def verify_login(
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    body: OtpVerifyBody,
    response: Response,
) -> ApiResponse[LoginResult]:
    result = await coordinator.verify_login(body.email, body.otp)
    _set_session_cookies(response, result)
    return ApiResponse(code=status.HTTP_200_OK, data=result, message="User logged in successfully")


@router.post("/logout", response_model=ApiResponse[dict], summary="Log out (revokes refresh token)")
async def logout(
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    user: Annotated[User, Depends(get_current_user)],
    response: Response,
) -> ApiResponse[dict]:
    await coordinator.logout(user.id)
    _clear_session_cookies(response)
    return ApiResponse(code=status.HTTP_200_OK, data={}, message="User logged out")


@router.post(
    "/refresh-token",
    response_model=ApiResponse[TokenPair],
    summary="Exchange refresh token for a new pair (rotation)",
    responses={401: {"description": "Refresh token missing, invalid, expired or already used"}},
)
async def refresh_token(
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    request: Request,
    response: Response,
    body: RefreshBody | None = None,
) -> ApiResponse[TokenPair]:
    """Token from the refreshToken cookie, else from the JSON body."""
    incoming = request.cookies.get(REFRESH_TOKEN_COOKIE) or (body.refresh_token if body else None)
    pair = await coordinator.refresh(incoming)
    _set_session_cookies(response, pair)
    return ApiResponse(code=status.HTTP_200_OK, data=pair, message="Access token refreshed")


@router.post("/change-password", response_model=ApiResponse[dict], summary="Change password")
async def change_password(
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    user: Annotated[User, Depends(get_current_user)],
    body: ChangePasswordBody,
) -> ApiResponse[dict]:
    await coordinator.change_password(user.id, body.old_password, body.new_password)
    return ApiResponse(code=status.HTTP_200_OK, data={}, message="Password changed successfully")


@router.get("/current-user", response_model=ApiResponse[UserOut], summary="Get current user")
async def current_user(
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
    user: Annotated[User, Depends(get_current_user)],
) -> ApiResponse[UserOut]:
    data = await profile.get_current_user_profile(credentials, user.id)
    return ApiResponse(code=status.HTTP_200_OK, data=data, message="Current user fetched successfully")


@router.patch("/update-account", response_model=ApiResponse[UserOut], summary="Update full name and email")
async def update_account(
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
    user: Annotated[User, Depends(get_current_user)],
    body: UpdateAccountBody,
) -> ApiResponse[UserOut]:
    data = await profile.update_account_details(credentials, user.id, body.full_name, body.email)
    return ApiResponse(code=status.HTTP_200_OK, data=data, message="Account details updated successfully")


@router.patch("/avatar", response_model=ApiResponse[UserOut], summary="Replace avatar")
async def update_avatar(
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
    storage: Annotated[ObjectStorage, Depends(get_object_storage)],
    user: Annotated[User, Depends(get_current_user)],
    avatar: Annotated[UploadFile | None, File()] = None,
) -> ApiResponse[UserOut]:
    upload = await save_upload(avatar, "avatar")
    data = await profile.update_avatar(credentials, storage, user.id, upload)
    return ApiResponse(code=status.HTTP_200_OK, data=data, message="Avatar updated successfully")


@router.patch("/cover-image", response_model=ApiResponse[UserOut], summary="Replace cover image")
async def update_cover_image(
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
    storage: Annotated[ObjectStorage, Depends(get_object_storage)],
    user: Annotated[User, Depends(get_current_user)],
    cover_image: Annotated[UploadFile | None, File(alias="coverImage")] = None,
) -> ApiResponse[UserOut]:
    upload = await save_upload(cover_image, "coverImage")
    data = await profile.update_cover_image(credentials, storage, user.id, upload)
    return ApiResponse(code=status.HTTP_200_OK, data=data, message="Cover image updated successfully")


@router.get("/c/{username}", response_model=ApiResponse[ChannelProfile], summary="Channel profile")
async def channel_profile(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    username: str,
) -> ApiResponse[ChannelProfile]:
    data = await profile.get_channel_profile(session, username, user.id)
    return ApiResponse(code=status.HTTP_200_OK, data=data, message="User channel fetched successfully")


@router.get("/history", response_model=ApiResponse[list[WatchedVideo]], summary="Watch history")
async def watch_history(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> ApiResponse[list[WatchedVideo]]:
    data = await profile.get_watch_history(session, user.id)
    return ApiResponse(code=status.HTTP_200_OK, data=data, message="Watch history fetched successfully")
