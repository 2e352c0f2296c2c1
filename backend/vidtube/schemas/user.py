from datetime import datetime
from typing import Annotated

from pydantic import BeforeValidator

from vidtube.schemas.common import CamelModel


class UserOut(CamelModel):
    """Sanitized user: no password hash, no refresh token."""

    id: int
    username: str
    email: str
    full_name: str
    avatar: str
    cover_image: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RegistrationFields(CamelModel):
    full_name: str | None = None
    email: str | None = None
    username: str | None = None
    password: str | None = None


def _number_to_str(value):
    # Clients may send the 6-digit code as a JSON number
    return str(value) if isinstance(value, int) and not isinstance(value, bool) else value


class OtpVerifyBody(CamelModel):
    email: str | None = None
    otp: Annotated[str | None, BeforeValidator(_number_to_str)] = None


class LoginBody(CamelModel):
    email: str | None = None
    username: str | None = None
    password: str | None = None


class RefreshBody(CamelModel):
    refresh_token: str | None = None


class ChangePasswordBody(CamelModel):
    old_password: str | None = None
    new_password: str | None = None


class UpdateAccountBody(CamelModel):
    full_name: str | None = None
    email: str | None = None


class TokenPair(CamelModel):
    access_token: str
    refresh_token: str


class LoginResult(TokenPair):
    user: UserOut


class ChannelProfile(CamelModel):
    id: int
    username: str
    full_name: str
    email: str
    avatar: str
    cover_image: str = ""
    subscribers_count: int
    channels_subscribed_to_count: int
    is_subscribed: bool


class VideoOwner(CamelModel):
    username: str
    full_name: str
    avatar: str


class WatchedVideo(CamelModel):
    id: int
    title: str
    description: str
    thumbnail: str
    video_file: str
    duration: float
    views: int
    owner: VideoOwner
