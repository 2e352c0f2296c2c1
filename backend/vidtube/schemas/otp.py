"""OTP challenge records. Serialized as JSON when the store is Redis."""

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from vidtube.schemas.upload import RegistrationFiles, TempUpload


class RegistrationPayload(BaseModel):
    kind: Literal["registration"] = "registration"
    username: str
    email: str
    full_name: str
    password_hash: str
    avatar: TempUpload
    cover_image: TempUpload | None = None

    def discard_uploads(self) -> None:
        RegistrationFiles(avatar=self.avatar, cover_image=self.cover_image).discard()


class LoginPayload(BaseModel):
    kind: Literal["login"] = "login"
    user_id: int

    def discard_uploads(self) -> None:
        pass


ChallengePayload = Annotated[Union[RegistrationPayload, LoginPayload], Field(discriminator="kind")]


class OtpChallenge(BaseModel):
    id: str
    email: str
    code: str
    expires_at: datetime
    payload: ChallengePayload

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.expires_at
