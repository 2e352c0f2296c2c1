"""
Registration, login and session flows.

Registration and login each take two steps: a request that checks the input
and sends an OTP, and a verify that consumes it. Only verify_login opens a
session (issues tokens). Temp uploads handed to request_registration belong
to the coordinator from then on: they are discarded on every error path, or
travel inside the registration challenge until it is verified, superseded or
expires.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from vidtube.core.auth import hash_password
from vidtube.core.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    UnauthorizedError,
    UploadFailedError,
    ValidationError,
)
from vidtube.schemas.common import Acknowledgement
from vidtube.schemas.otp import LoginPayload, RegistrationPayload
from vidtube.schemas.upload import RegistrationFiles
from vidtube.schemas.user import LoginResult, RegistrationFields, TokenPair, UserOut
from vidtube.services.audit import log_action
from vidtube.services.credential_store import CredentialStore, normalize_email, normalize_username
from vidtube.services.otp import OtpChallengeService
from vidtube.services.storage import ObjectStorage
from vidtube.services.tokens import TokenIssuer

logger = logging.getLogger(__name__)


def _blank(value: str | None) -> bool:
    return not (value or "").strip()


class SessionCoordinator:
    def __init__(
        self,
        session: AsyncSession,
        credentials: CredentialStore,
        otp: OtpChallengeService,
        tokens: TokenIssuer,
        storage: ObjectStorage,
        client_ip: str | None = None,
    ):
        self.session = session
        self.credentials = credentials
        self.otp = otp
        self.tokens = tokens
        self.storage = storage
        self.client_ip = client_ip

    async def _audit(self, user_id: int | None, action: str, details: dict | None = None) -> None:
        await log_action(
            self.session,
            user_id=user_id,
            action=action,
            resource_id=str(user_id) if user_id is not None else None,
            details=details,
            ip_address=self.client_ip,
        )

    # ── registration ─────────────────────────────────────────────────────────

    async def request_registration(self, fields: RegistrationFields, files: RegistrationFiles) -> Acknowledgement:
        try:
            if any(_blank(v) for v in (fields.full_name, fields.email, fields.username, fields.password)):
                raise ValidationError("All fields are required")
            email = normalize_email(fields.email)
            username = normalize_username(fields.username)

            if await self.credentials.find_by_username_or_email(username=username, email=email):
                raise ConflictError("User with email or username already exists")
            if files.avatar is None:
                raise ValidationError("Avatar file is required")

            payload = RegistrationPayload(
                username=username,
                email=email,
                full_name=fields.full_name.strip(),
                password_hash=hash_password(fields.password),
                avatar=files.avatar,
                cover_image=files.cover_image,
            )
            await self.otp.issue(email, payload)
        except Exception:
            files.discard()
            raise
        return Acknowledgement(email=email, expires_in=self.otp.ttl_seconds)

    async def verify_registration(self, email: str | None, code: str | None) -> UserOut:
        if _blank(email) or _blank(code):
            raise ValidationError("Email and OTP are required")
        payload = await self.otp.verify(normalize_email(email), code, kind="registration")

        try:
            if await self.credentials.find_by_username_or_email(username=payload.username, email=payload.email):
                raise ConflictError("User with email or username already exists")

            avatar_url = await self.storage.upload(payload.avatar.path, "avatars")
            if not avatar_url:
                raise UploadFailedError("Avatar file upload failed")

            cover_url = ""
            if payload.cover_image is not None:
                try:
                    cover_url = await self.storage.upload(payload.cover_image.path, "covers") or ""
                except UploadFailedError as e:
                    logger.warning("Cover image upload failed for %s, continuing without it: %s", payload.email, e)
        finally:
            payload.discard_uploads()

        user = await self.credentials.create(
            username=payload.username,
            email=payload.email,
            full_name=payload.full_name,
            password_hash=payload.password_hash,
            avatar=avatar_url,
            cover_image=cover_url,
        )
        created = await self.credentials.get_sanitized(user.id)
        if created is None:
            raise InternalError("Something went wrong while registering the user")
        await self._audit(created.id, "register")
        logger.info("Registered user_id=%s (%s)", created.id, created.username)
        return created

    # ── login ────────────────────────────────────────────────────────────────

    async def request_login(self, email: str | None, username: str | None, password: str | None) -> Acknowledgement:
        if _blank(email) and _blank(username):
            raise ValidationError("Username or email is required")
        user = await self.credentials.find_by_username_or_email(
            username=None if _blank(username) else username,
            email=None if _blank(email) else email,
        )
        if user is None:
            raise NotFoundError("User does not exist")
        if not self.credentials.check_password(user, password or ""):
            raise UnauthorizedError("Invalid user credentials")
        await self.otp.issue(user.email, LoginPayload(user_id=user.id))
        return Acknowledgement(email=user.email, expires_in=self.otp.ttl_seconds)

    async def verify_login(self, email: str | None, code: str | None) -> LoginResult:
        if _blank(email) or _blank(code):
            raise ValidationError("Email and OTP are required")
        payload = await self.otp.verify(normalize_email(email), code, kind="login")
        pair = await self.tokens.rotate(payload.user_id)
        user = await self.credentials.get_sanitized(payload.user_id)
        if user is None:
            raise InternalError("Something went wrong while logging in")
        await self._audit(user.id, "login")
        return LoginResult(user=user, access_token=pair.access_token, refresh_token=pair.refresh_token)

    # ── session ──────────────────────────────────────────────────────────────

    async def logout(self, user_id: int) -> None:
        await self.credentials.set_refresh_token(user_id, None)
        await self._audit(user_id, "logout")

    async def refresh(self, incoming_refresh_token: str | None) -> TokenPair:
        if _blank(incoming_refresh_token):
            raise UnauthorizedError("Unauthorized request")
        token = incoming_refresh_token.strip()
        claims = self.tokens.verify_refresh_token(token)

        user = await self.credentials.get_by_id(int(claims["sub"]))
        if user is None:
            raise UnauthorizedError("Invalid refresh token")
        if not self.credentials.refresh_token_matches(user, token):
            logger.warning("Rejected stale refresh token for user_id=%s", user.id)
            raise UnauthorizedError("Refresh token is expired or used")

        pair = await self.tokens.rotate(user.id)
        await self._audit(user.id, "refresh")
        return pair

    async def change_password(self, user_id: int, old_password: str | None, new_password: str | None) -> None:
        if _blank(new_password):
            raise ValidationError("New password is required")
        user = await self.credentials.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not self.credentials.check_password(user, old_password or ""):
            raise ValidationError("Invalid old password")
        await self.credentials.set_password(user_id, new_password)
        await self._audit(user_id, "change_password")
