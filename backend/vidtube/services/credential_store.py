"""User credential persistence over an AsyncSession.

Passwords are bcrypt-hashed here on every write; refresh tokens are stored as
SHA256 digests so the database never holds a usable token.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vidtube.core.auth import hash_password, hash_refresh_token, verify_password
from vidtube.core.errors import ConflictError, NotFoundError
from vidtube.models.user import User
from vidtube.schemas.user import UserOut

logger = logging.getLogger(__name__)

SANITIZED_COLUMNS = (
    User.id,
    User.username,
    User.email,
    User.full_name,
    User.avatar,
    User.cover_image,
    User.created_at,
    User.updated_at,
)

UPDATABLE_FIELDS = {"username", "email", "full_name", "avatar", "cover_image"}


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def normalize_username(username: str | None) -> str:
    return (username or "").strip().lower()


class CredentialStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_username_or_email(
        self, username: str | None = None, email: str | None = None
    ) -> User | None:
        conditions = []
        if username:
            conditions.append(User.username == normalize_username(username))
        if email:
            conditions.append(User.email == normalize_email(email))
        if not conditions:
            return None
        r = await self.session.execute(select(User).where(or_(*conditions)).limit(1))
        return r.scalar_one_or_none()

    async def get_by_id(self, user_id: int) -> User | None:
        r = await self.session.execute(select(User).where(User.id == user_id))
        return r.scalar_one_or_none()

    async def get_sanitized(self, user_id: int) -> UserOut | None:
        """Read a user without password hash or refresh token."""
        r = await self.session.execute(select(*SANITIZED_COLUMNS).where(User.id == user_id))
        row = r.mappings().one_or_none()
        return UserOut.model_validate(dict(row)) if row else None

    async def create(
        self,
        *,
        username: str,
        email: str,
        full_name: str,
        avatar: str,
        cover_image: str = "",
        password: str | None = None,
        password_hash: str | None = None,
    ) -> User:
        """Insert a user. Pass either a plain password or an already computed bcrypt hash."""
        if password_hash is None:
            if not password:
                raise ValueError("password or password_hash is required")
            password_hash = hash_password(password)
        user = User(
            username=normalize_username(username),
            email=normalize_email(email),
            full_name=full_name.strip(),
            password_hash=password_hash,
            avatar=avatar,
            cover_image=cover_image or "",
        )
        self.session.add(user)
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning("User create IntegrityError: %s", e)
            await self.session.rollback()
            raise ConflictError("User with email or username already exists") from e
        await self.session.refresh(user)
        return user

    async def update(self, user_id: int, **fields: Any) -> None:
        """Partial update by id; only profile fields are accepted."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        if "username" in fields:
            fields["username"] = normalize_username(fields["username"])
        try:
            result = await self.session.execute(update(User).where(User.id == user_id).values(**fields))
            await self.session.flush()
        except IntegrityError as e:
            logger.warning("User update IntegrityError: %s", e)
            await self.session.rollback()
            raise ConflictError("User with email or username already exists") from e
        if result.rowcount == 0:
            raise NotFoundError("User not found")

    async def set_password(self, user_id: int, new_password: str) -> None:
        await self.session.execute(
            update(User).where(User.id == user_id).values(password_hash=hash_password(new_password))
        )
        await self.session.flush()

    async def set_refresh_token(self, user_id: int, token: str | None) -> None:
        """Overwrite the stored refresh token; None revokes it."""
        digest = hash_refresh_token(token) if token else None
        await self.session.execute(update(User).where(User.id == user_id).values(refresh_token_hash=digest))
        await self.session.flush()

    @staticmethod
    def check_password(user: User, password: str) -> bool:
        if not user.password_hash or not password:
            return False
        return verify_password(password, user.password_hash)

    @staticmethod
    def refresh_token_matches(user: User, token: str) -> bool:
        if not user.refresh_token_hash or not token:
            return False
        return hmac.compare_digest(user.refresh_token_hash, hash_refresh_token(token))
