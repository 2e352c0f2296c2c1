"""Profile reads and updates: account details, images, channel profile, watch history."""

import logging

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from vidtube.core.errors import NotFoundError, UploadFailedError, ValidationError
from vidtube.models.subscription import Subscription
from vidtube.models.user import User, user_watch_history
from vidtube.models.video import Video
from vidtube.schemas.upload import TempUpload
from vidtube.schemas.user import ChannelProfile, UserOut, VideoOwner, WatchedVideo
from vidtube.services.credential_store import CredentialStore, normalize_username
from vidtube.services.storage import ObjectStorage

logger = logging.getLogger(__name__)


async def _sanitized_or_404(credentials: CredentialStore, user_id: int) -> UserOut:
    user = await credentials.get_sanitized(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def get_current_user_profile(credentials: CredentialStore, user_id: int) -> UserOut:
    return await _sanitized_or_404(credentials, user_id)


async def update_account_details(
    credentials: CredentialStore, user_id: int, full_name: str | None, email: str | None
) -> UserOut:
    if not (full_name or "").strip() or not (email or "").strip():
        raise ValidationError("All fields are required")
    await credentials.update(user_id, full_name=full_name.strip(), email=email)
    return await _sanitized_or_404(credentials, user_id)


async def _replace_image(
    credentials: CredentialStore,
    storage: ObjectStorage,
    user_id: int,
    upload: TempUpload | None,
    field: str,
    category: str,
    label: str,
) -> UserOut:
    if upload is None:
        raise ValidationError(f"{label} file is missing")
    try:
        url = await storage.upload(upload.path, category)
    finally:
        upload.discard()
    if not url:
        raise UploadFailedError(f"Error while uploading {label.lower()}")
    await credentials.update(user_id, **{field: url})
    logger.info("Updated %s for user_id=%s", field, user_id)
    return await _sanitized_or_404(credentials, user_id)


async def update_avatar(
    credentials: CredentialStore, storage: ObjectStorage, user_id: int, upload: TempUpload | None
) -> UserOut:
    return await _replace_image(credentials, storage, user_id, upload, "avatar", "avatars", "Avatar")


async def update_cover_image(
    credentials: CredentialStore, storage: ObjectStorage, user_id: int, upload: TempUpload | None
) -> UserOut:
    return await _replace_image(credentials, storage, user_id, upload, "cover_image", "covers", "Cover image")


async def get_channel_profile(session: AsyncSession, username: str | None, viewer_id: int) -> ChannelProfile:
    """Channel owner's public profile with subscriber / subscription counts."""
    username = normalize_username(username)
    if not username:
        raise ValidationError("Username is missing")

    subscribers_count = (
        select(func.count(Subscription.id)).where(Subscription.channel_id == User.id).scalar_subquery()
    )
    subscribed_to_count = (
        select(func.count(Subscription.id)).where(Subscription.subscriber_id == User.id).scalar_subquery()
    )
    is_subscribed = exists().where(
        Subscription.channel_id == User.id,
        Subscription.subscriber_id == viewer_id,
    )
    r = await session.execute(
        select(
            User.id,
            User.username,
            User.full_name,
            User.email,
            User.avatar,
            User.cover_image,
            subscribers_count.label("subscribers_count"),
            subscribed_to_count.label("channels_subscribed_to_count"),
            is_subscribed.label("is_subscribed"),
        ).where(User.username == username)
    )
    row = r.mappings().one_or_none()
    if row is None:
        raise NotFoundError("Channel does not exist")
    return ChannelProfile.model_validate(dict(row))


async def get_watch_history(session: AsyncSession, user_id: int) -> list[WatchedVideo]:
    """Videos the user watched, most recent first, each with its owner."""
    r = await session.execute(
        select(Video, User.username, User.full_name, User.avatar)
        .join(user_watch_history, user_watch_history.c.video_id == Video.id)
        .join(User, User.id == Video.owner_id)
        .where(user_watch_history.c.user_id == user_id)
        .order_by(user_watch_history.c.watched_at.desc())
    )
    return [
        WatchedVideo(
            id=video.id,
            title=video.title,
            description=video.description,
            thumbnail=video.thumbnail,
            video_file=video.video_file,
            duration=video.duration,
            views=video.views,
            owner=VideoOwner(username=username, full_name=full_name, avatar=avatar),
        )
        for video, username, full_name, avatar in r.all()
    ]
