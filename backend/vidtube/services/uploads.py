"""Persist multipart image uploads to UPLOAD_TEMP_DIR until they are pushed to storage."""

import asyncio
import logging
import uuid
from pathlib import Path

from fastapi import UploadFile

from vidtube.config import settings
from vidtube.core.errors import ValidationError
from vidtube.schemas.upload import RegistrationFiles, TempUpload

logger = logging.getLogger(__name__)

ALLOWED_SUFFIXES = {".jpg", ".jpeg", ".png", ".gif", ".webp"}


def _temp_dir() -> Path:
    path = Path(settings.upload_temp_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


async def save_upload(file: UploadFile | None, field: str) -> TempUpload | None:
    """Write an uploaded image to the temp dir. No file (or an empty field) yields None."""
    if file is None or not file.filename:
        return None
    if file.content_type and not file.content_type.startswith("image/"):
        raise ValidationError(f"{field} must be an image")
    suffix = Path(file.filename).suffix.lower()
    if suffix not in ALLOWED_SUFFIXES:
        raise ValidationError(f"{field} must be a JPEG, PNG, GIF or WebP image")
    data = await file.read(settings.max_upload_bytes + 1)
    if not data:
        raise ValidationError(f"{field} is empty")
    if len(data) > settings.max_upload_bytes:
        raise ValidationError(f"{field} is too large")
    target = _temp_dir() / f"{uuid.uuid4().hex}{suffix}"
    await asyncio.to_thread(target.write_bytes, data)
    logger.debug("Saved %s upload to %s (%d bytes)", field, target, len(data))
    return TempUpload(path=str(target), filename=file.filename, content_type=file.content_type)


async def save_registration_files(avatar: UploadFile | None, cover_image: UploadFile | None) -> RegistrationFiles:
    files = RegistrationFiles()
    try:
        files.avatar = await save_upload(avatar, "avatar")
        files.cover_image = await save_upload(cover_image, "coverImage")
    except Exception:
        files.discard()
        raise
    return files
