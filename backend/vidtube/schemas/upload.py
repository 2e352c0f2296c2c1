"""Temporary upload references held between a request and its OTP verification."""

import logging
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class TempUpload(BaseModel):
    """A file saved under UPLOAD_TEMP_DIR, not yet pushed to object storage."""

    path: str
    filename: str
    content_type: str | None = None

    def discard(self) -> None:
        try:
            Path(self.path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove temp upload %s: %s", self.path, e)


class RegistrationFiles(BaseModel):
    avatar: TempUpload | None = None
    cover_image: TempUpload | None = None

    def discard(self) -> None:
        for upload in (self.avatar, self.cover_image):
            if upload is not None:
                upload.discard()
