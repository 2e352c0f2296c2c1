"""S3-compatible object storage for avatars and cover images.

`upload` pushes a local temp file and always removes it afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from vidtube.config import settings
from vidtube.core.errors import UploadFailedError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    async def upload(self, local_path: str | None, category: str = "images") -> str | None: ...


def get_s3_client():
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint_url,
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_secret_key,
        config=Config(
            signature_version="s3v4",
            connect_timeout=settings.external_call_timeout_seconds,
            read_timeout=settings.external_call_timeout_seconds,
            retries={"max_attempts": 2},
        ),
    )


class S3ObjectStorage:
    def __init__(self, bucket: str, public_base_url: str, timeout: float = 15.0):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self.timeout = timeout
        self._bucket_checked = False

    async def ensure_bucket_exists(self) -> None:
        if self._bucket_checked:
            return
        client = get_s3_client()

        def _create_if_missing() -> None:
            try:
                client.head_bucket(Bucket=self.bucket)
            except ClientError:
                client.create_bucket(Bucket=self.bucket)

        await asyncio.to_thread(_create_if_missing)
        self._bucket_checked = True

    async def upload(self, local_path: str | None, category: str = "images") -> str | None:
        """Upload a local file and return its public URL. A missing path yields None."""
        if not local_path:
            return None
        path = Path(local_path)
        try:
            if not path.is_file():
                raise UploadFailedError(f"Upload source is missing: {path.name}")
            key = f"{category}/{uuid.uuid4().hex}{path.suffix.lower()}"
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            client = get_s3_client()

            def _upload() -> None:
                client.upload_file(
                    str(path),
                    self.bucket,
                    key,
                    ExtraArgs={"ContentType": content_type},
                )

            try:
                await asyncio.wait_for(self.ensure_bucket_exists(), timeout=self.timeout)
                await asyncio.wait_for(asyncio.to_thread(_upload), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                logger.error("Storage upload timed out for %s", path.name)
                raise UploadFailedError("Timed out while uploading file") from e
            except (BotoCoreError, ClientError) as e:
                logger.error("Storage upload failed for %s: %s", path.name, e)
                raise UploadFailedError() from e
            logger.info("Uploaded %s to s3://%s/%s", path.name, self.bucket, key)
            return f"{self.public_base_url}/{key}"
        finally:
            path.unlink(missing_ok=True)


_storage: ObjectStorage | None = None


def get_object_storage() -> ObjectStorage:
    """FastAPI dependency; one storage client wrapper per process."""
    global _storage
    if _storage is None:
        _storage = S3ObjectStorage(
            bucket=settings.s3_bucket,
            public_base_url=settings.public_storage_base_url,
            timeout=settings.external_call_timeout_seconds,
        )
    return _storage
