"""
S3 storage for chat images.

Images arrive over the chat socket as base64 (optionally as a data URL) and
are stored under chat/<conversation>/<yyyy>/<mm>/<uuid>.<ext>.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import uuid
from datetime import datetime, timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from kivendi.core.config import Settings

logger = logging.getLogger(__name__)

S3_PREFIX = "chat"

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


class StorageError(Exception):
    pass


class StorageNotConfigured(StorageError):
    pass


class InvalidImage(ValueError):
    pass


def _sniff_content_type(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "image/jpeg"


def decode_image(blob: str) -> tuple[bytes, str]:
    """Decode a base64 blob or data URL into (bytes, content_type)."""
    if not isinstance(blob, str) or not blob.strip():
        raise InvalidImage("empty image")
    content_type = None
    payload = blob.strip()
    if payload.startswith("data:"):
        header, _, payload = payload.partition(",")
        content_type = header[5:].split(";")[0] or None
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImage("image is not valid base64") from e
    if not data:
        raise InvalidImage("empty image")
    return data, content_type or _sniff_content_type(data)


class S3Storage:
    def __init__(self, bucket: str, region: str, access_key: str = "", secret_key: str = "") -> None:
        self.bucket = bucket
        self.region = region
        self._access_key = access_key
        self._secret_key = secret_key
        self._client = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3Storage":
        return cls(
            settings.aws_s3_bucket,
            settings.aws_region,
            settings.aws_access_key_id,
            settings.aws_secret_access_key,
        )

    def _get_client(self):
        if not self.bucket or not self._access_key or not self._secret_key:
            raise StorageNotConfigured("AWS credentials or bucket missing")
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=self._access_key,
                aws_secret_access_key=self._secret_key,
            )
        return self._client

    def make_key(self, conversation_id: int, content_type: str) -> str:
        now = datetime.now(timezone.utc)
        ext = _EXTENSIONS.get(content_type, "jpg")
        return f"{S3_PREFIX}/{conversation_id}/{now:%Y}/{now:%m}/{uuid.uuid4().hex}.{ext}"

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def upload_bytes(self, data: bytes, key: str, content_type: str) -> str:
        client = self._get_client()
        try:
            client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000, immutable",
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 upload of {key} failed: {e}") from e
        logger.info("Uploaded %s (%s bytes)", key, len(data))
        return self.public_url(key)

    async def upload_chat_image(self, conversation_id: int, blob: str) -> str:
        data, content_type = decode_image(blob)
        key = self.make_key(conversation_id, content_type)
        return await asyncio.to_thread(self.upload_bytes, data, key, content_type)
