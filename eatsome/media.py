# eatsome/media.py
import secrets
import string
from datetime import date
from typing import Optional

import boto3
import structlog

from .config import Settings

logger = structlog.get_logger()

ALLOWED_UPLOAD_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif")

_KEY_ALPHABET = string.ascii_letters + string.digits


def random_name(length: int = 10) -> str:
    return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(length))


def upload_key(user_id: int, extension: str, today: Optional[date] = None) -> str:
    """Object key for a client-side upload: `<uid>/<YYYY-MM-DD>/<random><ext>`."""
    today = today or date.today()
    return f"{user_id}/{today.isoformat()}/{random_name()}{extension}"


class MediaStore:
    """S3-compatible bucket holding post photos and avatars."""

    def __init__(self, client, bucket: str, cdn_url: str):
        self.client = client
        self.bucket = bucket
        self.cdn_url = cdn_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "MediaStore":
        client = boto3.client(
            service_name="s3",
            endpoint_url=settings.aws_endpoint,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name="auto",
        )
        return cls(client, settings.aws_bucket, settings.cdn_url)

    def upload_bytes(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        """Store `data` under `key` and return its public URL. Blocking."""
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        logger.info("📤 Uploaded object", key=key, size=len(data))
        return self.public_url(key)

    def presigned_upload_url(self, key: str, ttl: int = 900) -> str:
        return self.client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl,
        )

    def public_url(self, key: str) -> str:
        return f"{self.cdn_url}/{key}"
