import logging
from typing import Optional

import aioboto3

from marketchat.config import get_settings


logger = logging.getLogger(__name__)


class NoopMediaStore:

    enabled = False

    async def delete_url(self, url: str) -> bool:
        return False


class S3MediaStore:
    """Deletes listing images from an S3-compatible bucket."""

    enabled = True

    def __init__(
        self,
        bucket: str,
        public_url: str,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
    ) -> None:
        self._bucket = bucket
        self._public_url = public_url.rstrip("/")
        self._endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key

    def object_key_from_url(self, url: str) -> Optional[str]:
        if not url or not self._public_url:
            return None
        prefix = f"{self._public_url}/"
        if not url.startswith(prefix):
            return None
        return url[len(prefix):].split("?", 1)[0] or None

    async def delete_url(self, url: str) -> bool:
        object_key = self.object_key_from_url(url)
        if not object_key:
            logger.warning("Not a managed media url, skipping: %s", url)
            return False
        session = aioboto3.Session()
        async with session.client(
            "s3",
            endpoint_url=self._endpoint_url,
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
        ) as s3:
            await s3.delete_object(Bucket=self._bucket, Key=object_key)
        logger.info("Deleted media object %s", object_key)
        return True


_media_store = None


def get_media_store():
    global _media_store
    if _media_store is not None:
        return _media_store
    settings = get_settings()
    if settings.MEDIA_S3_BUCKET and settings.MEDIA_PUBLIC_URL:
        _media_store = S3MediaStore(
            bucket=settings.MEDIA_S3_BUCKET,
            public_url=settings.MEDIA_PUBLIC_URL,
            endpoint_url=settings.MEDIA_S3_ENDPOINT_URL,
            access_key_id=settings.MEDIA_S3_ACCESS_KEY_ID,
            secret_access_key=settings.MEDIA_S3_SECRET_ACCESS_KEY,
        )
    else:
        _media_store = NoopMediaStore()
    return _media_store
