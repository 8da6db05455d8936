from __future__ import annotations
from typing import Optional
from io import BytesIO
from datetime import timedelta
import asyncio
import base64
import logging
import re
import threading

from minio import Minio

from config.settings import Settings

logger = logging.getLogger(__name__)

_DATAURL_RE = re.compile(r"^data:(?P<mime>[^;]+);base64,(?P<b64>.+)$", re.IGNORECASE | re.DOTALL)


def decode_data_url(data: str) -> tuple[bytes, str]:
    """Return (bytes, content type) for a data URL or raw base64 JPEG."""
    m = _DATAURL_RE.match(data.strip())
    if m:
        mime, b64 = m.group("mime"), m.group("b64")
    else:
        mime, b64 = "image/jpeg", data.strip()
    return base64.b64decode(b64, validate=False), mime


class QueryImageArchive:
    """
    Best-effort copy of query images into MinIO.

    Failures are logged and reported as ``None``; they never block a search.
    """

    def __init__(self, settings: Settings, client: Minio | None = None):
        self.settings = settings
        self.bucket = settings.MINIO_BUCKET_QUERIES
        self._client = client
        self._client_lock = threading.Lock()
        self._bucket_ready = False

    def _get_client(self) -> Minio:
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                self._client = Minio(
                    self.settings.minio_endpoint,
                    access_key=self.settings.MINIO_ACCESS_KEY,
                    secret_key=self.settings.MINIO_SECRET_KEY,
                    secure=self.settings.MINIO_SECURE,
                )
            return self._client

    def _ensure_bucket(self, c: Minio) -> None:
        if self._bucket_ready:
            return
        if not c.bucket_exists(self.bucket):
            c.make_bucket(self.bucket)
        self._bucket_ready = True

    def url_for(self, key: str) -> str:
        """Public URL when an external endpoint is configured, presigned otherwise."""
        external = self.settings.MINIO_EXTERNAL_ENDPOINT
        if external:
            scheme = "https" if self.settings.MINIO_SECURE else "http"
            return f"{scheme}://{external}/{self.bucket}/{key}"
        return self._get_client().presigned_get_object(
            self.bucket,
            key,
            expires=timedelta(seconds=self.settings.PRESIGN_TTL_SEC),
        )

    def put_image(self, image_data: str, key: str) -> str:
        data, content_type = decode_data_url(image_data)
        c = self._get_client()
        self._ensure_bucket(c)
        c.put_object(self.bucket, key, data=BytesIO(data), length=len(data), content_type=content_type)
        return self.url_for(key)

    async def archive(self, image_data: Optional[str], key: str) -> Optional[str]:
        if not image_data:
            return None
        try:
            return await asyncio.to_thread(self.put_image, image_data, key)
        except Exception as e:
            logger.warning(f"Failed to archive query image {key}: {e}")
            return None
