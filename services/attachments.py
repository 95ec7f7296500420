"""
Attachment Store

Uploads media into a storage bucket (Supabase-storage compatible REST API)
and returns the stable public URL the dashboard renders.
"""

import uuid
import httpx
import structlog
from urllib.parse import quote

from config import get_settings, Settings
from errors import ConfigError, StorageError

logger = structlog.get_logger("attachments")


class AttachmentStore:
    def __init__(self, http: httpx.AsyncClient, settings: Settings = None):
        self.settings = settings or get_settings()
        self.http = http

    @property
    def bucket(self) -> str:
        if not self.settings.ATTACHMENT_BUCKET:
            raise ConfigError("ATTACHMENT_BUCKET is not set")
        return self.settings.ATTACHMENT_BUCKET

    def object_path(self, file_name: str) -> str:
        # Unique prefix so two customers sending "image.jpg" never collide
        return f"inbound/{uuid.uuid4().hex}/{quote(file_name)}"

    def public_url(self, path: str) -> str:
        return f"{self.settings.STORAGE_URL}/object/public/{self.bucket}/{path}"

    async def upload(self, content: bytes, file_name: str, mime_type: str) -> str:
        path = self.object_path(file_name)
        url = f"{self.settings.STORAGE_URL}/object/{self.bucket}/{path}"
        headers = {
            "Authorization": f"Bearer {self.settings.STORAGE_SERVICE_KEY}",
            "Content-Type": mime_type,
            "x-upsert": "false",
        }

        try:
            response = await self.http.post(url, content=content, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Attachment upload failed", path=path, error=str(e))
            raise StorageError(f"Attachment upload failed: {e}") from e

        if response.status_code >= 300:
            logger.error("Attachment upload rejected", path=path, status=response.status_code)
            raise StorageError(f"Attachment upload rejected: HTTP {response.status_code}")

        public = self.public_url(path)
        logger.info("Attachment stored", path=path, size=len(content))
        return public
