"""
Media Fetcher

Turns a provider media handle into bytes:
1. GET /{media-id}  -> short-lived signed URL + declared MIME type
2. GET signed URL   -> raw bytes
"""

import mimetypes
import structlog
from dataclasses import dataclass
from typing import Optional

from errors import MediaFetchError
from services.whatsapp import WhatsAppClient

logger = structlog.get_logger("media")

# Types WhatsApp delivers where mimetypes gives an unhelpful answer
KNOWN_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/amr": "amr",
    "application/pdf": "pdf",
    "text/plain": "txt",
}


def extension_from_mime(mime_type: str) -> str:
    base = (mime_type or "").split(";")[0].strip().lower()
    if base in KNOWN_EXTENSIONS:
        return KNOWN_EXTENSIONS[base]
    guessed = mimetypes.guess_extension(base) if base else None
    if guessed:
        return guessed.lstrip(".")
    return "bin"


@dataclass
class FetchedMedia:
    content: bytes
    mime_type: str
    file_name: str


class MediaFetcher:
    def __init__(self, client: WhatsAppClient):
        self.client = client

    async def fetch(self, media_id: str, file_name: Optional[str] = None) -> FetchedMedia:
        info = await self.client.get_media_info(media_id)
        url = info.get("url")
        if not url:
            raise MediaFetchError(f"No download URL returned for media {media_id}")

        mime_type = info.get("mime_type") or "application/octet-stream"
        content = await self.client.download_media(url)

        name = file_name or f"{media_id}.{extension_from_mime(mime_type)}"
        logger.info("Media fetched", media_id=media_id, mime_type=mime_type, size=len(content))
        return FetchedMedia(content=content, mime_type=mime_type, file_name=name)
