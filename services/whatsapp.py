"""
WhatsApp Cloud API client

Outbound send capability (text, attachment by URL, template, interactive
buttons) plus the two media retrieval calls used by the media fetcher.
Every failure surfaces as SendError / MediaFetchError, never as a raw
httpx exception.
"""

import httpx
import structlog
from typing import Any, Dict, List, Optional

from config import get_settings, Settings
from errors import ConfigError, MediaFetchError, SendError

logger = structlog.get_logger("whatsapp")

SUPPORTED_ATTACHMENT_TYPES = ("image", "video", "audio", "document")


class WhatsAppClient:
    """Thin wrapper around the Graph API /messages and /{media-id} endpoints."""

    def __init__(self, http: httpx.AsyncClient, settings: Settings = None):
        self.settings = settings or get_settings()
        self.http = http

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.WHATSAPP_ACCESS_TOKEN}",
            "Content-Type": "application/json",
        }

    def _messages_url(self) -> str:
        if not self.settings.WHATSAPP_ACCESS_TOKEN or not self.settings.WHATSAPP_PHONE_NUMBER_ID:
            raise ConfigError("WhatsApp access token / phone number id are not set")
        return f"{self.settings.graph_base_url}/{self.settings.WHATSAPP_PHONE_NUMBER_ID}/messages"

    # =========================================================================
    # SENDING
    # =========================================================================

    async def send_text(self, to: str, text: str) -> str:
        return await self._send(to, "text", {"body": text})

    async def send_attachment(
        self,
        to: str,
        url: str,
        mime_type: str,
        caption: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> str:
        kind = mime_type.split("/")[0]
        if kind not in SUPPORTED_ATTACHMENT_TYPES:
            kind = "document"

        body: Dict[str, Any] = {"link": url}
        if caption:
            body["caption"] = caption
        if kind == "document" and file_name:
            body["filename"] = file_name

        return await self._send(to, kind, body)

    async def send_template(self, to: str, name: str, language: str = "en_US") -> str:
        return await self._send(to, "template", {"name": name, "language": {"code": language}})

    async def send_interactive(self, to: str, body: str, buttons: List[Dict[str, str]]) -> str:
        interactive = {
            "type": "button",
            "body": {"text": body},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": b["id"], "title": b["title"]}}
                    for b in buttons
                ]
            },
        }
        return await self._send(to, "interactive", interactive)

    async def _send(self, to: str, kind: str, content: Dict[str, Any]) -> str:
        """POST one message; returns the provider message id."""
        url = self._messages_url()
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": kind,
            kind: content,
        }

        try:
            response = await self.http.post(url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            logger.error("WhatsApp send transport error", to=to[-4:], error=str(e))
            raise SendError(f"Transport error: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            detail = _error_message(response)
            logger.error("WhatsApp send rejected", to=to[-4:], status=response.status_code, detail=detail)
            raise SendError(f"Failed to send message: {detail}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            data = {}
        messages = data.get("messages") or [{}]
        message_id = messages[0].get("id", "")
        logger.info("WhatsApp message sent", to=to[-4:], type=kind, message_id=message_id)
        return message_id

    # =========================================================================
    # MEDIA RETRIEVAL
    # =========================================================================

    async def get_media_info(self, media_id: str) -> Dict[str, Any]:
        """Resolve a media handle to {url, mime_type}."""
        url = f"{self.settings.graph_base_url}/{media_id}"
        try:
            response = await self.http.get(url, headers=self._headers)
        except httpx.HTTPError as e:
            raise MediaFetchError(f"Media lookup failed for {media_id}: {e}") from e

        if response.status_code != 200:
            raise MediaFetchError(
                f"Media lookup failed for {media_id}: HTTP {response.status_code}"
            )

        data = response.json()
        if not data.get("url"):
            raise MediaFetchError(f"No download URL returned for media {media_id}")
        return data

    async def download_media(self, url: str) -> bytes:
        try:
            response = await self.http.get(url, headers=self._headers)
        except httpx.HTTPError as e:
            raise MediaFetchError(f"Media download failed: {e}") from e

        if response.status_code != 200:
            raise MediaFetchError(f"Media download failed: HTTP {response.status_code}")
        return response.content


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message") or response.text
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
