"""
Request authentication

- Meta webhook signature (X-Hub-Signature-256), checked when an app secret is configured
- Shared bearer token for the agent API
"""

import hashlib
import hmac
import structlog
from fastapi import Depends, Header, HTTPException, Request
from typing import Optional

from config import Settings, get_settings

logger = structlog.get_logger("security")


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


async def validate_meta_signature(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
):
    if not settings.WHATSAPP_APP_SECRET:
        return

    body = await request.body()
    expected = compute_signature(settings.WHATSAPP_APP_SECRET, body)
    if not x_hub_signature_256 or not hmac.compare_digest(expected, x_hub_signature_256):
        logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=403, detail="Invalid signature")


async def verify_api_token(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
):
    token = settings.API_SECRET_TOKEN
    if not token or not authorization or not hmac.compare_digest(authorization, f"Bearer {token}"):
        raise HTTPException(status_code=401, detail="Unauthorized")
