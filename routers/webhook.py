import time
import structlog
import sentry_sdk
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi_limiter.depends import RateLimiter
from prometheus_client import Counter, Histogram
from typing import Optional

from config import Settings, get_settings
from errors import ConfigError, MediaFetchError, StorageError
from routers.dependencies import get_pipeline
from security import validate_meta_signature
from services.ingestion import InboundPipeline

router = APIRouter()
logger = structlog.get_logger("webhook")

WEBHOOK_EVENTS = Counter(
    "whatsapp_webhook_events_total",
    "Inbound webhook deliveries by outcome",
    ["outcome"],
)
WEBHOOK_LATENCY = Histogram(
    "whatsapp_webhook_processing_seconds",
    "Time spent processing an inbound delivery",
)


@router.get("/webhook/whatsapp")
async def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
):
    if not settings.WHATSAPP_VERIFY_TOKEN:
        # Surfaced as 500 by the ConfigError handler in main
        raise ConfigError("WHATSAPP_VERIFY_TOKEN is not configured")

    if hub_mode == "subscribe" and hub_verify_token == settings.WHATSAPP_VERIFY_TOKEN:
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("Webhook verification rejected", mode=hub_mode)
    return PlainTextResponse("Forbidden", status_code=403)


@router.post(
    "/webhook/whatsapp",
    dependencies=[
        Depends(validate_meta_signature),
        Depends(RateLimiter(times=get_settings().WEBHOOK_RATE_LIMIT_PER_MINUTE, minutes=1)),
    ],
)
async def whatsapp_webhook(request: Request, pipeline: InboundPipeline = Depends(get_pipeline)):
    try:
        payload = await request.json()
    except ValueError as e:
        logger.warning("Failed to parse JSON", error=str(e))
        WEBHOOK_EVENTS.labels(outcome="ignored").inc()
        return {"status": "ignored", "reason": "invalid_json"}

    started = time.perf_counter()
    try:
        result = await pipeline.process(payload)
    except (StorageError, MediaFetchError) as e:
        logger.error("Inbound processing failed", error_type=type(e).__name__, error=str(e))
        WEBHOOK_EVENTS.labels(outcome="error").inc()
        return JSONResponse(status_code=500, content={"error": str(e)})
    except Exception as e:
        logger.exception("Unexpected webhook failure")
        sentry_sdk.capture_exception(e)
        WEBHOOK_EVENTS.labels(outcome="error").inc()
        return JSONResponse(status_code=500, content={"error": "Internal error"})
    finally:
        WEBHOOK_LATENCY.observe(time.perf_counter() - started)

    WEBHOOK_EVENTS.labels(outcome=result.outcome.value).inc()
    body = {"status": result.outcome.value}
    if result.reason:
        body["reason"] = result.reason
    return body
