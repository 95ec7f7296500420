"""
WhatsApp Support Inbox - API entrypoint

    uvicorn main:app
"""

from contextlib import asynccontextmanager

import httpx
import redis.asyncio as redis
import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi_limiter import FastAPILimiter
from prometheus_client import make_asgi_app

from config import get_settings
from errors import ConfigError, ConversationConflict, InboxError, NoActiveConversation
from logger_config import configure_logger
from routers import agent, webhook

logger = structlog.get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logger()
    settings = get_settings()
    settings.require_core_secrets()

    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.APP_ENV)

    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    await FastAPILimiter.init(redis_client)

    app.state.redis = redis_client
    app.state.http = httpx.AsyncClient(timeout=settings.WHATSAPP_TIMEOUT)
    logger.info("Inbox started", env=settings.APP_ENV)

    yield

    await app.state.http.aclose()
    await redis_client.aclose()
    logger.info("Inbox stopped")


app = FastAPI(title="WhatsApp Support Inbox", lifespan=lifespan)
app.mount("/metrics", make_asgi_app())
app.include_router(webhook.router)
app.include_router(agent.router)


@app.exception_handler(ConversationConflict)
async def conversation_conflict_handler(request: Request, exc: ConversationConflict):
    return JSONResponse(status_code=409, content={"error": "Customer already has an open conversation"})


@app.exception_handler(NoActiveConversation)
async def no_active_conversation_handler(request: Request, exc: NoActiveConversation):
    return JSONResponse(status_code=404, content={"error": "No open conversation"})


@app.exception_handler(ConfigError)
async def config_error_handler(request: Request, exc: ConfigError):
    logger.error("Configuration error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(InboxError)
async def inbox_error_handler(request: Request, exc: InboxError):
    logger.error("Request failed", path=request.url.path, error_type=type(exc).__name__, error=str(exc))
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.get("/health")
async def health():
    return {"status": "ok"}
