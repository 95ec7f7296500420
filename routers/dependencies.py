"""
Dependency Injection

Long-lived clients (Redis, httpx) live on app.state and are created in the
lifespan handler; request-scoped services are assembled per request around
the DB session.
"""

from typing import Callable
from datetime import datetime

import httpx
import redis.asyncio as redis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db
from services.attachments import AttachmentStore
from services.auto_responder import AutoResponder, utc_now
from services.conversation_service import ConversationService
from services.customer_service import CustomerService
from services.ingestion import InboundPipeline
from services.media import MediaFetcher
from services.outbound import AgentMessenger
from services.realtime import RealtimePublisher
from services.settings_service import SettingsService
from services.whatsapp import WhatsAppClient


def get_redis(request: Request) -> redis.Redis:
    return request.app.state.redis


def get_http(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def get_clock() -> Callable[[], datetime]:
    return utc_now


def get_realtime(
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
) -> RealtimePublisher:
    return RealtimePublisher(redis_client, settings.REALTIME_CHANNEL_PREFIX)


def get_whatsapp(
    http: httpx.AsyncClient = Depends(get_http),
    settings: Settings = Depends(get_settings),
) -> WhatsAppClient:
    return WhatsAppClient(http, settings)


def get_customer_service(
    db: AsyncSession = Depends(get_db),
    realtime: RealtimePublisher = Depends(get_realtime),
) -> CustomerService:
    return CustomerService(db, realtime)


def get_conversation_service(
    db: AsyncSession = Depends(get_db),
    realtime: RealtimePublisher = Depends(get_realtime),
) -> ConversationService:
    return ConversationService(db, realtime)


def get_settings_service(
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
) -> SettingsService:
    return SettingsService(db, redis_client, settings.SETTINGS_CACHE_TTL)


def get_pipeline(
    http: httpx.AsyncClient = Depends(get_http),
    customers: CustomerService = Depends(get_customer_service),
    conversations: ConversationService = Depends(get_conversation_service),
    sender: WhatsAppClient = Depends(get_whatsapp),
    settings_service: SettingsService = Depends(get_settings_service),
    clock: Callable[[], datetime] = Depends(get_clock),
    settings: Settings = Depends(get_settings),
) -> InboundPipeline:
    return InboundPipeline(
        customers=customers,
        conversations=conversations,
        auto_responder=AutoResponder(settings_service, sender, conversations, clock=clock),
        sender=sender,
        media_fetcher=MediaFetcher(sender),
        attachment_store=AttachmentStore(http, settings),
        blocked_notice=settings.BLOCKED_NOTICE_TEXT,
    )


def get_messenger(
    customers: CustomerService = Depends(get_customer_service),
    conversations: ConversationService = Depends(get_conversation_service),
    sender: WhatsAppClient = Depends(get_whatsapp),
) -> AgentMessenger:
    return AgentMessenger(customers, conversations, sender)