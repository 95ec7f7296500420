import os

# Settings are cached on first import; pin a deterministic environment
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["WHATSAPP_GRAPH_URL"] = "https://graph.test"
os.environ["WHATSAPP_API_VERSION"] = "v20.0"
os.environ["WHATSAPP_ACCESS_TOKEN"] = "test-access-token"
os.environ["WHATSAPP_PHONE_NUMBER_ID"] = "1234567890"
os.environ["WHATSAPP_VERIFY_TOKEN"] = "verify-me"
os.environ["STORAGE_URL"] = "https://storage.test/storage/v1"
os.environ["STORAGE_SERVICE_KEY"] = "service-key"
os.environ["ATTACHMENT_BUCKET"] = "attachments"
os.environ["API_SECRET_TOKEN"] = "agent-secret"

import httpx
import orjson
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from httpx import AsyncClient, ASGITransport
from fastapi_limiter import FastAPILimiter

from database import build_engine, build_session_factory, get_db, init_db
from main import app
from routers.dependencies import get_clock
from services.auto_responder import AutoResponder
from services.conversation_service import ConversationService
from services.customer_service import CustomerService
from services.ingestion import InboundPipeline
from services.realtime import RealtimePublisher
from services.settings_service import SettingsService
from services.whatsapp import WhatsAppClient

from factories import TUESDAY_10AM


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.published = []

    async def get(self, key): return self.data.get(key)
    async def set(self, key, value, *args, **kwargs): self.data[key] = value; return True
    async def setex(self, key, time, value): self.data[key] = value; return True
    async def delete(self, key):
        if key in self.data: del self.data[key]
        return 1

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    # Rate limiter
    async def eval(self, *args, **kwargs): return 0
    async def evalsha(self, *args, **kwargs): return 0
    async def script_load(self, script): return "dummy_sha"

    async def close(self): pass
    async def aclose(self): pass


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def realtime(redis_client):
    return RealtimePublisher(redis_client, "inbox")


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'inbox.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def customers(db_session, realtime):
    return CustomerService(db_session, realtime)


@pytest.fixture
def conversations(db_session, realtime):
    return ConversationService(db_session, realtime)


@pytest.fixture
def whatsapp():
    sender = AsyncMock(spec=WhatsAppClient)
    sender.send_text.return_value = "wamid.out.text"
    sender.send_template.return_value = "wamid.out.template"
    sender.send_interactive.return_value = "wamid.out.interactive"
    sender.send_attachment.return_value = "wamid.out.attachment"
    return sender


@pytest.fixture
def media_fetcher():
    return AsyncMock()


@pytest.fixture
def attachment_store():
    store = AsyncMock()
    store.upload.return_value = "https://storage.test/storage/v1/object/public/attachments/inbound/x/photo.jpg"
    return store


@pytest.fixture
def build_pipeline(db_session, redis_client, customers, conversations, whatsapp, media_fetcher, attachment_store):
    """Pipeline factory; the clock decides which side of business hours we are on."""
    def _build(clock=lambda: TUESDAY_10AM):
        settings_service = SettingsService(db_session, redis_client, ttl=60)
        return InboundPipeline(
            customers=customers,
            conversations=conversations,
            auto_responder=AutoResponder(settings_service, whatsapp, conversations, clock=clock),
            sender=whatsapp,
            media_fetcher=media_fetcher,
            attachment_store=attachment_store,
            blocked_notice="You are blocked.",
        )
    return _build


class FakeProvider:
    """
    Stands in for graph.facebook.com, the media CDN and the storage API
    behind an httpx.MockTransport. Put a route name in `failing` to make
    it return an error.
    """

    def __init__(self):
        self.requests = []
        self.failing = set()

    def _route(self, request: httpx.Request) -> str:
        if request.url.host == "storage.test":
            return "upload"
        if request.url.host == "lookaside.test":
            return "download"
        if request.url.path.endswith("/messages"):
            return "send"
        return "media"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        route = self._route(request)
        self.requests.append((route, request))

        if route in self.failing:
            return httpx.Response(500, json={"error": {"message": f"{route} unavailable"}})
        if route == "send":
            return httpx.Response(200, json={"messages": [{"id": f"wamid.out.{len(self.requests)}"}]})
        if route == "media":
            media_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"url": f"https://lookaside.test/{media_id}", "mime_type": "image/jpeg"})
        if route == "download":
            return httpx.Response(200, content=b"\xff\xd8fake-jpeg")
        return httpx.Response(200, json={"Key": request.url.path})

    def sent(self):
        return [orjson.loads(r.content) for route, r in self.requests if route == "send"]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest_asyncio.fixture
async def async_client(redis_client, session_factory, provider):
    async def override_db():
        async with session_factory() as session:
            yield session

    http = httpx.AsyncClient(transport=httpx.MockTransport(provider))

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_clock] = lambda: (lambda: TUESDAY_10AM)

    await FastAPILimiter.init(redis_client)

    app.state.redis = redis_client
    app.state.http = http

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await http.aclose()
    app.dependency_overrides = {}


@pytest.fixture
def api_headers():
    return {"Authorization": "Bearer agent-secret"}
