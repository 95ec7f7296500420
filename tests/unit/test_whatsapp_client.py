import json

import httpx
import pytest

from config import get_settings
from errors import ConfigError, MediaFetchError, SendError
from services.whatsapp import WhatsAppClient

MESSAGES_URL = "https://graph.test/v20.0/1234567890/messages"


def _client(handler, settings=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WhatsAppClient(http, settings or get_settings())


@pytest.mark.asyncio
async def test_send_text_posts_cloud_api_payload():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.sent"}]})

    message_id = await _client(handler).send_text("385911234567", "Hello")

    assert message_id == "wamid.sent"
    assert seen["url"] == MESSAGES_URL
    assert seen["auth"] == "Bearer test-access-token"
    assert seen["body"] == {
        "messaging_product": "whatsapp",
        "to": "385911234567",
        "type": "text",
        "text": {"body": "Hello"},
    }


@pytest.mark.asyncio
async def test_send_attachment_maps_mime_to_kind():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"messages": [{"id": "wamid.x"}]})

    client = _client(handler)
    await client.send_attachment("385911234567", "https://cdn/x.jpg", "image/jpeg", caption="look")
    await client.send_attachment("385911234567", "https://cdn/x.pdf", "application/pdf", file_name="x.pdf")

    assert bodies[0]["type"] == "image"
    assert bodies[0]["image"] == {"link": "https://cdn/x.jpg", "caption": "look"}
    assert bodies[1]["type"] == "document"
    assert bodies[1]["document"] == {"link": "https://cdn/x.pdf", "filename": "x.pdf"}


@pytest.mark.asyncio
async def test_send_template_and_interactive_shapes():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"messages": [{"id": "wamid.x"}]})

    client = _client(handler)
    await client.send_template("385911234567", "hello_world", "hr")
    await client.send_interactive("385911234567", "Pick one", [{"id": "b1", "title": "Prices"}])

    assert bodies[0]["template"] == {"name": "hello_world", "language": {"code": "hr"}}
    assert bodies[1]["interactive"]["type"] == "button"
    assert bodies[1]["interactive"]["action"]["buttons"] == [
        {"type": "reply", "reply": {"id": "b1", "title": "Prices"}}
    ]


@pytest.mark.asyncio
async def test_provider_rejection_raises_send_error():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "Recipient not in allowed list"}})

    with pytest.raises(SendError) as exc:
        await _client(handler).send_text("385911234567", "Hello")

    assert exc.value.status_code == 400
    assert "Recipient not in allowed list" in str(exc.value)


@pytest.mark.asyncio
async def test_transport_failure_raises_send_error():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(SendError):
        await _client(handler).send_text("385911234567", "Hello")


@pytest.mark.asyncio
async def test_missing_credentials_raise_config_error():
    settings = get_settings().model_copy(update={"WHATSAPP_ACCESS_TOKEN": ""})

    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ConfigError):
        await _client(handler, settings).send_text("385911234567", "Hello")


@pytest.mark.asyncio
async def test_media_lookup_and_download():
    def handler(request):
        if request.url.path == "/v20.0/media-1":
            return httpx.Response(200, json={"url": "https://lookaside.test/media-1", "mime_type": "image/jpeg"})
        assert str(request.url) == "https://lookaside.test/media-1"
        assert request.headers["Authorization"] == "Bearer test-access-token"
        return httpx.Response(200, content=b"\xff\xd8jpeg")

    client = _client(handler)
    info = await client.get_media_info("media-1")
    content = await client.download_media(info["url"])

    assert info["mime_type"] == "image/jpeg"
    assert content == b"\xff\xd8jpeg"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(404, json={"error": {"message": "not found"}}),
    httpx.Response(200, json={"id": "media-1"}),
])
async def test_media_lookup_failures(response):
    client = _client(lambda request: response)

    with pytest.raises(MediaFetchError):
        await client.get_media_info("media-1")


@pytest.mark.asyncio
async def test_media_download_failure():
    client = _client(lambda request: httpx.Response(403))

    with pytest.raises(MediaFetchError):
        await client.download_media("https://lookaside.test/media-1")
