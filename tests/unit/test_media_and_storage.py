import httpx
import pytest
from unittest.mock import AsyncMock

from config import get_settings
from errors import ConfigError, MediaFetchError, StorageError
from services.attachments import AttachmentStore
from services.media import MediaFetcher, extension_from_mime


@pytest.mark.parametrize("mime, ext", [
    ("image/jpeg", "jpg"),
    ("audio/ogg; codecs=opus", "ogg"),
    ("application/pdf", "pdf"),
    ("application/x-unknown-thing", "bin"),
    ("", "bin"),
])
def test_extension_from_mime(mime, ext):
    assert extension_from_mime(mime) == ext


@pytest.mark.asyncio
async def test_fetch_names_file_after_media_id():
    client = AsyncMock()
    client.get_media_info.return_value = {"url": "https://lookaside.test/m1", "mime_type": "audio/ogg; codecs=opus"}
    client.download_media.return_value = b"OggS"

    fetched = await MediaFetcher(client).fetch("m1")

    client.download_media.assert_awaited_once_with("https://lookaside.test/m1")
    assert fetched.content == b"OggS"
    assert fetched.file_name == "m1.ogg"
    assert fetched.mime_type == "audio/ogg; codecs=opus"


@pytest.mark.asyncio
async def test_fetch_keeps_provided_file_name():
    client = AsyncMock()
    client.get_media_info.return_value = {"url": "https://lookaside.test/m2", "mime_type": "application/pdf"}
    client.download_media.return_value = b"%PDF"

    fetched = await MediaFetcher(client).fetch("m2", "invoice.pdf")

    assert fetched.file_name == "invoice.pdf"


@pytest.mark.asyncio
async def test_fetch_propagates_media_errors():
    client = AsyncMock()
    client.get_media_info.side_effect = MediaFetchError("expired handle")

    with pytest.raises(MediaFetchError):
        await MediaFetcher(client).fetch("m3")
    client.download_media.assert_not_awaited()


@pytest.mark.asyncio
async def test_upload_returns_public_url():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["type"] = request.headers["Content-Type"]
        seen["body"] = request.content
        return httpx.Response(200, json={"Key": "attachments/whatever"})

    store = AttachmentStore(httpx.AsyncClient(transport=httpx.MockTransport(handler)), get_settings())
    url = await store.upload(b"\xff\xd8", "my photo.jpg", "image/jpeg")

    assert seen["path"].startswith("/storage/v1/object/attachments/inbound/")
    assert seen["auth"] == "Bearer service-key"
    assert seen["type"] == "image/jpeg"
    assert seen["body"] == b"\xff\xd8"
    assert url.startswith("https://storage.test/storage/v1/object/public/attachments/inbound/")
    assert url.endswith("/my%20photo.jpg")


@pytest.mark.asyncio
async def test_upload_rejection_raises_storage_error():
    store = AttachmentStore(
        httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(413))), get_settings()
    )

    with pytest.raises(StorageError):
        await store.upload(b"x" * 10, "big.bin", "application/octet-stream")


@pytest.mark.asyncio
async def test_missing_bucket_is_config_error():
    settings = get_settings().model_copy(update={"ATTACHMENT_BUCKET": ""})
    store = AttachmentStore(httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))), settings)

    with pytest.raises(ConfigError):
        await store.upload(b"x", "a.jpg", "image/jpeg")
