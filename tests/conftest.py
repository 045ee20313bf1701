from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config import Settings
from main import create_app


TRUSTED_DOMAIN = "example-cdn.com"


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "DATA_DIR": str(tmp_path / "data"),
        "CONVERT_TMP_DIR": str(tmp_path / "convert"),
        "TRUSTED_MEDIA_DOMAIN": TRUSTED_DOMAIN,
        "CONVERTER_CANDIDATES": [str(tmp_path / "no-such-soffice")],
        "STORAGE_BACKEND": "local",
        "CLOUDINARY_CLOUD_NAME": "",
        "CLOUDINARY_API_KEY": "",
        "CLOUDINARY_API_SECRET": "",
    }
    values.update(overrides)
    return Settings(**values)


class FakeUpstream:
    """Records every outbound request and answers with ``responder``."""

    def __init__(self):
        self.calls = []
        self.responder = lambda request: httpx.Response(404)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return self.responder(request)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest_asyncio.fixture
async def make_client(tmp_path, upstream):
    opened = []

    async def _make(media_host=None, **overrides):
        settings = make_settings(tmp_path, **overrides)
        upstream_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handle))
        app = create_app(settings, media_host=media_host, http_client=upstream_client)
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        opened.append((client, upstream_client))
        return client

    yield _make

    for client, upstream_client in opened:
        await client.aclose()
        await upstream_client.aclose()


@pytest_asyncio.fixture
async def client(make_client):
    return await make_client()
