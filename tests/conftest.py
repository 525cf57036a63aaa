"""
Pytest fixtures shared by the unit and integration suites.

The origin server is replaced by an `httpx.MockTransport` serving a small
in-memory catalogue, and time is driven by a `FrozenClock`.
"""

from datetime import datetime, UTC

import httpx
import pytest

from offline_drm.config import Settings
from offline_drm.service import OfflineResourceService
from offline_drm.utils.clock import FrozenClock


VIDEO_URL = "https://example.test/video1.mp4"
VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42" + bytes(range(256)) * 40


class Origin:
    """In-memory origin server with a request log."""

    def __init__(self):
        self.catalogue = {VIDEO_URL: (VIDEO_BYTES, "video/mp4")}
        self.requests = []

    def add(self, url, body, content_type="application/octet-stream"):
        self.catalogue[url] = (body, content_type)

    def respond_with(self, url, handler):
        """Serve `url` from a custom handler (slow or broken bodies)."""
        self.catalogue[url] = handler

    def hits(self, url):
        return sum(1 for u in self.requests if u == url)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url not in self.catalogue:
            return httpx.Response(404, text="not found")
        entry = self.catalogue[url]
        if callable(entry):
            return entry(request)
        body, content_type = entry
        return httpx.Response(200, content=body, headers={"content-type": content_type})


@pytest.fixture
def origin():
    return Origin()


@pytest.fixture
def http_client(origin):
    client = httpx.Client(transport=httpx.MockTransport(origin))
    yield client
    client.close()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path / "data", chunk_size=1024, max_workers=2)


@pytest.fixture
def make_service(tmp_path, http_client, clock):
    """Factory building services over the mock origin. All are closed at teardown."""
    services = []

    def _make(**overrides):
        base = Settings(data_dir=tmp_path / "data", chunk_size=1024, max_workers=2)
        service = OfflineResourceService(base.with_overrides(**overrides), http_client=http_client, clock=clock)
        services.append(service)
        return service

    yield _make
    for service in services:
        service.close()


@pytest.fixture
def service(make_service):
    return make_service()

