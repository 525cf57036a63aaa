"""Tests for token-gated ciphertext delivery."""

import threading
from datetime import timedelta

import httpx
import pytest

from offline_drm.encryption import cipher
from offline_drm.errors import (
    AuthenticationRequired, Expired, Invalid, NotFound, NotReady, UpstreamFetchFailure,
)
from offline_drm.registry import ResourceStatus

URL = "https://example.test/video1.mp4"
MISSING = "https://example.test/missing.mp4"


def _ready(service, owner="42"):
    grant = service.request_resource(owner, URL, "video", "Lecture 1", wait=True)
    return grant.resource_id, grant.token


class TestFetchContent:
    """Test ciphertext delivery."""

    def test_fetch_content_streams_ciphertext(self, service, origin):
        resource_id, token = _ready(service)
        stream = service.fetch_content(token, "42")
        blob = stream.read_all()
        assert stream.resource_id == resource_id
        assert stream.size_bytes == len(blob)
        key_material = service.registry.get(resource_id).key_material
        assert cipher.decrypt_bytes(blob, key_material) == origin.catalogue[URL][0]

    def test_stream_is_chunked(self, service):
        _, token = _ready(service)
        chunks = list(service.fetch_content(token, "42"))
        assert len(chunks) > 1
        assert all(len(c) <= service.settings.chunk_size for c in chunks)

    def test_token_is_single_use(self, service):
        _, token = _ready(service)
        service.fetch_content(token, "42").read_all()
        with pytest.raises(Invalid):
            service.fetch_content(token, "42")

    def test_unknown_token(self, service):
        with pytest.raises(Invalid):
            service.fetch_content("not-a-token", "42")

    def test_missing_identity(self, service):
        _, token = _ready(service)
        with pytest.raises(AuthenticationRequired):
            service.fetch_content(token, None)

    def test_other_owner_is_denied_and_token_survives(self, service):
        _, token = _ready(service)
        with pytest.raises(NotFound):
            service.fetch_content(token, "43")
        assert service.fetch_content(token, "42").read_all()

    def test_updates_last_accessed(self, service, clock):
        resource_id, token = _ready(service)
        clock.advance(timedelta(minutes=5))
        service.fetch_content(token, "42").read_all()
        assert service.registry.get(resource_id).last_accessed_at == clock.now

    def test_key_material_is_not_released(self, service):
        """Delivery only ever hands out ciphertext."""
        assert not hasattr(service, "fetch_decryption_key")
        assert not hasattr(service.delivery, "fetch_decryption_key")


class TestNotYetDeliverable:
    """Test pending resources, with and without a failed pipeline run."""

    def test_in_flight_resource_not_ready(self, service, origin):
        release = threading.Event()

        class Slow(httpx.SyncByteStream):
            def __iter__(self):
                release.wait(5)
                yield b"late bytes"

        origin.respond_with(URL, lambda request: httpx.Response(200, stream=Slow()))
        grant = service.request_resource("42", URL, "video", "Lecture 1")
        try:
            with pytest.raises(NotReady):
                service.fetch_content(grant.token, "42")
        finally:
            release.set()
        grant.pipeline.result(5)
        # Not consumed: the caller may retry once the content is ready.
        assert service.fetch_content(grant.token, "42").read_all()

    def test_failed_run_is_reported(self, service):
        grant = service.request_resource("42", MISSING, "video", "Missing")
        grant.pipeline.exception(5)

        with pytest.raises(UpstreamFetchFailure) as excinfo:
            service.fetch_content(grant.token, "42")
        assert excinfo.value.to_dict() == {
            "code": "resource_unavailable",
            "message": "Failed to download or encrypt resource",
        }
        assert service.registry.get(grant.resource_id).last_error == "resource_unavailable"
        # The token is kept for a retry after a re-request.
        assert service.issuer.validate(grant.token) == grant.resource_id

    def test_re_request_after_failure_recovers(self, service, origin):
        grant = service.request_resource("42", MISSING, "video", "Missing")
        grant.pipeline.exception(5)

        origin.add(MISSING, b"now it exists")
        again = service.request_resource("42", MISSING, "video", "Missing", wait=True)
        assert again.resource_id == grant.resource_id
        assert again.status is ResourceStatus.ACTIVE
        assert service.registry.get(grant.resource_id).last_error is None
        assert service.fetch_content(grant.token, "42").read_all()


class TestExpiryPrecedence:
    """Test that expiry wins over an otherwise valid token."""

    def test_valid_token_on_expired_resource(self, make_service, clock):
        service = make_service(resource_ttl=timedelta(hours=1), token_ttl=timedelta(hours=2))
        resource_id, token = _ready(service)
        clock.advance(timedelta(hours=1, seconds=1))

        with pytest.raises(Expired):
            service.fetch_content(token, "42")
        assert service.registry.get(resource_id).status is ResourceStatus.EXPIRED
        assert not service.store.exists(resource_id)

    def test_revoked_resource(self, service):
        resource_id, token = _ready(service)
        service.revoke_resource(resource_id)
        with pytest.raises(Invalid):
            service.fetch_content(token, "42")


class TestMissingCiphertext:
    """Test an active resource whose blob has gone missing."""

    def test_missing_blob_is_refetched(self, service, origin):
        resource_id, token = _ready(service)
        service.store.delete(resource_id)

        with pytest.raises(NotReady):
            service.fetch_content(token, "42")
        service.pipeline.drain(5)

        resource = service.registry.get(resource_id)
        assert resource.status is ResourceStatus.ACTIVE
        assert service.store.exists(resource_id)
        assert origin.hits(URL) == 2
        blob = service.fetch_content(token, "42").read_all()
        assert cipher.decrypt_bytes(blob, resource.key_material) == origin.catalogue[URL][0]


class TestStreamCutOff:
    """Test a delete that lands while a download is in progress."""

    def test_delete_mid_stream_stops_delivery(self, service):
        resource_id, token = _ready(service)
        key_material = service.registry.get(resource_id).key_material
        stream = service.fetch_content(token, "42")

        received = [next(stream.chunks)]
        service.delete_resource(resource_id, "42")
        with pytest.raises(Expired):
            for chunk in stream.chunks:
                received.append(chunk)

        assert len(received) == 1
        with pytest.raises(cipher.CorruptCiphertext):
            cipher.decrypt_bytes(b"".join(received), key_material)
