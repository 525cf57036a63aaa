"""Tests for the client emulator."""

import pytest
from datetime import datetime, UTC

from offline_drm.client.client_emulator import ClientDevice, ClientEmulator, OfflineCopy
from offline_drm.encryption.keys import generate_key_material

URL = "https://example.test/video1.mp4"


@pytest.fixture
def device(tmp_path):
    return ClientDevice(device_id="phone-1", owner_id="42", library_dir=tmp_path / "library")


class TestOfflineCopy:
    """Test local copy bookkeeping."""

    def test_copy_without_ciphertext_not_playable(self):
        copy = OfflineCopy("r1", "Lecture", "video", datetime.now(UTC))
        assert copy.is_playable() == (False, "Ciphertext not on device")

    def test_copy_without_key_not_playable(self, tmp_path):
        path = tmp_path / "r1.odrm"
        path.write_bytes(b"ciphertext")
        copy = OfflineCopy("r1", "Lecture", "video", datetime.now(UTC), ciphertext_path=path)
        assert copy.is_playable() == (False, "No decryption key")


class TestClientEmulator:
    """Test a device downloading and playing back copies."""

    def test_download_stores_ciphertext(self, service, device):
        client = ClientEmulator(service, device)
        copy = client.download(URL, "Intro lecture")
        assert copy.ciphertext_path.exists()
        assert copy.ciphertext_path.parent == device.library_dir
        assert copy.ciphertext_path.stat().st_size == service.registry.get(copy.resource_id).ciphertext_size_bytes

    def test_playback_with_attached_key(self, service, device, origin):
        client = ClientEmulator(service, device)
        copy = client.download(URL, "Intro lecture")
        client.attach_key(copy.resource_id, service.registry.get(copy.resource_id).key_material)

        ok, message, plaintext = client.playback(copy.resource_id)
        assert ok, message
        assert plaintext == origin.catalogue[URL][0]
        assert client.get_library_report()["total_playbacks"] == 1

    def test_playback_with_wrong_key(self, service, device):
        client = ClientEmulator(service, device)
        copy = client.download(URL, "Intro lecture")
        client.attach_key(copy.resource_id, generate_key_material())
        ok, message, plaintext = client.playback(copy.resource_id)
        assert not ok
        assert "Decryption failed" in message
        assert plaintext == b""

    def test_playback_unknown_resource(self, service, device):
        ok, message, _ = ClientEmulator(service, device).playback("nope")
        assert not ok
        assert message == "Resource not in library"

    def test_remove(self, service, device):
        client = ClientEmulator(service, device)
        copy = client.download(URL, "Intro lecture")
        assert client.remove(copy.resource_id)
        assert not copy.ciphertext_path.exists()
        assert service.list_resources("42") == []
        assert not client.remove(copy.resource_id)

    def test_report(self, service, device):
        client = ClientEmulator(service, device)
        client.download(URL, "Intro lecture")
        report = client.get_library_report()
        assert report["device_id"] == "phone-1"
        assert report["resources"] == 1
        assert report["playable"] == 0
        assert report["total_playbacks"] == 0
