"""Example: request a resource, download its ciphertext to a device and remove it.

Key material reaches devices through their licensing channel, so the copy made
here stays sealed. The origin is served from memory so the example runs without
network access.
"""
import tempfile
from pathlib import Path

import httpx

from offline_drm.client.client_emulator import ClientDevice, ClientEmulator
from offline_drm.config import Settings
from offline_drm.encryption import cipher
from offline_drm.errors import OfflineDRMError
from offline_drm.service import OfflineResourceService

SOURCE = "https://media.example/lectures/week-1.mp4"
BODY = b"lecture video bytes " * 4096


def origin(request: httpx.Request) -> httpx.Response:
	if str(request.url) == SOURCE:
		return httpx.Response(200, content=BODY, headers={"content-type": "video/mp4"})
	return httpx.Response(404)


def demo():
	workdir = Path(tempfile.mkdtemp(prefix="offline-drm-"))
	settings = Settings(data_dir=workdir / "server")
	http_client = httpx.Client(transport=httpx.MockTransport(origin))

	with OfflineResourceService(settings, http_client=http_client) as service:
		device = ClientDevice(device_id="phone-1", owner_id="42", library_dir=workdir / "device")
		client = ClientEmulator(service, device)

		grant = client.request(SOURCE, "Week 1 lecture")
		copy = client.download_with_token(grant.resource_id, grant.token, "Week 1 lecture")
		print("Downloaded:", copy.resource_id, copy.ciphertext_path)

		with open(copy.ciphertext_path, "rb") as fh:
			print("Container header:", cipher.read_header(fh))

		ok, message, _ = client.playback(copy.resource_id)
		print("Playback before licensing:", ok, message)

		try:
			client.download_with_token(grant.resource_id, grant.token)
		except OfflineDRMError as e:
			print("Replayed token refused:", e.to_dict())

		print("Library:", client.get_library_report())
		client.remove(copy.resource_id)
		print("Resources left:", service.list_resources("42"))

	http_client.close()


if __name__ == "__main__":
	demo()
