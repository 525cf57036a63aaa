"""
Client emulator for the offline resource service.

This module provides a device-side client that can:
- Request resources for offline use and download their ciphertext
- Attach key material issued through the device licensing channel
- Keep a local offline library of encrypted copies
- Decrypt ("play back") a local copy with its key material
- Report on library contents and playback history
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..encryption import cipher
from ..encryption.keys import KeyMaterial
from ..errors import OfflineDRMError
from ..service import OfflineResourceService


@dataclass
class ClientDevice:
    """A device belonging to one authenticated owner."""

    device_id: str
    owner_id: str
    library_dir: Path

    def ensure_library(self) -> Path:
        self.library_dir.mkdir(parents=True, exist_ok=True)
        return self.library_dir


@dataclass
class OfflineCopy:
    """An encrypted resource stored on the device."""

    resource_id: str
    title: str
    media_type: str
    downloaded_at: datetime
    ciphertext_path: Optional[Path] = None
    key_material: Optional[KeyMaterial] = None
    play_count: int = 0

    def is_playable(self) -> Tuple[bool, str]:
        """Check if the copy can be decrypted locally.

        Returns:
            Tuple of (playable, reason)
        """
        if self.ciphertext_path is None or not self.ciphertext_path.exists():
            return False, "Ciphertext not on device"
        if self.key_material is None:
            return False, "No decryption key"
        return True, "Copy playable"


class ClientEmulator:
    """Emulates an offline-capable client device talking to the service in-process."""

    def __init__(self, service: OfflineResourceService, device: ClientDevice):
        """Initialize client emulator.

        Args:
            service: Service instance the device talks to
            device: ClientDevice configuration
        """
        self.service = service
        self.device = device
        self.library: Dict[str, OfflineCopy] = {}
        self.playback_history: List[Dict[str, Any]] = []

    def request(self, source_location: str, title: str, media_type: str = "video",
                course_tag: Optional[str] = None, module_tag: Optional[str] = None,
                wait: bool = True):
        """Request a resource for offline use.

        Returns:
            ResourceGrant with the resource id and a fresh token
        """
        return self.service.request_resource(
            self.device.owner_id, source_location, media_type, title,
            course_tag, module_tag, wait=wait,
        )

    def download(self, source_location: str, title: str, media_type: str = "video") -> OfflineCopy:
        """Request a resource and store its ciphertext on the device.

        Raises:
            OfflineDRMError: If the request or the delivery is denied
        """
        grant = self.request(source_location, title, media_type)
        return self.download_with_token(grant.resource_id, grant.token, title, media_type)

    def download_with_token(self, resource_id: str, token: str, title: str = "",
                            media_type: str = "video") -> OfflineCopy:
        stream = self.service.fetch_content(token, self.device.owner_id)
        target = self.device.ensure_library() / f"{resource_id}.odrm"
        with open(target, "wb") as fout:
            for chunk in stream:
                fout.write(chunk)

        copy = self.library.get(resource_id) or OfflineCopy(
            resource_id=resource_id, title=title, media_type=media_type,
            downloaded_at=datetime.now(UTC),
        )
        copy.ciphertext_path = target
        copy.downloaded_at = datetime.now(UTC)
        self.library[resource_id] = copy
        return copy

    def attach_key(self, resource_id: str, key_material: KeyMaterial) -> None:
        """Attach key material issued through the licensing channel to a local copy."""
        self.library[resource_id].key_material = key_material

    def playback(self, resource_id: str) -> Tuple[bool, str, bytes]:
        """Decrypt a local copy.

        Returns:
            Tuple of (success, message, plaintext)
        """
        copy = self.library.get(resource_id)
        if copy is None:
            return False, "Resource not in library", b""
        playable, reason = copy.is_playable()
        if not playable:
            return False, reason, b""

        try:
            plaintext = cipher.decrypt_bytes(copy.ciphertext_path.read_bytes(), copy.key_material)
        except cipher.CorruptCiphertext as e:
            return False, f"Decryption failed: {e}", b""

        copy.play_count += 1
        self.playback_history.append({
            "resource_id": resource_id,
            "timestamp": datetime.now(UTC).isoformat(),
            "device_id": self.device.device_id,
            "success": True,
        })
        return True, "Playback successful", plaintext

    def remove(self, resource_id: str) -> bool:
        """Delete a resource on the service and drop the local copy."""
        try:
            self.service.delete_resource(resource_id, self.device.owner_id)
        except OfflineDRMError:
            return False
        copy = self.library.pop(resource_id, None)
        if copy is not None and copy.ciphertext_path is not None:
            copy.ciphertext_path.unlink(missing_ok=True)
        return True

    def get_library_report(self) -> Dict[str, Any]:
        """Get summary of client library and playback activity."""
        return {
            "device_id": self.device.device_id,
            "owner_id": self.device.owner_id,
            "resources": len(self.library),
            "playable": sum(1 for c in self.library.values() if c.is_playable()[0]),
            "total_playbacks": sum(c.play_count for c in self.library.values()),
            "playback_history": list(self.playback_history),
        }
