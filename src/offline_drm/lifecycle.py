"""
Resource lifecycle: expiry, revocation, deletion and housekeeping.

    pending --(pipeline commit)--> active --(now > expires_at)--> expired
       \\______________________________\\_______________________--> revoked (terminal)

Any state can be followed by deletion, which removes the ciphertext first and
the registry row second. A crash between the two leaves a row without a
blob; `reconcile()` repairs that on the next access.

Ciphertext exists only while a resource is active, so every transition out of
`active` removes the blob.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from .errors import NotFound
from .registry import OfflineResource, ResourceRegistry, ResourceStatus
from .storage import CiphertextStore
from .tokens import TokenIssuer
from .utils.clock import Clock, utc_now
from .utils.locks import KeyedLocks

LOGGER = logging.getLogger(__name__)

_EXPIRABLE = (ResourceStatus.PENDING, ResourceStatus.ACTIVE)


@dataclass
class SweepReport:
    expired_resources: int = 0
    reconciled_resources: int = 0
    expired_tokens: int = 0
    orphaned_blobs: int = 0

    def to_dict(self):
        return {
            "expiredResources": self.expired_resources,
            "reconciledResources": self.reconciled_resources,
            "expiredTokens": self.expired_tokens,
            "orphanedBlobs": self.orphaned_blobs,
        }


class LifecycleManager:
    def __init__(
        self,
        registry: ResourceRegistry,
        store: CiphertextStore,
        issuer: TokenIssuer,
        *,
        state_locks: Optional[KeyedLocks] = None,
        clock: Clock = utc_now,
    ):
        self.registry = registry
        self.store = store
        self.issuer = issuer
        self.state_locks = state_locks or KeyedLocks()
        self.clock = clock

    def expire_if_due(self, resource: OfflineResource) -> OfflineResource:
        """Move a pending/active resource past its expiry to `expired`.

        Returns the resource as it is after the check (unchanged if not due).
        """
        if resource.status not in _EXPIRABLE or not resource.is_past_expiry(self.clock()):
            return resource
        with self.state_locks.hold(resource.id):
            current = self.registry.get(resource.id)
            if current is None:
                return resource
            if current.status in _EXPIRABLE and current.is_past_expiry(self.clock()):
                self.store.delete(current.id)
                self.registry.set_status(current.id, ResourceStatus.EXPIRED)
                self.issuer.revoke_for_resource(current.id)
                LOGGER.info("Resource %s expired (expires_at %s)", current.id, current.expires_at.isoformat())
                current = self.registry.get(current.id) or current
        return current

    def reconcile(self, resource: OfflineResource) -> OfflineResource:
        """Repair an active row whose ciphertext is missing by resetting it to pending."""
        if resource.status is not ResourceStatus.ACTIVE or self.store.exists(resource.id):
            return resource
        with self.state_locks.hold(resource.id):
            current = self.registry.get(resource.id)
            if current is None or current.status is not ResourceStatus.ACTIVE or self.store.exists(current.id):
                return current or resource
            LOGGER.warning("Resource %s is active but its ciphertext is missing; resetting to pending", current.id)
            self.registry.set_status(current.id, ResourceStatus.PENDING)
            return self.registry.get(current.id) or current

    def renew(self, resource: OfflineResource) -> OfflineResource:
        """Put an expired resource back to pending so the pipeline re-fetches it."""
        with self.state_locks.hold(resource.id):
            if self.registry.renew(resource.id):
                LOGGER.info("Resource %s renewed", resource.id)
            return self.registry.get(resource.id) or resource

    def revoke(self, resource_id: str) -> OfflineResource:
        """Revoke a resource from any state. Idempotent; revocation is terminal.

        Raises:
            NotFound: No such resource
        """
        with self.state_locks.hold(resource_id):
            resource = self.registry.get(resource_id)
            if resource is None:
                raise NotFound()
            if resource.status is not ResourceStatus.REVOKED:
                self.store.delete(resource_id)
                self.registry.set_status(resource_id, ResourceStatus.REVOKED)
                LOGGER.info("Resource %s revoked (was %s)", resource_id, resource.status.value)
            self.issuer.revoke_for_resource(resource_id)
            return self.registry.get(resource_id)

    def delete(self, resource_id: str, requester_id: str) -> None:
        """Delete a resource owned by `requester_id`: ciphertext first, then the row.

        Raises:
            NotFound: No such resource
            Forbidden: The requester is not the owner
        """
        self.registry.get_for_owner(resource_id, requester_id)
        with self.state_locks.hold(resource_id):
            self.issuer.revoke_for_resource(resource_id)
            self.store.delete(resource_id)
            self.registry.delete(resource_id)
        LOGGER.info("Resource %s deleted by owner %s", resource_id, requester_id)

    def sweep(self) -> SweepReport:
        """Expire due resources, repair missing blobs, evict tokens and remove orphaned blobs."""
        report = SweepReport()
        for resource in self.registry.list_all(_EXPIRABLE):
            after = self.expire_if_due(resource)
            if after.status is ResourceStatus.EXPIRED:
                report.expired_resources += 1
                continue
            if self.reconcile(after).status is not after.status:
                report.reconciled_resources += 1

        report.expired_tokens = self.issuer.sweep()

        for blob_id in self.store.list_ids():
            with self.state_locks.hold(blob_id):
                owner = self.registry.get(blob_id)
                if owner is None or owner.status is not ResourceStatus.ACTIVE:
                    self.store.delete(blob_id)
                    report.orphaned_blobs += 1
                    LOGGER.warning("Removed orphaned ciphertext blob %s", blob_id)

        if report.expired_resources or report.orphaned_blobs or report.reconciled_resources:
            LOGGER.info("Sweep: %s", report.to_dict())
        return report


class Sweeper:
    """Runs `LifecycleManager.sweep()` on a daemon thread every `interval` seconds."""

    def __init__(self, lifecycle: LifecycleManager, interval: float = 300.0):
        self.lifecycle = lifecycle
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="offline-drm-sweeper", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.lifecycle.sweep()
            except Exception:
                LOGGER.exception("Lifecycle sweep failed")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self) -> "Sweeper":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
