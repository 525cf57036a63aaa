"""
Fetch-and-encrypt pipeline.

Turns a pending resource into committed ciphertext:

    1. Open a streaming GET to the origin (fail fast on non-2xx).
    2. Generate fresh key material for this resource.
    3. Stream-encrypt into a staged blob keyed by resource id.
    4. Under the per-id state lock, re-read the registry. If the resource is
       still pending, move the blob into place and mark it active; otherwise
       (deleted or revoked meanwhile) drop the result.
    5. On failure, discard the staged blob, leave the resource pending and
       record the error code on it. The next dispatch clears the mark.

Runs for the same id are serialized; a run for an already active resource
does nothing. `dispatch()` runs the pipeline on a worker thread so the
request that triggered it is not blocked by the origin fetch.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_for
from datetime import timedelta
from typing import Dict, Optional

from .encryption import cipher
from .encryption.keys import generate_key_material
from .errors import EncryptionFailure, OfflineDRMError, StorageFailure
from .fetcher import OriginFetcher
from .registry import OfflineResource, ResourceRegistry, ResourceStatus
from .storage import CiphertextStore
from .utils.locks import KeyedLocks

LOGGER = logging.getLogger(__name__)


class FetchEncryptPipeline:
    def __init__(
        self,
        registry: ResourceRegistry,
        store: CiphertextStore,
        fetcher: OriginFetcher,
        *,
        state_locks: Optional[KeyedLocks] = None,
        resource_ttl: timedelta = timedelta(days=7),
        chunk_size: int = 64 * 1024,
        max_workers: int = 4,
    ):
        self.registry = registry
        self.store = store
        self.fetcher = fetcher
        self.state_locks = state_locks or KeyedLocks()
        self.resource_ttl = resource_ttl
        self.chunk_size = chunk_size
        self._run_locks = KeyedLocks()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="offline-drm-pipeline")
        self._inflight: Dict[str, Future] = {}
        self._inflight_guard = threading.Lock()

    def run(self, resource_id: str) -> Optional[OfflineResource]:
        """Fetch, encrypt and commit one resource.

        Returns:
            The resource after the run (None if it no longer exists)

        Raises:
            UpstreamFetchFailure, EncryptionFailure, StorageFailure
        """
        with self._run_locks.hold(resource_id):
            resource = self.registry.get(resource_id)
            if resource is None:
                LOGGER.info("Pipeline skipped %s: resource no longer exists", resource_id)
                return None
            if resource.status is not ResourceStatus.PENDING:
                LOGGER.debug("Pipeline skipped %s: status is %s", resource_id, resource.status.value)
                return resource

            try:
                return self._fetch_and_commit(resource)
            except OfflineDRMError as e:
                LOGGER.warning("Pipeline failed for %s: %s", resource_id, e.detail or e.message)
                self._record_failure(resource_id, e)
                raise
            except Exception as e:
                LOGGER.exception("Pipeline crashed for %s", resource_id)
                failure = EncryptionFailure(detail=f"{type(e).__name__}: {e}")
                self._record_failure(resource_id, failure)
                raise failure from e

    def _record_failure(self, resource_id: str, error: OfflineDRMError) -> None:
        try:
            self.registry.record_failure(resource_id, error.code)
        except StorageFailure as e:
            LOGGER.error("Could not record pipeline failure for %s: %s", resource_id, e.detail)

    def _fetch_and_commit(self, resource: OfflineResource) -> Optional[OfflineResource]:
        key_material = generate_key_material()
        plaintext_size = 0

        with self.fetcher.open(resource.source_location) as origin, self.store.stage(resource.id) as staged:
            def counted():
                nonlocal plaintext_size
                for piece in origin.iter_bytes():
                    plaintext_size += len(piece)
                    yield piece

            metadata = {"content_type": origin.content_type or resource.media_type}
            for frame in cipher.encrypt_iter(counted(), key_material, resource.id, self.chunk_size, metadata):
                staged.write(frame)

            return self._commit(resource, staged, key_material, plaintext_size)

    def _commit(self, resource, staged, key_material, plaintext_size) -> Optional[OfflineResource]:
        with self.state_locks.hold(resource.id):
            current = self.registry.get(resource.id)
            if current is None or current.status is not ResourceStatus.PENDING:
                LOGGER.info(
                    "Discarding ciphertext for %s: resource is %s",
                    resource.id,
                    "deleted" if current is None else current.status.value,
                )
                return current

            staged.commit()
            expires_at = current.created_at + self.resource_ttl
            try:
                committed = self.registry.set_key_material(
                    resource.id,
                    key_material,
                    staged.bytes_written,
                    plaintext_size_bytes=plaintext_size,
                    expires_at=expires_at,
                )
            except Exception:
                self.store.delete(resource.id)
                raise
            if not committed:
                self.store.delete(resource.id)
                raise StorageFailure(detail=f"registry refused commit for {resource.id}")

        LOGGER.info(
            "Resource %s active: %d plaintext bytes, %d ciphertext bytes",
            resource.id, plaintext_size, staged.bytes_written,
        )
        return self.registry.get(resource.id)

    def dispatch(self, resource_id: str) -> Future:
        """Run the pipeline on a worker. Returns the in-flight future if one exists."""
        with self._inflight_guard:
            future = self._inflight.get(resource_id)
            if future is not None and not future.done():
                return future
            self.registry.clear_failure(resource_id)
            future = self._executor.submit(self.run, resource_id)
            self._inflight[resource_id] = future
        future.add_done_callback(lambda f, rid=resource_id: self._forget(rid, f))
        return future

    def _forget(self, resource_id: str, future: Future) -> None:
        with self._inflight_guard:
            if self._inflight.get(resource_id) is future:
                del self._inflight[resource_id]
        if not future.cancelled() and future.exception() is not None:
            # Logged and recorded inside run(); a later request dispatches a new run.
            LOGGER.debug("Background pipeline run for %s ended with an error", resource_id)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until the runs in flight right now have finished. Failures stay on their futures."""
        with self._inflight_guard:
            running = list(self._inflight.values())
        wait_for(running, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
