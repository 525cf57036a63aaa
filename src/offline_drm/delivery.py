"""
Token-gated delivery of offline resources.

A token buys one streamed copy of a resource's ciphertext. Key material is
never released here; devices obtain it through their licensing channel.

Delivery authenticates the caller, validates the token, re-checks the bound
resource's ownership, status and expiry, and consumes the token only when
the stream goes ahead. Ownership failures are reported as "not found" so a
non-owner cannot learn whether a resource exists.

A delete or revoke that lands while a stream is in progress cuts the stream
off: the next chunk raises `Expired` instead of being sent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

from .errors import (
    AuthenticationRequired, Expired, Invalid, NotFound, NotReady, StorageFailure, UpstreamFetchFailure,
)
from .lifecycle import LifecycleManager
from .pipeline import FetchEncryptPipeline
from .registry import OfflineResource, ResourceRegistry, ResourceStatus
from .storage import CiphertextStore
from .tokens import TokenIssuer

LOGGER = logging.getLogger(__name__)


@dataclass
class ContentStream:
    """Ciphertext of one resource, read lazily from disk in fixed-size chunks."""

    resource_id: str
    media_type: str
    size_bytes: int
    chunks: Iterator[bytes]

    def __iter__(self) -> Iterator[bytes]:
        return self.chunks

    def read_all(self) -> bytes:
        return b"".join(self.chunks)


class DeliveryService:
    def __init__(
        self,
        registry: ResourceRegistry,
        store: CiphertextStore,
        issuer: TokenIssuer,
        lifecycle: LifecycleManager,
        *,
        pipeline: Optional[FetchEncryptPipeline] = None,
        chunk_size: int = 64 * 1024,
    ):
        self.registry = registry
        self.store = store
        self.issuer = issuer
        self.lifecycle = lifecycle
        self.pipeline = pipeline
        self.chunk_size = chunk_size

    def _authorize(self, token: str, caller_id: Optional[str]) -> OfflineResource:
        if not caller_id:
            raise AuthenticationRequired()
        resource_id = self.issuer.validate(token) if token else None
        if resource_id is None:
            raise Invalid()

        resource = self.registry.get(resource_id)
        if resource is None:
            raise NotFound()
        if resource.owner_id != caller_id:
            LOGGER.warning("Caller %s presented a token for a resource owned by someone else", caller_id)
            raise NotFound()

        resource = self.lifecycle.expire_if_due(resource)
        was_active = resource.status is ResourceStatus.ACTIVE
        resource = self.lifecycle.reconcile(resource)
        if resource.status is ResourceStatus.PENDING:
            if was_active and self.pipeline is not None:
                self.pipeline.dispatch(resource.id)
                raise NotReady()
            if resource.failed:
                raise UpstreamFetchFailure(detail=f"last pipeline run for {resource.id} failed: {resource.last_error}")
            raise NotReady()
        if resource.status is not ResourceStatus.ACTIVE:
            raise Expired()
        return resource

    def fetch_content(self, token: str, caller_id: Optional[str]) -> ContentStream:
        """Stream the ciphertext of the token's resource and consume the token.

        Raises:
            AuthenticationRequired, Invalid, NotFound, NotReady, Expired
            UpstreamFetchFailure: The last fetch-and-encrypt run for the resource failed
        """
        resource = self._authorize(token, caller_id)

        try:
            fh = self.store.open_read(resource.id)
        except FileNotFoundError:
            # Deleted or expired between the checks above and here.
            raise Expired()
        except OSError as e:
            raise StorageFailure(detail=f"opening ciphertext for {resource.id}: {e}") from e

        if not self.issuer.consume(token):
            fh.close()
            raise Invalid()

        self.registry.touch_accessed(resource.id)
        LOGGER.info("Delivering ciphertext of %s to %s", resource.id, caller_id)
        return ContentStream(
            resource_id=resource.id,
            media_type=resource.media_type,
            size_bytes=resource.ciphertext_size_bytes,
            chunks=self._stream(fh, resource.id),
        )

    def _stream(self, fh: BinaryIO, resource_id: str) -> Iterator[bytes]:
        chunks = self.store.iter_chunks(fh, self.chunk_size)
        try:
            for chunk in chunks:
                # The store unlinks before it overwrites, so this catches a delete before any zeroed chunk.
                if not self.store.exists(resource_id):
                    LOGGER.info("Ciphertext of %s removed during delivery; stream cut off", resource_id)
                    raise Expired(detail=f"ciphertext of {resource_id} removed mid-stream")
                yield chunk
        finally:
            chunks.close()
