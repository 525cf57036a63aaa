from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import httpx

from .errors import UpstreamFetchFailure

LOGGER = logging.getLogger(__name__)


@dataclass
class OriginResponse:
    """An open streaming response from the origin."""

    url: str
    content_type: Optional[str]
    content_length: Optional[int]
    _response: httpx.Response
    _chunk_size: int
    _max_bytes: Optional[int]

    def iter_bytes(self) -> Iterator[bytes]:
        received = 0
        try:
            for piece in self._response.iter_bytes(self._chunk_size):
                received += len(piece)
                if self._max_bytes is not None and received > self._max_bytes:
                    raise UpstreamFetchFailure(
                        detail=f"origin body exceeds {self._max_bytes} bytes: {self.url}"
                    )
                yield piece
        except httpx.HTTPError as e:
            raise UpstreamFetchFailure(detail=f"reading origin body from {self.url}: {e}") from e


class OriginFetcher:
    """Streams resource content from its origin over HTTP(S)."""

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        *,
        timeout: float = 30.0,
        chunk_size: int = 64 * 1024,
        max_bytes: Optional[int] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self.chunk_size = chunk_size
        self.max_bytes = max_bytes

    @contextmanager
    def open(self, url: str) -> Iterator[OriginResponse]:
        """Open a streaming GET to `url`, failing fast on a non-2xx status.

        Raises:
            UpstreamFetchFailure: On transport errors, non-success status, or an oversize body
        """
        try:
            with self._client.stream("GET", url) as response:
                if not response.is_success:
                    raise UpstreamFetchFailure(
                        detail=f"origin returned HTTP {response.status_code} for {url}"
                    )
                length = response.headers.get("content-length")
                content_length = int(length) if length and length.isdigit() else None
                if self.max_bytes is not None and content_length is not None and content_length > self.max_bytes:
                    raise UpstreamFetchFailure(
                        detail=f"origin declares {content_length} bytes, limit is {self.max_bytes}: {url}"
                    )
                LOGGER.debug("Fetching %s (%s bytes)", url, content_length if content_length is not None else "?")
                yield OriginResponse(
                    url=url,
                    content_type=response.headers.get("content-type"),
                    content_length=content_length,
                    _response=response,
                    _chunk_size=self.chunk_size,
                    _max_bytes=self.max_bytes,
                )
        except httpx.HTTPError as e:
            raise UpstreamFetchFailure(detail=f"fetching {url}: {e}") from e

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
