"""
Caller-facing operations of the offline resource subsystem.

`OfflineResourceService` wires the registry, ciphertext store, origin
fetcher, token issuer, pipeline, lifecycle manager and delivery service
together and exposes the operations the API and CLI call:

    request_resource      register (or reuse) a resource and mint a token
    fetch_content         token -> ciphertext stream
    list_resources        owner's resources, no key material
    delete_resource       owner deletes ciphertext + record
    request_token         fresh token for an existing resource
    record_access         bump last-accessed time
    revoke_resource       operator revocation
    sweep                 expire / evict / clean up

Caller identity always comes from the outer authentication layer.
"""

from __future__ import annotations

import hashlib
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from .config import Settings
from .delivery import ContentStream, DeliveryService
from .errors import AuthenticationRequired, Expired, Forbidden, NotFound, ValidationError
from .fetcher import OriginFetcher
from .lifecycle import LifecycleManager, SweepReport, Sweeper
from .pipeline import FetchEncryptPipeline
from .registry import ResourceRegistry, ResourceStatus, ResourceSummary
from .storage import CiphertextStore
from .tokens import InMemoryTokenStore, TokenIssuer
from .utils.clock import Clock, utc_now
from .utils.locks import KeyedLocks
from .utils.media_io import normalize_media_type

LOGGER = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_URL_LENGTH = 4096
MAX_TAG_LENGTH = 255
ALLOWED_SCHEMES = ("http", "https")


@dataclass
class ResourceGrant:
    resource_id: str
    token: str
    status: ResourceStatus
    created: bool
    pipeline: Optional[Future] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"resourceId": self.resource_id, "token": self.token, "status": self.status.value}


def normalize_location(source_location: str) -> str:
    parts = urlsplit(source_location.strip())
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", parts.query, ""))


def derive_resource_key(source_location: str) -> str:
    """Stable per-origin key used to de-duplicate requests of one owner."""
    return hashlib.sha256(normalize_location(source_location).encode("utf-8")).hexdigest()


def validate_resource_request(
    source_location: Any,
    media_type: Any,
    title: Any,
    course_tag: Any = None,
    module_tag: Any = None,
) -> Dict[str, Any]:
    """Check a RequestResource payload and return the normalized fields.

    Raises:
        ValidationError: With one entry per offending field
    """
    errors: List[Dict[str, str]] = []

    if not isinstance(source_location, str) or not source_location.strip():
        errors.append({"field": "sourceLocation", "message": "is required"})
    elif len(source_location) > MAX_URL_LENGTH:
        errors.append({"field": "sourceLocation", "message": "is too long"})
    else:
        parts = urlsplit(source_location.strip())
        if parts.scheme.lower() not in ALLOWED_SCHEMES or not parts.hostname:
            errors.append({"field": "sourceLocation", "message": "must be an absolute http(s) URL"})

    if not isinstance(media_type, str) or not media_type.strip():
        errors.append({"field": "mediaType", "message": "is required"})

    if not isinstance(title, str) or not title.strip():
        errors.append({"field": "title", "message": "is required"})
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append({"field": "title", "message": f"must be at most {MAX_TITLE_LENGTH} characters"})

    for name, tag in (("courseTag", course_tag), ("moduleTag", module_tag)):
        if tag is not None and (not isinstance(tag, str) or len(tag) > MAX_TAG_LENGTH):
            errors.append({"field": name, "message": f"must be a string of at most {MAX_TAG_LENGTH} characters"})

    if errors:
        raise ValidationError(errors)
    return {
        "source_location": source_location.strip(),
        "media_type": normalize_media_type(media_type),
        "title": title.strip(),
        "course_tag": course_tag,
        "module_tag": module_tag,
    }


def _require_caller(caller_id: Optional[str]) -> str:
    if not caller_id or not str(caller_id).strip():
        raise AuthenticationRequired()
    return str(caller_id)


class OfflineResourceService:
    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.Client] = None,
        token_store: Optional[InMemoryTokenStore] = None,
        clock: Clock = utc_now,
    ):
        settings.validate()
        self.settings = settings
        self.clock = clock
        state_locks = KeyedLocks()

        self.registry = ResourceRegistry(settings.db_path, resource_ttl=settings.resource_ttl, clock=clock)
        self.store = CiphertextStore(settings.blob_dir, shred_on_delete=settings.shred_on_delete)
        self.fetcher = OriginFetcher(
            http_client,
            timeout=settings.fetch_timeout,
            chunk_size=settings.chunk_size,
            max_bytes=settings.max_resource_bytes,
        )
        self.issuer = TokenIssuer(token_store, ttl=settings.token_ttl, clock=clock)
        self.lifecycle = LifecycleManager(self.registry, self.store, self.issuer, state_locks=state_locks, clock=clock)
        self.pipeline = FetchEncryptPipeline(
            self.registry,
            self.store,
            self.fetcher,
            state_locks=state_locks,
            resource_ttl=settings.resource_ttl,
            chunk_size=settings.chunk_size,
            max_workers=settings.max_workers,
        )
        self.delivery = DeliveryService(
            self.registry,
            self.store,
            self.issuer,
            self.lifecycle,
            pipeline=self.pipeline,
            chunk_size=settings.chunk_size,
        )
        self.sweeper = Sweeper(self.lifecycle, settings.sweep_interval_seconds)

        self.registry.initialize()
        self.store.ensure_layout()

    # ---------- process lifetime ----------

    def start(self, *, background_sweep: bool = True) -> None:
        """Clean up after a previous crash and optionally start the periodic sweeper."""
        removed = self.store.remove_stale_parts()
        if removed:
            LOGGER.warning("Removed %d partial ciphertext file(s) from an earlier run", removed)
        self.lifecycle.sweep()
        if background_sweep:
            self.sweeper.start()

    def close(self) -> None:
        self.sweeper.stop()
        self.pipeline.shutdown(wait=True)
        self.fetcher.close()

    def __enter__(self) -> "OfflineResourceService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------- caller-facing operations ----------

    def request_resource(
        self,
        owner_id: Optional[str],
        source_location: str,
        media_type: str,
        title: str,
        course_tag: Optional[str] = None,
        module_tag: Optional[str] = None,
        *,
        wait: bool = False,
    ) -> ResourceGrant:
        """Register (or reuse) a resource for `owner_id` and return a token for it.

        A pending resource gets a pipeline run on a worker; with `wait=True`
        the call blocks until that run finishes and re-raises its failure.
        An expired resource is renewed and fetched again under a new key.

        Raises:
            AuthenticationRequired, ValidationError
            UpstreamFetchFailure, EncryptionFailure, StorageFailure (only with wait=True)
        """
        owner_id = _require_caller(owner_id)
        fields = validate_resource_request(source_location, media_type, title, course_tag, module_tag)

        resource, created = self.registry.register(
            owner_id,
            derive_resource_key(fields["source_location"]),
            fields["source_location"],
            fields["media_type"],
            fields["title"],
            fields["course_tag"],
            fields["module_tag"],
        )
        if not created:
            resource = self.lifecycle.expire_if_due(resource)
            if resource.status is ResourceStatus.EXPIRED:
                resource = self.lifecycle.renew(resource)
            elif resource.status is ResourceStatus.ACTIVE:
                resource = self.lifecycle.reconcile(resource)

        future = None
        if resource.status is ResourceStatus.PENDING:
            future = self.pipeline.dispatch(resource.id)

        token = self.issuer.issue(resource.id)

        if wait and future is not None:
            future.result()
            resource = self.registry.get(resource.id) or resource

        return ResourceGrant(resource.id, token.value, resource.status, created, future)

    def fetch_content(self, token: str, caller_id: Optional[str]) -> ContentStream:
        return self.delivery.fetch_content(token, caller_id)

    def list_resources(self, owner_id: Optional[str]) -> List[ResourceSummary]:
        owner_id = _require_caller(owner_id)
        summaries = self.registry.list_by_owner(owner_id)
        now = self.clock()
        due = [s.id for s in summaries if s.status in (ResourceStatus.PENDING, ResourceStatus.ACTIVE) and now > s.expires_at]
        for resource_id in due:
            resource = self.registry.get(resource_id)
            if resource is not None:
                self.lifecycle.expire_if_due(resource)
        if due:
            summaries = self.registry.list_by_owner(owner_id)
        return summaries

    def delete_resource(self, resource_id: str, owner_id: Optional[str]) -> None:
        """Raises NotFound or Forbidden (distinct) when the caller may not delete."""
        self.lifecycle.delete(resource_id, _require_caller(owner_id))

    def request_token(self, resource_id: str, owner_id: Optional[str]) -> str:
        """Mint a fresh token for an existing resource of the caller.

        Raises:
            NotFound: Unknown or not owned (not distinguished)
            Expired: Resource expired or revoked
        """
        owner_id = _require_caller(owner_id)
        try:
            resource = self.registry.get_for_owner(resource_id, owner_id)
        except Forbidden:
            raise NotFound()
        resource = self.lifecycle.expire_if_due(resource)
        if resource.status in (ResourceStatus.EXPIRED, ResourceStatus.REVOKED):
            raise Expired()
        resource = self.lifecycle.reconcile(resource)
        if resource.status is ResourceStatus.PENDING:
            self.pipeline.dispatch(resource.id)
        return self.issuer.issue(resource.id).value

    def record_access(self, resource_id: str, owner_id: Optional[str]) -> None:
        owner_id = _require_caller(owner_id)
        try:
            self.registry.get_for_owner(resource_id, owner_id)
        except Forbidden:
            raise NotFound()
        self.registry.touch_accessed(resource_id)

    def revoke_resource(self, resource_id: str) -> None:
        self.lifecycle.revoke(resource_id)

    def sweep(self) -> SweepReport:
        return self.lifecycle.sweep()
