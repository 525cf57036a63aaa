"""
Durable registry of offline resources (SQLite).

One row per (owner, resource key). The row holds the resource metadata, its
lifecycle status and, once the pipeline has committed ciphertext, the
encoded key material. Listing never exposes key material.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .encryption.keys import KeyMaterial
from .errors import Forbidden, NotFound, StorageFailure
from .utils.clock import Clock, from_iso, to_iso, utc_now

LOGGER = logging.getLogger(__name__)

SQLITE_CONNECT_TIMEOUT_SECONDS = 30.0
SQLITE_BUSY_TIMEOUT_MS = 30_000

SCHEMA = """
CREATE TABLE IF NOT EXISTS offline_resources(
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    resource_key TEXT NOT NULL,
    source_location TEXT NOT NULL,
    media_type TEXT NOT NULL,
    display_title TEXT NOT NULL,
    course_tag TEXT,
    module_tag TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    last_accessed_at TEXT,
    ciphertext_size_bytes INTEGER NOT NULL DEFAULT 0,
    plaintext_size_bytes INTEGER NOT NULL DEFAULT 0,
    key_material TEXT,                                -- '<key hex>:<nonce prefix hex>'
    status TEXT NOT NULL DEFAULT 'pending',           -- 'pending', 'active', 'expired', 'revoked'
    last_error TEXT,                                  -- error code of the last failed pipeline run
    UNIQUE (owner_id, resource_key)
);
CREATE INDEX IF NOT EXISTS idx_offline_resources_owner ON offline_resources(owner_id);
CREATE INDEX IF NOT EXISTS idx_offline_resources_status ON offline_resources(status);
"""


class ResourceStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass(frozen=True)
class OfflineResource:
    id: str
    owner_id: str
    resource_key: str
    source_location: str
    media_type: str
    display_title: str
    created_at: datetime
    expires_at: datetime
    status: ResourceStatus
    course_tag: Optional[str] = None
    module_tag: Optional[str] = None
    last_accessed_at: Optional[datetime] = None
    ciphertext_size_bytes: int = 0
    plaintext_size_bytes: int = 0
    key_material: Optional[KeyMaterial] = None
    last_error: Optional[str] = None

    def is_past_expiry(self, now: datetime) -> bool:
        return now > self.expires_at

    @property
    def failed(self) -> bool:
        """Pending, and the last pipeline run for it failed."""
        return self.status is ResourceStatus.PENDING and self.last_error is not None

    def summary(self) -> "ResourceSummary":
        return ResourceSummary(
            id=self.id,
            title=self.display_title,
            media_type=self.media_type,
            status=self.status,
            size_bytes=self.ciphertext_size_bytes,
            created_at=self.created_at,
            expires_at=self.expires_at,
            last_accessed_at=self.last_accessed_at,
            course_tag=self.course_tag,
            module_tag=self.module_tag,
            last_error=self.last_error if self.failed else None,
        )


@dataclass(frozen=True)
class ResourceSummary:
    """Listing view of a resource. Has no key material field by construction."""

    id: str
    title: str
    media_type: str
    status: ResourceStatus
    size_bytes: int
    created_at: datetime
    expires_at: datetime
    last_accessed_at: Optional[datetime]
    course_tag: Optional[str] = None
    module_tag: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "mediaType": self.media_type,
            "status": self.status.value,
            "sizeBytes": self.size_bytes,
            "createdAt": to_iso(self.created_at),
            "expiresAt": to_iso(self.expires_at),
            "lastAccessedAt": to_iso(self.last_accessed_at),
            "courseTag": self.course_tag,
            "moduleTag": self.module_tag,
            "lastError": self.last_error,
        }


def _row_to_resource(row: sqlite3.Row) -> OfflineResource:
    key = row["key_material"]
    return OfflineResource(
        id=row["id"],
        owner_id=row["owner_id"],
        resource_key=row["resource_key"],
        source_location=row["source_location"],
        media_type=row["media_type"],
        display_title=row["display_title"],
        course_tag=row["course_tag"],
        module_tag=row["module_tag"],
        created_at=from_iso(row["created_at"]),
        expires_at=from_iso(row["expires_at"]),
        last_accessed_at=from_iso(row["last_accessed_at"]),
        ciphertext_size_bytes=row["ciphertext_size_bytes"],
        plaintext_size_bytes=row["plaintext_size_bytes"],
        key_material=KeyMaterial.decode(key) if key else None,
        status=ResourceStatus(row["status"]),
        last_error=row["last_error"],
    )


class ResourceRegistry:
    def __init__(self, db_path: Path, *, resource_ttl: timedelta = timedelta(days=7), clock: Clock = utc_now):
        self.db_path = Path(db_path)
        self.resource_ttl = resource_ttl
        self.clock = clock

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=SQLITE_CONNECT_TIMEOUT_SECONDS)
        except sqlite3.Error as e:
            raise StorageFailure(detail=f"opening registry {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS};")
            with conn:  # commit on success, rollback on error
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StorageFailure(detail=f"registry error: {e}") from e
        finally:
            conn.close()

    def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.executescript(SCHEMA)
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(offline_resources)")}
            if "last_error" not in columns:
                conn.execute("ALTER TABLE offline_resources ADD COLUMN last_error TEXT")

    # ---------- reads ----------

    def get(self, resource_id: str) -> Optional[OfflineResource]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM offline_resources WHERE id = ?", (resource_id,)).fetchone()
        return _row_to_resource(row) if row else None

    def get_for_owner(self, resource_id: str, owner_id: str) -> OfflineResource:
        """Fetch a resource on behalf of `owner_id`.

        Raises:
            NotFound: No such resource
            Forbidden: The resource belongs to someone else
        """
        resource = self.get(resource_id)
        if resource is None:
            raise NotFound()
        if resource.owner_id != owner_id:
            raise Forbidden()
        return resource

    def find(self, owner_id: str, resource_key: str) -> Optional[OfflineResource]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM offline_resources WHERE owner_id = ? AND resource_key = ?",
                (owner_id, resource_key),
            ).fetchone()
        return _row_to_resource(row) if row else None

    def list_by_owner(self, owner_id: str) -> List[ResourceSummary]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM offline_resources WHERE owner_id = ? ORDER BY created_at DESC, id",
                (owner_id,),
            ).fetchall()
        return [_row_to_resource(row).summary() for row in rows]

    def list_all(self, statuses: Optional[Iterable[ResourceStatus]] = None) -> List[OfflineResource]:
        query = "SELECT * FROM offline_resources"
        params: Tuple[str, ...] = ()
        if statuses is not None:
            params = tuple(ResourceStatus(s).value for s in statuses)
            if not params:
                return []
            query += f" WHERE status IN ({','.join('?' for _ in params)})"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", params).fetchall()
        return [_row_to_resource(row) for row in rows]

    # ---------- writes ----------

    def register(
        self,
        owner_id: str,
        resource_key: str,
        source_location: str,
        media_type: str,
        title: str,
        course_tag: Optional[str] = None,
        module_tag: Optional[str] = None,
    ) -> Tuple[OfflineResource, bool]:
        """Create a pending resource or return the existing one for (owner, key).

        A non-revoked existing row is returned unchanged. A revoked row is
        replaced by a fresh pending one.

        Returns:
            Tuple of (resource, created)
        """
        existing = self.find(owner_id, resource_key)
        if existing is not None and existing.status is not ResourceStatus.REVOKED:
            return existing, False

        now = self.clock()
        resource_id = uuid.uuid4().hex
        try:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM offline_resources WHERE owner_id = ? AND resource_key = ? AND status = ?",
                    (owner_id, resource_key, ResourceStatus.REVOKED.value),
                )
                conn.execute(
                    """
                    INSERT INTO offline_resources (
                        id, owner_id, resource_key, source_location, media_type, display_title,
                        course_tag, module_tag, created_at, expires_at, status
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        resource_id,
                        owner_id,
                        resource_key,
                        source_location,
                        media_type,
                        title,
                        course_tag,
                        module_tag,
                        to_iso(now),
                        to_iso(now + self.resource_ttl),
                        ResourceStatus.PENDING.value,
                    ),
                )
        except sqlite3.IntegrityError:
            # Lost a race with a concurrent register for the same pair.
            winner = self.find(owner_id, resource_key)
            if winner is None:
                raise StorageFailure(detail=f"register conflict for owner {owner_id}")
            return winner, False

        LOGGER.info("Registered resource %s for owner %s", resource_id, owner_id)
        return self.get(resource_id), True

    def _update(self, resource_id: str, assignments: str, params: Tuple, where_status: Optional[ResourceStatus] = None) -> bool:
        query = f"UPDATE offline_resources SET {assignments} WHERE id = ?"
        all_params = params + (resource_id,)
        if where_status is not None:
            query += " AND status = ?"
            all_params += (where_status.value,)
        with self._connect() as conn:
            cur = conn.execute(query, all_params)
            return cur.rowcount > 0

    def set_status(self, resource_id: str, status: ResourceStatus) -> bool:
        status = ResourceStatus(status)
        if status is ResourceStatus.ACTIVE:
            raise ValueError("resources become active only through set_key_material()")
        # Key material only lives alongside committed ciphertext.
        return self._update(
            resource_id,
            "status = ?, key_material = NULL, ciphertext_size_bytes = 0, last_error = NULL",
            (status.value,),
        )

    def set_key_material(
        self,
        resource_id: str,
        key_material: KeyMaterial,
        size_bytes: int,
        *,
        plaintext_size_bytes: int = 0,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """Commit a pipeline result: store key + sizes and mark the resource active.

        Only applies to a resource still in `pending`; returns False otherwise.
        """
        assignments = (
            "key_material = ?, ciphertext_size_bytes = ?, plaintext_size_bytes = ?, status = ?, last_error = NULL"
        )
        params: Tuple = (key_material.encode(), size_bytes, plaintext_size_bytes, ResourceStatus.ACTIVE.value)
        if expires_at is not None:
            assignments += ", expires_at = ?"
            params += (to_iso(expires_at),)
        return self._update(resource_id, assignments, params, where_status=ResourceStatus.PENDING)

    def renew(self, resource_id: str) -> bool:
        """Reset an expired resource to pending with a fresh creation time."""
        now = self.clock()
        return self._update(
            resource_id,
            "status = ?, created_at = ?, expires_at = ?, key_material = NULL, ciphertext_size_bytes = 0, "
            "plaintext_size_bytes = 0, last_error = NULL",
            (ResourceStatus.PENDING.value, to_iso(now), to_iso(now + self.resource_ttl)),
            where_status=ResourceStatus.EXPIRED,
        )

    def record_failure(self, resource_id: str, error_code: str) -> bool:
        """Note that the last pipeline run for a pending resource failed."""
        return self._update(resource_id, "last_error = ?", (error_code,), where_status=ResourceStatus.PENDING)

    def clear_failure(self, resource_id: str) -> bool:
        return self._update(resource_id, "last_error = NULL", ())

    def touch_accessed(self, resource_id: str) -> bool:
        return self._update(resource_id, "last_accessed_at = ?", (to_iso(self.clock()),))

    def delete(self, resource_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM offline_resources WHERE id = ?", (resource_id,))
            return cur.rowcount > 0
