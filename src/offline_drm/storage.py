"""
Ciphertext blob store.

Blobs live under `<blob_dir>/<id[:2]>/<id>.odrm` and are addressed only by
resource id, never by the origin URL. Writes go to a `.part` file in the same
directory and are moved into place with `os.replace`, so a reader never sees a
half-written blob under the final name.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional

from .errors import StorageFailure

LOGGER = logging.getLogger(__name__)

BLOB_SUFFIX = ".odrm"
PART_SUFFIX = ".part"
_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


class StagedBlob:
    """A ciphertext blob being written. Either `commit()` or `discard()` it."""

    def __init__(self, store: "CiphertextStore", resource_id: str, temp_path: Path, final_path: Path):
        self.resource_id = resource_id
        self._store = store
        self._temp_path = temp_path
        self._final_path = final_path
        self._fh: Optional[BinaryIO] = open(temp_path, "wb")
        self.bytes_written = 0
        self.committed = False

    def write(self, data: bytes) -> None:
        if self._fh is None:
            raise StorageFailure(detail="write to a closed staged blob")
        try:
            self._fh.write(data)
        except OSError as e:
            raise StorageFailure(detail=f"writing ciphertext for {self.resource_id}: {e}") from e
        self.bytes_written += len(data)

    def _close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def commit(self) -> Path:
        """Flush, fsync and move the blob under its final name."""
        if self._fh is None:
            raise StorageFailure(detail="commit of a closed staged blob")
        try:
            self._fh.flush()
            os.fsync(self._fh.fileno())
            self._close()
            os.replace(self._temp_path, self._final_path)
        except OSError as e:
            self.discard()
            raise StorageFailure(detail=f"committing ciphertext for {self.resource_id}: {e}") from e
        self.committed = True
        return self._final_path

    def discard(self) -> None:
        self._close()
        if not self.committed:
            self._temp_path.unlink(missing_ok=True)

    def __enter__(self) -> "StagedBlob":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.committed:
            self.discard()


class CiphertextStore:
    def __init__(self, base_dir: Path, *, shred_on_delete: bool = True):
        self.base_dir = Path(base_dir)
        self.shred_on_delete = shred_on_delete

    def ensure_layout(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, resource_id: str) -> Path:
        if not _ID_RE.match(resource_id):
            raise StorageFailure(detail=f"invalid blob id: {resource_id!r}")
        return self.base_dir / resource_id[:2] / f"{resource_id}{BLOB_SUFFIX}"

    def exists(self, resource_id: str) -> bool:
        return self._path(resource_id).is_file()

    def size(self, resource_id: str) -> int:
        try:
            return self._path(resource_id).stat().st_size
        except FileNotFoundError:
            return 0

    def stage(self, resource_id: str) -> StagedBlob:
        final_path = self._path(resource_id)
        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = final_path.with_name(f"{final_path.name}.{uuid.uuid4().hex}{PART_SUFFIX}")
            return StagedBlob(self, resource_id, temp_path, final_path)
        except OSError as e:
            raise StorageFailure(detail=f"staging ciphertext for {resource_id}: {e}") from e

    def open_read(self, resource_id: str) -> BinaryIO:
        """Open a committed blob. Raises FileNotFoundError if it is missing."""
        return open(self._path(resource_id), "rb")

    def iter_chunks(self, fh: BinaryIO, chunk_size: int) -> Iterator[bytes]:
        """Yield the blob in `chunk_size` pieces and close the handle at the end."""
        try:
            while True:
                chunk = fh.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            fh.close()

    def delete(self, resource_id: str) -> bool:
        """Remove a blob. Missing blobs are fine.

        With shredding on, the name is unlinked first and the contents are then
        overwritten through a handle opened beforehand, so a reader that checks
        `exists()` after each read never passes on overwritten bytes.
        """
        path = self._path(resource_id)
        try:
            if self.shred_on_delete:
                with open(path, "r+b") as fh:
                    path.unlink()
                    self._shred(fh)
            else:
                path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(detail=f"deleting ciphertext for {resource_id}: {e}") from e
        LOGGER.debug("Deleted ciphertext blob for %s", resource_id)
        return True

    @staticmethod
    def _shred(fh: BinaryIO, block: int = 64 * 1024) -> None:
        remaining = os.fstat(fh.fileno()).st_size
        zeros = bytes(block)
        fh.seek(0)
        while remaining > 0:
            n = min(block, remaining)
            fh.write(zeros[:n])
            remaining -= n
        fh.flush()
        os.fsync(fh.fileno())

    def list_ids(self) -> List[str]:
        if not self.base_dir.exists():
            return []
        return sorted(p.name[: -len(BLOB_SUFFIX)] for p in self.base_dir.glob(f"*/*{BLOB_SUFFIX}"))

    def remove_stale_parts(self) -> int:
        """Delete leftover `.part` files from runs interrupted by a crash."""
        removed = 0
        if not self.base_dir.exists():
            return 0
        for part in self.base_dir.glob(f"*/*{PART_SUFFIX}"):
            part.unlink(missing_ok=True)
            removed += 1
        return removed
