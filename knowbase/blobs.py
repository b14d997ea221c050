"""Content-addressable blob storage with reference counting."""

import hashlib
import logging
import os
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

from .errors import UpstreamError, ValidationError
from .models import FileStorage
from .storage import MetadataStore

logger = logging.getLogger(__name__)


def content_hash(data: bytes) -> str:
    """Hex SHA-256 of the content."""
    return hashlib.sha256(data).hexdigest()


def object_key_for(digest: str) -> str:
    """Object key of a blob: ``files/<first two hex chars>/<hash>``."""
    return f"files/{digest[:2]}/{digest}"


def compensate(action: str, fn: Callable[..., Any], *args: Any) -> Tuple[bool, Optional[Exception]]:
    """Run a compensating action. Failures are logged and returned, never raised."""
    try:
        fn(*args)
    except Exception as exc:
        logger.warning(f"Compensation '{action}' failed: {exc}")
        return False, exc
    return True, None


class BlobStorage(ABC):
    """Object store holding raw file bytes."""

    @abstractmethod
    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under ``bucket/key``. Returns the key."""

    @abstractmethod
    def get(self, bucket: str, key: str) -> bytes:
        pass

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        pass

    @abstractmethod
    def exists(self, bucket: str, key: str) -> bool:
        pass


class LocalBlobStorage(BlobStorage):
    """Filesystem blob storage: ``<root>/<bucket>/<key>``."""

    def __init__(self, root_dir: str):
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, bucket: str, key: str) -> Path:
        path = (self.root_dir / bucket / key).resolve()
        if self.root_dir.resolve() not in path.parents:
            raise ValidationError(f"Invalid object key: {key}")
        return path

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        path = self._path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temp file and rename, so readers never see partial blobs
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return key

    def get(self, bucket: str, key: str) -> bytes:
        return self._path(bucket, key).read_bytes()

    def delete(self, bucket: str, key: str) -> None:
        self._path(bucket, key).unlink(missing_ok=True)

    def exists(self, bucket: str, key: str) -> bool:
        return self._path(bucket, key).is_file()


@dataclass
class StoredBlob:
    """Result of storing content."""

    content_hash: str
    bucket: str
    object_key: str
    size: int
    is_new: bool


class ContentAddressableStore:
    """
    Deduplicating blob store keyed by content hash.

    Identical content is written once; every additional document that
    references it bumps the registry's reference count. The physical blob
    is deleted only when the count has dropped to zero and an explicit
    ``delete_if_unreferenced`` check succeeds.
    """

    def __init__(self, store: MetadataStore, storage: BlobStorage, bucket: str = "knowledge-bases"):
        self.db = store
        self.storage = storage
        self.bucket = bucket

    def register(self, digest: str, size: int, content_type: str, object_key: str) -> bool:
        """Create the registry row, or add a reference if it exists. Returns True if new."""
        if self.db.get_file_storage(digest) is not None:
            self.increment_ref(digest)
            return False
        try:
            self.db.create_file_storage(FileStorage(
                content_hash=digest,
                bucket=self.bucket,
                object_key=object_key,
                size=size,
                content_type=content_type,
            ))
        except sqlite3.IntegrityError:
            # Another writer registered the same content first
            self.increment_ref(digest)
            return False
        return True

    def increment_ref(self, digest: str) -> None:
        if not self.db.increment_reference(digest):
            raise UpstreamError("increment reference", message=f"blob not registered: {digest}")

    def decrement_ref(self, digest: str) -> bool:
        """Drop one reference. Returns False if the count was already zero."""
        return self.db.decrement_reference(digest)

    def delete_if_unreferenced(self, digest: str) -> bool:
        """Remove the registry row and blob if nothing references them."""
        record = self.db.delete_file_storage_if_unreferenced(digest)
        if record is None:
            return False
        self.storage.delete(record.bucket, record.object_key)
        logger.info(f"Deleted unreferenced blob {record.object_key}")
        return True

    def store(self, data: bytes, content_type: str) -> StoredBlob:
        """Store content, reusing an existing blob with the same hash."""
        digest = content_hash(data)
        existing = self.db.get_file_storage(digest)
        if existing is not None:
            self.increment_ref(digest)
            logger.debug(f"Deduplicated upload {digest[:12]} ({len(data)} bytes)")
            return StoredBlob(digest, existing.bucket, existing.object_key, len(data), is_new=False)

        key = object_key_for(digest)
        try:
            self.storage.put(self.bucket, key, data, content_type)
        except Exception as exc:
            raise UpstreamError("upload file", exc) from exc

        try:
            is_new = self.register(digest, len(data), content_type, key)
        except Exception as exc:
            compensate("delete orphan blob", self.storage.delete, self.bucket, key)
            raise UpstreamError("register file", exc) from exc

        if is_new:
            logger.info(f"Stored new blob {key} ({len(data)} bytes)")
        return StoredBlob(digest, self.bucket, key, len(data), is_new=is_new)

    def release(self, digest: str) -> bool:
        """Drop a reference and delete the blob if it was the last. Returns True if deleted."""
        self.decrement_ref(digest)
        return self.delete_if_unreferenced(digest)

    def fetch(self, bucket: str, key: str) -> bytes:
        try:
            return self.storage.get(bucket, key)
        except Exception as exc:
            raise UpstreamError("download file", exc) from exc
