"""
Blob store interface for evidence payload bytes.

The ledger only needs two things from a store: write bytes under a key and
read back exactly what was written. Deployments use MinIO; tests and local
development use the in-memory store.
"""
import threading
from functools import lru_cache
from typing import Dict, Protocol

from evidence_ledger.api.core.config import settings


class BlobStoreError(Exception):
    """Storage backend failure (surfaced to callers as SYSTEM_ERROR)."""


class BlobStore(Protocol):
    def put_bytes(self, object_name: str, data: bytes, content_type: str) -> str:
        """Store bytes, return the blob URI."""
        ...

    def get_bytes(self, uri: str) -> bytes:
        """Return the exact bytes stored under a URI."""
        ...


class InMemoryBlobStore:
    """Process-local blob store."""

    def __init__(self, bucket: str = "memory"):
        self.bucket = bucket
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put_bytes(self, object_name: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self._objects[object_name] = bytes(data)
        return f"mem://{self.bucket}/{object_name}"

    def get_bytes(self, uri: str) -> bytes:
        prefix = f"mem://{self.bucket}/"
        if not uri.startswith(prefix):
            raise BlobStoreError(f"Invalid blob URI: {uri}")
        with self._lock:
            try:
                return self._objects[uri[len(prefix):]]
            except KeyError:
                raise BlobStoreError(f"Blob not found: {uri}")


@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    """FastAPI dependency returning the configured blob store."""
    if settings.BLOB_BACKEND == "memory":
        return InMemoryBlobStore()
    from evidence_ledger.storage.minio_store import MinIOStore
    return MinIOStore()
