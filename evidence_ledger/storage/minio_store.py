"""
MinIO storage client for evidence payloads.

Objects are written once under a unique name per attach attempt and are
never overwritten or deleted by the ledger.
"""
from minio import Minio
from minio.error import S3Error
import io
from evidence_ledger.api.core.config import settings
from evidence_ledger.api.core.logging import logger
from evidence_ledger.storage.blob_store import BlobStoreError


class MinIOStore:
    """MinIO storage client."""

    def __init__(self):
        """Initialize MinIO client."""
        # Parse endpoint (remove http://)
        endpoint = settings.MINIO_ENDPOINT.replace("http://", "").replace("https://", "")

        self.client = Minio(
            endpoint,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=settings.MINIO_SECURE
        )

        self.bucket = settings.MINIO_BUCKET

        # Ensure bucket exists
        self._ensure_bucket()

    def _ensure_bucket(self):
        """Create bucket if it doesn't exist."""
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
        except S3Error as e:
            logger.warning("Could not verify bucket %s: %s", self.bucket, e)

    def put_bytes(self, object_name: str, data: bytes, content_type: str) -> str:
        """
        Write payload bytes to MinIO.

        Args:
            object_name: Object key, e.g. tenant/evidence_id/attempt.json
            data: Raw bytes
            content_type: MIME type

        Returns:
            S3 URI: s3://bucket/object_name
        """
        try:
            self.client.put_object(
                self.bucket,
                object_name,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type
            )
        except S3Error as e:
            raise BlobStoreError(f"Failed to write payload to MinIO: {e}")

        return f"s3://{self.bucket}/{object_name}"

    def get_bytes(self, uri: str) -> bytes:
        """
        Read payload bytes back from MinIO.

        Args:
            uri: S3 URI returned by put_bytes

        Returns:
            Stored bytes
        """
        # Parse S3 URI: s3://bucket/path
        if not uri.startswith("s3://"):
            raise BlobStoreError(f"Invalid S3 URI: {uri}")

        parts = uri[5:].split("/", 1)
        if len(parts) != 2:
            raise BlobStoreError(f"Invalid S3 URI format: {uri}")

        bucket_name, object_name = parts

        response = None
        try:
            response = self.client.get_object(bucket_name, object_name)
            return response.read()
        except S3Error as e:
            raise BlobStoreError(f"Failed to read payload from MinIO: {e}")
        finally:
            if response is not None:
                response.close()
                response.release_conn()
