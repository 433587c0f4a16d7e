"""S3-compatible object storage for uploaded bill images, using MinIO.

Stored bills get a presigned URL that is handed to the vision model and kept
on the document record. Storage is optional: when disabled, callers fall back
to inline base64 data URLs.

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging
import mimetypes
from datetime import timedelta
from pathlib import PurePath

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.shared.config import Settings

logger = logging.getLogger(__name__)


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        object_name: Full object path in storage
        bucket: Bucket name
        url: Presigned download URL (set by store_bill)
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    url: str | None = None
    error: str | None = None
    etag: str | None = None
    size: int | None = None


class StorageService:
    """Bill image store backed by an on-premises MinIO deployment."""

    def __init__(self, settings: Settings, client: Minio | None = None) -> None:
        """Initialize storage service.

        Args:
            settings: Application settings with storage configuration
            client: Optional pre-built MinIO client
        """
        self.settings = settings
        self._client = client
        self._bucket_exists_cache: set[str] = set()

    def _get_client(self) -> Minio:
        """Get or create MinIO client (lazy initialization).

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not self.settings.storage_access_key:
                raise ValueError(
                    "Storage access key not configured. "
                    "Set APP_STORAGE_ACCESS_KEY environment variable."
                )
            if not self.settings.storage_secret_key:
                raise ValueError(
                    "Storage secret key not configured. "
                    "Set APP_STORAGE_SECRET_KEY environment variable."
                )

            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=self.settings.storage_secret_key,
                secure=self.settings.storage_secure,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")

        return self._client

    def is_available(self) -> bool:
        """True if storage is enabled and credentials are set."""
        if not self.settings.storage_enabled:
            return False
        return bool(self.settings.storage_access_key and self.settings.storage_secret_key)

    def health_check(self) -> bool:
        """Check if storage backend is reachable.

        Returns:
            True if MinIO server responds to list_buckets
        """
        if not self.is_available():
            return False

        try:
            self._get_client().list_buckets()
            return True
        except Exception as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._bucket_exists_cache:
            return

        client = self._get_client()
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")

        self._bucket_exists_cache.add(bucket)

    @staticmethod
    def object_name_for(document_id: str, file_name: str, page: int = 0) -> str:
        suffix = PurePath(file_name).suffix or ".bin"
        return f"{document_id}/page-{page}{suffix}"

    @retry(
        retry=retry_if_exception_type(S3Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _put(self, bucket: str, object_name: str, data: bytes, content_type: str) -> str | None:
        """Upload once; retried on S3 errors since the same key is rewritten."""
        client = self._get_client()
        self._ensure_bucket(bucket)
        result = client.put_object(
            bucket_name=bucket,
            object_name=object_name,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )
        return result.etag

    def upload_bytes(
        self,
        data: bytes,
        object_name: str,
        content_type: str | None = None,
        bucket: str | None = None,
    ) -> StorageResult:
        """Upload bytes to storage.

        Args:
            data: Bytes to upload
            object_name: Target object name in storage
            content_type: MIME type (guessed from the object name if not provided)
            bucket: Target bucket (defaults to settings.storage_bucket)

        Returns:
            StorageResult with upload details
        """
        bucket = bucket or self.settings.storage_bucket
        if content_type is None:
            content_type = mimetypes.guess_type(object_name)[0] or "application/octet-stream"

        try:
            etag = self._put(bucket, object_name, data, content_type)
        except S3Error as e:
            logger.error(f"S3 error uploading {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=bucket,
                error=f"S3 error: {e.code} - {e.message}",
            )
        except Exception as e:
            logger.error(f"Error uploading {object_name}: {e}")
            return StorageResult(
                success=False, object_name=object_name, bucket=bucket, error=str(e)
            )

        logger.info(f"Uploaded {object_name} to {bucket} ({len(data)} bytes)")
        return StorageResult(
            success=True, object_name=object_name, bucket=bucket, etag=etag, size=len(data)
        )

    def get_presigned_url(self, object_name: str, bucket: str | None = None) -> str | None:
        """Presigned GET URL valid for settings.storage_url_expiry_seconds, or None on error."""
        bucket = bucket or self.settings.storage_bucket
        try:
            return self._get_client().presigned_get_object(
                bucket_name=bucket,
                object_name=object_name,
                expires=timedelta(seconds=self.settings.storage_url_expiry_seconds),
            )
        except Exception as e:
            logger.error(f"Error generating presigned URL for {object_name}: {e}")
            return None

    def store_bill(
        self, document_id: str, file_name: str, data: bytes, content_type: str, page: int = 0
    ) -> StorageResult:
        """Upload one bill page and attach a presigned URL to the result.

        Args:
            document_id: Owning document id (used as the object prefix)
            file_name: Original upload name (suffix kept)
            data: Image bytes
            content_type: Image MIME type
            page: Zero-based page index; each page gets its own object

        Returns:
            StorageResult; ``url`` is None if presigning failed
        """
        object_name = self.object_name_for(document_id, file_name, page)
        result = self.upload_bytes(data, object_name, content_type=content_type)
        if result.success:
            result.url = self.get_presigned_url(object_name, result.bucket)
        return result
