"""Blob storage for uploaded invoice files.

The pipeline only needs "store bytes, get back a retrievable reference".
Two backends implement that contract:
- LocalBlobStore: files under a root directory (development, single host)
- MinioBlobStore: S3-compatible object storage via the MinIO SDK

Keys are `{environment}/tenant_{id}/{safe_name}_{timestamp}{ext}`.

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from invoicing.shared.config import Settings
from invoicing.shared.errors import BadInputError

logger = logging.getLogger(__name__)


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        key: Object key in the store
        backend: Backend that handled the operation
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    key: str | None = None
    backend: str
    error: str | None = None
    etag: str | None = None
    size: int | None = None


def build_object_key(settings: Settings, tenant_id: int, filename: str, timestamp_ms: int | None = None) -> str:
    """Build a tenant- and environment-scoped key for an uploaded file.

    Args:
        settings: Application settings (environment)
        tenant_id: Owning tenant
        filename: Original client filename
        timestamp_ms: Upload time in epoch milliseconds (defaults to now)

    Returns:
        Key such as 'production/tenant_7/fatura_abril_1714000000000.pdf'
    """
    name = PurePosixPath(filename.replace("\\", "/")).name
    suffix = PurePosixPath(name).suffix.lower()
    stem = name[: -len(suffix)] if suffix else name
    safe_stem = re.sub(r"[^a-zA-Z0-9]", "_", stem)[:50] or "file"
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{settings.environment}/tenant_{tenant_id}/{safe_stem}_{timestamp_ms}{suffix}"


class BlobStore(ABC):
    """Store bytes under a key and read them back."""

    backend: str = "abstract"

    @abstractmethod
    def put(self, data: bytes, key: str, content_type: str | None = None) -> StorageResult:
        """Store bytes under key."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read the bytes stored under key.

        Raises:
            BadInputError: If no object exists under key
        """

    @abstractmethod
    def delete(self, key: str) -> StorageResult:
        """Delete the object stored under key."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists under key."""


class LocalBlobStore(BlobStore):
    """Blob store backed by a local directory."""

    backend = "local"

    def __init__(self, settings: Settings) -> None:
        self.root = Path(settings.storage_local_root).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise BadInputError(f"invalid storage key '{key}'")
        return path

    def put(self, data: bytes, key: str, content_type: str | None = None) -> StorageResult:
        try:
            path = self._path(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            logger.error(f"Error storing {key}: {e}")
            return StorageResult(success=False, key=key, backend=self.backend, error=str(e))

        logger.info(f"Stored {key} ({len(data)} bytes)")
        return StorageResult(success=True, key=key, backend=self.backend, size=len(data))

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise BadInputError(f"stored file '{key}' not found")
        return path.read_bytes()

    def delete(self, key: str) -> StorageResult:
        path = self._path(key)
        path.unlink(missing_ok=True)
        logger.info(f"Deleted {key}")
        return StorageResult(success=True, key=key, backend=self.backend)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


class MinioBlobStore(BlobStore):
    """S3-compatible object storage.

    Provides document storage with data sovereignty support through
    on-premises MinIO deployment.
    """

    backend = "minio"

    def __init__(self, settings: Settings) -> None:
        """Initialize storage service.

        Args:
            settings: Application settings with storage configuration
        """
        self.settings = settings
        self.bucket = settings.storage_bucket
        self._client: Minio | None = None
        self._bucket_ready = False

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

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return

        client = self._get_client()
        if not client.bucket_exists(self.bucket):
            client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")
        self._bucket_ready = True

    @retry(
        retry=retry_if_exception_type(S3Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _put_object(self, data: bytes, key: str, content_type: str) -> str | None:
        self._ensure_bucket()
        result = self._get_client().put_object(
            bucket_name=self.bucket,
            object_name=key,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )
        return result.etag

    def put(self, data: bytes, key: str, content_type: str | None = None) -> StorageResult:
        try:
            etag = self._put_object(data, key, content_type or "application/octet-stream")
        except S3Error as e:
            logger.error(f"S3 error uploading {key}: {e}")
            return StorageResult(
                success=False, key=key, backend=self.backend, error=f"S3 error: {e.code} - {e.message}"
            )

        logger.info(f"Uploaded {key} to {self.bucket} ({len(data)} bytes)")
        return StorageResult(success=True, key=key, backend=self.backend, etag=etag, size=len(data))

    def get(self, key: str) -> bytes:
        client = self._get_client()
        try:
            response = client.get_object(bucket_name=self.bucket, object_name=key)
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchBucket"):
                raise BadInputError(f"stored file '{key}' not found") from e
            raise
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def delete(self, key: str) -> StorageResult:
        try:
            self._get_client().remove_object(bucket_name=self.bucket, object_name=key)
        except S3Error as e:
            logger.error(f"S3 error deleting {key}: {e}")
            return StorageResult(
                success=False, key=key, backend=self.backend, error=f"S3 error: {e.code} - {e.message}"
            )

        logger.info(f"Deleted {key} from {self.bucket}")
        return StorageResult(success=True, key=key, backend=self.backend)

    def exists(self, key: str) -> bool:
        try:
            self._get_client().stat_object(bucket_name=self.bucket, object_name=key)
            return True
        except S3Error:
            return False


def create_blob_store(settings: Settings) -> BlobStore:
    """Create the blob store selected by settings.storage_backend."""
    if settings.storage_backend == "minio":
        return MinioBlobStore(settings)
    return LocalBlobStore(settings)
