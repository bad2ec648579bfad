"""S3/MinIO storage client and retrying uploader for report artifacts."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol, Union

from minio import Minio
from minio.error import S3Error

from dbbench.config import settings

logger = logging.getLogger(__name__)


class UploadError(RuntimeError):
    """Raised when an artifact could not be uploaded after every attempt."""


class UploadCancelled(UploadError):
    """Raised when an upload is aborted while waiting to retry."""


class ObjectStore(Protocol):
    def upload_file(self, bucket: str, local_path: Path, remote_path: str) -> None:
        ...


class S3Client:
    """MinIO/S3 client wrapper for artifact storage."""

    def __init__(self, config=settings):
        # Parse endpoint to remove http:// prefix if present
        endpoint = config.s3_endpoint.replace("http://", "").replace("https://", "")
        secure = config.s3_endpoint.startswith("https://")

        self.client = Minio(
            endpoint=endpoint,
            access_key=config.s3_access_key,
            secret_key=config.s3_secret_key,
            secure=secure,
            region=config.s3_region,
        )
        self.region = config.s3_region
        self._known_buckets: set = set()

    def ensure_bucket(self, bucket: str) -> None:
        """Create bucket if it doesn't exist."""
        if bucket in self._known_buckets:
            return
        try:
            if not self.client.bucket_exists(bucket):
                logger.info("Creating bucket: %s", bucket)
                self.client.make_bucket(bucket, location=self.region)
            else:
                logger.debug("Bucket exists: %s", bucket)
        except S3Error as e:
            logger.error("Error ensuring bucket exists: %s", e)
            raise
        self._known_buckets.add(bucket)

    def upload_file(self, bucket: str, local_path: Path, remote_path: str) -> None:
        """
        Upload a file to S3.

        Args:
            bucket: Destination bucket
            local_path: Local file path
            remote_path: S3 object key (path in bucket)
        """
        self.ensure_bucket(bucket)
        content_type = "text/csv" if Path(local_path).suffix.lower() == ".csv" else "application/octet-stream"
        logger.info("Uploading %s to s3://%s/%s", local_path, bucket, remote_path)
        self.client.fput_object(
            bucket_name=bucket,
            object_name=remote_path,
            file_path=str(local_path),
            content_type=content_type,
        )
        logger.info("Successfully uploaded to s3://%s/%s", bucket, remote_path)


class ArtifactUploader:
    """Upload report artifacts, retrying a fixed number of times.

    The delay between attempts waits on ``cancel`` so an aborted run does not
    leave a worker blocked in a sleep.
    """

    def __init__(
        self,
        store: ObjectStore,
        *,
        bucket: str,
        subdirectory: str = "",
        attempts: int = 30,
        retry_delay: float = 2.0,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be positive")
        self._store = store
        self.bucket = bucket
        self.subdirectory = subdirectory.strip("/")
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.cancel = cancel or threading.Event()

    @classmethod
    def from_settings(cls, config=settings, cancel: Optional[threading.Event] = None) -> "ArtifactUploader":
        return cls(
            S3Client(config),
            bucket=config.s3_bucket,
            subdirectory=config.storage_subdirectory,
            attempts=config.upload_attempts,
            retry_delay=config.upload_retry_delay,
            cancel=cancel,
        )

    def destination(self, local_path: Union[str, Path], database_tag: str = "") -> str:
        name = Path(local_path).name
        if database_tag and not name.startswith(database_tag):
            name = f"{database_tag}-{name}"
        if self.subdirectory:
            return f"{self.subdirectory}/{name}"
        return name

    def upload(self, local_path: Union[str, Path], database_tag: str = "") -> str:
        local_path = Path(local_path)
        if not local_path.exists():
            raise FileNotFoundError(f"File not found: {local_path}")
        remote_path = self.destination(local_path, database_tag)

        last_error: Optional[Exception] = None
        for attempt in range(self.attempts):
            if self.cancel.is_set():
                raise UploadCancelled(f"upload of {local_path} cancelled")
            try:
                self._store.upload_file(self.bucket, local_path, remote_path)
                return remote_path
            except Exception as exc:  # noqa: BLE001 - transport errors are retried
                last_error = exc
                logger.warning("#%d: error %s while uploading %s", attempt, exc, local_path)
            if attempt + 1 < self.attempts and self.cancel.wait(self.retry_delay):
                raise UploadCancelled(f"upload of {local_path} cancelled") from last_error

        raise UploadError(
            f"failed to upload {local_path} after {self.attempts} attempts: {last_error}"
        ) from last_error

    def upload_many(
        self,
        paths: Iterable[Union[str, Path]],
        database_tag: str = "",
        *,
        max_workers: int = 4,
    ) -> Dict[Path, Optional[Exception]]:
        """Upload artifacts concurrently; map each path to its error, or None."""
        targets = [Path(path) for path in paths]
        results: Dict[Path, Optional[Exception]] = {}
        if not targets:
            return results
        with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="upload") as pool:
            futures = {path: pool.submit(self.upload, path, database_tag) for path in targets}
            for path, future in futures.items():
                error = future.exception()
                if error is not None:
                    logger.error("Upload of %s failed: %s", path, error)
                results[path] = error
        return results
