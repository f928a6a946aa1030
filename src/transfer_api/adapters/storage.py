"""
Blob Store adapters: S3 for aws-mock/aws-prod, a directory tree for local-dev.

Both hand out time-limited write capabilities, stream objects in chunks and
delete them once the local copy is durable.
"""

import logging
import shutil
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Iterator, Optional
from urllib.parse import quote_plus

from botocore.exceptions import BotoCoreError, ClientError

from transfer_api.adapters.queue import BaseQueue
from transfer_api.errors import TransientIOError, ValidationError
from transfer_api.schemas import WriteCapability, utcnow
from transfer_api.settings import Settings, get_settings

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


def _is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound")


class BaseBlobStore:
    """Base class for blob storage (to be extended by specific implementations)"""

    bucket: str

    def issue_write_capability(self, key: str, content_type: str, ttl_seconds: int) -> WriteCapability:
        raise NotImplementedError

    def iter_object(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        raise NotImplementedError

    def head_object(self, key: str) -> Optional[int]:
        """Size of the object in bytes, or None when it does not exist."""
        raise NotImplementedError

    def delete_object(self, key: str) -> None:
        raise NotImplementedError

    def put_object(self, key: str, fileobj: BinaryIO, content_type: Optional[str] = None) -> int:
        raise NotImplementedError


class S3BlobStore(BaseBlobStore):
    """Blob store backed by an S3 bucket."""

    def __init__(self, bucket_name: str, s3_client: Optional["S3Client"] = None):
        if s3_client is None:
            from transfer_api.aws_clients import get_s3_client
            s3_client = get_s3_client()
        self.s3 = s3_client
        self.bucket = bucket_name
        logger.info(f"Using S3 bucket: {self.bucket}")

    def issue_write_capability(self, key: str, content_type: str, ttl_seconds: int) -> WriteCapability:
        try:
            url = self.s3.generate_presigned_url(
                ClientMethod="put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=ttl_seconds,
                HttpMethod="PUT",
            )
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"Could not presign upload for {key}: {e}") from e
        return WriteCapability(
            url=url,
            method="PUT",
            headers={"Content-Type": content_type},
            expires_at=utcnow() + timedelta(seconds=ttl_seconds),
        )

    def iter_object(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"Could not fetch s3://{self.bucket}/{key}: {e}") from e

        body = response["Body"]
        try:
            for chunk in body.iter_chunks(chunk_size=chunk_size):
                yield chunk
        except (BotoCoreError, OSError) as e:
            raise TransientIOError(f"Stream of s3://{self.bucket}/{key} broke: {e}") from e
        finally:
            body.close()

    def head_object(self, key: str) -> Optional[int]:
        try:
            response = self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise TransientIOError(f"head_object failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise TransientIOError(f"head_object failed for {key}: {e}") from e
        return int(response["ContentLength"])

    def delete_object(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"Could not delete s3://{self.bucket}/{key}: {e}") from e
        logger.info(f"Deleted s3://{self.bucket}/{key}")

    def put_object(self, key: str, fileobj: BinaryIO, content_type: Optional[str] = None) -> int:
        content_type = content_type or "application/octet-stream"
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=fileobj, ContentType=content_type)
            size = self.head_object(key)
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"Could not upload s3://{self.bucket}/{key}: {e}") from e
        logger.info(f"Uploaded {size} bytes to s3://{self.bucket}/{key}")
        return size or 0


class LocalBlobStore(BaseBlobStore):
    """Directory-tree blob store for local-dev.

    When a notification queue is given, every ``put_object`` publishes an
    S3-shaped ObjectCreated event to it, mirroring bucket notifications.
    """

    def __init__(self, root_dir: Path, bucket_name: str, notification_queue: Optional[BaseQueue] = None):
        self.bucket = bucket_name
        self.root = (Path(root_dir) / bucket_name).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.notification_queue = notification_queue
        logger.info(f"LocalBlobStore initialized at: {self.root}")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if path == self.root or self.root not in path.parents:
            raise ValidationError(f"Key escapes the blob store root: {key!r}")
        return path

    def issue_write_capability(self, key: str, content_type: str, ttl_seconds: int) -> WriteCapability:
        return WriteCapability(
            url=self._path(key).as_uri(),
            method="PUT",
            headers={"Content-Type": content_type},
            expires_at=utcnow() + timedelta(seconds=ttl_seconds),
        )

    def iter_object(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        path = self._path(key)
        try:
            f = open(path, "rb")
        except FileNotFoundError as e:
            raise TransientIOError(f"Object not found: {key}") from e
        with f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def head_object(self, key: str) -> Optional[int]:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.stat().st_size

    def delete_object(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
        logger.info(f"Deleted local object {key}")

    def put_object(self, key: str, fileobj: BinaryIO, content_type: Optional[str] = None) -> int:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path.parent, delete=False, suffix=".part") as tmp:
            shutil.copyfileobj(fileobj, tmp)
        Path(tmp.name).replace(path)
        size = path.stat().st_size
        logger.info(f"Stored {size} bytes at {key}")

        if self.notification_queue is not None:
            self.notification_queue.publish(s3_event_for(self.bucket, key, size))
        return size


def s3_event_for(bucket: str, key: str, size: int, event_name: str = "ObjectCreated:Put") -> dict:
    """Build the S3 notification document S3 would send for an object event."""
    return {
        "Records": [{
            "eventSource": "aws:s3",
            "eventName": event_name,
            "eventTime": utcnow().isoformat(),
            "s3": {
                "bucket": {"name": bucket},
                "object": {"key": quote_plus(key, safe="/"), "size": size},
            },
        }]
    }


class BlobStoreFactory:
    """Factory to initialize the correct blob store based on deployment mode"""

    @staticmethod
    def get_blob_store(
        settings: Optional[Settings] = None,
        notification_queue: Optional[BaseQueue] = None,
        s3_client=None,
    ) -> BaseBlobStore:
        settings = settings or get_settings()
        if settings.deployment_mode == "local-dev":
            return LocalBlobStore(
                settings.storage_path / "blobs",
                settings.s3_bucket_name,
                notification_queue=notification_queue,
            )
        return S3BlobStore(settings.s3_bucket_name, s3_client=s3_client)
