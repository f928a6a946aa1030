"""Helpers for seeding transfers and injecting blob store failures."""
import io
from typing import Iterator, Optional

from tests.consts import TEST_CONTENT_TYPE, TEST_OWNER_ID
from transfer_api.adapters.storage import BaseBlobStore
from transfer_api.errors import TransientIOError
from transfer_api.keys import derive_storage_key, generate_transfer_id
from transfer_api.schemas import TransferMessage, TransferRecord, TransferStatus, utcnow


def seed_pending(record_store, display_name: str = "photo.jpg", owner_id: str = TEST_OWNER_ID) -> TransferRecord:
    transfer_id = generate_transfer_id()
    return record_store.create(TransferRecord(
        owner_id=owner_id,
        transfer_id=transfer_id,
        display_name=display_name,
        content_type=TEST_CONTENT_TYPE,
        storage_key=derive_storage_key(owner_id, transfer_id, display_name),
    ))


def seed_uploaded(
    pipeline,
    content: bytes,
    display_name: str = "photo.jpg",
    owner_id: str = TEST_OWNER_ID,
    size_bytes: Optional[int] = None,
    publish: bool = True,
) -> TransferRecord:
    """Create an uploaded transfer whose object is in the blob store, bypassing the relay."""
    record = seed_pending(pipeline.record_store, display_name, owner_id)
    store = pipeline.blob_store
    notifications = getattr(store, "notification_queue", None)
    if notifications is not None:
        store.notification_queue = None
    try:
        store.put_object(record.storage_key, io.BytesIO(content), TEST_CONTENT_TYPE)
    finally:
        if notifications is not None:
            store.notification_queue = notifications
    record = pipeline.record_store.transition(
        owner_id,
        record.transfer_id,
        TransferStatus.PENDING,
        TransferStatus.UPLOADED,
        size_bytes=len(content) if size_bytes is None else size_bytes,
        uploaded_at=utcnow(),
    )
    if publish:
        publish_message(pipeline, record)
    return record


def publish_message(pipeline, record: TransferRecord) -> str:
    message = TransferMessage.from_record(record, pipeline.settings.s3_bucket_name)
    return pipeline.queue.publish(message.model_dump(mode="json"))


class FlakyBlobStore(BaseBlobStore):
    """Wraps a blob store and fails reads or deletes a set number of times."""

    def __init__(self, inner: BaseBlobStore, failing_reads: int = 0, failing_deletes: int = 0):
        self.inner = inner
        self.bucket = inner.bucket
        self.failing_reads = failing_reads
        self.failing_deletes = failing_deletes
        self.reads = 0
        self.deletes = 0

    def issue_write_capability(self, key, content_type, ttl_seconds):
        return self.inner.issue_write_capability(key, content_type, ttl_seconds)

    def iter_object(self, key, chunk_size=1024 * 1024) -> Iterator[bytes]:
        self.reads += 1
        if self.reads <= self.failing_reads:
            raise TransientIOError(f"simulated read failure for {key}")
        return self.inner.iter_object(key, chunk_size)

    def head_object(self, key):
        return self.inner.head_object(key)

    def delete_object(self, key):
        self.deletes += 1
        if self.deletes <= self.failing_deletes:
            raise TransientIOError(f"simulated delete failure for {key}")
        self.inner.delete_object(key)

    def put_object(self, key, fileobj, content_type=None):
        return self.inner.put_object(key, fileobj, content_type)
