import io
import json

import pytest

from tests.consts import TEST_BUCKET_NAME
from transfer_api.adapters.queue import LocalQueue
from transfer_api.adapters.storage import BlobStoreFactory, LocalBlobStore, S3BlobStore
from transfer_api.errors import TransientIOError, ValidationError

KEY = "uploads/owner/1700000000000-3f9c2a1b7d4e/photo.jpg"
CONTENT = b"\xff\xd8" + b"x" * 10000


@pytest.fixture
def local_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs", TEST_BUCKET_NAME)


@pytest.fixture
def s3_store(mocked_aws):
    return S3BlobStore(TEST_BUCKET_NAME, s3_client=mocked_aws.s3)


@pytest.fixture(params=["local", "s3"])
def store(request):
    return request.getfixturevalue(f"{request.param}_store")


def test_put_head_iter_delete(store):
    assert store.head_object(KEY) is None
    assert store.put_object(KEY, io.BytesIO(CONTENT), "image/jpeg") == len(CONTENT)
    assert store.head_object(KEY) == len(CONTENT)
    assert b"".join(store.iter_object(KEY, chunk_size=1024)) == CONTENT

    store.delete_object(KEY)
    assert store.head_object(KEY) is None
    # deleting again is harmless
    store.delete_object(KEY)


def test_iter_missing_object_is_transient(store):
    with pytest.raises(TransientIOError):
        b"".join(store.iter_object("uploads/owner/1700000000000-3f9c2a1b7d4e/missing.jpg"))


def test_s3_capability_is_presigned_put(s3_store):
    capability = s3_store.issue_write_capability(KEY, "image/jpeg", 600)
    assert capability.method == "PUT"
    assert TEST_BUCKET_NAME in capability.url
    assert "photo.jpg" in capability.url
    assert "Signature" in capability.url
    assert capability.headers == {"Content-Type": "image/jpeg"}


def test_local_store_rejects_escaping_keys(local_store):
    with pytest.raises(ValidationError):
        local_store.put_object("../outside.jpg", io.BytesIO(b"x"))


def test_local_store_emits_s3_shaped_notification(tmp_path):
    notifications = LocalQueue(tmp_path / "notifications")
    store = LocalBlobStore(tmp_path / "blobs", TEST_BUCKET_NAME, notification_queue=notifications)
    store.put_object("uploads/owner/1700000000000-3f9c2a1b7d4e/my photo.jpg", io.BytesIO(CONTENT))

    event = json.loads(notifications.receive(wait_seconds=0)[0].body)
    record = event["Records"][0]
    assert record["eventName"] == "ObjectCreated:Put"
    assert record["s3"]["bucket"]["name"] == TEST_BUCKET_NAME
    assert record["s3"]["object"]["key"] == "uploads/owner/1700000000000-3f9c2a1b7d4e/my+photo.jpg"
    assert record["s3"]["object"]["size"] == len(CONTENT)


def test_factory_picks_backend(local_settings, aws_settings, mocked_aws):
    assert isinstance(BlobStoreFactory.get_blob_store(local_settings), LocalBlobStore)
    assert isinstance(BlobStoreFactory.get_blob_store(aws_settings, s3_client=mocked_aws.s3), S3BlobStore)
