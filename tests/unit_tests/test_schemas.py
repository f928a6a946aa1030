import pytest

from transfer_api.schemas import (
    BlobNotification,
    TransferMessage,
    TransferRecord,
    TransferStatus,
    check_transition,
    utcnow,
)


@pytest.mark.parametrize("expected, next_status", [
    (TransferStatus.PENDING, TransferStatus.UPLOADED),
    (TransferStatus.UPLOADED, TransferStatus.DOWNLOADED),
    (TransferStatus.PENDING, TransferStatus.FAILED),
    (TransferStatus.UPLOADED, TransferStatus.FAILED),
    (TransferStatus.FAILED, TransferStatus.UPLOADED),
])
def test_allowed_transitions(expected, next_status):
    check_transition(expected, next_status, {})


@pytest.mark.parametrize("expected, next_status", [
    (TransferStatus.DOWNLOADED, TransferStatus.UPLOADED),
    (TransferStatus.DOWNLOADED, TransferStatus.FAILED),
    (TransferStatus.PENDING, TransferStatus.DOWNLOADED),
    (TransferStatus.UPLOADED, TransferStatus.PENDING),
])
def test_forbidden_transitions(expected, next_status):
    with pytest.raises(ValueError):
        check_transition(expected, next_status, {})


def test_transition_rejects_identity_fields():
    with pytest.raises(ValueError):
        check_transition(TransferStatus.PENDING, TransferStatus.UPLOADED, {"storage_key": "x"})


@pytest.mark.parametrize("event_type, created", [
    ("ObjectCreated:Put", True),
    ("ObjectCreated:CompleteMultipartUpload", True),
    ("s3:ObjectCreated:Copy", True),
    ("Object Created", True),
    ("ObjectRemoved:Delete", False),
    ("s3:TestEvent", False),
])
def test_notification_event_types(event_type, created):
    notification = BlobNotification(key="uploads/a/b/c", size=1, event_type=event_type)
    assert notification.is_object_created is created


def test_message_from_record_and_activity():
    record = TransferRecord(
        owner_id="owner",
        transfer_id="1700000000000-3f9c2a1b7d4e",
        display_name="photo.jpg",
        content_type="image/jpeg",
        storage_key="uploads/owner/1700000000000-3f9c2a1b7d4e/photo.jpg",
        status=TransferStatus.UPLOADED,
        size_bytes=204800,
        uploaded_at=utcnow(),
    )
    message = TransferMessage.from_record(record, "bucket")
    assert message.size_bytes == 204800
    assert message.storage_key == record.storage_key
    assert record.last_activity_at == record.uploaded_at


def test_message_rejects_negative_size():
    with pytest.raises(Exception):
        TransferMessage(
            owner_id="o", transfer_id="t", storage_key="k", bucket="b", size_bytes=-1, emitted_at=utcnow()
        )
