"""Behaviour every record store backend must share."""
from datetime import timedelta

import pytest

from database.dynamodb import DynamoDBRecordStore
from database.local import SQLiteRecordStore
from tests.consts import TEST_OWNER_ID, TEST_TABLE_NAME
from tests.fixtures.transfer_fixtures import seed_pending
from transfer_api.errors import AlreadyExists, NotFound, StaleState
from transfer_api.schemas import TransferStatus, utcnow


@pytest.fixture(params=["sqlite", "dynamodb"])
def store(request, tmp_path):
    if request.param == "sqlite":
        sqlite_store = SQLiteRecordStore(str(tmp_path / "transfers.db"))
        sqlite_store.init_db()
        return sqlite_store
    mocked_aws = request.getfixturevalue("mocked_aws")
    return DynamoDBRecordStore(TEST_TABLE_NAME, dynamodb_resource=mocked_aws.dynamodb)


def _upload(store, record, size=100):
    return store.transition(record.owner_id, record.transfer_id, TransferStatus.PENDING,
                            TransferStatus.UPLOADED, size_bytes=size, uploaded_at=utcnow())


def test_create_and_get(store):
    record = seed_pending(store)
    fetched = store.get(TEST_OWNER_ID, record.transfer_id)
    assert fetched.status == TransferStatus.PENDING
    assert fetched.storage_key == record.storage_key
    assert fetched.attempt_count == 0
    assert fetched.size_bytes is None


def test_create_twice_raises(store):
    record = seed_pending(store)
    with pytest.raises(AlreadyExists):
        store.create(record)


def test_get_missing_raises(store):
    with pytest.raises(NotFound):
        store.get(TEST_OWNER_ID, "1700000000000-000000000000")


def test_transition_applies_fields(store):
    record = seed_pending(store)
    updated = _upload(store, record, size=204800)
    assert updated.status == TransferStatus.UPLOADED
    assert updated.size_bytes == 204800
    assert updated.uploaded_at is not None


def test_transition_with_wrong_expected_status(store):
    record = seed_pending(store)
    _upload(store, record)
    with pytest.raises(StaleState) as exc_info:
        _upload(store, record)
    assert exc_info.value.current_status == TransferStatus.UPLOADED


def test_transition_missing_record(store):
    with pytest.raises(NotFound):
        store.transition(TEST_OWNER_ID, "1700000000000-000000000000", TransferStatus.PENDING,
                         TransferStatus.UPLOADED, size_bytes=1)


def test_disallowed_transition_is_rejected_before_storage(store):
    record = seed_pending(store)
    with pytest.raises(ValueError):
        store.transition(record.owner_id, record.transfer_id, TransferStatus.PENDING, TransferStatus.DOWNLOADED)
    assert store.get(record.owner_id, record.transfer_id).status == TransferStatus.PENDING


def test_write_once_timestamps_survive_requeue(store):
    record = seed_pending(store)
    uploaded = _upload(store, record)
    store.transition(record.owner_id, record.transfer_id, TransferStatus.UPLOADED, TransferStatus.FAILED,
                     failed_at=utcnow(), last_error="gave up")
    requeued = store.transition(record.owner_id, record.transfer_id, TransferStatus.FAILED,
                                TransferStatus.UPLOADED, uploaded_at=utcnow() + timedelta(hours=1),
                                attempt_count=0, last_error=None)
    assert requeued.uploaded_at == uploaded.uploaded_at
    assert requeued.last_error is None
    assert requeued.attempt_count == 0


def test_record_attempt_increments(store):
    record = seed_pending(store)
    _upload(store, record)
    first = store.record_attempt(record.owner_id, record.transfer_id)
    second = store.record_attempt(record.owner_id, record.transfer_id)
    assert (first.attempt_count, second.attempt_count) == (1, 2)
    assert second.last_attempt_at is not None


def test_record_attempt_missing(store):
    with pytest.raises(NotFound):
        store.record_attempt(TEST_OWNER_ID, "1700000000000-000000000000")


def test_set_and_clear_retry_state(store):
    record = seed_pending(store)
    _upload(store, record)
    later = utcnow() + timedelta(minutes=5)
    store.set_retry_state(record.owner_id, record.transfer_id, later, "connection reset")
    fetched = store.get(record.owner_id, record.transfer_id)
    assert fetched.next_attempt_at == later
    assert fetched.last_error == "connection reset"

    store.set_retry_state(record.owner_id, record.transfer_id, None, None)
    fetched = store.get(record.owner_id, record.transfer_id)
    assert fetched.next_attempt_at is None
    assert fetched.last_error is None


def test_list_by_status_and_age(store):
    pending = seed_pending(store)
    uploaded = seed_pending(store)
    _upload(store, uploaded)

    assert [r.transfer_id for r in store.list_by_status(TransferStatus.PENDING)] == [pending.transfer_id]
    assert [r.transfer_id for r in store.list_by_status(TransferStatus.UPLOADED)] == [uploaded.transfer_id]
    assert store.list_by_status(TransferStatus.UPLOADED, older_than=utcnow() - timedelta(minutes=1)) == []
    assert len(store.list_by_status(TransferStatus.UPLOADED, older_than=utcnow() + timedelta(minutes=1))) == 1
