"""Device upload to local copy, entirely on local-dev backends."""
import io
import json

from sync_worker.worker import ProcessingOutcome
from tests.consts import PHOTO_CONTENT, PHOTO_NAME, PHOTO_SIZE, TEST_CONTENT_TYPE, TEST_OWNER_ID
from transfer_api.keys import derive_local_path
from transfer_api.schemas import TransferStatus


async def test_photo_upload_is_synced_and_remote_copy_removed(local_pipeline):
    # device asks for a capability and uploads through it
    result = local_pipeline.authorizer.authorize(TEST_OWNER_ID, PHOTO_NAME, TEST_CONTENT_TYPE)
    local_pipeline.blob_store.put_object(result.storage_key, io.BytesIO(PHOTO_CONTENT), TEST_CONTENT_TYPE)

    # the blob store's notification reaches the relay twice (at-least-once)
    duplicate = local_pipeline.notifications.receive(wait_seconds=0)[0]
    local_pipeline.notifications.change_visibility(duplicate.receipt, 0)
    local_pipeline.notifications.publish(json.loads(duplicate.body))
    assert local_pipeline.relay.drain_notifications(local_pipeline.notifications, max_batches=1, wait_seconds=0) == 2

    record = local_pipeline.record_store.get(TEST_OWNER_ID, result.transfer_id)
    assert record.status == TransferStatus.UPLOADED
    assert record.size_bytes == PHOTO_SIZE

    outcomes = await local_pipeline.worker.process_once(wait_seconds=0)
    assert outcomes == [ProcessingOutcome.DOWNLOADED]

    local_path = derive_local_path(local_pipeline.settings.sync_root_path, TEST_OWNER_ID, result.transfer_id,
                                   PHOTO_NAME)
    assert local_path.read_bytes() == PHOTO_CONTENT
    record = local_pipeline.record_store.get(TEST_OWNER_ID, result.transfer_id)
    assert record.status == TransferStatus.DOWNLOADED
    assert record.local_path == str(local_path)
    assert local_pipeline.blob_store.head_object(result.storage_key) is None

    # nothing left to do anywhere
    assert await local_pipeline.worker.process_once(wait_seconds=0) == []
    assert local_pipeline.queue.pending_count() == 0
    assert local_pipeline.notifications.pending_count() == 0
