"""
Completion Relay: turns blob store ObjectCreated notifications into transfer messages.

Notifications arrive at least once and possibly duplicated, so every step is
idempotent: the conditional pending -> uploaded transition decides whether
this delivery is the one that publishes. A publish that still fails after
retries leaves the record in ``uploaded``; ``ReconciliationSweep`` finds
such records and re-publishes them.
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterator, List, Optional
from urllib.parse import unquote_plus

import pydantic

from database.record_store import BaseRecordStore
from transfer_api.adapters.queue import BaseQueue
from transfer_api.adapters.storage import BaseBlobStore
from transfer_api.errors import NotFound, StaleState, TransferError, TransientIOError, ValidationError
from transfer_api.failures import FailureChannel
from transfer_api.keys import parse_storage_key
from transfer_api.schemas import (
    BlobNotification,
    TransferMessage,
    TransferRecord,
    TransferStatus,
    utcnow,
)
from transfer_api.settings import Settings, get_settings
from transfer_api.utils.decorators import retry

logger = logging.getLogger(__name__)


class RelayOutcome(str, Enum):
    PUBLISHED = "published"
    DUPLICATE = "duplicate"              # record already past pending
    UNKNOWN_TRANSFER = "unknown_transfer"
    IGNORED = "ignored"                  # not an ObjectCreated event / not our key
    PUBLISH_FAILED = "publish_failed"


def notifications_from_event(event: dict) -> Iterator[BlobNotification]:
    """Yield notifications from an S3 event, unwrapping SQS-delivered events."""
    if event.get("Event") == "s3:TestEvent":
        return
    for record in event.get("Records", []):
        if record.get("eventSource") == "aws:sqs" or "body" in record:
            try:
                inner = json.loads(record["body"])
            except (KeyError, TypeError, json.JSONDecodeError):
                logger.warning(f"Skipping SQS record without a JSON body: {record.get('messageId')}")
                continue
            yield from notifications_from_event(inner)
            continue

        s3_info = record.get("s3") or {}
        obj = s3_info.get("object") or {}
        if "key" not in obj:
            logger.warning(f"Skipping event record without an object key: {record.get('eventName')}")
            continue
        yield BlobNotification(
            key=unquote_plus(obj["key"]),
            size=int(obj.get("size", 0)),
            event_type=record.get("eventName", ""),
        )


class CompletionRelay:
    """Moves transfers from pending to uploaded and announces them on the queue."""

    def __init__(
        self,
        record_store: BaseRecordStore,
        queue: BaseQueue,
        bucket: str,
        settings: Optional[Settings] = None,
        failure_channel: Optional[FailureChannel] = None,
    ):
        self.record_store = record_store
        self.queue = queue
        self.bucket = bucket
        self.settings = settings or get_settings()
        self.failure_channel = failure_channel or FailureChannel()
        self.publish_attempts = self.settings.relay_publish_attempts
        self.publish_delay = self.settings.relay_publish_delay_seconds

    @retry(max_attempts="publish_attempts", delay="publish_delay",
           exceptions=(TransientIOError,), logger_name=__name__)
    def _publish(self, message: TransferMessage) -> str:
        return self.queue.publish(message.model_dump(mode="json"))

    def publish_for(self, record: TransferRecord) -> RelayOutcome:
        """Publish one TransferMessage for an uploaded record."""
        message = TransferMessage.from_record(record, self.bucket)
        try:
            message_id = self._publish(message)
        except TransientIOError as e:
            self.failure_channel.relay_publish_failed(record.owner_id, record.transfer_id, str(e))
            return RelayOutcome.PUBLISH_FAILED
        logger.info(f"Published transfer {record.owner_id}/{record.transfer_id} as message {message_id}")
        return RelayOutcome.PUBLISHED

    def handle_notification(self, notification: BlobNotification) -> RelayOutcome:
        """Handle one blob store notification.

        Record store errors propagate so the notification is redelivered;
        everything else resolves to an outcome.
        """
        if not notification.is_object_created:
            logger.debug(f"Ignoring {notification.event_type} for {notification.key}")
            return RelayOutcome.IGNORED

        try:
            owner_id, transfer_id, _ = parse_storage_key(notification.key)
        except ValidationError as e:
            logger.warning(f"Ignoring notification for foreign key {notification.key!r}: {str(e)}")
            return RelayOutcome.IGNORED

        try:
            record = self.record_store.get(owner_id, transfer_id)
        except NotFound:
            logger.warning(f"Notification for unknown transfer {owner_id}/{transfer_id}; ignoring")
            return RelayOutcome.UNKNOWN_TRANSFER

        if record.storage_key != notification.key:
            # an object under the transfer's prefix that is not the authorized upload
            logger.warning(
                f"Ignoring {notification.key!r}: transfer {owner_id}/{transfer_id} "
                f"expects {record.storage_key!r}"
            )
            return RelayOutcome.IGNORED

        try:
            record = self.record_store.transition(
                owner_id,
                transfer_id,
                TransferStatus.PENDING,
                TransferStatus.UPLOADED,
                size_bytes=notification.size,
                uploaded_at=utcnow(),
            )
        except StaleState as e:
            logger.info(f"Duplicate notification for {owner_id}/{transfer_id}: {str(e)}")
            return RelayOutcome.DUPLICATE

        return self.publish_for(record)

    def handle_s3_event(self, event: dict) -> List[RelayOutcome]:
        outcomes = []
        for notification in notifications_from_event(event):
            outcomes.append(self.handle_notification(notification))
        return outcomes

    def drain_notifications(
        self,
        notification_queue: BaseQueue,
        stop_event: Optional[threading.Event] = None,
        max_batches: Optional[int] = None,
        wait_seconds: Optional[int] = None,
    ) -> int:
        """Consume S3 events from a notification queue until stopped.

        A notification is acknowledged only after it was handled; failures
        leave it for redelivery. Returns the number of notifications handled.
        """
        wait_seconds = self.settings.receive_wait_seconds if wait_seconds is None else wait_seconds
        handled = 0
        batches = 0
        while not (stop_event and stop_event.is_set()):
            if max_batches is not None and batches >= max_batches:
                break
            batches += 1
            for message in notification_queue.receive(self.settings.receive_batch_size, wait_seconds):
                try:
                    event = json.loads(message.body)
                    self.handle_s3_event(event)
                except (json.JSONDecodeError, pydantic.ValidationError) as e:
                    logger.error(f"Discarding malformed notification {message.message_id}: {str(e)}")
                except TransferError as e:
                    logger.error(f"Notification {message.message_id} failed, leaving for redelivery: {str(e)}")
                    continue
                notification_queue.delete(message.receipt)
                handled += 1
        return handled

    def requeue(self, owner_id: str, transfer_id: str) -> RelayOutcome:
        """Operator re-queue of a failed transfer: failed -> uploaded, fresh message."""
        record = self.record_store.get(owner_id, transfer_id)
        if record.uploaded_at is None or record.size_bytes is None:
            raise ValidationError(f"Transfer {owner_id}/{transfer_id} was never uploaded; nothing to requeue")
        record = self.record_store.transition(
            owner_id,
            transfer_id,
            TransferStatus.FAILED,
            TransferStatus.UPLOADED,
            attempt_count=0,
            next_attempt_at=None,
            last_error=None,
        )
        logger.info(f"Requeued transfer {owner_id}/{transfer_id}")
        return self.publish_for(record)


class ReconciliationSweep:
    """Periodic repair of transfers whose announcement went missing.

    - ``uploaded`` records with no activity for ``reconcile_threshold_seconds``
      get a fresh message (the worker's idempotency check absorbs duplicates).
    - ``pending`` records older than the capability TTL plus the threshold are
      checked against the blob store: a present object is relayed as if its
      notification had arrived, a missing one marks the transfer failed, and
      so does an object the relay refuses.
    """

    def __init__(
        self,
        record_store: BaseRecordStore,
        blob_store: BaseBlobStore,
        relay: CompletionRelay,
        settings: Optional[Settings] = None,
    ):
        self.record_store = record_store
        self.blob_store = blob_store
        self.relay = relay
        self.settings = settings or get_settings()

    def _abandon(self, record: TransferRecord, now: datetime, reason: str) -> None:
        self.record_store.transition(
            record.owner_id,
            record.transfer_id,
            TransferStatus.PENDING,
            TransferStatus.FAILED,
            failed_at=now,
            last_error=reason,
        )
        logger.error(f"Abandoned transfer {record.owner_id}/{record.transfer_id}: {reason}")

    def run_once(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        threshold = timedelta(seconds=self.settings.reconcile_threshold_seconds)
        summary = {"republished": 0, "recovered": 0, "abandoned": 0, "errors": 0}

        for record in self.record_store.list_by_status(TransferStatus.UPLOADED, older_than=now - threshold):
            outcome = self.relay.publish_for(record)
            if outcome == RelayOutcome.PUBLISHED:
                summary["republished"] += 1
            else:
                summary["errors"] += 1

        pending_cutoff = now - threshold - timedelta(seconds=self.settings.capability_ttl_seconds)
        for record in self.record_store.list_by_status(TransferStatus.PENDING, older_than=pending_cutoff):
            try:
                size = self.blob_store.head_object(record.storage_key)
                if size is not None:
                    outcome = self.relay.handle_notification(
                        BlobNotification(key=record.storage_key, size=size, event_type="ObjectCreated:Reconciled")
                    )
                    if outcome == RelayOutcome.PUBLISHED:
                        summary["recovered"] += 1
                    elif outcome == RelayOutcome.PUBLISH_FAILED:
                        # now uploaded; the next sweep re-publishes it
                        summary["errors"] += 1
                    elif outcome != RelayOutcome.DUPLICATE:
                        self._abandon(record, now, f"uploaded object could not be relayed ({outcome.value})")
                        summary["abandoned"] += 1
                    continue
                self._abandon(record, now, "upload never arrived before the capability expired")
                summary["abandoned"] += 1
            except StaleState:
                # a late notification got there first
                continue
            except TransferError as e:
                logger.error(f"Reconciliation of {record.owner_id}/{record.transfer_id} failed: {str(e)}")
                summary["errors"] += 1

        logger.info(f"Reconciliation sweep finished: {summary}")
        return summary
