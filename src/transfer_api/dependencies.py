"""Builds pipeline components from settings for the CLIs and the Lambda entry point."""
from typing import Optional

from database.record_store import get_record_store
from transfer_api.adapters.queue import (
    QUEUE_DEAD_LETTER,
    QUEUE_NOTIFICATIONS,
    QUEUE_TRANSFERS,
    BaseQueue,
    QueueFactory,
)
from transfer_api.adapters.storage import BaseBlobStore, BlobStoreFactory
from transfer_api.authorization import UploadAuthorizationService
from transfer_api.failures import FailureChannel
from transfer_api.relay import CompletionRelay, ReconciliationSweep
from transfer_api.settings import Settings, get_settings


def get_queue(name: str = QUEUE_TRANSFERS, settings: Optional[Settings] = None) -> BaseQueue:
    return QueueFactory.get_queue_handler(settings or get_settings(), name)


def get_blob_store(settings: Optional[Settings] = None) -> BaseBlobStore:
    settings = settings or get_settings()
    # local-dev has no bucket notifications; the blob store emits them itself
    notification_queue = get_queue(QUEUE_NOTIFICATIONS, settings) if settings.deployment_mode == "local-dev" else None
    return BlobStoreFactory.get_blob_store(settings, notification_queue=notification_queue)


def get_failure_channel(settings: Optional[Settings] = None) -> FailureChannel:
    settings = settings or get_settings()
    if settings.deployment_mode == "local-dev" or settings.dead_letter_queue_url:
        return FailureChannel(get_queue(QUEUE_DEAD_LETTER, settings))
    return FailureChannel()


def get_authorization_service(settings: Optional[Settings] = None) -> UploadAuthorizationService:
    settings = settings or get_settings()
    return UploadAuthorizationService(get_blob_store(settings), get_record_store(settings), settings)


def get_completion_relay(settings: Optional[Settings] = None) -> CompletionRelay:
    settings = settings or get_settings()
    return CompletionRelay(
        get_record_store(settings),
        get_queue(QUEUE_TRANSFERS, settings),
        settings.s3_bucket_name,
        settings,
        get_failure_channel(settings),
    )


def get_reconciliation_sweep(settings: Optional[Settings] = None) -> ReconciliationSweep:
    settings = settings or get_settings()
    relay = get_completion_relay(settings)
    return ReconciliationSweep(relay.record_store, get_blob_store(settings), relay, settings)
