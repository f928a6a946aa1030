from types import SimpleNamespace

import boto3
import pytest
from moto import mock_aws

from database.dynamodb import DynamoDBRecordStore
from database.local import SQLiteRecordStore
from sync_worker.worker import LocalSyncWorker
from tests.consts import (
    AWS_REGION,
    TEST_BUCKET_NAME,
    TEST_DEAD_LETTER_QUEUE_NAME,
    TEST_NOTIFICATION_QUEUE_NAME,
    TEST_QUEUE_NAME,
    TEST_TABLE_NAME,
)
from transfer_api.adapters.queue import LocalQueue, SQSQueue
from transfer_api.adapters.storage import LocalBlobStore, S3BlobStore
from transfer_api.authorization import UploadAuthorizationService
from transfer_api.aws_clients import clear_client_cache
from transfer_api.failures import FailureChannel
from transfer_api.relay import CompletionRelay, ReconciliationSweep
from transfer_api.settings import Settings, get_settings

TEST_TUNING = dict(
    s3_bucket_name=TEST_BUCKET_NAME,
    receive_wait_seconds=0,
    visibility_timeout_seconds=30,
    backoff_base_seconds=1.0,
    backoff_ceiling_seconds=60.0,
    relay_publish_delay_seconds=0.0,
    download_chunk_size=4096,
    cleanup_retry_interval_seconds=1.0,
)


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    clear_client_cache()
    yield
    get_settings.cache_clear()
    clear_client_cache()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS Credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", AWS_REGION)
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)


@pytest.fixture
def mocked_aws(aws_credentials):
    """Bucket, queues and table inside a moto mock."""
    with mock_aws():
        s3 = boto3.client("s3", region_name=AWS_REGION)
        s3.create_bucket(Bucket=TEST_BUCKET_NAME)

        sqs = boto3.client("sqs", region_name=AWS_REGION)
        queue_url = sqs.create_queue(QueueName=TEST_QUEUE_NAME)["QueueUrl"]
        notification_queue_url = sqs.create_queue(QueueName=TEST_NOTIFICATION_QUEUE_NAME)["QueueUrl"]
        dead_letter_queue_url = sqs.create_queue(QueueName=TEST_DEAD_LETTER_QUEUE_NAME)["QueueUrl"]

        dynamodb = boto3.resource("dynamodb", region_name=AWS_REGION)
        dynamodb.create_table(
            TableName=TEST_TABLE_NAME,
            KeySchema=[
                {"AttributeName": "owner_id", "KeyType": "HASH"},
                {"AttributeName": "transfer_id", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "owner_id", "AttributeType": "S"},
                {"AttributeName": "transfer_id", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )

        yield SimpleNamespace(
            s3=s3,
            sqs=sqs,
            dynamodb=dynamodb,
            queue_url=queue_url,
            notification_queue_url=notification_queue_url,
            dead_letter_queue_url=dead_letter_queue_url,
        )


@pytest.fixture
def local_settings(tmp_path) -> Settings:
    return Settings(
        deployment_mode="local-dev",
        storage_dir=str(tmp_path / "storage"),
        sync_root=str(tmp_path / "synced-media"),
        **TEST_TUNING,
    )


@pytest.fixture
def aws_settings(mocked_aws, tmp_path) -> Settings:
    return Settings(
        deployment_mode="aws-prod",
        aws_region=AWS_REGION,
        sqs_queue_url=mocked_aws.queue_url,
        notification_queue_url=mocked_aws.notification_queue_url,
        dead_letter_queue_url=mocked_aws.dead_letter_queue_url,
        dynamodb_table_name=TEST_TABLE_NAME,
        storage_dir=str(tmp_path / "storage"),
        sync_root=str(tmp_path / "synced-media"),
        **TEST_TUNING,
    )


def _wire(settings, record_store, queue, notifications, dead_letters, blob_store):
    failure_channel = FailureChannel(dead_letters)
    relay = CompletionRelay(record_store, queue, settings.s3_bucket_name, settings, failure_channel)
    return SimpleNamespace(
        settings=settings,
        record_store=record_store,
        queue=queue,
        notifications=notifications,
        dead_letters=dead_letters,
        blob_store=blob_store,
        failure_channel=failure_channel,
        authorizer=UploadAuthorizationService(blob_store, record_store, settings),
        relay=relay,
        sweep=ReconciliationSweep(record_store, blob_store, relay, settings),
        worker=LocalSyncWorker(queue, record_store, blob_store, settings, failure_channel),
    )


@pytest.fixture
def local_pipeline(local_settings):
    """Every component wired against local-dev backends under tmp_path."""
    queues = local_settings.storage_path / "queues"
    record_store = SQLiteRecordStore(local_settings.sqlite_path)
    record_store.init_db()
    notifications = LocalQueue(queues / "notifications", visibility_timeout_seconds=30)
    blob_store = LocalBlobStore(
        local_settings.storage_path / "blobs", TEST_BUCKET_NAME, notification_queue=notifications
    )
    return _wire(
        local_settings,
        record_store,
        LocalQueue(queues / "transfers", visibility_timeout_seconds=30),
        notifications,
        LocalQueue(queues / "dead_letter"),
        blob_store,
    )


@pytest.fixture
def aws_pipeline(aws_settings, mocked_aws):
    """Every component wired against moto's S3, SQS and DynamoDB."""
    return _wire(
        aws_settings,
        DynamoDBRecordStore(TEST_TABLE_NAME, dynamodb_resource=mocked_aws.dynamodb),
        SQSQueue(mocked_aws.queue_url, sqs_client=mocked_aws.sqs, visibility_timeout_seconds=30),
        SQSQueue(mocked_aws.notification_queue_url, sqs_client=mocked_aws.sqs),
        SQSQueue(mocked_aws.dead_letter_queue_url, sqs_client=mocked_aws.sqs),
        S3BlobStore(TEST_BUCKET_NAME, s3_client=mocked_aws.s3),
    )
