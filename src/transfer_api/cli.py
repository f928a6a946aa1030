# cli.py
import json
import logging
import mimetypes
import signal
import threading
from pathlib import Path

import click
import requests

from transfer_api.adapters.queue import QUEUE_NOTIFICATIONS
from transfer_api.adapters.storage import LocalBlobStore
from transfer_api.dependencies import (
    get_authorization_service,
    get_completion_relay,
    get_queue,
    get_reconciliation_sweep,
)
from transfer_api.errors import TransferError
from transfer_api.settings import get_settings

logger = logging.getLogger(__name__)

UPLOAD_TIMEOUT_SECONDS = 300


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@click.group()
def cli():
    """Operator commands for the media-sync transfer pipeline"""
    configure_logging(get_settings().log_level)


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    print("Current Configuration:")
    print(f"  Deployment Mode: {settings.deployment_mode}")
    print(f"  AWS Region: {settings.aws_region}")
    print(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    print(f"  S3 Bucket: {settings.s3_bucket_name}")
    print(f"  Transfer Queue URL: {settings.sqs_queue_url}")
    print(f"  Notification Queue URL: {settings.notification_queue_url}")
    print(f"  Dead-letter Queue URL: {settings.dead_letter_queue_url}")
    print(f"  DynamoDB Table: {settings.dynamodb_table_name}")
    print(f"  Local Storage: {settings.storage_path}")
    print(f"  Sync Root: {settings.sync_root_path}")
    print(f"  Worker Concurrency: {settings.worker_concurrency}")
    print(f"  Max Attempts: {settings.max_attempts}")


@cli.command()
@click.option("--owner", "owner_id", required=True, help="Owner id of the transfer")
@click.option("--name", "display_name", required=True, help="File name as shown to the user")
@click.option("--content-type", required=True, help="MIME type of the upload")
def authorize(owner_id, display_name, content_type):
    """Issue an upload capability and print it as JSON"""
    try:
        result = get_authorization_service().authorize(owner_id, display_name, content_type)
    except TransferError as e:
        raise click.ClickException(str(e))
    print(result.model_dump_json(indent=2))


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--owner", "owner_id", required=True, help="Owner id of the transfer")
@click.option("--content-type", default=None, help="MIME type (guessed from the file name if omitted)")
def upload(path, owner_id, content_type):
    """Authorize and upload a local file, as a device would"""
    settings = get_settings()
    content_type = content_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    service = get_authorization_service(settings)

    try:
        result = service.authorize(owner_id, path.name, content_type)
    except TransferError as e:
        raise click.ClickException(str(e))
    print(f"Authorized transfer {result.transfer_id} -> {result.storage_key}")

    if isinstance(service.blob_store, LocalBlobStore):
        with open(path, "rb") as f:
            size = service.blob_store.put_object(result.storage_key, f, content_type)
        print(f"✅ Stored {size} bytes locally")
        return

    capability = result.capability
    with open(path, "rb") as f:
        response = requests.request(
            capability.method,
            capability.url,
            data=f,
            headers=capability.headers,
            timeout=UPLOAD_TIMEOUT_SECONDS,
        )
    if not response.ok:
        raise click.ClickException(f"Upload failed with HTTP {response.status_code}: {response.text[:200]}")
    print(f"✅ Uploaded {path.stat().st_size} bytes")


@cli.command()
@click.option("--once", is_flag=True, help="Handle a single batch and exit")
def relay(once):
    """Run the completion relay against the notification queue"""
    settings = get_settings()
    completion_relay = get_completion_relay(settings)
    notifications = get_queue(QUEUE_NOTIFICATIONS, settings)
    stop_event = threading.Event()

    def _stop(signum, frame):
        print("Received shutdown signal...")
        stop_event.set()

    previous = {sig: signal.signal(sig, _stop) for sig in (signal.SIGINT, signal.SIGTERM)}

    print(f"Relay listening on the {QUEUE_NOTIFICATIONS} queue")
    try:
        handled = completion_relay.drain_notifications(
            notifications,
            stop_event=stop_event,
            max_batches=1 if once else None,
            wait_seconds=1 if once else None,
        )
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    print(f"Relay stopped after {handled} notification(s)")


@cli.command()
def reconcile():
    """Re-announce uploaded transfers and recover lost notifications"""
    summary = get_reconciliation_sweep().run_once()
    print(json.dumps(summary, indent=2))


@cli.command()
@click.argument("owner_id")
@click.argument("transfer_id")
def requeue(owner_id, transfer_id):
    """Send a failed transfer back through the worker"""
    try:
        outcome = get_completion_relay().requeue(owner_id, transfer_id)
    except TransferError as e:
        raise click.ClickException(str(e))
    print(f"Requeue of {owner_id}/{transfer_id}: {outcome.value}")


@cli.command()
def enable_notifications():
    """Point the bucket's ObjectCreated events at the notification queue"""
    settings = get_settings()
    if not settings.uses_aws:
        raise click.ClickException("local-dev emits notifications itself; nothing to configure")
    if not settings.notification_queue_url:
        raise click.ClickException("NOTIFICATION_QUEUE_URL is not set")

    from transfer_api.aws_clients import get_queue_arn, get_s3_client, get_sqs_client
    from transfer_api.s3.event_notify import enable_s3_notifications

    queue_arn = get_queue_arn(settings.notification_queue_url, get_sqs_client(settings))
    enable_s3_notifications(settings.s3_bucket_name, queue_arn, get_s3_client(settings))
    print(f"✅ s3://{settings.s3_bucket_name} now notifies {queue_arn}")


if __name__ == "__main__":
    cli()
