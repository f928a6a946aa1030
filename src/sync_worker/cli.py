"""
CLI commands for the Local Sync Worker.

``worker`` runs until SIGINT/SIGTERM: the first signal stops polling and
lets in-flight transfers finish, a second one aborts their downloads.
"""

import asyncio
import logging
import os
import signal

import click

from database.record_store import get_record_store
from transfer_api.adapters.queue import QUEUE_TRANSFERS
from transfer_api.adapters.storage import BlobStoreFactory
from transfer_api.cli import configure_logging
from transfer_api.dependencies import get_failure_channel, get_queue
from transfer_api.settings import get_settings

from .worker import LocalSyncWorker

logger = logging.getLogger(__name__)


def build_worker(settings=None) -> LocalSyncWorker:
    settings = settings or get_settings()
    return LocalSyncWorker(
        queue=get_queue(QUEUE_TRANSFERS, settings),
        record_store=get_record_store(settings),
        blob_store=BlobStoreFactory.get_blob_store(settings),
        settings=settings,
        failure_channel=get_failure_channel(settings),
    )


async def _run_until_signalled(worker_instance: LocalSyncWorker) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal():
        if not stop_event.is_set():
            print("Received shutdown signal, finishing in-flight transfers (signal again to abort)...")
            stop_event.set()
        else:
            worker_instance.abort()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal)
    await worker_instance.run(stop_event)


@click.group()
def cli():
    """CLI commands for the Local Sync Worker"""
    pass


@cli.command()
@click.option("--mode",
              type=click.Choice(["local-dev", "aws-mock", "aws-prod"]),
              default=None,
              help="Deployment mode (defaults to DEPLOYMENT_MODE)")
@click.option("--concurrency", type=int, default=None, help="Override WORKER_CONCURRENCY")
def worker(mode, concurrency):
    """Start the sync worker"""
    if mode:
        os.environ["DEPLOYMENT_MODE"] = mode
        # Clear settings cache to pick up new mode
        get_settings.cache_clear()
    if concurrency:
        os.environ["WORKER_CONCURRENCY"] = str(concurrency)
        get_settings.cache_clear()

    settings = get_settings()
    configure_logging(settings.log_level)
    print(f"Configuration loaded:")
    print(f"  Deployment mode: {settings.deployment_mode}")
    print(f"  S3 bucket: {settings.s3_bucket_name}")
    print(f"  Transfer queue: {settings.sqs_queue_url or settings.sqs_queue_name}")
    print(f"  Sync root: {settings.sync_root_path}")
    print(f"  Concurrency: {settings.worker_concurrency}")

    worker_instance = build_worker(settings)
    try:
        asyncio.run(_run_until_signalled(worker_instance))
    finally:
        print("Worker shutdown complete")


@cli.command()
@click.option("--wait-seconds", type=int, default=1, help="Long-poll wait for the batch")
def process_once(wait_seconds):
    """Process a single batch of transfer messages and exit"""
    settings = get_settings()
    configure_logging(settings.log_level)
    outcomes = asyncio.run(build_worker(settings).process_once(wait_seconds=wait_seconds))
    summary = {}
    for outcome in outcomes:
        summary[outcome.value] = summary.get(outcome.value, 0) + 1
    print(f"Processed {len(outcomes)} message(s): {summary}")


if __name__ == "__main__":
    cli()
