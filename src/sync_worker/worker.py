"""
Local Sync Worker.

Consumes TransferMessages and makes each uploaded transfer durable on local
disk exactly once in effect:

1. validate the message
2. load the record and decide whether there is anything to do
3. stream the object into a temp file next to its destination
4. publish the temp file under its final name without clobbering
5. mark the record downloaded
6. delete the remote object (best effort, retried in the background)
7. acknowledge the message

Any step may be repeated after a crash; the conditional record transition
and the size check on the destination make repeats harmless.
"""

import asyncio
import json
import logging
import math
import os
import tempfile
import threading
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set

import pydantic

from database.record_store import BaseRecordStore
from transfer_api.adapters.queue import BaseQueue
from transfer_api.adapters.storage import BaseBlobStore
from transfer_api.errors import (
    CapacityExceeded,
    InternalError,
    NotFound,
    StaleState,
    TransferError,
    TransientIOError,
    ValidationError,
)
from transfer_api.failures import FailureChannel
from transfer_api.keys import derive_local_path, parse_storage_key
from transfer_api.schemas import (
    ReceivedMessage,
    TransferMessage,
    TransferRecord,
    TransferStatus,
    utcnow,
)
from transfer_api.settings import Settings, get_settings
from transfer_api.utils.decorators import async_retry, log_execution_time

from .backoff import BackoffPolicy
from .cleanup import RemoteCleanupScheduler

logger = logging.getLogger(__name__)


class ProcessingOutcome(str, Enum):
    DOWNLOADED = "downloaded"          # written locally by this attempt
    ALREADY_DONE = "already_done"      # record was already downloaded
    DROPPED = "dropped"                # record failed; message discarded
    RETRY_LATER = "retry_later"        # transient failure, message will reappear
    DEFERRED = "deferred"              # record still backing off, attempt not counted
    DEAD_LETTERED = "dead_lettered"
    ABORTED = "aborted"                # shutdown interrupted the download


class DownloadAborted(Exception):
    """Raised between chunks once the worker has been told to abort."""


def parse_transfer_message(body: str) -> TransferMessage:
    """Decode and check a queue message body. Raises ValidationError."""
    try:
        message = TransferMessage.model_validate(json.loads(body))
    except (json.JSONDecodeError, TypeError, pydantic.ValidationError) as e:
        raise ValidationError(f"Malformed transfer message: {e}") from e

    owner_id, transfer_id, _ = parse_storage_key(message.storage_key)
    if (owner_id, transfer_id) != (message.owner_id, message.transfer_id):
        raise ValidationError(
            f"storage_key {message.storage_key!r} does not belong to "
            f"{message.owner_id}/{message.transfer_id}"
        )
    return message


def _size_of(path: Path) -> Optional[int]:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return None


def _fsync_dir(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class LocalSyncWorker:
    """Replicates uploaded transfers from the blob store to ``sync_root``."""

    def __init__(
        self,
        queue: BaseQueue,
        record_store: BaseRecordStore,
        blob_store: BaseBlobStore,
        settings: Optional[Settings] = None,
        failure_channel: Optional[FailureChannel] = None,
        cleanup: Optional[RemoteCleanupScheduler] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.settings = settings or get_settings()
        self.queue = queue
        self.record_store = record_store
        self.blob_store = blob_store
        self.failure_channel = failure_channel or FailureChannel()
        self.cleanup = cleanup or RemoteCleanupScheduler(
            blob_store,
            self.failure_channel,
            retry_interval_seconds=self.settings.cleanup_retry_interval_seconds,
            max_attempts=self.settings.cleanup_max_attempts,
        )
        self.backoff = backoff or BackoffPolicy.from_settings(self.settings)

        self.sync_root = self.settings.sync_root_path
        self.max_attempts = self.settings.max_attempts
        self.concurrency = self.settings.worker_concurrency
        self.chunk_size = self.settings.download_chunk_size
        self.visibility_timeout = self.settings.visibility_timeout_seconds

        # record store calls are retried in-process before they count as a failed attempt
        self.store_attempts = 3
        self.store_retry_delay = 0.5

        self._abort = threading.Event()
        self._semaphore: Optional[asyncio.Semaphore] = None
        logger.info(
            f"LocalSyncWorker initialized: sync_root={self.sync_root}, "
            f"concurrency={self.concurrency}, max_attempts={self.max_attempts}"
        )

    # ------------------------------------------------------------------
    # collaborators, off the event loop
    # ------------------------------------------------------------------

    @async_retry(max_attempts="store_attempts", delay="store_retry_delay",
                 exceptions=(TransientIOError,), logger_name=__name__)
    async def _store(self, method: str, *args, **kwargs):
        return await asyncio.to_thread(getattr(self.record_store, method), *args, **kwargs)

    async def _ack(self, message: ReceivedMessage) -> None:
        try:
            await asyncio.to_thread(self.queue.delete, message.receipt)
        except TransferError as e:
            # the next delivery finds the record downloaded and acks again
            logger.warning(f"Could not acknowledge message {message.message_id}: {str(e)}")

    async def _change_visibility(self, message: ReceivedMessage, seconds: float) -> None:
        try:
            await asyncio.to_thread(self.queue.change_visibility, message.receipt, int(math.ceil(seconds)))
        except TransferError as e:
            logger.warning(f"Could not delay message {message.message_id}: {str(e)}")

    async def _hold_visibility(self, message: ReceivedMessage, done: asyncio.Event) -> None:
        """Keep a long download's message invisible until ``done`` is set."""
        interval = max(1, self.visibility_timeout // 2)
        while True:
            try:
                await asyncio.wait_for(done.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                await self._change_visibility(message, self.visibility_timeout)

    # ------------------------------------------------------------------
    # outcomes
    # ------------------------------------------------------------------

    async def _dead_letter(
        self,
        message: ReceivedMessage,
        reason: str,
        owner_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
    ) -> ProcessingOutcome:
        try:
            await asyncio.to_thread(self.failure_channel.dead_letter, message.body, reason, owner_id, transfer_id)
        except TransferError as e:
            logger.error(f"Dead-letter of message {message.message_id} failed, leaving it queued: {str(e)}")
            return ProcessingOutcome.RETRY_LATER
        await self._ack(message)
        return ProcessingOutcome.DEAD_LETTERED

    async def _retry_later(
        self,
        message: ReceivedMessage,
        transfer: TransferMessage,
        attempt: int,
        error: TransferError,
        persist: bool = True,
    ) -> ProcessingOutcome:
        delay = self.backoff.delay_for(attempt)
        logger.warning(
            f"Transfer {transfer.owner_id}/{transfer.transfer_id} attempt {attempt} failed: {str(error)}. "
            f"Retrying in {delay:.0f}s"
        )
        if persist:
            try:
                await self._store(
                    "set_retry_state",
                    transfer.owner_id,
                    transfer.transfer_id,
                    self.backoff.next_attempt_at(attempt),
                    str(error)[:500],
                )
            except TransferError as e:
                logger.warning(f"Could not store retry state for {transfer.owner_id}/{transfer.transfer_id}: {str(e)}")
        await self._change_visibility(message, delay)
        return ProcessingOutcome.RETRY_LATER

    async def _fail_transfer(self, message: ReceivedMessage, record: TransferRecord, reason: str) -> ProcessingOutcome:
        try:
            await self._store(
                "transition",
                record.owner_id,
                record.transfer_id,
                TransferStatus.UPLOADED,
                TransferStatus.FAILED,
                failed_at=utcnow(),
                last_error=reason,
            )
        except StaleState as e:
            logger.info(f"Transfer {record.owner_id}/{record.transfer_id} moved on before it could fail: {str(e)}")
            if e.current_status == TransferStatus.DOWNLOADED:
                await self._ack(message)
                return ProcessingOutcome.ALREADY_DONE
        return await self._dead_letter(message, reason, record.owner_id, record.transfer_id)

    # ------------------------------------------------------------------
    # steps 3 and 4: download and publish (blocking, runs in a thread)
    # ------------------------------------------------------------------

    def _materialize(self, record: TransferRecord, expected_size: int) -> Path:
        """Make the record's object durable at its local path. Returns that path."""
        final_path = derive_local_path(self.sync_root, record.owner_id, record.transfer_id, record.display_name)
        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            if _size_of(final_path) == expected_size:
                logger.info(f"{final_path} already present with {expected_size} bytes; skipping download")
                return final_path

            fd, tmp_name = tempfile.mkstemp(
                dir=final_path.parent, prefix=f".{record.transfer_id}_", suffix=".part"
            )
            tmp_path = Path(tmp_name)
            try:
                written = self._download_to(fd, record.storage_key, expected_size)
                if written != expected_size:
                    raise TransientIOError(
                        f"Downloaded {written} bytes of {record.storage_key}, expected {expected_size}"
                    )
                self._publish_file(tmp_path, final_path, expected_size)
            finally:
                tmp_path.unlink(missing_ok=True)
            _fsync_dir(final_path.parent)
        except OSError as e:
            raise TransientIOError(f"Local filesystem error for {final_path}: {e}") from e
        return final_path

    def _download_to(self, fd: int, storage_key: str, expected_size: int) -> int:
        written = 0
        with os.fdopen(fd, "wb") as f:
            for chunk in self.blob_store.iter_object(storage_key, self.chunk_size):
                if self._abort.is_set():
                    raise DownloadAborted(f"Download of {storage_key} aborted")
                f.write(chunk)
                written += len(chunk)
                if written > expected_size:
                    raise TransientIOError(
                        f"{storage_key} is larger than the expected {expected_size} bytes"
                    )
            f.flush()
            os.fsync(f.fileno())
        return written

    def _publish_file(self, tmp_path: Path, final_path: Path, expected_size: int) -> None:
        try:
            os.link(tmp_path, final_path)
            logger.info(f"Published {final_path}")
        except FileExistsError:
            if _size_of(final_path) == expected_size:
                logger.info(f"{final_path} was published concurrently; keeping it")
                return
            logger.warning(f"Replacing {final_path}: size differs from the expected {expected_size} bytes")
            os.replace(tmp_path, final_path)

    # ------------------------------------------------------------------
    # per-message state machine
    # ------------------------------------------------------------------

    async def process_message(self, message: ReceivedMessage) -> ProcessingOutcome:
        """Run steps 1-7 for one received message."""
        try:
            transfer = parse_transfer_message(message.body)
        except ValidationError as e:
            return await self._dead_letter(message, str(e))

        if transfer.bucket != self.blob_store.bucket:
            logger.warning(
                f"Message {message.message_id} names bucket {transfer.bucket!r}; "
                f"reading from {self.blob_store.bucket!r}"
            )

        try:
            return await self._process(message, transfer)
        except (TransientIOError, InternalError) as e:
            return await self._retry_later(message, transfer, message.receive_count, e, persist=False)
        except Exception as e:
            logger.exception(f"Unexpected error on message {message.message_id}")
            return await self._retry_later(
                message, transfer, message.receive_count, InternalError(str(e)), persist=False
            )

    async def _process(self, message: ReceivedMessage, transfer: TransferMessage) -> ProcessingOutcome:
        owner_id, transfer_id = transfer.owner_id, transfer.transfer_id

        try:
            record: TransferRecord = await self._store("get", owner_id, transfer_id)
        except NotFound:
            return await self._dead_letter(
                message, f"No transfer record for {owner_id}/{transfer_id}", owner_id, transfer_id
            )

        if record.storage_key != transfer.storage_key:
            return await self._dead_letter(
                message,
                f"Message key {transfer.storage_key!r} does not match record key {record.storage_key!r}",
                owner_id,
                transfer_id,
            )

        if record.status == TransferStatus.DOWNLOADED:
            logger.info(f"Transfer {owner_id}/{transfer_id} already downloaded")
            await asyncio.to_thread(self.cleanup.cleanup, record.storage_key)
            await self._ack(message)
            return ProcessingOutcome.ALREADY_DONE
        if record.status == TransferStatus.FAILED:
            logger.info(f"Transfer {owner_id}/{transfer_id} is failed; dropping message")
            await self._ack(message)
            return ProcessingOutcome.DROPPED
        if record.status == TransferStatus.PENDING:
            return await self._retry_later(
                message, transfer, message.receive_count,
                InternalError("record is still pending"), persist=False,
            )

        now = utcnow()
        if record.next_attempt_at is not None and record.next_attempt_at > now:
            remaining = (record.next_attempt_at - now).total_seconds()
            logger.info(f"Transfer {owner_id}/{transfer_id} backing off for another {remaining:.0f}s")
            await self._change_visibility(message, remaining)
            return ProcessingOutcome.DEFERRED

        record = await self._store("record_attempt", owner_id, transfer_id)
        if record.attempt_count > self.max_attempts:
            error = CapacityExceeded(
                f"Gave up on {owner_id}/{transfer_id} after {self.max_attempts} attempts"
                + (f": {record.last_error}" if record.last_error else "")
            )
            return await self._fail_transfer(message, record, str(error))

        expected_size = record.size_bytes if record.size_bytes is not None else transfer.size_bytes
        if expected_size != transfer.size_bytes:
            logger.warning(
                f"Message for {owner_id}/{transfer_id} reports {transfer.size_bytes} bytes, "
                f"record says {expected_size}; trusting the record"
            )

        try:
            local_path = await self._download(message, record, expected_size)
            updated = await self._mark_downloaded(record, local_path)
        except DownloadAborted as e:
            logger.warning(f"{str(e)}; message left for redelivery")
            return ProcessingOutcome.ABORTED
        except (TransientIOError, InternalError) as e:
            return await self._retry_later(message, transfer, record.attempt_count, e)
        except Exception as e:
            logger.exception(f"Unexpected error processing {owner_id}/{transfer_id}")
            return await self._retry_later(message, transfer, record.attempt_count, InternalError(str(e)))

        if updated is not None and updated.status == TransferStatus.FAILED:
            logger.warning(f"Transfer {owner_id}/{transfer_id} was failed while downloading; dropping message")
            await self._ack(message)
            return ProcessingOutcome.DROPPED

        await asyncio.to_thread(self.cleanup.cleanup, record.storage_key)
        await self._ack(message)
        return ProcessingOutcome.DOWNLOADED if updated is not None else ProcessingOutcome.ALREADY_DONE

    @log_execution_time
    async def _download(self, message: ReceivedMessage, record: TransferRecord, expected_size: int) -> Path:
        done = asyncio.Event()
        heartbeat = asyncio.create_task(self._hold_visibility(message, done))
        try:
            return await asyncio.to_thread(self._materialize, record, expected_size)
        finally:
            done.set()
            await heartbeat

    async def _mark_downloaded(self, record: TransferRecord, local_path: Path) -> Optional[TransferRecord]:
        """Step 5. Returns the stored record, or None when another attempt already finished it."""
        try:
            return await self._store(
                "transition",
                record.owner_id,
                record.transfer_id,
                TransferStatus.UPLOADED,
                TransferStatus.DOWNLOADED,
                local_path=str(local_path),
                downloaded_at=utcnow(),
            )
        except StaleState as e:
            if e.current_status == TransferStatus.DOWNLOADED:
                logger.info(f"Transfer {record.owner_id}/{record.transfer_id} was completed by another attempt")
                return None
            if e.current_status == TransferStatus.FAILED:
                return record.model_copy(update={"status": TransferStatus.FAILED})
            raise InternalError(f"Unexpected state after download: {str(e)}") from e

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """Make in-progress downloads stop at the next chunk boundary."""
        logger.warning("Aborting in-progress downloads")
        self._abort.set()

    async def _guarded(self, message: ReceivedMessage) -> Optional[ProcessingOutcome]:
        async with self._semaphore:
            try:
                outcome = await self.process_message(message)
            except Exception:
                logger.exception(f"Message {message.message_id} crashed the handler")
                return None
            logger.info(f"Message {message.message_id}: {outcome.value}")
            return outcome

    async def process_once(self, wait_seconds: Optional[int] = None) -> List[ProcessingOutcome]:
        """Receive one batch and process it. Returns the outcomes."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.concurrency)
        wait_seconds = self.settings.receive_wait_seconds if wait_seconds is None else wait_seconds
        messages = await asyncio.to_thread(self.queue.receive, self.settings.receive_batch_size, wait_seconds)
        results = await asyncio.gather(*(self._guarded(message) for message in messages))
        return [outcome for outcome in results if outcome is not None]

    async def _release(self, receive_task: "asyncio.Task") -> None:
        """Hand back messages from a poll that finished after shutdown began."""
        try:
            messages = await asyncio.wait_for(receive_task, timeout=self.settings.receive_wait_seconds + 5)
        except (asyncio.TimeoutError, TransferError):
            return
        for message in messages:
            await self._change_visibility(message, 0)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll and process until ``stop_event`` is set, then drain in-flight work."""
        self._semaphore = asyncio.Semaphore(self.concurrency)
        in_flight: Set[asyncio.Task] = set()
        cleanup_task = asyncio.create_task(self.cleanup.run_periodic(stop_event))
        abandoned_poll: Optional[asyncio.Task] = None
        consecutive_errors = 0
        logger.info("Worker started listening for transfers")

        while not stop_event.is_set():
            free = self.concurrency - len(in_flight)
            if free <= 0:
                stopper = asyncio.create_task(stop_event.wait())
                await asyncio.wait(in_flight | {stopper}, return_when=asyncio.FIRST_COMPLETED)
                stopper.cancel()
                continue

            poll = asyncio.create_task(asyncio.to_thread(
                self.queue.receive,
                min(self.settings.receive_batch_size, free),
                self.settings.receive_wait_seconds,
            ))
            stopper = asyncio.create_task(stop_event.wait())
            done, _ = await asyncio.wait({poll, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if poll not in done:
                abandoned_poll = poll
                break
            stopper.cancel()

            try:
                messages = poll.result()
            except TransferError as e:
                consecutive_errors += 1
                backoff_time = min(30, 2 ** consecutive_errors)
                logger.error(f"Receive failed: {str(e)}. Backing off for {backoff_time}s")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=backoff_time)
                except asyncio.TimeoutError:
                    pass
                continue
            consecutive_errors = 0

            for message in messages:
                task = asyncio.create_task(self._guarded(message))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)

        logger.info(f"Stopping: waiting for {len(in_flight)} in-flight transfer(s)")
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        if abandoned_poll is not None:
            await self._release(abandoned_poll)
        await cleanup_task
        # keys parked by transfers that finished while draining
        self.cleanup.abandon_pending()
        logger.info("Worker stopped")
