"""
Remote cleanup of downloaded transfers.

Deleting the remote object never blocks acknowledgment: the worker tries
once inline, and failures are parked here and retried on a slower schedule.
Keys that keep failing are handed to the failure channel; the bucket's
lifecycle rule is the final backstop.
"""

import asyncio
import logging
import threading
import time
from typing import Dict, List, Optional

from transfer_api.adapters.storage import BaseBlobStore
from transfer_api.errors import TransferError
from transfer_api.failures import FailureChannel

logger = logging.getLogger(__name__)


class _PendingCleanup:
    __slots__ = ("storage_key", "attempts", "due_at", "last_error")

    def __init__(self, storage_key: str, due_at: float, last_error: str):
        self.storage_key = storage_key
        self.attempts = 1
        self.due_at = due_at
        self.last_error = last_error


class RemoteCleanupScheduler:
    """Deletes remote objects, retrying failed deletions in the background."""

    def __init__(
        self,
        blob_store: BaseBlobStore,
        failure_channel: Optional[FailureChannel] = None,
        retry_interval_seconds: float = 300,
        max_attempts: int = 10,
    ):
        self.blob_store = blob_store
        self.failure_channel = failure_channel or FailureChannel()
        self.retry_interval_seconds = retry_interval_seconds
        self.max_attempts = max_attempts
        self._pending: Dict[str, _PendingCleanup] = {}
        self._lock = threading.Lock()

    @property
    def pending_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._pending)

    def cleanup(self, storage_key: str) -> bool:
        """Delete now; on failure park the key for a later retry. Returns True on success."""
        try:
            self.blob_store.delete_object(storage_key)
        except TransferError as e:
            logger.warning(f"Remote cleanup of {storage_key} failed, will retry: {str(e)}")
            with self._lock:
                if storage_key not in self._pending:
                    self._pending[storage_key] = _PendingCleanup(
                        storage_key, time.monotonic() + self.retry_interval_seconds, str(e)
                    )
            return False
        with self._lock:
            self._pending.pop(storage_key, None)
        logger.info(f"Removed remote object {storage_key}")
        return True

    def retry_due(self, now: Optional[float] = None) -> int:
        """Retry every parked key whose time has come. Returns how many were removed."""
        now = time.monotonic() if now is None else now
        with self._lock:
            due = [entry for entry in self._pending.values() if entry.due_at <= now]

        removed = 0
        for entry in due:
            try:
                self.blob_store.delete_object(entry.storage_key)
            except TransferError as e:
                entry.attempts += 1
                entry.last_error = str(e)
                if entry.attempts >= self.max_attempts:
                    with self._lock:
                        self._pending.pop(entry.storage_key, None)
                    self.failure_channel.cleanup_failed(entry.storage_key, entry.attempts, entry.last_error)
                else:
                    entry.due_at = now + self.retry_interval_seconds
                    logger.warning(
                        f"Remote cleanup of {entry.storage_key} failed "
                        f"(attempt {entry.attempts}/{self.max_attempts}): {str(e)}"
                    )
                continue
            with self._lock:
                self._pending.pop(entry.storage_key, None)
            removed += 1
            logger.info(f"Removed remote object {entry.storage_key} on retry {entry.attempts + 1}")
        return removed

    async def run_periodic(self, stop_event: asyncio.Event) -> None:
        """Retry parked cleanups every ``retry_interval_seconds`` until stopped.

        Keys still parked at stop are reported on the failure channel.
        """
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.retry_interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            if self._pending:
                await asyncio.to_thread(self.retry_due)
        self.abandon_pending()

    def abandon_pending(self) -> int:
        """Report every parked key as left behind, e.g. at shutdown. Returns how many."""
        with self._lock:
            left = list(self._pending.values())
            self._pending.clear()
        for entry in left:
            self.failure_channel.cleanup_failed(
                entry.storage_key,
                entry.attempts,
                f"worker stopped before the object was removed; last error: {entry.last_error}",
            )
        return len(left)
