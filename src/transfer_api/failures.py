"""Operator-visible failure channel.

Dead-lettered transfers, relay publish failures and exhausted remote
cleanups are logged at ERROR/CRITICAL under the ``media_sync.failures``
logger (ship that logger to alerting) and, for dead letters, forwarded to
a dead-letter queue when one is configured.
"""
import logging
from typing import Optional

from transfer_api.adapters.queue import BaseQueue
from transfer_api.schemas import utcnow

logger = logging.getLogger("media_sync.failures")


class FailureChannel:
    """Surfaces permanent failures for operator attention."""

    def __init__(self, dead_letter_queue: Optional[BaseQueue] = None):
        self.dead_letter_queue = dead_letter_queue

    def dead_letter(
        self,
        body: str,
        reason: str,
        owner_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
    ) -> None:
        """Record a message that will not be retried.

        Raises TransientIOError when the dead-letter queue cannot take the
        message; callers must then leave the original message unacknowledged.
        """
        logger.error(
            "Dead-lettered transfer %s/%s: %s",
            owner_id or "?", transfer_id or "?", reason,
            extra={
                "failure_kind": "dead_letter",
                "owner_id": owner_id,
                "transfer_id": transfer_id,
                "reason": reason,
            },
        )
        if self.dead_letter_queue is not None:
            self.dead_letter_queue.publish({
                "reason": reason,
                "owner_id": owner_id,
                "transfer_id": transfer_id,
                "original_body": body,
                "dead_lettered_at": utcnow().isoformat(),
            })

    def cleanup_failed(self, storage_key: str, attempts: int, error: str) -> None:
        logger.error(
            "Remote cleanup of %s abandoned after %d attempts: %s",
            storage_key, attempts, error,
            extra={"failure_kind": "cleanup", "storage_key": storage_key, "attempts": attempts},
        )

    def relay_publish_failed(self, owner_id: str, transfer_id: str, error: str) -> None:
        logger.critical(
            "Transfer %s/%s is uploaded but its message could not be published: %s. "
            "Reconciliation will re-publish it.",
            owner_id, transfer_id, error,
            extra={"failure_kind": "relay_publish", "owner_id": owner_id, "transfer_id": transfer_id},
        )
