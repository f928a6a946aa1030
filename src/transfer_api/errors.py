"""Error taxonomy shared by every stage of the transfer pipeline.

Adapters translate botocore/sqlite/filesystem errors into these types at the
boundary so the relay and the worker only ever reason about this taxonomy.
"""


class TransferError(Exception):
    """Base class for pipeline errors."""

    retryable = False


class ValidationError(TransferError):
    """Malformed input or message. Never retried."""


class TransientIOError(TransferError):
    """Network or storage hiccup. Retried with backoff."""

    retryable = True


class StaleState(TransferError):
    """A conditional update lost the race to another attempt."""

    def __init__(self, message: str, current_status=None):
        super().__init__(message)
        self.current_status = current_status


class CapacityExceeded(TransferError):
    """Attempt count went over the configured ceiling."""


class InternalError(TransferError):
    """Unexpected failure. Treated as transient by the worker."""

    retryable = True


class AlreadyExists(TransferError):
    """A record with the same (owner_id, transfer_id) exists."""


class NotFound(TransferError):
    """No record for the given key."""


class AuthorizationFailed(TransferError):
    """The blob store refused to issue a write capability."""
