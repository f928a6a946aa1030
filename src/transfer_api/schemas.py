####################################
# --- Records, messages, events --- #
####################################

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransferStatus(str, Enum):
    """Lifecycle of a single transfer."""
    PENDING = "pending"          # capability issued, upload not seen yet
    UPLOADED = "uploaded"        # object is in the blob store
    DOWNLOADED = "downloaded"    # local copy is durable (terminal)
    FAILED = "failed"            # dead-lettered (terminal until requeued)


TERMINAL_STATUSES = {TransferStatus.DOWNLOADED, TransferStatus.FAILED}

ALLOWED_TRANSITIONS = {
    (TransferStatus.PENDING, TransferStatus.UPLOADED),
    (TransferStatus.UPLOADED, TransferStatus.DOWNLOADED),
    (TransferStatus.PENDING, TransferStatus.FAILED),
    (TransferStatus.UPLOADED, TransferStatus.FAILED),
    # operator requeue
    (TransferStatus.FAILED, TransferStatus.UPLOADED),
}

# Fields a transition may set. Timestamps in WRITE_ONCE_FIELDS are never rewritten.
MUTABLE_FIELDS = {
    "size_bytes",
    "local_path",
    "uploaded_at",
    "downloaded_at",
    "failed_at",
    "attempt_count",
    "next_attempt_at",
    "last_error",
}
WRITE_ONCE_FIELDS = {"uploaded_at", "downloaded_at", "failed_at"}


def check_transition(expected: TransferStatus, next_status: TransferStatus, fields: dict) -> None:
    """Raise ValueError for a transition or field the lifecycle does not allow."""
    if (TransferStatus(expected), TransferStatus(next_status)) not in ALLOWED_TRANSITIONS:
        raise ValueError(f"Transition {expected} -> {next_status} is not allowed")
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be set by a transition: {sorted(unknown)}")


class TransferRecord(BaseModel):
    """Lifecycle record of one file transfer, keyed by (owner_id, transfer_id)."""
    owner_id: str
    transfer_id: str
    display_name: str
    content_type: str
    storage_key: str
    status: TransferStatus = TransferStatus.PENDING
    size_bytes: Optional[int] = None
    local_path: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    uploaded_at: Optional[datetime] = None
    downloaded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    model_config = ConfigDict(use_enum_values=False)

    @property
    def last_activity_at(self) -> datetime:
        candidates = [
            ts for ts in (self.created_at, self.uploaded_at, self.last_attempt_at) if ts is not None
        ]
        return max(candidates)


class TransferMessage(BaseModel):
    """Body of a message on the transfer queue."""
    owner_id: str = Field(min_length=1)
    transfer_id: str = Field(min_length=1)
    storage_key: str = Field(min_length=1)
    bucket: str = Field(min_length=1)
    size_bytes: int = Field(ge=0)
    emitted_at: datetime

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_record(cls, record: TransferRecord, bucket: str) -> "TransferMessage":
        return cls(
            owner_id=record.owner_id,
            transfer_id=record.transfer_id,
            storage_key=record.storage_key,
            bucket=bucket,
            size_bytes=record.size_bytes or 0,
            emitted_at=utcnow(),
        )


class ReceivedMessage(BaseModel):
    """A message handed out by a queue together with its receipt token."""
    body: str
    receipt: str
    message_id: Optional[str] = None
    receive_count: int = 1


class WriteCapability(BaseModel):
    """Time-limited credential for a single write against the blob store."""
    url: str
    method: str = "PUT"
    headers: Dict[str, str] = Field(default_factory=dict)
    expires_at: datetime

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "url": "https://media-sync-uploads.s3.amazonaws.com/uploads/u1/...?X-Amz-Signature=...",
                "method": "PUT",
                "headers": {"Content-Type": "image/jpeg"},
                "expires_at": "2024-01-01T01:00:00Z",
            }
        }
    )


class AuthorizationResult(BaseModel):
    """Returned to the client by the Upload Authorization Service."""
    transfer_id: str
    storage_key: str
    capability: WriteCapability


class BlobNotification(BaseModel):
    """One object-created (or other) event from the blob store."""
    key: str
    size: int = Field(ge=0)
    event_type: str

    @field_validator("key")
    @classmethod
    def key_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("notification key is empty")
        return v

    @property
    def is_object_created(self) -> bool:
        # S3 reports "ObjectCreated:Put", EventBridge reports "Object Created"
        normalized = self.event_type.replace(" ", "").replace("s3:", "")
        return normalized.startswith("ObjectCreated")
