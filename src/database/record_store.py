"""
Transfer Record Store contract and backend selection.

Every backend implements the same conditional-update semantics: a
transition only applies when the stored status equals the expected one,
which is the single serialization point between competing workers.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from transfer_api.schemas import TransferRecord, TransferStatus
from transfer_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

DATETIME_FIELDS = (
    "created_at",
    "uploaded_at",
    "downloaded_at",
    "failed_at",
    "last_attempt_at",
    "next_attempt_at",
)


class BaseRecordStore:
    """Base class for record stores (to be extended by specific implementations)"""

    def create(self, record: TransferRecord) -> TransferRecord:
        """Insert a new record. Raises AlreadyExists if the key is taken."""
        raise NotImplementedError

    def get(self, owner_id: str, transfer_id: str) -> TransferRecord:
        """Return the current record. Raises NotFound."""
        raise NotImplementedError

    def transition(
        self,
        owner_id: str,
        transfer_id: str,
        expected_status: TransferStatus,
        next_status: TransferStatus,
        **fields: Any,
    ) -> TransferRecord:
        """Conditionally move a record between statuses.

        Raises StaleState when the stored status is not ``expected_status``
        and NotFound when there is no record.
        """
        raise NotImplementedError

    def record_attempt(self, owner_id: str, transfer_id: str) -> TransferRecord:
        """Atomically bump attempt_count and stamp last_attempt_at."""
        raise NotImplementedError

    def set_retry_state(
        self,
        owner_id: str,
        transfer_id: str,
        next_attempt_at: Optional[datetime],
        error: Optional[str],
    ) -> None:
        """Remember when a transiently failed transfer may be tried again."""
        raise NotImplementedError

    def list_by_status(self, status: TransferStatus, older_than: Optional[datetime] = None) -> List[TransferRecord]:
        """Records in ``status`` whose last activity is before ``older_than``."""
        raise NotImplementedError


def record_to_item(record: TransferRecord) -> Dict[str, Any]:
    """Flatten a record to plain values; datetimes become ISO strings, None is dropped."""
    item = {}
    for key, value in record.model_dump().items():
        if value is None:
            continue
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, TransferStatus):
            value = value.value
        item[key] = value
    return item


def encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, TransferStatus):
        return value.value
    return value


def filter_stale(records: List[TransferRecord], older_than: Optional[datetime]) -> List[TransferRecord]:
    if older_than is None:
        return records
    return [record for record in records if record.last_activity_at < older_than]


def get_record_store(settings: Optional[Settings] = None, dynamodb_resource=None) -> BaseRecordStore:
    """Pick the record store backend for the deployment mode."""
    settings = settings or get_settings()
    if settings.deployment_mode == "local-dev":
        from database.local import SQLiteRecordStore
        store = SQLiteRecordStore(settings.sqlite_path)
        store.init_db()
        return store

    from database.dynamodb import DynamoDBRecordStore
    return DynamoDBRecordStore(settings.dynamodb_table_name, dynamodb_resource=dynamodb_resource)
