import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from transfer_api.errors import AlreadyExists, NotFound, StaleState, TransientIOError
from transfer_api.schemas import (
    WRITE_ONCE_FIELDS,
    TransferRecord,
    TransferStatus,
    check_transition,
    utcnow,
)
from .record_store import BaseRecordStore, encode_value, filter_stale, record_to_item

logger = logging.getLogger(__name__)

COLUMNS = (
    "owner_id",
    "transfer_id",
    "display_name",
    "content_type",
    "storage_key",
    "status",
    "size_bytes",
    "local_path",
    "created_at",
    "uploaded_at",
    "downloaded_at",
    "failed_at",
    "attempt_count",
    "last_attempt_at",
    "next_attempt_at",
    "last_error",
)


class SQLiteRecordStore(BaseRecordStore):
    """Transfer records in a local SQLite file (local-dev mode)."""

    def __init__(self, db_path: str = "transfers.db"):
        self.db_path = db_path

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the transfers table if it does not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS transfers (
                    owner_id VARCHAR(128) NOT NULL,
                    transfer_id VARCHAR(64) NOT NULL,
                    display_name VARCHAR(255) NOT NULL,
                    content_type VARCHAR(255) NOT NULL,
                    storage_key VARCHAR(700) NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'pending',  -- pending, uploaded, downloaded, failed
                    size_bytes INTEGER NULL,          -- set by the relay
                    local_path TEXT NULL,             -- set by the worker
                    created_at TEXT NOT NULL,
                    uploaded_at TEXT NULL,
                    downloaded_at TEXT NULL,
                    failed_at TEXT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at TEXT NULL,
                    next_attempt_at TEXT NULL,
                    last_error TEXT NULL,
                    PRIMARY KEY (owner_id, transfer_id)
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_transfers_status ON transfers(status)
            ''')
            conn.commit()
            logger.info(f"Transfer record store ready at {self.db_path}")
        finally:
            conn.close()

    def _row_to_record(self, row: sqlite3.Row) -> TransferRecord:
        return TransferRecord(**{key: row[key] for key in row.keys() if row[key] is not None})

    def _fetch(self, conn: sqlite3.Connection, owner_id: str, transfer_id: str) -> Optional[sqlite3.Row]:
        cursor = conn.execute(
            'SELECT * FROM transfers WHERE owner_id = ? AND transfer_id = ?',
            (owner_id, transfer_id),
        )
        return cursor.fetchone()

    def create(self, record: TransferRecord) -> TransferRecord:
        item = record_to_item(record)
        columns = [column for column in COLUMNS if column in item]
        placeholders = ", ".join("?" for _ in columns)
        conn = self._get_connection()
        try:
            conn.execute(
                f'INSERT INTO transfers ({", ".join(columns)}) VALUES ({placeholders})',
                [item[column] for column in columns],
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise AlreadyExists(f"Transfer {record.owner_id}/{record.transfer_id} already exists") from e
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Could not create transfer record: {e}") from e
        finally:
            conn.close()
        logger.info(f"Created transfer record {record.owner_id}/{record.transfer_id}")
        return record

    def get(self, owner_id: str, transfer_id: str) -> TransferRecord:
        conn = self._get_connection()
        try:
            row = self._fetch(conn, owner_id, transfer_id)
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Could not read transfer record: {e}") from e
        finally:
            conn.close()
        if row is None:
            raise NotFound(f"Transfer {owner_id}/{transfer_id} not found")
        return self._row_to_record(row)

    def transition(
        self,
        owner_id: str,
        transfer_id: str,
        expected_status: TransferStatus,
        next_status: TransferStatus,
        **fields: Any,
    ) -> TransferRecord:
        check_transition(expected_status, next_status, fields)

        assignments = ["status = ?"]
        params: List[Any] = [TransferStatus(next_status).value]
        for column, value in fields.items():
            if column in WRITE_ONCE_FIELDS:
                assignments.append(f"{column} = COALESCE({column}, ?)")
            else:
                assignments.append(f"{column} = ?")
            params.append(encode_value(value))
        params.extend([owner_id, transfer_id, TransferStatus(expected_status).value])

        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f'UPDATE transfers SET {", ".join(assignments)} '
                'WHERE owner_id = ? AND transfer_id = ? AND status = ?',
                params,
            )
            if cursor.rowcount == 0:
                conn.rollback()
                row = self._fetch(conn, owner_id, transfer_id)
                if row is None:
                    raise NotFound(f"Transfer {owner_id}/{transfer_id} not found")
                current = TransferStatus(row["status"])
                raise StaleState(
                    f"Transfer {owner_id}/{transfer_id} is {current.value}, expected {TransferStatus(expected_status).value}",
                    current_status=current,
                )
            row = self._fetch(conn, owner_id, transfer_id)
            conn.commit()
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Could not update transfer record: {e}") from e
        finally:
            conn.close()

        logger.info(
            f"Transfer {owner_id}/{transfer_id}: {TransferStatus(expected_status).value} -> {TransferStatus(next_status).value}"
        )
        return self._row_to_record(row)

    def record_attempt(self, owner_id: str, transfer_id: str) -> TransferRecord:
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                'UPDATE transfers SET attempt_count = attempt_count + 1, last_attempt_at = ? '
                'WHERE owner_id = ? AND transfer_id = ?',
                (utcnow().isoformat(), owner_id, transfer_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Transfer {owner_id}/{transfer_id} not found")
            row = self._fetch(conn, owner_id, transfer_id)
            conn.commit()
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Could not record attempt: {e}") from e
        finally:
            conn.close()
        return self._row_to_record(row)

    def set_retry_state(
        self,
        owner_id: str,
        transfer_id: str,
        next_attempt_at: Optional[datetime],
        error: Optional[str],
    ) -> None:
        conn = self._get_connection()
        try:
            conn.execute(
                'UPDATE transfers SET next_attempt_at = ?, last_error = ? '
                'WHERE owner_id = ? AND transfer_id = ?',
                (encode_value(next_attempt_at), error, owner_id, transfer_id),
            )
            conn.commit()
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Could not store retry state: {e}") from e
        finally:
            conn.close()

    def list_by_status(self, status: TransferStatus, older_than: Optional[datetime] = None) -> List[TransferRecord]:
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                'SELECT * FROM transfers WHERE status = ? ORDER BY transfer_id',
                (TransferStatus(status).value,),
            )
            records = [self._row_to_record(row) for row in cursor.fetchall()]
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Could not list transfer records: {e}") from e
        finally:
            conn.close()
        return filter_stale(records, older_than)
