"""Transfer Record Store backends (SQLite for local-dev, DynamoDB for AWS modes)."""

from .record_store import BaseRecordStore, get_record_store

__all__ = ["BaseRecordStore", "get_record_store"]
