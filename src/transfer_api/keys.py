"""Deterministic naming for transfers.

Storage keys and local paths are pure functions of (owner_id, transfer_id,
display_name), so any component can recompute them without a lookup.
Client-supplied names go through ``sanitize_display_name`` before they are
used in either.
"""

import re
import secrets
import time
import unicodedata
from pathlib import Path
from typing import Tuple

from transfer_api.errors import ValidationError

KEY_PREFIX = "uploads"
MAX_NAME_BYTES = 255

_OWNER_ID_RE = re.compile(r"^[A-Za-z0-9._@:-]+$")
_TRANSFER_ID_RE = re.compile(r"^\d{13}-[0-9a-f]{12}$")


def generate_transfer_id() -> str:
    """Millisecond timestamp plus a random suffix, e.g. ``1700000000000-3f9c2a1b7d4e``."""
    return f"{int(time.time() * 1000):013d}-{secrets.token_hex(6)}"


def validate_owner_id(owner_id: str) -> str:
    if not owner_id or not _OWNER_ID_RE.match(owner_id) or owner_id in (".", ".."):
        raise ValidationError(f"Invalid owner id: {owner_id!r}")
    return owner_id


def validate_transfer_id(transfer_id: str) -> str:
    if not transfer_id or not _TRANSFER_ID_RE.match(transfer_id):
        raise ValidationError(f"Invalid transfer id: {transfer_id!r}")
    return transfer_id


def sanitize_display_name(name: str) -> str:
    """Make a client-supplied file name safe for keys and paths.

    NUL and other control characters are rejected outright. Path separators
    become underscores, ``..`` runs are collapsed, leading dots and
    surrounding whitespace are stripped, and the result is cut to
    ``MAX_NAME_BYTES``. The rules are reapplied until the name is stable, so
    a sanitized name always sanitizes to itself.
    """
    if name is None or not name.strip():
        raise ValidationError("display_name must be non-empty")
    if any(unicodedata.category(ch) == "Cc" for ch in name):
        raise ValidationError("display_name contains control characters")

    cleaned = name.replace("/", "_").replace("\\", "_")
    while True:
        # every rule only shortens the name, so this settles
        normalized = re.sub(r"\.{2,}", "_", cleaned)
        normalized = _truncate_name(normalized.strip().lstrip(".").strip())
        if normalized == cleaned:
            break
        cleaned = normalized
    if not cleaned:
        raise ValidationError(f"display_name {name!r} is empty after sanitization")
    return cleaned


def _truncate_name(name: str) -> str:
    if len(name.encode("utf-8")) <= MAX_NAME_BYTES:
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot or len(ext.encode("utf-8")) > 16:
        stem, ext = name, ""
    budget = MAX_NAME_BYTES - (len(ext.encode("utf-8")) + 1 if ext else 0)
    stem = stem.encode("utf-8")[:budget].decode("utf-8", errors="ignore").rstrip(".")
    return f"{stem}.{ext}" if ext else stem


def derive_storage_key(owner_id: str, transfer_id: str, display_name: str) -> str:
    return f"{KEY_PREFIX}/{owner_id}/{transfer_id}/{display_name}"


def parse_storage_key(key: str) -> Tuple[str, str, str]:
    """Recover (owner_id, transfer_id, display_name) from a storage key."""
    parts = key.split("/")
    if len(parts) != 4 or parts[0] != KEY_PREFIX:
        raise ValidationError(f"Not a transfer storage key: {key!r}")
    _, owner_id, transfer_id, display_name = parts
    validate_owner_id(owner_id)
    validate_transfer_id(transfer_id)
    if sanitize_display_name(display_name) != display_name:
        raise ValidationError(f"Storage key carries an unsanitized name: {key!r}")
    return owner_id, transfer_id, display_name


def derive_local_path(sync_root: Path, owner_id: str, transfer_id: str, display_name: str) -> Path:
    """Destination of a downloaded transfer; unique per (owner_id, transfer_id)."""
    return Path(sync_root) / owner_id / f"{transfer_id}_{display_name}"
