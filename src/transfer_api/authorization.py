"""Upload Authorization Service: hands out write capabilities for new transfers."""
import logging
from typing import Optional

from database.record_store import BaseRecordStore
from transfer_api.adapters.storage import BaseBlobStore
from transfer_api.errors import (
    AlreadyExists,
    AuthorizationFailed,
    InternalError,
    TransferError,
    ValidationError,
)
from transfer_api.keys import (
    derive_storage_key,
    generate_transfer_id,
    sanitize_display_name,
    validate_owner_id,
)
from transfer_api.schemas import AuthorizationResult, TransferRecord, TransferStatus
from transfer_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# One retry with a fresh transfer id on a (vanishingly rare) collision.
CREATE_ATTEMPTS = 2


class UploadAuthorizationService:
    """Issues a time-limited write capability and creates the pending record."""

    def __init__(
        self,
        blob_store: BaseBlobStore,
        record_store: BaseRecordStore,
        settings: Optional[Settings] = None,
    ):
        self.blob_store = blob_store
        self.record_store = record_store
        self.settings = settings or get_settings()

    def authorize(self, owner_id: str, display_name: str, content_type: str) -> AuthorizationResult:
        """
        Authorize one upload.

        Args:
            owner_id: Opaque id of the owning user/device
            display_name: Client-supplied file name (sanitized before use)
            content_type: MIME type the upload must be sent with

        Returns:
            AuthorizationResult with the transfer id, storage key and capability

        Raises:
            ValidationError: missing or unusable input
            AuthorizationFailed: the blob store would not issue a capability
            InternalError: the record could not be created
        """
        validate_owner_id(owner_id)
        if not content_type or not content_type.strip():
            raise ValidationError("content_type is required")
        safe_name = sanitize_display_name(display_name)

        last_error: Optional[TransferError] = None
        for attempt in range(1, CREATE_ATTEMPTS + 1):
            transfer_id = generate_transfer_id()
            storage_key = derive_storage_key(owner_id, transfer_id, safe_name)

            try:
                capability = self.blob_store.issue_write_capability(
                    storage_key, content_type, self.settings.capability_ttl_seconds
                )
            except TransferError as e:
                logger.error(f"Capability issuance failed for {storage_key}: {str(e)}")
                raise AuthorizationFailed(f"Could not issue upload capability: {e}") from e

            record = TransferRecord(
                owner_id=owner_id,
                transfer_id=transfer_id,
                display_name=safe_name,
                content_type=content_type,
                storage_key=storage_key,
                status=TransferStatus.PENDING,
            )
            try:
                self.record_store.create(record)
            except AlreadyExists:
                logger.warning(
                    f"Transfer id collision for {owner_id}/{transfer_id} "
                    f"(attempt {attempt}/{CREATE_ATTEMPTS})"
                )
                last_error = InternalError("transfer id collision")
                continue
            except TransferError as e:
                logger.error(
                    f"Could not create record for {owner_id}/{transfer_id} "
                    f"(attempt {attempt}/{CREATE_ATTEMPTS}): {str(e)}"
                )
                last_error = e
                continue

            logger.info(f"Authorized upload {storage_key} ({content_type})")
            return AuthorizationResult(
                transfer_id=transfer_id,
                storage_key=storage_key,
                capability=capability,
            )

        raise InternalError(f"Could not create transfer record for {owner_id}: {last_error}")
