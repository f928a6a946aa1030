# src/transfer_api/settings.py
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_DEPLOYMENT_MODES = ["local-dev", "aws-mock", "aws-prod"]


class Settings(BaseSettings):
    """
    Single source of truth for all pipeline settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from transfer_api.settings import get_settings
        settings = get_settings()
        bucket_name = settings.s3_bucket_name
    """

    app_name: str = Field(default="media-sync", description="Application name")

    # Deployment Mode
    deployment_mode: str = Field(
        default="local-dev",
        description="Deployment mode: local-dev, aws-mock, or aws-prod",
    )

    # AWS Core Settings
    aws_region: str = Field(default="us-east-1", alias="AWS_DEFAULT_REGION")
    aws_access_key_id: Optional[str] = Field(default=None, alias="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: Optional[str] = Field(default=None, alias="AWS_SECRET_ACCESS_KEY")
    aws_endpoint_url: Optional[str] = Field(default=None, alias="AWS_ENDPOINT_URL")

    # Blob Store
    s3_bucket_name: str = Field(default="media-sync-uploads", description="Bucket receiving uploads")
    capability_ttl_seconds: int = Field(
        default=3600, gt=0, description="Lifetime of an upload capability"
    )

    # Durable Queues
    sqs_queue_name: str = Field(default="media-sync-transfers", description="Transfer queue name")
    sqs_queue_url: Optional[str] = Field(
        default=None, alias="SQS_QUEUE_URL", description="Queue carrying TransferMessages"
    )
    notification_queue_url: Optional[str] = Field(
        default=None, description="Queue receiving S3 ObjectCreated notifications"
    )
    dead_letter_queue_url: Optional[str] = Field(
        default=None, description="Queue receiving dead-lettered transfers"
    )
    visibility_timeout_seconds: int = Field(default=300, ge=0)
    max_receive_count: int = Field(
        default=10, gt=0, description="Local queue redrive threshold"
    )

    # Metadata Store
    dynamodb_table_name: str = Field(default="media-sync-transfers")
    record_db_path: Optional[str] = Field(
        default=None, description="SQLite file used by the local-dev record store"
    )

    # Local storage
    storage_dir: str = Field(default="storage", description="Local-dev state directory")
    sync_root: str = Field(default="synced-media", description="Destination for downloaded files")

    # Worker tuning
    receive_wait_seconds: int = Field(default=20, ge=0, le=20)
    receive_batch_size: int = Field(default=10, ge=1, le=10)
    worker_concurrency: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=5.0, gt=0)
    backoff_ceiling_seconds: float = Field(default=900.0, gt=0)
    download_chunk_size: int = Field(default=1024 * 1024, gt=0)
    cleanup_retry_interval_seconds: float = Field(default=300.0, gt=0)
    cleanup_max_attempts: int = Field(default=10, ge=1)

    # Relay tuning
    relay_publish_attempts: int = Field(default=3, ge=1)
    relay_publish_delay_seconds: float = Field(default=0.5, ge=0)
    reconcile_threshold_seconds: int = Field(default=900, gt=0)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("deployment_mode", mode="before")
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Map legacy mode names onto the current ones."""
        if v:
            mode_mapping = {
                "local": "local-dev",
                "local-mock": "local-dev",
                "cloud": "aws-prod",
            }
            return mode_mapping.get(v, v)
        return v

    @field_validator("deployment_mode")
    @classmethod
    def validate_deployment_mode(cls, v):
        if v not in VALID_DEPLOYMENT_MODES:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {VALID_DEPLOYMENT_MODES}")
        return v

    @field_validator("aws_endpoint_url")
    @classmethod
    def set_endpoint_url_based_on_mode(cls, v, info: ValidationInfo):
        """aws-mock talks to a local moto server unless told otherwise."""
        if v is None and info.data.get("deployment_mode") == "aws-mock":
            return "http://localhost:5000"
        return v

    @field_validator("aws_access_key_id", "aws_secret_access_key")
    @classmethod
    def set_mock_credentials_for_mock_mode(cls, v, info: ValidationInfo):
        # aws-prod leaves credentials to the execution role
        if v is None and info.data.get("deployment_mode") == "aws-mock":
            return "mock"
        return v

    @field_validator("sqs_queue_url")
    @classmethod
    def generate_queue_url_if_needed(cls, v, info: ValidationInfo):
        if v is None and info.data.get("deployment_mode") == "aws-mock":
            endpoint = info.data.get("aws_endpoint_url") or "http://localhost:5000"
            queue_name = info.data.get("sqs_queue_name")
            # moto server accepts the account-less form
            return f"{endpoint}/queue/{queue_name}"
        return v

    @property
    def storage_path(self) -> Path:
        return Path(self.storage_dir)

    @property
    def sync_root_path(self) -> Path:
        return Path(self.sync_root)

    @property
    def sqlite_path(self) -> str:
        return self.record_db_path or str(self.storage_path / "transfers.db")

    @property
    def uses_aws(self) -> bool:
        return self.deployment_mode in ("aws-mock", "aws-prod")

    def export_environment_variables(self) -> None:
        """Export the settings a Lambda or container needs as environment variables."""
        env_vars = {
            "DEPLOYMENT_MODE": self.deployment_mode,
            "S3_BUCKET_NAME": self.s3_bucket_name,
            "SQS_QUEUE_NAME": self.sqs_queue_name,
            "SQS_QUEUE_URL": self.sqs_queue_url or "",
            "DYNAMODB_TABLE_NAME": self.dynamodb_table_name,
            "AWS_DEFAULT_REGION": self.aws_region,
            "LOG_LEVEL": self.log_level,
        }
        if self.deployment_mode == "aws-mock":
            env_vars.update({
                "AWS_ENDPOINT_URL": self.aws_endpoint_url or "",
                "AWS_ACCESS_KEY_ID": self.aws_access_key_id or "mock",
                "AWS_SECRET_ACCESS_KEY": self.aws_secret_access_key or "mock",
            })

        for key, value in env_vars.items():
            if value:
                os.environ[key] = str(value)

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=(".env", ".env.local-dev", ".env.aws-mock", ".env.aws-prod"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
