"""AWS client management for the pipeline's S3, SQS and DynamoDB adapters."""
import logging
import os
import threading
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config

from transfer_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Adapters do their own retrying; botocore only smooths over throttling.
_RETRY_CONFIG = Config(retries={"max_attempts": 3, "mode": "standard"})


class AWSClientManager:
    """Per-settings cache of boto3 clients and resources."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self.mode = self.settings.deployment_mode
        self._clients: Dict[str, Any] = {}
        self._resources: Dict[str, Any] = {}
        # boto3 sessions are not thread-safe
        self._lock = threading.Lock()

        logger.info("Initializing AWSClientManager")
        logger.info(f"  Mode: {self.mode}")
        logger.info(f"  Region: {self.region}")
        logger.info(f"  Endpoint: {self.endpoint_url}")

    def _session(self) -> boto3.Session:
        aws_profile = os.environ.get("AWS_PROFILE")
        if aws_profile and self.mode == "aws-prod":
            return boto3.Session(profile_name=aws_profile, region_name=self.region)
        return boto3.Session(region_name=self.region)

    def _client_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"config": _RETRY_CONFIG}
        if self.settings.aws_access_key_id:
            kwargs["aws_access_key_id"] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            kwargs["aws_secret_access_key"] = self.settings.aws_secret_access_key
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        return kwargs

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        with self._lock:
            if service_name not in self._clients:
                self._clients[service_name] = self._session().client(service_name, **self._client_kwargs())
                logger.debug(f"Created {service_name} client")
            return self._clients[service_name]

    def get_resource(self, service_name: str) -> Any:
        """Get or create an AWS service resource."""
        with self._lock:
            if service_name not in self._resources:
                self._resources[service_name] = self._session().resource(service_name, **self._client_kwargs())
                logger.debug(f"Created {service_name} resource")
            return self._resources[service_name]

    def clear_clients(self) -> None:
        with self._lock:
            self._clients.clear()
            self._resources.clear()
        logger.debug("Cleared all AWS clients")


_managers: Dict[Tuple[Any, ...], AWSClientManager] = {}
_managers_lock = threading.Lock()


def get_client_manager(settings: Optional[Settings] = None) -> AWSClientManager:
    """Shared manager for the account, region and endpoint ``settings`` point at."""
    settings = settings or get_settings()
    key = (
        settings.deployment_mode,
        settings.aws_region,
        settings.aws_endpoint_url,
        settings.aws_access_key_id,
        settings.aws_secret_access_key,
    )
    with _managers_lock:
        if key not in _managers:
            _managers[key] = AWSClientManager(settings)
        return _managers[key]


def clear_client_cache() -> None:
    """Drop every cached client, e.g. after credentials or endpoints change."""
    with _managers_lock:
        for manager in _managers.values():
            manager.clear_clients()
        _managers.clear()


def get_s3_client(settings: Optional[Settings] = None):
    return get_client_manager(settings).get_client("s3")


def get_sqs_client(settings: Optional[Settings] = None):
    return get_client_manager(settings).get_client("sqs")


def get_dynamodb_resource(settings: Optional[Settings] = None):
    return get_client_manager(settings).get_resource("dynamodb")


def get_queue_arn(queue_url: str, sqs_client=None) -> str:
    """Resolve a queue URL to its ARN (needed for S3 notification wiring)."""
    sqs_client = sqs_client or get_sqs_client()
    response = sqs_client.get_queue_attributes(QueueUrl=queue_url, AttributeNames=["QueueArn"])
    return response["Attributes"]["QueueArn"]
