"""S3 event notification wiring for the completion relay."""
from typing import TYPE_CHECKING, Optional

from transfer_api.keys import KEY_PREFIX

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client


def enable_s3_notifications(
    bucket_name: str,
    queue_arn: str,
    s3_client: Optional["S3Client"] = None,
) -> None:
    """Send ObjectCreated events for uploaded transfers to the relay's notification queue."""
    if s3_client is None:
        from transfer_api.aws_clients import get_s3_client
        s3_client = get_s3_client()
    s3_client.put_bucket_notification_configuration(
        Bucket=bucket_name,
        NotificationConfiguration={
            'QueueConfigurations': [{
                'Id': 'media-sync-completion-relay',
                'QueueArn': queue_arn,
                'Events': ['s3:ObjectCreated:*'],
                'Filter': {
                    'Key': {'FilterRules': [{'Name': 'prefix', 'Value': f'{KEY_PREFIX}/'}]}
                },
            }]
        }
    )
