from transfer_api.aws_clients import get_queue_arn
from transfer_api.s3.event_notify import enable_s3_notifications
from tests.consts import TEST_BUCKET_NAME


def test_enable_s3_notifications(mocked_aws):
    queue_arn = get_queue_arn(mocked_aws.notification_queue_url, mocked_aws.sqs)
    enable_s3_notifications(TEST_BUCKET_NAME, queue_arn, mocked_aws.s3)

    config = mocked_aws.s3.get_bucket_notification_configuration(Bucket=TEST_BUCKET_NAME)
    config.pop('ResponseMetadata', None)
    print(config)

    assert 'QueueConfigurations' in config
    queue_config = config['QueueConfigurations'][0]
    assert queue_config['QueueArn'] == queue_arn
    assert queue_config['Events'] == ['s3:ObjectCreated:*']
    rules = queue_config['Filter']['Key']['FilterRules']
    assert {rule['Name'].lower(): rule['Value'] for rule in rules} == {'prefix': 'uploads/'}
