AWS_REGION = "us-east-1"

TEST_BUCKET_NAME = "media-sync-test-uploads"
TEST_TABLE_NAME = "media-sync-test-transfers"
TEST_QUEUE_NAME = "media-sync-test-transfers"
TEST_NOTIFICATION_QUEUE_NAME = "media-sync-test-notifications"
TEST_DEAD_LETTER_QUEUE_NAME = "media-sync-test-dead-letter"

TEST_OWNER_ID = "device-7f3a"
TEST_CONTENT_TYPE = "image/jpeg"

# 200 KiB photo used by the end-to-end scenario
PHOTO_NAME = "photo.jpg"
PHOTO_SIZE = 204800
PHOTO_CONTENT = bytes(range(256)) * (PHOTO_SIZE // 256)
