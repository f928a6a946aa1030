"""Durable Queue adapters: at-least-once delivery with visibility timeouts."""
import json
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from transfer_api.errors import TransientIOError
from transfer_api.settings import Settings, get_settings
from transfer_api.schemas import ReceivedMessage

logger = logging.getLogger(__name__)

QUEUE_TRANSFERS = "transfers"
QUEUE_NOTIFICATIONS = "notifications"
QUEUE_DEAD_LETTER = "dead_letter"


class BaseQueue:
    """Base class for queue handling (to be extended by specific implementations)"""

    visibility_timeout_seconds: int = 300

    def publish(self, payload: dict) -> str:
        raise NotImplementedError

    def receive(self, max_messages: int = 10, wait_seconds: int = 20) -> List[ReceivedMessage]:
        raise NotImplementedError

    def delete(self, receipt: str) -> None:
        raise NotImplementedError

    def change_visibility(self, receipt: str, seconds: int) -> None:
        raise NotImplementedError


class LocalQueue(BaseQueue):
    """File-system queue for local-dev: one JSON file per message.

    Received messages stay on disk, hidden until ``visible_at``; only a
    delete with the current receipt removes them. Messages received more
    than ``max_receive_count`` times are moved to ``dead_letter/``.
    """

    def __init__(
        self,
        queue_dir: Path,
        visibility_timeout_seconds: int = 300,
        max_receive_count: int = 10,
        poll_interval: float = 0.1,
    ):
        self.queue_dir = Path(queue_dir)
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.max_receive_count = max_receive_count
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        logger.info("LocalQueue initialized at: %s", self.queue_dir)

    def _path(self, message_id: str) -> Path:
        return self.queue_dir / f"{message_id}.json"

    def _write(self, path: Path, data: dict) -> None:
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f)
        tmp_path.replace(path)

    def _quarantine(self, path: Path, folder: str) -> None:
        target_dir = self.queue_dir / folder
        target_dir.mkdir(exist_ok=True)
        path.replace(target_dir / path.name)

    def publish(self, payload: dict) -> str:
        message_id = f"{int(time.time() * 1000):013d}-{uuid.uuid4().hex[:8]}"
        data = {
            "message_id": message_id,
            "body": json.dumps(payload, default=str),
            "sent_at": time.time(),
            "visible_at": 0.0,
            "receive_count": 0,
            "receipt": None,
        }
        with self._lock:
            self._write(self._path(message_id), data)
        logger.info("Published message %s to %s", message_id, self.queue_dir.name)
        return message_id

    def _claim(self, max_messages: int) -> List[ReceivedMessage]:
        claimed: List[ReceivedMessage] = []
        now = time.time()
        with self._lock:
            for path in sorted(self.queue_dir.glob("*.json")):
                if len(claimed) >= max_messages:
                    break
                try:
                    with open(path) as f:
                        data = json.load(f)
                except FileNotFoundError:
                    continue
                except json.JSONDecodeError as e:
                    logger.error("Unreadable queue file %s: %s", path, str(e))
                    self._quarantine(path, "errors")
                    continue

                if data["visible_at"] > now:
                    continue
                if data["receive_count"] >= self.max_receive_count:
                    logger.warning(
                        "Message %s exceeded %d receives, moving to dead_letter",
                        data["message_id"], self.max_receive_count,
                    )
                    self._quarantine(path, "dead_letter")
                    continue

                data["receive_count"] += 1
                data["receipt"] = f"{data['message_id']}:{uuid.uuid4().hex}"
                data["visible_at"] = now + self.visibility_timeout_seconds
                self._write(path, data)
                claimed.append(ReceivedMessage(
                    body=data["body"],
                    receipt=data["receipt"],
                    message_id=data["message_id"],
                    receive_count=data["receive_count"],
                ))
        return claimed

    def receive(self, max_messages: int = 10, wait_seconds: int = 20) -> List[ReceivedMessage]:
        deadline = time.monotonic() + wait_seconds
        while True:
            messages = self._claim(max_messages)
            remaining = deadline - time.monotonic()
            if messages or remaining <= 0:
                return messages
            time.sleep(min(self.poll_interval, remaining))

    def _load_for_receipt(self, receipt: str) -> Optional[dict]:
        message_id = receipt.split(":", 1)[0]
        path = self._path(message_id)
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.debug("Message %s already gone", message_id)
            return None
        if data.get("receipt") != receipt:
            logger.warning("Stale receipt for message %s ignored", message_id)
            return None
        return data

    def delete(self, receipt: str) -> None:
        with self._lock:
            data = self._load_for_receipt(receipt)
            if data is not None:
                self._path(data["message_id"]).unlink(missing_ok=True)
                logger.info("Deleted message %s", data["message_id"])

    def change_visibility(self, receipt: str, seconds: int) -> None:
        with self._lock:
            data = self._load_for_receipt(receipt)
            if data is not None:
                data["visible_at"] = time.time() + seconds
                self._write(self._path(data["message_id"]), data)

    def pending_count(self) -> int:
        return len(list(self.queue_dir.glob("*.json")))

    def dead_letters(self) -> List[dict]:
        dead_letter_dir = self.queue_dir / "dead_letter"
        if not dead_letter_dir.exists():
            return []
        result = []
        for path in sorted(dead_letter_dir.glob("*.json")):
            with open(path) as f:
                result.append(json.load(f))
        return result


class SQSQueue(BaseQueue):
    """Handles AWS SQS queue"""

    def __init__(self, queue_url: str, sqs_client=None, visibility_timeout_seconds: int = 300):
        if sqs_client is None:
            from transfer_api.aws_clients import get_sqs_client
            sqs_client = get_sqs_client()
        self.sqs = sqs_client
        self.queue_url = queue_url
        self.visibility_timeout_seconds = visibility_timeout_seconds
        logger.info(f"SQSQueue initialized")
        logger.info(f"  Queue URL: {self.queue_url}")

    def publish(self, payload: dict) -> str:
        try:
            response = self.sqs.send_message(
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(payload, default=str),
            )
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"send_message failed: {e}") from e
        logger.info(f"Message added to SQS queue with ID: {response.get('MessageId')}")
        return response["MessageId"]

    def receive(self, max_messages: int = 10, wait_seconds: int = 20) -> List[ReceivedMessage]:
        try:
            response = self.sqs.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=max_messages,
                WaitTimeSeconds=wait_seconds,
                AttributeNames=["ApproximateReceiveCount"],
            )
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"receive_message failed: {e}") from e

        return [
            ReceivedMessage(
                body=message["Body"],
                receipt=message["ReceiptHandle"],
                message_id=message.get("MessageId"),
                receive_count=int(message.get("Attributes", {}).get("ApproximateReceiveCount", 1)),
            )
            for message in response.get("Messages", [])
        ]

    def delete(self, receipt: str) -> None:
        try:
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt)
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"delete_message failed: {e}") from e

    def change_visibility(self, receipt: str, seconds: int) -> None:
        # SQS caps visibility at 12 hours
        seconds = max(0, min(int(seconds), 43200))
        try:
            self.sqs.change_message_visibility(
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt,
                VisibilityTimeout=seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"change_message_visibility failed: {e}") from e


class QueueFactory:
    """Factory to initialize the correct queue handler based on deployment mode"""

    @staticmethod
    def get_queue_handler(
        settings: Optional[Settings] = None,
        name: str = QUEUE_TRANSFERS,
        sqs_client=None,
    ) -> BaseQueue:
        settings = settings or get_settings()
        deployment_mode = settings.deployment_mode
        logger.info(f"Creating {name} queue handler for mode: {deployment_mode}")

        if deployment_mode == "local-dev":
            return LocalQueue(
                settings.storage_path / "queues" / name,
                visibility_timeout_seconds=settings.visibility_timeout_seconds,
                max_receive_count=settings.max_receive_count,
            )

        queue_urls = {
            QUEUE_TRANSFERS: settings.sqs_queue_url,
            QUEUE_NOTIFICATIONS: settings.notification_queue_url,
            QUEUE_DEAD_LETTER: settings.dead_letter_queue_url,
        }
        if name not in queue_urls:
            raise ValueError(f"Unknown queue: {name}. Choose from {list(queue_urls.keys())}")
        if not queue_urls[name]:
            raise ValueError(f"No queue URL configured for the {name} queue")
        return SQSQueue(
            queue_urls[name],
            sqs_client=sqs_client,
            visibility_timeout_seconds=settings.visibility_timeout_seconds,
        )
