"""Lambda entry point for the Completion Relay.

Wire it to the bucket directly (S3 -> Lambda) or behind the notification
queue (S3 -> SQS -> Lambda); both event shapes are accepted.
"""
import logging
from functools import lru_cache

from transfer_api.dependencies import get_completion_relay
from transfer_api.relay import CompletionRelay
from transfer_api.settings import get_settings

logger = logging.getLogger()
logger.setLevel(get_settings().log_level.upper())


@lru_cache()
def _relay() -> CompletionRelay:
    # reused across warm invocations
    return get_completion_relay()


def lambda_handler(event, context):
    outcomes = _relay().handle_s3_event(event)
    summary = {}
    for outcome in outcomes:
        summary[outcome.value] = summary.get(outcome.value, 0) + 1
    logger.info(f"Relayed {len(outcomes)} notification(s): {summary}")
    return {"processed": len(outcomes), "outcomes": summary}
