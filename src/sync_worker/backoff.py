from datetime import datetime, timedelta
from typing import Optional

from transfer_api.schemas import utcnow
from transfer_api.settings import Settings


class BackoffPolicy:
    """Capped exponential backoff keyed on the attempt count."""

    def __init__(self, base_seconds: float = 5.0, ceiling_seconds: float = 900.0):
        if base_seconds <= 0 or ceiling_seconds < base_seconds:
            raise ValueError("backoff needs 0 < base_seconds <= ceiling_seconds")
        self.base_seconds = base_seconds
        self.ceiling_seconds = ceiling_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(settings.backoff_base_seconds, settings.backoff_ceiling_seconds)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) attempt failed."""
        attempt = max(1, attempt)
        # 2**64 seconds is already far past any ceiling
        exponent = min(attempt - 1, 64)
        return min(self.base_seconds * (2 ** exponent), self.ceiling_seconds)

    def next_attempt_at(self, attempt: int, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + timedelta(seconds=self.delay_for(attempt))
