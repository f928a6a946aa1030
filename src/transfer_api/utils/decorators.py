"""Decorator utilities for cross-cutting concerns."""
import asyncio
import functools
import inspect
import logging
import time
from typing import Any, Callable, Optional, Tuple, TypeVar, cast

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


def log_execution_time(func: F) -> F:
    """Log how long ``func`` took, for plain and ``async def`` functions alike."""
    def _report(start_time: float, error: Optional[BaseException] = None) -> None:
        duration = time.monotonic() - start_time
        if error is None:
            logger.info(f"{func.__name__} completed in {duration:.2f}s")
        else:
            logger.error(f"{func.__name__} failed after {duration:.2f}s: {str(error)}")

    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _report(start_time, e)
                raise
            _report(start_time)
            return result
        return cast(F, async_wrapper)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _report(start_time, e)
            raise
        _report(start_time)
        return result
    return cast(F, wrapper)


class _RetryState:
    """Attempt bookkeeping shared by ``retry`` and ``async_retry``.

    ``max_attempts`` and ``delay`` may name an attribute of the bound
    instance (``max_attempts="publish_attempts"``) so the policy can come
    from settings at call time.
    """

    def __init__(self, func, args, max_attempts, delay, backoff, log):
        instance = args[0] if args else None
        self.name = func.__name__
        self.attempts = self._resolve(max_attempts, instance, 3)
        self.delay = self._resolve(delay, instance, 1.0)
        self.backoff = backoff
        self.log = log
        self.attempt = 1

    @staticmethod
    def _resolve(value, instance, default):
        if isinstance(value, str):
            return getattr(instance, value, default) if instance is not None else default
        return default if value is None else value

    def next_delay(self, error: Exception) -> float:
        """Return how long to wait before the next attempt, or re-raise when out of attempts."""
        if self.attempt >= self.attempts:
            self.log.error(f"All {self.attempts} attempts failed for {self.name}: {str(error)}")
            raise error
        self.log.warning(
            f"Attempt {self.attempt}/{self.attempts} for {self.name} failed: {str(error)}. "
            f"Retrying in {self.delay:.2f}s"
        )
        wait = self.delay
        self.attempt += 1
        self.delay *= self.backoff
        return wait


def retry(max_attempts: Any = 3, delay: Any = 1.0, backoff: float = 2.0,
          exceptions: Tuple[type, ...] = (Exception,), logger_name: Optional[str] = None):
    """Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts, or the name of an instance attribute
        delay: Initial delay between retries in seconds, or an instance attribute name
        backoff: Backoff multiplier (e.g., 2.0 means delay doubles each retry)
        exceptions: Tuple of exceptions to catch for retry
        logger_name: Optional logger name (defaults to module logger)
    """
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            state = _RetryState(func, args, max_attempts, delay, backoff, retry_logger)
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    time.sleep(state.next_delay(e))

        return cast(F, wrapper)

    return decorator


def async_retry(max_attempts: Any = 3, delay: Any = 1.0, backoff: float = 2.0,
                exceptions: Tuple[type, ...] = (Exception,), logger_name: Optional[str] = None):
    """Async counterpart of ``retry``; waits with ``asyncio.sleep``."""
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            state = _RetryState(func, args, max_attempts, delay, backoff, retry_logger)
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    await asyncio.sleep(state.next_delay(e))

        return cast(F, wrapper)

    return decorator
