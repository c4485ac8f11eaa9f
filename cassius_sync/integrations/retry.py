"""
Bounded exponential backoff for calls to the external calendar
"""

import logging
import time
from typing import Callable, Any

from tenacity import (
    Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential
)
from tenacity.wait import wait_base

from cassius_sync.errors import RetryableError

logger = logging.getLogger(__name__)


class wait_retry_after(wait_base):
    """Exponential wait, raised to the provider's Retry-After when it asks for longer"""

    def __init__(self, base_delay: float, max_delay: float):
        self.exponential = wait_exponential(multiplier=base_delay, max=max_delay)
        self.max_delay = max_delay

    def __call__(self, retry_state) -> float:
        delay = self.exponential(retry_state)
        retry_after = getattr(retry_state.outcome.exception(), 'retry_after', None)
        if retry_after:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)


class Backoff:
    """Retry a callable on RetryableError, doubling the delay each attempt.

    Args:
        max_retries: Retries after the first attempt; 0 disables retrying
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for a single delay
        sleep: Injected for tests
    """

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 30.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep

    def retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(RetryableError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_retry_after(self.base_delay, self.max_delay),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        return self.retrying()(func, *args, **kwargs)
