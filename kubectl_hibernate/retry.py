"""Bounded retry and polling helpers."""

import logging
import time
from collections.abc import Callable
from typing import Any

from kubectl_hibernate.config import HibernationConfig
from kubectl_hibernate.errors import TransientStoreError

logger = logging.getLogger(__name__)


class RetryHandler:
    """Retries TransientStoreError with exponential backoff."""

    def __init__(
        self,
        config: HibernationConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.sleep = sleep

    def execute_with_retry(self, operation: Callable, *args, **kwargs) -> Any:
        delay = self.config.initial_retry_delay

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                return operation(*args, **kwargs)
            except TransientStoreError as e:
                if attempt == self.config.max_attempts:
                    logger.warning(
                        "Giving up after %d attempts: %s", attempt, e.message
                    )
                    raise
                logger.debug(
                    "Transient store error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt,
                    self.config.max_attempts,
                    delay,
                    e.message,
                )
                self.sleep(delay)
                delay = min(delay * 2, self.config.max_retry_delay)

        raise AssertionError("unreachable")


class Poller:
    """
    Polls a condition with exponential backoff until it holds or a deadline
    passes. The clock and sleep are injectable so waits can be simulated.
    """

    def __init__(
        self,
        interval: float,
        max_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval = interval
        self.max_interval = max_interval
        self.clock = clock
        self.sleep = sleep

    def deadline(self, timeout: float) -> float:
        return self.clock() + timeout

    def until(self, condition: Callable[[], bool], deadline: float) -> bool:
        delay = self.interval
        while True:
            if condition():
                return True
            remaining = deadline - self.clock()
            if remaining <= 0:
                return False
            self.sleep(min(delay, remaining))
            delay = min(delay * 2, self.max_interval)
