"""Retry scheduling strategies for failed extractions.

The worker never retries inside a processing pass. A policy only decides,
when the host comes to the foreground, which failed jobs are put back in the
queue. The default performs no automatic retry; retries are user-driven.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from tenacity import RetryCallState, wait_exponential

from models import PendingExtraction, PendingExtractionStatus


class RetryPolicy(ABC):
    @abstractmethod
    def should_retry(self, extraction: PendingExtraction, now: datetime) -> bool:
        ...


class NoAutomaticRetry(RetryPolicy):
    def should_retry(self, extraction: PendingExtraction, now: datetime) -> bool:
        return False


class ExponentialBackoffRetry(RetryPolicy):
    """Requeue failed jobs once an exponential delay keyed on retry_count passed."""

    def __init__(
        self,
        max_retries: int = PendingExtraction.max_retries,
        initial_delay: float = 60.0,
        backoff: float = 2.0,
        max_delay: float = 3600.0,
    ):
        self._max_retries = max_retries
        self._wait = wait_exponential(multiplier=initial_delay, exp_base=backoff, max=max_delay)

    def delay_for(self, retry_count: int) -> float:
        """Seconds to wait after the ``retry_count``-th failure."""
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = max(retry_count, 1)
        return self._wait(state)

    def should_retry(self, extraction: PendingExtraction, now: datetime) -> bool:
        if extraction.status != PendingExtractionStatus.FAILED:
            return False
        if extraction.retry_count >= self._max_retries:
            return False
        if extraction.last_attempt is None:
            return True

        elapsed = (now - extraction.last_attempt).total_seconds()
        return elapsed >= self.delay_for(extraction.retry_count)
