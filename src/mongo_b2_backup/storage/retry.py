"""
Exponential backoff for retried requests.
"""
import random
import time
from typing import Callable, Optional


class RetryPolicy:
    """
    Maps an attempt number to a delay.
    delay = min(base_delay * 2 ** attempt, max_delay), jittered by +-jitter and capped again.
    """

    def __init__(self, max_retries: int = 5, base_delay: float = 1.0,
                 max_delay: float = 64.0, jitter: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep,
                 rng: Optional[random.Random] = None):
        """
        :param max_retries: max attempts per request (first attempt included)
        :param base_delay: delay after the first failure in seconds
        :param max_delay: ceiling of a single delay in seconds
        :param jitter: relative randomization, 0.5 = +-50%
        :param sleep: sleep function. Inject a fake one in tests.
        :param rng: random source
        """
        if max_retries < 1:
            raise ValueError(f'max_retries must be at least 1, got {max_retries}')
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep
        self._rng = rng or random.Random()

    def delay(self, attempt: int, minimum: Optional[float] = None) -> float:
        """
        Delay before the next try after the given failed attempt.
        :param attempt: 0-based number of the failed attempt
        :param minimum: lower bound e.g. from a Retry-After header
        :return: seconds to wait
        """
        delay = min(self.base_delay * 2 ** attempt, self.max_delay)
        if self.jitter:
            delay *= self._rng.uniform(1 - self.jitter, 1 + self.jitter)
        delay = min(delay, self.max_delay)
        if minimum is not None:
            delay = max(delay, minimum)
        return delay

    def wait(self, attempt: int, minimum: Optional[float] = None) -> float:
        delay = self.delay(attempt, minimum)
        self._sleep(delay)
        return delay


class RetryState:
    """
    Book-keeping of one logical request.
    """

    def __init__(self):
        self.attempt = 0
        self.reauthenticated = False
        self.last_error: Optional[BaseException] = None
