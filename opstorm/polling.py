import logging
import time
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)


class Poller:
    """Bounded poll loop with backoff

    Every wait has an explicit deadline; the loop never runs unbounded.
    """

    def __init__(self, interval=2, backoff=1.0, max_interval=10, clock=time.time, sleep=time.sleep):
        self.interval = interval
        self.backoff = backoff
        self.max_interval = max_interval
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def from_config(cls, polling_config):
        polling_config = polling_config or {}
        return cls(
            interval=polling_config.get('interval', 2),
            backoff=polling_config.get('backoff', 1.0),
            max_interval=polling_config.get('max_interval', 10),
        )

    def wait_for(self, condition, timeout, description="condition"):
        """Poll until condition() is truthy or timeout seconds elapse

        Args:
            condition: Callable returning a truthy value once satisfied
            timeout: Deadline in seconds
            description: Text used in log messages

        Returns:
            True if the condition was met within the deadline, False otherwise
        """
        start_time = self.clock()
        interval = self.interval
        while True:
            if condition():
                logger.debug(f"{description} satisfied after {self.clock() - start_time:.1f}s")
                return True
            elapsed = self.clock() - start_time
            if elapsed >= timeout:
                logger.warning(f"Timeout waiting for {description} after {timeout}s")
                return False
            self.sleep(min(interval, max(timeout - elapsed, 0)))
            interval = min(interval * self.backoff, self.max_interval)


def fan_out(items, action, max_workers=1):
    """Run action(item) for every item and collect (item, error) pairs

    Every item is attempted. Errors raised by action are captured rather than
    propagated, so the caller decides stage success only after all items ran.
    Results come back in input order.
    """
    items = list(items)

    def _attempt(item):
        try:
            action(item)
            return item, None
        except Exception as e:
            return item, e

    if max_workers <= 1 or len(items) <= 1:
        return [_attempt(item) for item in items]

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(_attempt, items))
