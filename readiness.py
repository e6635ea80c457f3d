"""Polling helpers shared by every workflow that has to wait on the cloud.

A Poller either waits for a predicate (bounded or unbounded) or repeats an
action until someone sets its stop event.
"""

import logging
import threading
import time
from dataclasses import dataclass

import requests

from lab_errors import ReadinessTimeout

logger = logging.getLogger(__name__)

# Anything a predicate may reasonably hit while the cloud is still converging
TRANSIENT_ERRORS = (requests.RequestException, ConnectionError, TimeoutError)


@dataclass
class PollResult:
    succeeded: bool
    attempts: int
    cancelled: bool = False

    @property
    def timed_out(self):
        return not self.succeeded and not self.cancelled


class Poller:
    def __init__(self, interval, max_attempts=None, stop_event=None):
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.interval = interval
        self.max_attempts = max_attempts
        self.stop_event = stop_event or threading.Event()

    @property
    def bounded(self):
        return self.max_attempts is not None

    def stop(self):
        self.stop_event.set()

    def _sleep(self):
        """Wait one interval. True means we were asked to stop."""
        return self.stop_event.wait(self.interval)

    def _check(self, predicate):
        try:
            return bool(predicate())
        except TRANSIENT_ERRORS as e:
            logger.debug(f"Predicate raised {e!r}, counting as not ready")
            return False

    def wait_for(self, predicate, description='resource'):
        attempts = 0
        while True:
            if self.stop_event.is_set():
                return PollResult(False, attempts, cancelled=True)

            attempts += 1
            if self._check(predicate):
                return PollResult(True, attempts)

            if self.bounded and attempts >= self.max_attempts:
                return PollResult(False, attempts)

            if self.bounded:
                logger.warning(f"{description} not ready yet. Retrying in {self.interval:g} seconds... "
                               f"({attempts}/{self.max_attempts})")
            else:
                logger.info(f"Waiting for {description}... (attempt {attempts})")

            if self._sleep():
                return PollResult(False, attempts, cancelled=True)

    def wait_until(self, predicate, description='resource'):
        """Like wait_for, but a bounded timeout is an error."""
        result = self.wait_for(predicate, description)
        if result.timed_out:
            raise ReadinessTimeout(description, result.attempts)
        return result

    def repeat(self, action):
        """Call action every interval until stopped. Returns the number of calls."""
        calls = 0
        while not self.stop_event.is_set():
            action()
            calls += 1
            if self.bounded and calls >= self.max_attempts:
                break
            if self._sleep():
                break
        return calls


@dataclass
class ProbeResult:
    status_code: int
    elapsed: float
    body: str = ''
    error: str = ''

    @property
    def ok(self):
        return self.status_code == 200

    def __str__(self):
        # Same shape as curl -w "%{http_code} %{time_total}s"
        return f"{self.status_code:03d} {self.elapsed:.3f}s"


def probe(url, timeout=5.0, http_get=requests.get):
    """One GET against url. Connection problems come back as status 000."""
    start = time.time()
    try:
        response = http_get(url, timeout=timeout)
        return ProbeResult(response.status_code, time.time() - start, response.text)
    except requests.RequestException as e:
        return ProbeResult(0, time.time() - start, error=str(e))


def serves_marker(url, marker, timeout=5.0, http_get=requests.get):
    """Predicate: the page at url answers and contains marker."""
    return marker in probe(url, timeout, http_get).body
