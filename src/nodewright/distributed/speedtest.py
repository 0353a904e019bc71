"""Mirror speed test run during the handshake."""

import logging
import time
from typing import Callable, List, Optional

import requests

from .payloads import SpeedTestResult

logger = logging.getLogger(__name__)

PING_ATTEMPTS = 3


class SpeedTest:
    """Measures latency and download throughput to candidate mirrors.

    Args:
        session: HTTP session used for the measurements
        timeout: (connect, read) timeout of each request
        clock: Monotonic clock in seconds
    """

    def __init__(
        self,
        session: requests.Session,
        timeout=(10, 30),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.timeout = timeout
        self.clock = clock

    def ping(self, url: str) -> Optional[int]:
        """Average round trip of a HEAD request in ms, None if unreachable."""
        samples = []
        for _ in range(PING_ATTEMPTS):
            start = self.clock()
            try:
                self.session.head(url, timeout=self.timeout)
            except requests.RequestException as e:
                logger.debug(f"Ping of {url} failed: {e}")
                continue
            samples.append((self.clock() - start) * 1000)
        if not samples:
            return None
        return int(sum(samples) / len(samples))

    def measure(self, url: str) -> Optional[SpeedTestResult]:
        ping = self.ping(url)
        if ping is None:
            return None

        start = self.clock()
        size = 0
        try:
            with self.session.get(url, timeout=self.timeout, stream=True) as response:
                if response.status_code != 200:
                    logger.debug(f"Speed test of {url}: HTTP {response.status_code}")
                    return None
                for chunk in response.iter_content(chunk_size=8192):
                    size += len(chunk)
        except requests.RequestException as e:
            logger.debug(f"Speed test of {url} failed: {e}")
            return None

        elapsed = max(self.clock() - start, 0.001)
        return SpeedTestResult(target=url, speed=int(size / elapsed), ping=ping)

    def best(self, urls: List[str], count: int = 3) -> List[SpeedTestResult]:
        """The ``count`` fastest reachable mirrors, fastest first."""
        results = [r for r in (self.measure(url) for url in urls) if r is not None]
        results.sort(key=lambda r: r.speed, reverse=True)
        return results[:count]
