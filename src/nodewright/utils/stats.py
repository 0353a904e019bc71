"""Cumulative transfer throughput accounting."""

import threading
from dataclasses import dataclass, field


@dataclass
class TransferStats:
    """Bytes and milliseconds spent transferring in one direction.

    The average speed is computed over the whole session, not a window.
    Updated from the download, upload and speed-test paths concurrently.
    """

    bytes: int = 0
    millis: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, num_bytes: int, millis: int) -> None:
        """Account one finished transfer."""
        with self._lock:
            self.bytes += max(0, int(num_bytes))
            self.millis += max(0, int(millis))

    @property
    def average_speed(self) -> int:
        """Session average in bytes per second, 0 when nothing was measured."""
        with self._lock:
            if self.millis <= 0:
                return 0
            return int(self.bytes * 1000 / self.millis)

    def session_traffic(self) -> int:
        with self._lock:
            return self.bytes

    def to_dict(self) -> dict:
        with self._lock:
            return {"bytes": self.bytes, "millis": self.millis}
