"""Clock and memory primitives shared by the recorder and collectors."""

import time
import logging

import psutil

logger = logging.getLogger(__name__)


class Sampler:
    """High-resolution clock plus current/peak resident memory.

    The psutil process handle is created lazily so requests that never
    activate a session don't pay for it.
    """

    __slots__ = ("_clock", "_wall", "_process", "_peak")

    def __init__(self, clock=time.perf_counter, wall=time.time):
        self._clock = clock
        self._wall = wall
        self._process = None
        self._peak = 0

    def now(self) -> float:
        return self._clock()

    def wall(self) -> float:
        return self._wall()

    def memory(self) -> tuple[int, int]:
        """Return (rss_bytes, peak_rss_bytes).  Never raises."""
        try:
            if self._process is None:
                self._process = psutil.Process()
            info = self._process.memory_info()
        except psutil.Error as e:
            logger.debug(f"Memory sample failed: {e}")
            return 0, self._peak

        rss = info.rss
        # Windows reports a true peak working set; elsewhere track the max seen
        peak = getattr(info, "peak_wset", 0) or 0
        self._peak = max(self._peak, rss, peak)
        return rss, self._peak
