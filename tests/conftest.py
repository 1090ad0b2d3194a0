"""Shared fixtures: a controllable clock/memory sampler and sessions built on it."""

import pytest

from reqprof.middleware.timing import ProfilingSession

START = 100.0
WALL_START = 1_700_000_000.0


class FakeSampler:
    """Sampler with a manually advanced clock and fixed memory."""

    def __init__(self, rss: int = 2 * 1024 * 1024):
        self.t = START
        self.wall_t = WALL_START
        self.rss = rss

    def set(self, seconds: float) -> None:
        """Move the clock to ``seconds`` after START."""
        delta = (START + seconds) - self.t
        self.t += delta
        self.wall_t += delta

    def now(self) -> float:
        return self.t

    def wall(self) -> float:
        return self.wall_t

    def memory(self) -> tuple[int, int]:
        return self.rss, self.rss


@pytest.fixture
def sampler():
    return FakeSampler()


@pytest.fixture
def session(sampler):
    return ProfilingSession(sampler=sampler)


@pytest.fixture
def record_at(sampler):
    """record_at(session, seconds, label) records at a fixed offset from START."""
    def _record(session, seconds, label, description=""):
        sampler.set(seconds)
        return session.record(label, description)
    return _record
