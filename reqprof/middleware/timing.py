"""Request-scoped profiling session with named checkpoints.

Usage inside a request:

    session = ProfilingSession(external_start=arrived_at)
    session.activate()                          # one-way, once per request
    ...
    session.record("BEFORE_INSERT", "About to store the submission")
    ...
    emit_report(session)                        # see services/report.py

Every recording call is a cheap no-op until the session is activated, and
again after it has been closed.
"""

import logging
import threading
from dataclasses import dataclass, field

from config import (
    SLOW_THRESHOLD, VERY_SLOW_THRESHOLD, GAP_THRESHOLD, TIMELINE_NOISE_THRESHOLD,
    TOP_N_QUERIES, TOP_N_NETWORK_CALLS, QUERY_TEXT_LIMIT, CALLER_DEPTH, MAX_QUERY_COUNT,
    REPEATED_QUERY_MIN,
    REACH_INIT_THRESHOLD, REACH_ACTIONS_THRESHOLD, AFTER_ACTIONS_THRESHOLD,
)
from reqprof.services.sampler import Sampler
from reqprof.utils.helpers import resolve_call_site

logger = logging.getLogger(__name__)

_LABEL_LIMIT = 300


@dataclass(frozen=True)
class DiagnosticRule:
    """Threshold check against the first checkpoint carrying ``label``."""

    label: str
    threshold: float
    message: str
    hint: str = ""


def _default_reach_rules() -> tuple:
    return (
        DiagnosticRule(
            "INIT", REACH_INIT_THRESHOLD,
            "Taking {seconds:.2f}s to reach INIT",
            "This suggests slow startup work or server issues",
        ),
        DiagnosticRule(
            "BEFORE_ACTIONS", REACH_ACTIONS_THRESHOLD,
            "Taking {seconds:.2f}s to reach BEFORE_ACTIONS",
            "Validation or storage is slow",
        ),
    )


def _default_after_rules() -> tuple:
    return (
        DiagnosticRule(
            "BEFORE_ACTIONS", AFTER_ACTIONS_THRESHOLD,
            "{seconds:.2f}s spent in actions/integrations",
            "Check: notifications, webhooks, API calls",
        ),
    )


@dataclass(frozen=True)
class ProfilerOptions:
    slow_threshold: float = SLOW_THRESHOLD
    very_slow_threshold: float = VERY_SLOW_THRESHOLD
    gap_threshold: float = GAP_THRESHOLD
    top_n_queries: int = TOP_N_QUERIES
    top_n_network_calls: int = TOP_N_NETWORK_CALLS
    timeline_noise_threshold: float = TIMELINE_NOISE_THRESHOLD
    query_text_limit: int = QUERY_TEXT_LIMIT
    caller_depth: int = CALLER_DEPTH
    max_query_count: int = MAX_QUERY_COUNT
    repeated_query_min: int = REPEATED_QUERY_MIN
    reach_rules: tuple = field(default_factory=_default_reach_rules)
    after_rules: tuple = field(default_factory=_default_after_rules)


@dataclass(frozen=True)
class Checkpoint:
    label: str
    description: str
    timestamp: float
    elapsed_since_last: float
    elapsed_since_start: float
    elapsed_since_external: float | None
    memory: int
    peak_memory: int
    call_site: str = "unknown"


class ProfilingSession:
    """All profiling state for one request.  Discarded after its report."""

    def __init__(
        self,
        options: ProfilerOptions = None,
        sampler: Sampler = None,
        external_start: float = None,
        metadata: dict = None,
        external_start_precision: float = 0.0,
    ):
        self.options = options or ProfilerOptions()
        self.sampler = sampler or Sampler()
        self.external_start = external_start
        # how far external_start may lie before the true arrival (clock resolution)
        self.external_start_precision = external_start_precision
        self.metadata = dict(metadata or {})
        self.session_start: float | None = None
        self.session_start_wall: float | None = None
        self.queries: list = []
        self.network_calls: dict = {}
        self.lock = threading.Lock()
        self._active = False
        self._closed = False
        self._last = 0.0
        self._checkpoints: list[Checkpoint] = []

    # ── State ────────────────────────────────────────────────────

    @property
    def activated(self) -> bool:
        return self._active

    @property
    def recording(self) -> bool:
        return self._active and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def activate(self) -> bool:
        """Inactive → Active.  Returns True only for the transitioning call."""
        if self._active:
            return False
        now = self.sampler.now()
        self.session_start = now
        self.session_start_wall = self.sampler.wall()
        self._last = now
        self._checkpoints = []
        self.queries = []
        with self.lock:
            self.network_calls = {}
        self._active = True
        return True

    def close(self) -> None:
        """Stop recording once the report has been written."""
        self._closed = True

    # ── Derived times ────────────────────────────────────────────

    @property
    def queue_delay(self) -> float | None:
        """Arrival → activation, or None when the arrival time is unknown."""
        if self.external_start is None or self.session_start_wall is None:
            return None
        return max(0.0, self.session_start_wall - self.external_start)

    def elapsed(self, now: float = None) -> float:
        if self.session_start is None:
            return 0.0
        if now is None:
            now = self.sampler.now()
        return now - self.session_start

    @property
    def checkpoints(self) -> tuple[Checkpoint, ...]:
        return tuple(self._checkpoints)

    def memory(self) -> tuple[int, int]:
        """(rss, peak) from the sampler, or (0, 0) when sampling fails."""
        try:
            return self.sampler.memory()
        except Exception as e:
            logger.debug(f"[perf] memory sample failed: {e}")
            return 0, 0

    # ── Recording ────────────────────────────────────────────────

    def record(self, label, description: str = "") -> Checkpoint | None:
        """Append a checkpoint.  Returns it, or None when not recording."""
        if not self._active or self._closed:
            return None

        try:
            now = self.sampler.now()
            memory, peak = self.memory()
            since_start = now - self.session_start
            queue_delay = self.queue_delay
            checkpoint = Checkpoint(
                label=str(label)[:_LABEL_LIMIT],
                description=str(description or ""),
                timestamp=now,
                elapsed_since_last=now - self._last,
                elapsed_since_start=since_start,
                elapsed_since_external=(
                    since_start + queue_delay if queue_delay is not None else None
                ),
                memory=memory,
                peak_memory=peak,
                call_site=resolve_call_site(self.options.caller_depth),
            )
        except Exception as e:
            logger.debug(f"[perf] checkpoint {label!r} dropped: {e}")
            return None

        self._checkpoints.append(checkpoint)
        self._last = now
        return checkpoint
