"""Backing-store query timings: a recording Redis proxy and the collector.

``RecordingRedis`` keeps the query log while the request runs;
``QueryCollector`` turns that log into ``QueryRecord`` entries once, at the
end of the request.
"""

import time
import types
import inspect
import logging
import traceback
from dataclasses import dataclass

from reqprof.utils.helpers import fingerprint, simplify_backtrace

logger = logging.getLogger(__name__)

_BACKTRACE_LIMIT = 12


@dataclass(frozen=True)
class QueryRecord:
    text: str
    duration: float
    fingerprint: str
    call_site: str = "unknown"


# ── Query log source ─────────────────────────────────────────────────

def _command_text(args: tuple) -> str:
    parts = []
    for arg in args:
        if isinstance(arg, (bytes, bytearray)):
            parts.append(bytes(arg).decode("utf-8", "replace"))
        else:
            parts.append(str(arg))
    return " ".join(parts)


class RecordingRedis:
    """Proxy for a ``redis.asyncio`` client that logs every command.

    Each command appends ``(text, seconds, backtrace)`` to ``query_log``.
    Command helpers (``hset``, ``incr`` ...) are re-bound to the proxy so
    they route through ``execute_command``.  Pipelines talk to the
    connection directly and are not recorded.
    """

    def __init__(self, client, query_log: list):
        self._client = client
        self.query_log = query_log

    async def execute_command(self, *args, **options):
        t0 = time.perf_counter()
        try:
            return await self._client.execute_command(*args, **options)
        finally:
            self.query_log.append((
                _command_text(args),
                time.perf_counter() - t0,
                traceback.extract_stack(limit=_BACKTRACE_LIMIT),
            ))

    def __getattr__(self, name):
        attr = getattr(type(self._client), name, None)
        if inspect.isfunction(attr):
            return types.MethodType(attr, self)
        return getattr(self._client, name)


# ── Collector ────────────────────────────────────────────────────────

class QueryCollector:
    def __init__(self, session):
        self.session = session

    def collect(self, query_log) -> int:
        """Convert the accumulated query log.  Returns the number kept.

        A missing or malformed log is not an error: nothing is collected.
        """
        if not self.session.recording:
            return 0
        if not query_log or not isinstance(query_log, (list, tuple)):
            return 0

        limit = self.session.options.query_text_limit
        records = []
        for entry in query_log:
            record = self._to_record(entry, limit)
            if record is not None:
                records.append(record)

        self.session.queries = records
        self.session.record("DB_QUERIES_COLLECTED", f"{len(records)} queries")
        return len(records)

    @staticmethod
    def _to_record(entry, limit: int) -> QueryRecord | None:
        if not isinstance(entry, (list, tuple)) or len(entry) < 2:
            return None
        try:
            duration = max(0.0, float(entry[1]))
        except (TypeError, ValueError):
            return None

        text = str(entry[0])
        backtrace = entry[2] if len(entry) > 2 else None
        return QueryRecord(
            text=text[:limit],
            duration=duration,
            fingerprint=fingerprint(text),
            call_site=simplify_backtrace(backtrace) if backtrace is not None else "unknown",
        )
