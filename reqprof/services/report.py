"""End-of-request report: structured sections plus the text rendering.

Section order is fixed: header, slow operations, timeline, gaps, queries,
network calls, time breakdown, diagnostics, assessment.  A session with no
checkpoints yields a header-only report.  A short start banner is written
when the session activates.
"""

import re
import logging
from collections import Counter
from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict

from config import (
    ASSESSMENT_ISSUE_SECONDS,
    ASSESSMENT_WARNING_SECONDS,
    ASSESSMENT_QUEUE_SECONDS,
    ASSESSMENT_EXECUTION_SECONDS,
)
from reqprof.utils.helpers import format_bytes, percentage

logger = logging.getLogger(__name__)
report_logger = logging.getLogger("reqprof.report")


# ── Structured report ────────────────────────────────────────────────

@dataclass
class ReportHeader:
    total_time: float
    real_time: float | None
    queue_delay: float | None
    peak_memory: int
    checkpoint_count: int
    metadata: dict = field(default_factory=dict)
    arrival_precision: float = 0.0


@dataclass
class SlowOperation:
    rank: int
    elapsed: float
    severity: str                    # "slow" | "very slow"
    label: str
    description: str
    call_site: str
    memory: int


@dataclass
class TimelineEntry:
    index: int
    elapsed_since_start: float
    elapsed_since_external: float | None
    elapsed_since_last: float
    share: float
    label: str
    description: str
    call_site: str
    memory: int


@dataclass
class Gap:
    duration: float
    before: str
    after: str
    start: float
    end: float


@dataclass
class QueryEntry:
    duration: float
    text: str
    call_site: str


@dataclass
class DuplicateQuery:
    fingerprint: str
    count: int
    total_time: float
    text: str


@dataclass
class QuerySummary:
    count: int = 0
    total_time: float = 0.0
    top: list[QueryEntry] = field(default_factory=list)
    duplicates: list[DuplicateQuery] = field(default_factory=list)


@dataclass
class NetworkEntry:
    duration: float
    method: str
    url: str
    status: str
    status_code: int | None


@dataclass
class NetworkSummary:
    count: int = 0
    total_time: float = 0.0
    top: list[NetworkEntry] = field(default_factory=list)
    statuses: dict = field(default_factory=dict)


@dataclass
class TimeBreakdown:
    total_time: float
    query_time: float
    query_share: float
    network_time: float
    network_share: float
    other_time: float
    other_share: float


@dataclass
class Diagnostic:
    code: str
    message: str
    hint: str = ""
    seconds: float | None = None


@dataclass
class Assessment:
    verdict: str                     # "good" | "warning" | "issue"
    measured_time: float
    notes: list[str] = field(default_factory=list)


@dataclass
class ProfilingReport:
    header: ReportHeader
    slow_operations: list[SlowOperation] = field(default_factory=list)
    timeline: list[TimelineEntry] = field(default_factory=list)
    gaps: list[Gap] = field(default_factory=list)
    queries: QuerySummary = field(default_factory=QuerySummary)
    network: NetworkSummary = field(default_factory=NetworkSummary)
    breakdown: TimeBreakdown | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)
    assessment: Assessment | None = None

    @property
    def header_only(self) -> bool:
        return self.header.checkpoint_count == 0

    def to_dict(self) -> dict:
        return asdict(self)


# ── Sections ─────────────────────────────────────────────────────────

def _slow_operations(checkpoints, options) -> list[SlowOperation]:
    slow = [cp for cp in checkpoints if cp.elapsed_since_last > options.slow_threshold]
    slow.sort(key=lambda cp: cp.elapsed_since_last, reverse=True)
    return [
        SlowOperation(
            rank=i,
            elapsed=cp.elapsed_since_last,
            severity="very slow" if cp.elapsed_since_last > options.very_slow_threshold else "slow",
            label=cp.label,
            description=cp.description,
            call_site=cp.call_site,
            memory=cp.memory,
        )
        for i, cp in enumerate(slow, 1)
    ]


def _timeline(checkpoints, options, total: float) -> list[TimelineEntry]:
    noise = options.timeline_noise_threshold
    return [
        TimelineEntry(
            index=i,
            elapsed_since_start=cp.elapsed_since_start,
            elapsed_since_external=cp.elapsed_since_external,
            elapsed_since_last=cp.elapsed_since_last,
            share=percentage(cp.elapsed_since_start, total),
            label=cp.label,
            description=cp.description,
            call_site=cp.call_site,
            memory=cp.memory,
        )
        for i, cp in enumerate(checkpoints, 1)
        if noise <= 0 or cp.elapsed_since_last > noise
    ]


def _gaps(checkpoints, options) -> list[Gap]:
    gaps = []
    for prev, cur in zip(checkpoints, checkpoints[1:]):
        gap = cur.elapsed_since_start - prev.elapsed_since_start
        if gap > options.gap_threshold:
            gaps.append(Gap(
                duration=gap,
                before=prev.label,
                after=cur.label,
                start=prev.elapsed_since_start,
                end=cur.elapsed_since_start,
            ))
    return gaps


def _query_summary(queries, options) -> QuerySummary:
    if not queries:
        return QuerySummary()

    top = sorted(queries, key=lambda q: q.duration, reverse=True)[:options.top_n_queries]

    by_fingerprint: dict[str, list] = {}
    for q in queries:
        by_fingerprint.setdefault(q.fingerprint, []).append(q)
    duplicates = [
        DuplicateQuery(
            fingerprint=fp, count=len(group),
            total_time=sum(q.duration for q in group), text=group[0].text,
        )
        for fp, group in by_fingerprint.items() if len(group) > 1
    ]
    duplicates.sort(key=lambda d: d.count, reverse=True)

    return QuerySummary(
        count=len(queries),
        total_time=sum(q.duration for q in queries),
        top=[QueryEntry(q.duration, q.text, q.call_site) for q in top],
        duplicates=duplicates,
    )


def _network_summary(calls, options) -> NetworkSummary:
    if not calls:
        return NetworkSummary()

    top = sorted(calls, key=lambda c: c.duration, reverse=True)[:options.top_n_network_calls]
    return NetworkSummary(
        count=len(calls),
        total_time=sum(c.duration for c in calls),
        top=[NetworkEntry(c.duration, c.method, c.url, c.status, c.status_code) for c in top],
        statuses=dict(Counter(c.status for c in calls)),
    )


def _breakdown(total: float, queries: QuerySummary, network: NetworkSummary) -> TimeBreakdown:
    # Collector timings can overlap the session clock; never show negative "other"
    other = max(0.0, total - queries.total_time - network.total_time)
    return TimeBreakdown(
        total_time=total,
        query_time=queries.total_time,
        query_share=percentage(queries.total_time, total),
        network_time=network.total_time,
        network_share=percentage(network.total_time, total),
        other_time=other,
        other_share=percentage(other, total),
    )


def _first(checkpoints, label: str):
    for cp in checkpoints:
        if cp.label == label:
            return cp
    return None


def _query_shape(text: str) -> str:
    return re.sub(r"\d+", "N", text)


def _diagnostics(checkpoints, options, total: float, queries) -> list[Diagnostic]:
    found = []

    for rule in options.reach_rules:
        cp = _first(checkpoints, rule.label)
        if cp is not None and cp.elapsed_since_start > rule.threshold:
            found.append(Diagnostic(
                code=f"slow_reach:{rule.label}",
                message=rule.message.format(seconds=cp.elapsed_since_start),
                hint=rule.hint,
                seconds=cp.elapsed_since_start,
            ))

    for rule in options.after_rules:
        cp = _first(checkpoints, rule.label)
        if cp is None:
            continue
        remaining = max(0.0, total - cp.elapsed_since_start)
        if remaining > rule.threshold:
            found.append(Diagnostic(
                code=f"slow_after:{rule.label}",
                message=rule.message.format(seconds=remaining),
                hint=rule.hint,
                seconds=remaining,
            ))

    if len(queries) > options.max_query_count:
        found.append(Diagnostic(
            code="query_count",
            message=f"High number of database queries: {len(queries)}",
            hint=f"More than {options.max_query_count} queries for one request",
        ))

    shapes = Counter(_query_shape(q.text) for q in queries)
    for shape, count in shapes.most_common():
        if count < options.repeated_query_min:
            break
        found.append(Diagnostic(
            code="repeated_query",
            message=f"Query repeated {count} times: {shape[:120]}",
            hint="Looks like an N+1 pattern; batch it (pipeline, MGET, HGETALL)",
        ))

    return found


def _assessment(total: float, real: float | None, queue: float | None, precision: float = 0.0) -> Assessment:
    """Verdict on real time, or execution time without an arrival time.

    A coarse arrival clock can overstate the queue by up to ``precision``,
    so the verdict uses the lower bound of real and queued time.
    """
    if real is not None:
        measured = max(total, real - precision)
        queue = max(0.0, queue - precision)
    else:
        measured = total
    notes = []
    if measured > ASSESSMENT_ISSUE_SECONDS:
        if queue is not None and queue > ASSESSMENT_QUEUE_SECONDS:
            notes.append(f"High queueing delay ({queue:.2f}s) - possible server load")
        if total > ASSESSMENT_EXECUTION_SECONDS:
            notes.append(f"Slow execution ({total:.2f}s) - code optimisation needed")
        return Assessment("issue", measured, notes)
    if measured > ASSESSMENT_WARNING_SECONDS:
        return Assessment("warning", measured, notes)
    return Assessment("good", measured, notes)


# ── Build ────────────────────────────────────────────────────────────

def build_report(session, finished_at: float = None) -> ProfilingReport:
    """Synthesize the report from a session's accumulated state."""
    options = session.options
    if finished_at is None:
        finished_at = session.sampler.now()

    total = max(0.0, session.elapsed(finished_at))
    queue = session.queue_delay
    real = total + queue if queue is not None else None
    checkpoints = session.checkpoints
    _, peak = session.memory()
    peak = max([peak] + [cp.peak_memory for cp in checkpoints])

    header = ReportHeader(
        total_time=total,
        real_time=real,
        queue_delay=queue,
        peak_memory=peak,
        checkpoint_count=len(checkpoints),
        metadata=dict(session.metadata),
        arrival_precision=session.external_start_precision if queue is not None else 0.0,
    )
    report = ProfilingReport(header=header)
    if not checkpoints:
        return report

    with session.lock:
        calls = list(session.network_calls.values())
    queries = list(session.queries)

    report.slow_operations = _slow_operations(checkpoints, options)
    report.timeline = _timeline(checkpoints, options, total)
    report.gaps = _gaps(checkpoints, options)
    report.queries = _query_summary(queries, options)
    report.network = _network_summary(calls, options)
    report.breakdown = _breakdown(total, report.queries, report.network)
    report.diagnostics = _diagnostics(checkpoints, options, total, queries)
    report.assessment = _assessment(total, real, queue, header.arrival_precision)
    return report


# ── Text rendering ───────────────────────────────────────────────────

_RULE = "=" * 48
_THIN = "-" * 48


def _queue_line(queue: float, precision: float) -> str:
    line = f"Queueing Delay: {queue:.4f}s"
    if precision:
        line += f" (arrival time resolution {precision:g}s)"
    return line


def _section(lines: list[str], title: str) -> None:
    lines.extend(["", _RULE, title, _THIN])


def render_report(report: ProfilingReport, slow_threshold: float = None) -> str:
    h = report.header
    lines = [_RULE, "REQUEST PROFILING RESULTS", _RULE]
    lines.append(f"Total Time: {h.total_time:.4f}s")
    if h.real_time is not None:
        lines.append(f"Total Real Time: {h.real_time:.4f}s")
        lines.append(_queue_line(h.queue_delay, h.arrival_precision))
    lines.append(f"Peak Memory: {format_bytes(h.peak_memory)}")
    lines.append(f"Checkpoints: {h.checkpoint_count}")
    for key, value in h.metadata.items():
        lines.append(f"{key}: {value}")

    if report.header_only:
        lines.extend([_RULE, "END PROFILING", _RULE])
        return "\n".join(lines)

    if report.slow_operations:
        title = "SLOW OPERATIONS"
        if slow_threshold is not None:
            title += f" (>{slow_threshold}s)"
        _section(lines, title)
        for op in report.slow_operations:
            lines.append(f"{op.rank}. {op.severity.upper()} [{op.elapsed:.4f}s] {op.label}")
            lines.append(f"     Caller: {op.call_site}")
            lines.append(f"     Memory: {format_bytes(op.memory)}")

    _section(lines, "EXECUTION TIMELINE")
    for e in report.timeline:
        real = f" | {e.elapsed_since_external:.4f}s REAL" if e.elapsed_since_external is not None else ""
        lines.append(
            f"[{e.index}] {e.elapsed_since_start:.4f}s{real} (+{e.elapsed_since_last:.4f}s, "
            f"{e.share:5.1f}%) | {e.label:<20} | {e.description} | {e.call_site} | "
            f"Mem: {format_bytes(e.memory)}"
        )

    _section(lines, "SIGNIFICANT GAPS")
    if not report.gaps:
        lines.append("none")
    for g in report.gaps:
        lines.append(f"GAP: {g.duration:.4f}s between '{g.before}' and '{g.after}'")

    q = report.queries
    if q.count:
        _section(lines, f"DATABASE QUERIES ({q.count} total, {q.total_time:.4f}s)")
        for entry in q.top:
            lines.append(f"{entry.duration:.4f}s | {entry.text}")
            if slow_threshold is not None and entry.duration > slow_threshold:
                lines.append(f"     Caller: {entry.call_site}")
        for d in q.duplicates:
            lines.append(f"DUPLICATE x{d.count} ({d.total_time:.4f}s) | {d.text}")

    n = report.network
    if n.count:
        _section(lines, f"HTTP REQUESTS ({n.count} total, {n.total_time:.4f}s)")
        for entry in n.top:
            code = f" [{entry.status_code}]" if entry.status_code is not None else ""
            lines.append(f"{entry.status.upper()}{code} {entry.duration:.4f}s | {entry.method} {entry.url}")

    b = report.breakdown
    _section(lines, "PERFORMANCE SUMMARY")
    lines.append(f"HTTP Time: {b.network_time:.4f}s ({b.network_share:.1f}%)")
    lines.append(f"Database Time: {b.query_time:.4f}s ({b.query_share:.1f}%)")
    lines.append(f"Other Time: {b.other_time:.4f}s ({b.other_share:.1f}%)")

    _section(lines, "DIAGNOSTIC CHECKS")
    if not report.diagnostics:
        lines.append("no issues detected")
    for d in report.diagnostics:
        lines.append(f"WARNING: {d.message}")
        if d.hint:
            lines.append(f"   {d.hint}")

    a = report.assessment
    lines.append("")
    lines.append(f"ASSESSMENT: {a.verdict.upper()} ({a.measured_time:.2f}s)")
    for note in a.notes:
        lines.append(f"   {note}")

    lines.extend(["", _RULE, "END PROFILING", _RULE])
    return "\n".join(lines)


def _write_lines(text: str, sink) -> None:
    write = sink or report_logger.info
    for line in text.split("\n"):
        try:
            write(line)
        except Exception:
            continue  # sink failures are swallowed


def render_start_banner(session) -> str:
    lines = [_RULE, "PROFILING STARTED", _RULE]
    if session.session_start_wall is not None:
        started = datetime.fromtimestamp(session.session_start_wall, timezone.utc)
        lines.append(f"Start Time: {started.isoformat(timespec='milliseconds')}")
    for key, value in session.metadata.items():
        lines.append(f"{key}: {value}")
    queue = session.queue_delay
    if queue is not None:
        lines.append(_queue_line(queue, session.external_start_precision))
    lines.append(_RULE)
    return "\n".join(lines)


def emit_start_banner(session, sink=None) -> None:
    """Write the start banner once the session is active."""
    if not session.activated:
        return
    _write_lines(render_start_banner(session), sink)


def emit_report(session, sink=None) -> ProfilingReport | None:
    """Build, render, and write the report one line at a time."""
    if not session.activated:
        return None

    report = build_report(session)
    _write_lines(render_report(report, slow_threshold=session.options.slow_threshold), sink)
    logger.info(
        f"[perf] total={report.header.total_time * 1000:.0f}ms "
        f"checkpoints={report.header.checkpoint_count} "
        f"queries={report.queries.count} http={report.network.count}"
    )
    return report
