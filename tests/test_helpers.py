"""Formatting, call-site and backtrace helpers; the psutil sampler."""

import traceback

from reqprof.services.sampler import Sampler
from reqprof.utils.helpers import (
    format_bytes,
    format_frame,
    is_framework_path,
    percentage,
    resolve_call_site,
    simplify_backtrace,
)


def test_format_bytes():
    assert format_bytes(512) == "512.00 B"
    assert format_bytes(2048) == "2.00 KB"
    assert format_bytes(5 * 1024 * 1024) == "5.00 MB"


def test_format_frame():
    assert format_frame("/srv/app/forms.py", 12, "store") == "forms.py:12 -> store()"
    assert format_frame(None, None, None) == "unknown:? -> unknown()"


def test_percentage_zero_total():
    assert percentage(5, 0) == 0
    assert percentage(5, -1) == 0
    assert percentage(1, 4) == 25


# ── Call sites ──

def test_resolve_call_site_points_at_caller():
    site = resolve_call_site(skip=1)
    assert site.startswith("test_helpers.py:")
    assert site.endswith("-> test_resolve_call_site_points_at_caller()")


def test_resolve_call_site_too_deep():
    assert resolve_call_site(skip=10_000) == "unknown"


# ── Backtraces ──

def test_simplify_string_backtrace():
    assert simplify_backtrace("forms.py:3 -> save()") == "forms.py:3 -> save()"
    assert simplify_backtrace("") == "unknown"
    assert simplify_backtrace(None) == "unknown"
    assert simplify_backtrace([]) == "unknown"


def test_simplify_skips_framework_frames():
    backtrace = [
        {"file": "/srv/app/handlers/forms.py", "line": 42, "function": "store", "class": "FormStore"},
        {"file": "/usr/lib/python3/site-packages/redis/client.py", "line": 10, "function": "execute_command"},
    ]
    assert simplify_backtrace(backtrace) == "forms.py:42 -> FormStore::store()"


def test_simplify_all_framework_uses_innermost():
    backtrace = [
        {"file": "/venv/site-packages/telegram/ext/_application.py", "line": 1, "function": "process_update"},
        {"file": "/venv/site-packages/redis/client.py", "line": 10, "function": "execute_command"},
    ]
    assert simplify_backtrace(backtrace) == "client.py:10 -> execute_command()"


def test_simplify_frame_summaries():
    stack = traceback.extract_stack()
    assert simplify_backtrace(stack).startswith("test_helpers.py:")


def test_simplify_ignores_frames_without_function():
    backtrace = [{"file": "/srv/app/forms.py", "line": 1}, "garbage"]
    assert simplify_backtrace(backtrace) == "unknown"


def test_framework_paths():
    assert is_framework_path("")
    assert is_framework_path("/x/site-packages/httpx/_client.py")
    assert is_framework_path(traceback.__file__)
    assert not is_framework_path(__file__)


# ── Sampler ──

def test_sampler_memory_and_peak():
    sampler = Sampler()
    rss, peak = sampler.memory()
    assert rss > 0
    assert peak >= rss
    _, peak_again = sampler.memory()
    assert peak_again >= peak


def test_sampler_injected_clock():
    ticks = iter([1.0, 2.5])
    sampler = Sampler(clock=lambda: next(ticks), wall=lambda: 99.0)
    assert sampler.now() == 1.0
    assert sampler.now() == 2.5
    assert sampler.wall() == 99.0
