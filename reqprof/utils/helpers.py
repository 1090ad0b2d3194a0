"""Call-site resolution, backtrace simplification, and formatting helpers."""

import os
import sys
import hashlib
import logging
import sysconfig

logger = logging.getLogger(__name__)

_PACKAGE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Recorder plumbing: frames from these files are never reported as call sites
_PLUMBING_FILES = {
    os.path.join(_PACKAGE_DIR, "middleware", "timing.py"),
    os.path.join(_PACKAGE_DIR, "middleware", "telegram.py"),
    os.path.join(_PACKAGE_DIR, "handlers", "lifecycle.py"),
    os.path.join(_PACKAGE_DIR, "services", "network.py"),
    os.path.join(_PACKAGE_DIR, "services", "queries.py"),
    os.path.join(_PACKAGE_DIR, "utils", "hooks.py"),
    os.path.abspath(__file__),
}

_STDLIB_DIRS = tuple(
    os.path.abspath(p) for p in {
        sysconfig.get_paths().get("stdlib"),
        sysconfig.get_paths().get("platstdlib"),
    } if p
)


# ── Formatting ───────────────────────────────────────────────────────

def format_bytes(size: float) -> str:
    units = ["B", "KB", "MB", "GB"]
    i = 0
    while size >= 1024 and i < 3:
        size /= 1024
        i += 1
    return f"{size:.2f} {units[i]}"


def format_frame(filename: str, lineno, function: str) -> str:
    return f"{os.path.basename(filename or 'unknown')}:{lineno if lineno else '?'} -> {function or 'unknown'}()"


def percentage(part: float, total: float) -> float:
    """Share of total in percent; 0 when the total is not positive."""
    if not total or total <= 0:
        return 0.0
    return part / total * 100


def fingerprint(text: str) -> str:
    return hashlib.md5(text.encode("utf-8", "replace")).hexdigest()


# ── Call sites ───────────────────────────────────────────────────────

def _is_plumbing(filename: str) -> bool:
    return os.path.abspath(filename) in _PLUMBING_FILES


def resolve_call_site(depth: int = 5, skip: int = 2) -> str:
    """Describe the code that triggered a checkpoint.

    Starts ``skip`` frames up (2 = the caller of whoever called us, i.e.
    past the recorder) and walks at most ``depth`` frames, ignoring the
    recorder's own plumbing.  Returns ``"unknown"`` when nothing usable
    is found.
    """
    try:
        frame = sys._getframe(skip)
    except ValueError:
        return "unknown"

    try:
        for _ in range(depth):
            if frame is None:
                break
            code = frame.f_code
            if not _is_plumbing(code.co_filename):
                return format_frame(code.co_filename, frame.f_lineno, code.co_name)
            frame = frame.f_back
    except Exception as e:
        logger.debug(f"Call-site resolution failed: {e}")
    finally:
        del frame
    return "unknown"


# ── Backtraces ───────────────────────────────────────────────────────

def is_framework_path(filename: str) -> bool:
    """True for third-party, standard-library, and profiler plumbing frames."""
    if not filename:
        return True
    path = os.path.abspath(filename)
    if "site-packages" in path or "dist-packages" in path:
        return True
    if path in _PLUMBING_FILES:
        return True
    return any(path.startswith(d + os.sep) for d in _STDLIB_DIRS)


def _frame_parts(frame) -> tuple[str, object, str] | None:
    if isinstance(frame, dict):
        filename = frame.get("file") or frame.get("filename")
        function = frame.get("function") or frame.get("name")
        if function is None:
            return None
        cls = frame.get("class")
        if cls:
            function = f"{cls}::{function}"
        return filename or "", frame.get("line") or frame.get("lineno"), function
    filename = getattr(frame, "filename", None)
    function = getattr(frame, "name", None)
    if function is None:
        return None
    return filename or "", getattr(frame, "lineno", None), function


def simplify_backtrace(backtrace) -> str:
    """Reduce a raw backtrace to its most relevant caller.

    Accepts a string (returned as is), or a list of frames in
    ``traceback.extract_stack()`` order (outermost first) as FrameSummary
    objects or dicts.  Picks the innermost frame outside framework code,
    falling back to the innermost frame.
    """
    if isinstance(backtrace, str):
        return backtrace or "unknown"
    if not isinstance(backtrace, (list, tuple)) or not backtrace:
        return "unknown"

    frames = [p for p in (_frame_parts(f) for f in reversed(backtrace)) if p]
    for filename, lineno, function in frames:
        if not is_framework_path(filename):
            return format_frame(filename, lineno, function)
    if frames:
        return format_frame(*frames[0])
    return "unknown"
