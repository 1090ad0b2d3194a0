"""Outbound HTTP call timings, correlated by an explicit token.

    token = collector.on_call_start(url, "POST")
    try:
        response = await client.post(url, json=body)
    except Exception as e:
        collector.on_call_end(token, e)
        raise
    collector.on_call_end(token, response)

``profiled_request`` wraps exactly that for httpx-style clients.
"""

import hashlib
import itertools
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_nonce = itertools.count()


@dataclass
class NetworkCallRecord:
    url: str
    method: str
    start_time: float
    duration: float = 0.0
    status: str = "pending"          # pending | success | error
    status_code: int | None = None
    end_time: float | None = None


def _make_token(url: str, now: float) -> str:
    # unique per call, also for concurrent calls to one URL
    raw = f"{url}|{now!r}|{next(_nonce)}"
    return hashlib.md5(raw.encode("utf-8", "replace")).hexdigest()


class NetworkCallCollector:
    def __init__(self, session):
        self.session = session

    def on_call_start(self, url: str, method: str = "GET") -> str | None:
        """Register a pending call.  Returns its token, or None when idle."""
        session = self.session
        if not session.recording:
            return None

        method = (method or "GET").upper()
        now = session.sampler.now()
        token = _make_token(url, now)
        with session.lock:
            session.network_calls[token] = NetworkCallRecord(
                url=str(url), method=method, start_time=now,
            )
        session.record("HTTP_START", f"{method} {url}")
        return token

    def on_call_end(self, token: str | None, response, url: str = None, method: str = None) -> None:
        """Resolve a pending call.  Unknown tokens are dropped silently."""
        session = self.session
        if token is None or not session.recording:
            return

        now = session.sampler.now()
        with session.lock:
            record = session.network_calls.get(token)
            if record is None or record.status != "pending":
                return
            record.duration = max(0.0, now - record.start_time)
            record.end_time = now
            record.status = "error" if isinstance(response, BaseException) else "success"
            status_code = getattr(response, "status_code", None)
            record.status_code = status_code if isinstance(status_code, int) else None

        label_url = url or record.url
        label_method = (method or record.method).upper()
        session.record(
            "HTTP_END",
            f"{record.status.upper()} {label_method} {label_url} - {record.duration:.4f}s",
        )


async def profiled_request(collector: NetworkCallCollector | None, client, method: str, url: str, **kwargs):
    """``client.request(method, url, **kwargs)`` with start/end timing.

    Transport errors are recorded on the call and then re-raised.
    """
    if collector is None:
        return await client.request(method, url, **kwargs)

    token = collector.on_call_start(url, method)
    try:
        response = await client.request(method, url, **kwargs)
    except Exception as e:
        collector.on_call_end(token, e, url, method)
        raise
    collector.on_call_end(token, response, url, method)
    return response
