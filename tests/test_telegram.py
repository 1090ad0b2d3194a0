"""python-telegram-bot integration: classification, begin/end, error handler."""

import json
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from telegram import Chat, Message, Update, User, WebAppData
from telegram.ext import Application, ContextTypes

from reqprof.handlers.errors import error_handler
from reqprof.middleware import telegram as tg
from reqprof.middleware.telegram import (
    BEGIN_GROUP,
    END_GROUP,
    ProfilingContext,
    begin_request,
    end_request,
    install_profiler,
    is_profiled_update,
    session_for,
)


def _update(update_id=1, data=None, date=None):
    web_app_data = WebAppData(data=data, button_text="Open form") if data is not None else None
    message = Message(
        message_id=10,
        date=date or datetime.now(timezone.utc),
        chat=Chat(id=555, type=Chat.PRIVATE),
        from_user=User(id=777, first_name="Ann", is_bot=False),
        text=None if web_app_data else "hello",
        web_app_data=web_app_data,
    )
    return Update(update_id=update_id, message=message)


def _context():
    return SimpleNamespace(hooks=None, profiler=None, network=None, query_log=None)


@pytest.fixture(autouse=True)
def _clear_open_sessions():
    tg._open_sessions.clear()
    yield
    tg._open_sessions.clear()


# ── Classification ──

def test_matching_submission_is_profiled():
    update = _update(data=json.dumps({"action": "form_submit", "fields": {}}))
    assert is_profiled_update(update)
    assert not is_profiled_update(update, action="other_action")


@pytest.mark.parametrize("data", [None, "not json", "[1, 2]", json.dumps({"action": "other"})])
def test_other_updates_not_profiled(data):
    assert not is_profiled_update(_update(data=data))


def test_update_without_message_not_profiled():
    assert not is_profiled_update(Update(update_id=3))
    assert not is_profiled_update(None)


# ── Begin / end ──

async def test_begin_request_profiles_matching_update():
    update = _update(update_id=42, data=json.dumps({"action": "form_submit"}))
    context = _context()
    lines = []
    await begin_request(update, context, sink=lines.append)

    session = context.profiler
    assert session.recording
    assert context.network is not None
    assert context.query_log == []
    assert session_for(update) is session
    assert [cp.label for cp in session.checkpoints] == ["SESSION_START", "INIT"]
    assert session.metadata == {"update_id": 42, "chat_id": 555, "user_id": 777}
    assert session.queue_delay is not None
    assert session.external_start_precision == 1.0
    assert lines[1] == "PROFILING STARTED"

    await end_request(update, context)
    assert session.closed
    assert session_for(update) is None
    assert "REQUEST PROFILING RESULTS" in lines


async def test_begin_request_ignores_other_updates():
    update = _update(update_id=43)
    context = _context()
    lines = []
    await begin_request(update, context, sink=lines.append)

    assert context.profiler is None
    assert context.hooks is not None
    assert not context.hooks.has_subscribers("request/shutdown")
    assert context.network is None
    assert context.query_log is None
    assert session_for(update) is None

    await end_request(update, context)
    assert lines == []


async def test_end_request_without_begin():
    await end_request(_update(), _context())


async def test_stale_sessions_evicted(monkeypatch):
    old = _update(update_id=1, data=json.dumps({"action": "form_submit"}))
    await begin_request(old, _context(), sink=lambda line: None)
    monkeypatch.setattr(tg, "OPEN_SESSION_MAX_AGE", -1)

    new = _update(update_id=2, data=json.dumps({"action": "form_submit"}))
    await begin_request(new, _context(), sink=lambda line: None)
    assert session_for(old) is None
    assert session_for(new) is not None


# ── Error handler ──

async def test_error_handler_records_on_open_session():
    update = _update(update_id=50, data=json.dumps({"action": "form_submit"}))
    context = _context()
    await begin_request(update, context, sink=lambda line: None)

    await error_handler(update, SimpleNamespace(error=ValueError("bad form")))
    last = context.profiler.checkpoints[-1]
    assert last.label == "HANDLER_ERROR"
    assert last.description == "ValueError: bad form"


async def test_error_handler_without_session():
    await error_handler(None, SimpleNamespace(error=RuntimeError("boom")))


# ── Installation ──

def test_install_profiler_adds_outer_groups():
    application = (
        Application.builder()
        .token("123456:TEST")
        .context_types(ContextTypes(context=ProfilingContext))
        .build()
    )
    install_profiler(application)
    assert BEGIN_GROUP in application.handlers
    assert END_GROUP in application.handlers


def test_install_profiler_requires_profiling_context():
    application = Application.builder().token("123456:TEST").build()
    with pytest.raises(ValueError):
        install_profiler(application)
