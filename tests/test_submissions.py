"""Reference host: submission parsing, storage, and a profiled request end to end."""

import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from reqprof.handlers import submissions
from reqprof.middleware import telegram as tg
from reqprof.middleware.telegram import begin_request, end_request


class FakeRedis:
    """Stores nothing; every helper goes through execute_command."""

    def __init__(self):
        self.commands = []
        self.next_id = 0

    async def execute_command(self, *args, **options):
        self.commands.append(args)
        if args[0] == "INCR":
            self.next_id += 1
            return self.next_id
        return 1

    async def incr(self, name):
        return await self.execute_command("INCR", name)

    async def hset(self, name, mapping=None):
        items = [part for pair in (mapping or {}).items() for part in pair]
        return await self.execute_command("HSET", name, *items)

    async def expire(self, name, seconds):
        return await self.execute_command("EXPIRE", name, seconds)

    async def rpush(self, name, *values):
        return await self.execute_command("RPUSH", name, *values)


def _submission_update(update_id, body):
    message = SimpleNamespace(
        web_app_data=SimpleNamespace(data=json.dumps(body)),
        date=datetime.now(timezone.utc),
        reply_text=AsyncMock(),
    )
    return SimpleNamespace(
        update_id=update_id,
        effective_message=message,
        effective_chat=SimpleNamespace(id=1),
        effective_user=SimpleNamespace(id=2),
    )


def _context():
    return SimpleNamespace(hooks=None, profiler=None, network=None, query_log=None)


@pytest.fixture(autouse=True)
def _clients(monkeypatch):
    monkeypatch.setattr(submissions, "redis_client", None)
    monkeypatch.setattr(submissions, "http_client", None)
    tg._open_sessions.clear()


# ── Parsing + validation ──

def test_parse_submission():
    assert submissions.parse_submission('{"form_id": "3", "fields": {"name": "Ann"}}')["fields"] == {"name": "Ann"}
    assert submissions.parse_submission('{"form_id": "3"}')["fields"] == {}
    assert submissions.parse_submission("[1]") is None
    assert submissions.parse_submission("{oops") is None


def test_validate_submission():
    assert submissions.validate_submission({"name": "Ann", "email": "ann@example.com"}) == []
    errors = submissions.validate_submission({"name": "  ", "email": "nope"})
    assert errors == ["name is required", "email is not valid"]
    assert submissions.validate_submission({}) == ["name is required", "email is required"]


# ── Storage ──

async def test_store_submission():
    redis = FakeRedis()
    insert_id = await submissions.store_submission(redis, "f1", {"name": "Ann"})
    assert insert_id == 1
    assert [c[0] for c in redis.commands] == ["INCR", "HSET", "EXPIRE", "RPUSH"]
    assert redis.commands[1][1] == "submission:1"
    assert redis.commands[3][1:] == ("form:f1:submissions", 1)


async def test_store_submission_without_redis():
    assert await submissions.store_submission(None, "f1", {}) is None


async def test_store_submission_failure_returns_none():
    redis = AsyncMock()
    redis.incr.side_effect = ConnectionError("down")
    assert await submissions.store_submission(redis, "f1", {}) is None


async def test_run_actions_posts_webhook(monkeypatch):
    client = AsyncMock()
    client.request.return_value = SimpleNamespace(status_code=200, raise_for_status=lambda: None)
    monkeypatch.setattr(submissions, "http_client", client)
    monkeypatch.setattr(submissions, "SUBMISSION_WEBHOOK_URL", "https://hooks.example/in")

    assert await submissions.run_actions(_context(), 5, "f1", {"name": "Ann"}) is True
    method, url = client.request.await_args.args
    assert (method, url) == ("POST", "https://hooks.example/in")
    assert client.request.await_args.kwargs["json"]["id"] == 5


async def test_run_actions_failure_is_logged_not_raised(monkeypatch):
    client = AsyncMock()
    client.request.side_effect = ConnectionError("refused")
    monkeypatch.setattr(submissions, "http_client", client)
    monkeypatch.setattr(submissions, "SUBMISSION_WEBHOOK_URL", "https://hooks.example/in")
    assert await submissions.run_actions(_context(), 5, "f1", {}) is False


# ── Profiled request ──

async def test_profiled_submission_end_to_end(monkeypatch):
    redis = FakeRedis()
    monkeypatch.setattr(submissions, "redis_client", redis)
    update = _submission_update(9, {
        "action": "form_submit",
        "form_id": "contact",
        "fields": {"name": "Ann", "email": "ann@example.com"},
    })
    context = _context()
    lines = []

    await begin_request(update, context, sink=lines.append)
    await submissions.handle_submission(update, context)
    await end_request(update, context)

    session = context.profiler
    assert [cp.label for cp in session.checkpoints] == [
        "SESSION_START", "INIT", "HANDLER_START", "BEFORE_PROCESSING", "VALIDATION",
        "BEFORE_INSERT", "AFTER_INSERT", "BEFORE_ACTIONS", "DURING_ACTIONS",
        "AFTER_ACTIONS", "CONFIRMATION", "OUTPUT_START", "OUTPUT_END", "HANDLER_DONE",
        "DB_QUERIES_COLLECTED",
    ]
    by_label = {cp.label: cp for cp in session.checkpoints}
    assert by_label["AFTER_INSERT"].description == "After insert - ID: 1"
    assert by_label["HANDLER_START"].call_site.startswith("submissions.py:")
    assert by_label["BEFORE_INSERT"].call_site.endswith("-> handle_submission()")

    assert [q.text.split()[0] for q in session.queries] == ["INCR", "HSET", "EXPIRE", "RPUSH"]
    assert session.metadata["form_id"] == "contact"
    assert any(line.startswith("DATABASE QUERIES (4 total") for line in lines)
    assert "form_id: contact" in lines
    update.effective_message.reply_text.assert_awaited_once()


async def test_invalid_submission_stops_after_validation():
    update = _submission_update(10, {"action": "form_submit", "fields": {"name": "Ann"}})
    context = _context()
    await begin_request(update, context, sink=lambda line: None)
    await submissions.handle_submission(update, context)

    labels = [cp.label for cp in context.profiler.checkpoints]
    assert labels[-2:] == ["VALIDATION", "HANDLER_DONE"]
    assert context.profiler.checkpoints[-2].description == "Validation - 1 errors"
    reply = update.effective_message.reply_text.await_args.args[0]
    assert reply == "Please fix: email is required"


async def test_unprofiled_submission_uses_plain_client(monkeypatch):
    redis = FakeRedis()
    monkeypatch.setattr(submissions, "redis_client", redis)
    update = _submission_update(11, {"action": "survey", "fields": {"name": "Ann", "email": "a@b.co"}})
    context = _context()
    await begin_request(update, context, sink=lambda line: None)
    await submissions.handle_submission(update, context)

    assert context.profiler is None
    assert submissions._storage(context) is redis
    assert len(redis.commands) == 4
