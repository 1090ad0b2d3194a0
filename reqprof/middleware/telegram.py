"""python-telegram-bot integration: one profiling session per update.

Handler group -1000 opens the request: every update gets a hook registry,
and matching updates also get a session and binder and fire
``request/received``.  Group 1000 fires ``request/shutdown``.  PTB
shares one context object across all groups for an update, so handlers
reach the session through ``context.profiler``.

An update stopped with ``ApplicationHandlerStop`` never reaches group 1000
and is never reported.
"""

import json
import time
import logging

from telegram import Update
from telegram.ext import Application, CallbackContext, ExtBot, TypeHandler

from config import PROFILE_ACTION
from reqprof.handlers.lifecycle import ACTIVATION_EVENT, SHUTDOWN_EVENT, LifecycleBinder
from reqprof.middleware.timing import ProfilerOptions, ProfilingSession
from reqprof.services.network import NetworkCallCollector
from reqprof.utils.hooks import HookRegistry, Payload

logger = logging.getLogger(__name__)

BEGIN_GROUP = -1000
END_GROUP = 1000

# update_id → session, profiled updates only.  Error handlers get a fresh
# context object, so this is how they find the session.
_open_sessions: dict[int, ProfilingSession] = {}
OPEN_SESSION_MAX_AGE = 300   # drop sessions of updates that never finished

# Bot API message dates are whole seconds
ARRIVAL_PRECISION = 1.0


class ProfilingContext(CallbackContext[ExtBot, dict, dict, dict]):
    """Callback context carrying the request's hooks and profiling state."""

    def __init__(self, application: Application, chat_id: int = None, user_id: int = None):
        super().__init__(application=application, chat_id=chat_id, user_id=user_id)
        self.hooks: HookRegistry | None = None
        self.profiler: ProfilingSession | None = None
        self.network: NetworkCallCollector | None = None
        self.query_log: list | None = None


# ── Classification ───────────────────────────────────────────────────

def is_profiled_update(update, action: str = PROFILE_ACTION) -> bool:
    """Mini App submission whose JSON ``action`` matches.

    Checks for ``web_app_data`` before decoding anything, so ordinary
    updates cost two attribute lookups.
    """
    message = getattr(update, "effective_message", None)
    web_app_data = getattr(message, "web_app_data", None) if message else None
    if web_app_data is None:
        return False
    try:
        body = json.loads(web_app_data.data)
    except (TypeError, ValueError):
        return False
    return isinstance(body, dict) and body.get("action") == action


def _arrival_time(update) -> float | None:
    message = getattr(update, "effective_message", None)
    date = getattr(message, "date", None) if message else None
    try:
        return date.timestamp() if date else None
    except (AttributeError, OverflowError, ValueError):
        return None


def _request_metadata(update) -> dict:
    metadata = {"update_id": getattr(update, "update_id", None)}
    chat = getattr(update, "effective_chat", None)
    if chat is not None:
        metadata["chat_id"] = chat.id
    user = getattr(update, "effective_user", None)
    if user is not None:
        metadata["user_id"] = user.id
    return metadata


# ── Open sessions ────────────────────────────────────────────────────

def session_for(update) -> ProfilingSession | None:
    """The open profiling session of a profiled update, if any."""
    return _open_sessions.get(getattr(update, "update_id", None))


def _evict_stale_sessions() -> None:
    now = time.time()
    stale = [
        uid for uid, s in _open_sessions.items()
        if s.session_start_wall is not None and now - s.session_start_wall > OPEN_SESSION_MAX_AGE
    ]
    for uid in stale:
        del _open_sessions[uid]
    if stale:
        logger.info(f"[perf] evicted {len(stale)} unfinished sessions")


# ── Hook helper for handlers ─────────────────────────────────────────

def fire(context, event: str, *args) -> None:
    """Fire a lifecycle event if the profiler middleware is installed."""
    hooks = getattr(context, "hooks", None)
    if hooks is not None:
        hooks.fire(event, *args)


# ── Request begin / end ──────────────────────────────────────────────

async def begin_request(
    update: Update,
    context: ProfilingContext,
    action: str = PROFILE_ACTION,
    options: ProfilerOptions = None,
    sink=None,
) -> None:
    # Host handlers always find a registry to fire into; only matching
    # updates get a session and subscribers.
    context.hooks = HookRegistry()
    if not is_profiled_update(update, action):
        return

    session = ProfilingSession(
        options=options,
        external_start=_arrival_time(update),
        external_start_precision=ARRIVAL_PRECISION,
        metadata=_request_metadata(update),
    )
    context.profiler = session
    context.query_log = []

    def matches(payload: Payload) -> bool:
        return is_profiled_update(payload.value, action)

    LifecycleBinder(
        session, context.hooks, matches,
        query_log=lambda: context.query_log,
        sink=sink,
    ).bind()
    context.hooks.fire(ACTIVATION_EVENT, update)

    if session.activated:
        context.network = NetworkCallCollector(session)
        _evict_stale_sessions()
        _open_sessions[update.update_id] = session
        logger.info(f"[perf] profiling update={update.update_id}")
    else:
        context.profiler = None
        context.query_log = None

    context.hooks.fire("request/init")


async def end_request(update: Update, context: ProfilingContext) -> None:
    fire(context, SHUTDOWN_EVENT)
    _open_sessions.pop(getattr(update, "update_id", None), None)


def install_profiler(
    application: Application,
    action: str = PROFILE_ACTION,
    options: ProfilerOptions = None,
    sink=None,
) -> None:
    """Register the begin/end handlers around every other handler group."""
    if not issubclass(application.context_types.context, ProfilingContext):
        raise ValueError("Application must be built with ContextTypes(context=ProfilingContext)")

    async def _begin(update: Update, context: ProfilingContext) -> None:
        await begin_request(update, context, action=action, options=options, sink=sink)

    application.add_handler(TypeHandler(Update, _begin), group=BEGIN_GROUP)
    application.add_handler(TypeHandler(Update, end_request), group=END_GROUP)
    logger.info(f"Request profiler installed for action '{action}'")
