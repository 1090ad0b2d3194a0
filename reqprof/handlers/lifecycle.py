"""Binds a profiling session to the request's lifecycle hooks.

Registered unconditionally (before the request can be classified):
- ``request/received``  → classify, activate, write the start banner,
  subscribe the stage table
- ``request/shutdown``  → collect queries, write the report

Everything else is subscribed only once the session is active.  Every
handler short-circuits on the session flag and never raises.
"""

import logging

from reqprof.services.queries import QueryCollector
from reqprof.services.report import emit_report, emit_start_banner
from reqprof.utils.hooks import HookRegistry, Payload

logger = logging.getLogger(__name__)

ACTIVATION_EVENT = "request/received"
SHUTDOWN_EVENT = "request/shutdown"

ACTIVATION_PRIORITY = -9999
STAGE_PRIORITY = 1
COLLECT_PRIORITY = 2
REPORT_PRIORITY = 99999

# event → (label, description)
HOST_STAGES = {
    "request/init": ("INIT", "Request context initialised"),
    "request/handler_start": ("HANDLER_START", "Handler dispatched"),
    "request/handler_done": ("HANDLER_DONE", "Handler finished"),
}

SUBMISSION_STAGES = {
    "submission/before_processing": ("BEFORE_PROCESSING", "Before data processing"),
    "submission/before_insert": ("BEFORE_INSERT", "Before storing submission"),
    "submission/before_actions": ("BEFORE_ACTIONS", "Before actions (notifications, integrations)"),
    "submission/actions_processing": ("DURING_ACTIONS", "Processing actions"),
    "submission/after_actions": ("AFTER_ACTIONS", "Actions finished"),
    "submission/confirmation": ("CONFIRMATION", "Confirmation prepared"),
}

RESPONSE_STAGES = {
    "response/start": ("OUTPUT_START", "Response sending started"),
    "response/end": ("OUTPUT_END", "Response sent"),
}


def _validation_description(payload: Payload) -> str:
    errors = payload.arg(0, (list, tuple, dict, set))
    count = len(errors) if errors is not None else 0
    return f"Validation - {count} errors"


def _inserted_description(payload: Payload) -> str:
    insert_id = payload.arg(0, (int, str))
    return f"After insert - ID: {insert_id if insert_id not in (None, '') else 'unknown'}"


# Stages whose description depends on the payload
PAYLOAD_STAGES = {
    "submission/validation_errors": ("VALIDATION", _validation_description),
    "submission/inserted": ("AFTER_INSERT", _inserted_description),
}


class LifecycleBinder:
    def __init__(self, session, hooks: HookRegistry, predicate, query_log=None, sink=None):
        """
        predicate: ``Payload -> bool`` evaluated on the activation event.
        query_log: zero-arg callable returning the backing-store query log.
        sink: line sink for the report (defaults to the report logger).
        """
        self.session = session
        self.hooks = hooks
        self.predicate = predicate
        self.query_log = query_log
        self.sink = sink
        self._bound = False

    def bind(self) -> None:
        if self._bound:
            return
        self._bound = True
        self.hooks.subscribe(ACTIVATION_EVENT, ACTIVATION_PRIORITY, self._on_received)
        self.hooks.subscribe(SHUTDOWN_EVENT, COLLECT_PRIORITY, self._on_collect)
        self.hooks.subscribe(SHUTDOWN_EVENT, REPORT_PRIORITY, self._on_finish)

    # ── Activation ───────────────────────────────────────────────

    def _matches(self, payload: Payload) -> bool:
        try:
            return bool(self.predicate(payload))
        except Exception as e:
            logger.debug(f"[perf] predicate failed, not profiling: {e}")
            return False

    def _on_received(self, payload: Payload) -> None:
        if self.session.activated or not self._matches(payload):
            return
        if not self.session.activate():
            return
        self.session.record("SESSION_START", "Profiling started")
        try:
            emit_start_banner(self.session, self.sink)
        except Exception as e:
            logger.debug(f"[perf] start banner skipped: {e}")
        self._subscribe_stages()

    def _subscribe_stages(self) -> None:
        for table in (HOST_STAGES, SUBMISSION_STAGES, RESPONSE_STAGES):
            for event, (label, description) in table.items():
                self.hooks.subscribe(event, STAGE_PRIORITY, self._stage(label, description))
        for event, (label, describe) in PAYLOAD_STAGES.items():
            self.hooks.subscribe(event, STAGE_PRIORITY, self._payload_stage(label, describe))

    def _stage(self, label: str, description: str):
        def handler(payload: Payload) -> None:
            self.session.record(label, description)
        return handler

    def _payload_stage(self, label: str, describe):
        def handler(payload: Payload) -> None:
            if not self.session.recording:
                return
            try:
                description = describe(payload)
            except Exception as e:
                logger.debug(f"[perf] bad payload for {label}: {e}")
                description = ""
            self.session.record(label, description)
        return handler

    # ── Shutdown ─────────────────────────────────────────────────

    def _on_collect(self, payload: Payload) -> None:
        if not self.session.recording or self.query_log is None:
            return
        try:
            QueryCollector(self.session).collect(self.query_log())
        except Exception as e:
            logger.debug(f"[perf] query collection skipped: {e}")

    def _on_finish(self, payload: Payload) -> None:
        if not self.session.recording:
            return
        try:
            emit_report(self.session, self.sink)
        except Exception as e:
            logger.warning(f"[perf] report failed: {e}")
        finally:
            self.session.close()
