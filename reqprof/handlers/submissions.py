"""Mini App form submissions: the request pipeline the profiler watches.

Stages fired, in order:
    request/handler_start
    submission/before_processing      (body)
    submission/validation_errors      (errors, form_id)
    submission/before_insert          (fields, form_id)
    submission/inserted               (insert_id, fields, form_id)
    submission/before_actions         (insert_id, fields)
    submission/actions_processing     (insert_id, fields)
    submission/after_actions          (insert_id)
    submission/confirmation           (insert_id)
    response/start, response/end
    request/handler_done
"""

import re
import json
import logging
from datetime import datetime, timezone

import httpx
from telegram import KeyboardButton, ReplyKeyboardMarkup, Update, WebAppInfo
from telegram.ext import ContextTypes

from config import (
    FORM_WEBAPP_URL,
    SUBMISSION_REQUIRED_FIELDS,
    SUBMISSION_KEY_TTL_DAYS,
    SUBMISSION_WEBHOOK_URL,
    WEBHOOK_TIMEOUT,
)
from reqprof.middleware.telegram import fire
from reqprof.services.network import profiled_request
from reqprof.services.queries import RecordingRedis

logger = logging.getLogger(__name__)

# Set by main.py post_init
redis_client = None
http_client: httpx.AsyncClient = None

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ── Parsing + validation (pure, no I/O) ──────────────────────────────

def parse_submission(raw: str) -> dict | None:
    try:
        body = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(body, dict):
        return None
    if not isinstance(body.get("fields"), dict):
        body["fields"] = {}
    return body


def validate_submission(fields: dict) -> list[str]:
    errors = []
    for name in SUBMISSION_REQUIRED_FIELDS:
        value = fields.get(name)
        if value is None or not str(value).strip():
            errors.append(f"{name} is required")
    email = fields.get("email")
    if email and not _EMAIL_RE.match(str(email).strip()):
        errors.append("email is not valid")
    return errors


# ── Storage + actions ────────────────────────────────────────────────

def _storage(context):
    """The Redis client, wrapped to log queries while profiling."""
    if redis_client is None:
        return None
    query_log = getattr(context, "query_log", None)
    if query_log is not None:
        return RecordingRedis(redis_client, query_log)
    return redis_client


async def store_submission(redis, form_id: str, fields: dict) -> int | None:
    """Persist a submission.  Returns its ID, or None without storage."""
    if redis is None:
        return None
    try:
        insert_id = await redis.incr("submissions:next_id")
        key = f"submission:{insert_id}"
        await redis.hset(key, mapping={
            "form_id": form_id,
            "fields": json.dumps(fields, ensure_ascii=False),
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        await redis.expire(key, SUBMISSION_KEY_TTL_DAYS * 86400)
        await redis.rpush(f"form:{form_id}:submissions", insert_id)
        return insert_id
    except Exception as e:
        logger.error(f"Failed to store submission for form {form_id}: {e}")
        return None


async def run_actions(context, insert_id, form_id: str, fields: dict) -> bool:
    """Forward the submission to the integration webhook, if configured."""
    if not SUBMISSION_WEBHOOK_URL or http_client is None:
        return False
    try:
        response = await profiled_request(
            getattr(context, "network", None),
            http_client,
            "POST",
            SUBMISSION_WEBHOOK_URL,
            json={"id": insert_id, "form_id": form_id, "fields": fields},
            timeout=WEBHOOK_TIMEOUT,
        )
        response.raise_for_status()
        return True
    except Exception as e:
        logger.warning(f"Webhook for submission {insert_id} failed: {e}")
        return False


# ── Handler ──────────────────────────────────────────────────────────

async def handle_submission(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if not message or not message.web_app_data:
        return

    fire(context, "request/handler_start")

    body = parse_submission(message.web_app_data.data)
    if body is None:
        await message.reply_text("Couldn't read the form, please try again.")
        return

    form_id = str(body.get("form_id") or "default")
    fields = body["fields"]
    profiler = getattr(context, "profiler", None)
    if profiler is not None:
        profiler.metadata["form_id"] = form_id

    fire(context, "submission/before_processing", body)
    errors = validate_submission(fields)
    fire(context, "submission/validation_errors", errors, form_id)
    if errors:
        await message.reply_text("Please fix: " + "; ".join(errors))
        fire(context, "request/handler_done")
        return

    fire(context, "submission/before_insert", fields, form_id)
    insert_id = await store_submission(_storage(context), form_id, fields)
    fire(context, "submission/inserted", insert_id, fields, form_id)

    fire(context, "submission/before_actions", insert_id, fields)
    fire(context, "submission/actions_processing", insert_id, fields)
    await run_actions(context, insert_id, form_id, fields)
    fire(context, "submission/after_actions", insert_id)

    reply = f"Thanks! Submission #{insert_id} received." if insert_id else "Thanks! Submission received."
    fire(context, "submission/confirmation", insert_id)

    fire(context, "response/start")
    await message.reply_text(reply)
    fire(context, "response/end")

    logger.info(f"Submission {insert_id} for form {form_id} handled")
    fire(context, "request/handler_done")


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Offer the form as a Mini App keyboard button."""
    if not FORM_WEBAPP_URL:
        await update.message.reply_text("The form is not configured yet.")
        return
    keyboard = ReplyKeyboardMarkup(
        [[KeyboardButton("Open form", web_app=WebAppInfo(url=FORM_WEBAPP_URL))]],
        resize_keyboard=True,
    )
    await update.message.reply_text("Tap the button below to fill in the form.", reply_markup=keyboard)
