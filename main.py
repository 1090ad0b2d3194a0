"""Form submission bot with per-request performance profiling: entry point.

Settings applied here:
- connection_pool_size=128 (PTB v21 defaults to 1)
- concurrent_updates=True, so every update gets its own profiling session
- ProfilingContext as the callback context; the profiler handlers run in
  groups -1000 and 1000 around the submission handler
- drop_pending_updates=True on webhook (clear stale backlog on restart)
- webhook secret_token for security
"""

import os

import httpx
import redis.asyncio as aioredis
from telegram import Update
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from config import (
    TELEGRAM_TOKEN, REDIS_URL, WEBHOOK_SECRET, SUBMISSION_WEBHOOK_URL,
    PROFILE_ACTION, PROFILER_ENABLED, WEBHOOK_TIMEOUT,
    TELEGRAM_POOL_SIZE, TELEGRAM_POOL_TIMEOUT,
    TELEGRAM_READ_TIMEOUT, TELEGRAM_WRITE_TIMEOUT, TELEGRAM_CONNECT_TIMEOUT,
    logger,
)
from reqprof.handlers import submissions
from reqprof.handlers.errors import error_handler
from reqprof.middleware.telegram import ProfilingContext, install_profiler


# ── Client lifecycle ─────────────────────────────────────────────────

async def init_clients(application) -> None:
    """Initialize the webhook HTTP client and async Redis."""
    submissions.http_client = httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT)
    logger.info(f"HTTP client initialized (webhook configured: {SUBMISSION_WEBHOOK_URL is not None})")

    if REDIS_URL:
        try:
            submissions.redis_client = aioredis.from_url(REDIS_URL, decode_responses=True)
            await submissions.redis_client.ping()
            logger.info("Connected to Redis (async) for submission storage")
        except Exception as e:
            logger.warning(f"Redis connection failed, submissions will not be stored: {e}")
            if submissions.redis_client:
                try:
                    await submissions.redis_client.aclose()
                except Exception as close_error:
                    logger.debug(f"Redis close after failed ping: {close_error}")
            submissions.redis_client = None


async def cleanup_clients(application) -> None:
    """Close the HTTP client and Redis on shutdown."""
    if submissions.http_client:
        await submissions.http_client.aclose()
    if submissions.redis_client:
        await submissions.redis_client.aclose()
    logger.info("All clients closed")


# ── Main ─────────────────────────────────────────────────────────────

def build_application() -> Application:
    application = (
        Application.builder()
        .token(TELEGRAM_TOKEN)
        .context_types(ContextTypes(context=ProfilingContext))
        .connection_pool_size(TELEGRAM_POOL_SIZE)
        .pool_timeout(TELEGRAM_POOL_TIMEOUT)
        .read_timeout(TELEGRAM_READ_TIMEOUT)
        .write_timeout(TELEGRAM_WRITE_TIMEOUT)
        .connect_timeout(TELEGRAM_CONNECT_TIMEOUT)
        .get_updates_read_timeout(TELEGRAM_READ_TIMEOUT)
        .concurrent_updates(True)
        .build()
    )

    application.post_init = init_clients
    application.post_shutdown = cleanup_clients

    # ── Groups -1000 / 1000: request profiler ────────────────────
    if PROFILER_ENABLED:
        install_profiler(application, action=PROFILE_ACTION)
    else:
        logger.info("Request profiler disabled")

    # ── Group 0: commands + submissions ──────────────────────────
    application.add_handler(CommandHandler("start", submissions.start_command))
    application.add_handler(MessageHandler(
        filters.StatusUpdate.WEB_APP_DATA,
        submissions.handle_submission,
    ))

    application.add_error_handler(error_handler)
    return application


def main() -> None:
    if not TELEGRAM_TOKEN:
        raise ValueError("TELEGRAM_TOKEN environment variable is required")

    logger.info(f"Redis URL configured: {REDIS_URL is not None}")
    logger.info(
        f"Telegram pool: size={TELEGRAM_POOL_SIZE}, "
        f"pool_timeout={TELEGRAM_POOL_TIMEOUT}s, "
        f"read_timeout={TELEGRAM_READ_TIMEOUT}s"
    )

    application = build_application()

    # ── Run ──────────────────────────────────────────────────────
    if os.getenv("RENDER"):
        port = int(os.getenv("PORT", 10000))
        webhook_url = os.getenv("WEBHOOK_URL")

        webhook_kwargs = {
            "listen": "0.0.0.0",
            "port": port,
            "url_path": TELEGRAM_TOKEN,
            "webhook_url": f"{webhook_url}/{TELEGRAM_TOKEN}",
            "drop_pending_updates": True,
        }
        if WEBHOOK_SECRET:
            webhook_kwargs["secret_token"] = WEBHOOK_SECRET

        application.run_webhook(**webhook_kwargs)
    else:
        application.run_polling(
            allowed_updates=Update.ALL_TYPES,
            drop_pending_updates=True,
        )


if __name__ == "__main__":
    main()
