"""Error handler for python-telegram-bot."""

import logging

from telegram.ext import ContextTypes

from reqprof.middleware.telegram import session_for

logger = logging.getLogger(__name__)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error(f"Exception while handling an update: {context.error}", exc_info=context.error)

    # The report still runs in the end-of-request group; mark where it broke
    session = session_for(update)
    if session is not None and context.error is not None:
        session.record("HANDLER_ERROR", f"{type(context.error).__name__}: {context.error}")
