"""Long-polling Telegram bot entrypoint (alternative to the webhook)."""

import asyncio
import logging
import sys
from typing import Optional

from config import settings, validate_runtime_settings
from logging_setup import setup_logging
from services.chat import handle_update
from services.errors import QueueError, TelegramError
from services.job_intake import JobIntake
from services.job_queue import JobQueue, get_redis_connection
from services.telegram import TelegramClient

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 5


async def poll_updates(telegram: TelegramClient, intake: JobIntake, max_rounds: Optional[int] = None) -> None:
    """Fetch and dispatch updates.

    The offset only advances past an update once it was handled, so an update
    whose job could not be queued is fetched again after a restart.
    """
    offset: Optional[int] = None
    rounds = 0
    while max_rounds is None or rounds < max_rounds:
        rounds += 1
        try:
            updates = await telegram.get_updates(offset, timeout=settings.TELEGRAM_POLL_TIMEOUT_SECONDS)
        except TelegramError as exc:
            logger.warning("getUpdates failed, retrying in %ss: %s", RETRY_DELAY_SECONDS, exc)
            await asyncio.sleep(RETRY_DELAY_SECONDS)
            continue
        for update in updates:
            await handle_update(update, intake, telegram)
            offset = int(update["update_id"]) + 1


async def run() -> None:
    redis_conn = get_redis_connection()
    queue = JobQueue.from_settings(redis_conn)
    telegram = TelegramClient(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_API_BASE)
    try:
        await queue.declare()
        logger.info("Created job queue: %s", queue.name)
        logger.info("Starting the bot...")
        await poll_updates(telegram, JobIntake(queue, settings.ALLOWED_HOSTS))
    finally:
        await telegram.aclose()
        await redis_conn.aclose()


def main() -> int:
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    validate_runtime_settings()
    if not settings.TELEGRAM_BOT_TOKEN:
        raise ValueError("TELEGRAM_BOT_TOKEN must be set for polling mode")
    try:
        asyncio.run(run())
    except QueueError as exc:
        logger.critical("Bot stopped, broker unavailable: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Bot interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
