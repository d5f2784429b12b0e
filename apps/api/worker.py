"""Worker process entrypoint for download jobs."""

import asyncio
import logging
import sys

from redis.asyncio import Redis

from config import settings, validate_runtime_settings
from logging_setup import setup_logging
from services.downloader import DownloadExecutor
from services.errors import QueueError
from services.feed_store import FeedDocumentStore, redis_lock_factory
from services.job_queue import JobQueue, get_redis_connection
from services.telegram import TelegramClient
from services.worker_loop import JobWorker

logger = logging.getLogger(__name__)


def build_worker(redis_conn: Redis, telegram: TelegramClient) -> JobWorker:
    """Wire the worker from settings around an existing broker connection."""
    store = FeedDocumentStore(
        settings.FEED_DIR,
        owner_email=settings.FEED_OWNER_EMAIL,
        image_url=settings.FEED_IMAGE_URL,
        skip_duplicate_guids=settings.FEED_SKIP_DUPLICATE_GUIDS,
        lock_factory=redis_lock_factory(redis_conn, settings.FEED_LOCK_TIMEOUT_SECONDS),
    )
    executor = DownloadExecutor(
        binary=settings.DOWNLOADER_BINARY,
        download_dir=settings.DOWNLOAD_DIR,
        metadata_timeout=settings.METADATA_TIMEOUT_SECONDS,
        download_timeout=settings.DOWNLOAD_TIMEOUT_SECONDS,
    )
    return JobWorker(
        JobQueue.from_settings(redis_conn),
        executor,
        store,
        telegram,
        media_base_url=settings.MEDIA_BASE_URL,
        notify_on_failure=settings.NOTIFY_ON_FAILURE,
    )


async def run() -> None:
    redis_conn = get_redis_connection()
    telegram = TelegramClient(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_API_BASE)
    try:
        await build_worker(redis_conn, telegram).run()
    finally:
        await telegram.aclose()
        await redis_conn.aclose()


def main() -> int:
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    validate_runtime_settings()
    try:
        asyncio.run(run())
    except QueueError as exc:
        logger.critical("Worker stopped, broker unavailable: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
