"""Worker loop: dequeue, download, append to the feed, settle the delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from models.feed import FeedItem
from models.job import Job
from services.errors import DocumentError, ErrorKind, ExternalToolError, PipelineError, TelegramError
from services.downloader import DownloadExecutor
from services.feed_store import AppendResult, FeedDocumentStore
from services.job_queue import Delivery, JobQueue, NackOutcome
from services.telegram import TelegramClient

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    IDLE = "idle"
    DEQUEUED = "dequeued"
    METADATA_FETCHED = "metadata_fetched"
    MEDIA_FETCHED = "media_fetched"
    APPENDED = "appended"
    ACKED = "acked"
    FAILED = "failed"


@dataclass(frozen=True)
class JobOutcome:
    job: Job
    state: JobState
    failed_at: Optional[JobState] = None
    error: Optional[PipelineError] = None
    nack: Optional[NackOutcome] = None
    append_result: Optional[AppendResult] = None
    title: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobWorker:
    """Processes one delivery end-to-end before taking the next."""

    def __init__(
        self,
        queue: JobQueue,
        executor: DownloadExecutor,
        store: FeedDocumentStore,
        notifier: Optional[TelegramClient] = None,
        *,
        media_base_url: str = "",
        notify_on_failure: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.queue = queue
        self.executor = executor
        self.store = store
        self.notifier = notifier
        self.media_base_url = media_base_url
        self.notify_on_failure = notify_on_failure
        self.clock = clock

    async def process(self, delivery: Delivery) -> JobOutcome:
        """Drive one delivery through the pipeline.

        Tool and document failures end in ``nack``; retryable ones go back on
        the queue until the attempt budget is spent. ``QueueError`` from
        settling the delivery propagates to ``run``.
        """
        job = delivery.job
        state = JobState.DEQUEUED
        logger.info("Processing URL: %s for user: %s", job.url, job.requester_id)
        try:
            metadata = await self.executor.fetch_metadata(job.url)
            state = JobState.METADATA_FETCHED
            media = await self.executor.fetch_media(job.url, metadata)
            state = JobState.MEDIA_FETCHED
            item = FeedItem.from_download(
                job,
                metadata,
                media,
                now=self.clock(),
                media_base_url=self.media_base_url,
            )
            append_result = await self.store.append(job.requester_id, item)
            state = JobState.APPENDED
        except (ExternalToolError, DocumentError) as exc:
            return await self._fail(delivery, state, exc)
        except Exception as exc:
            logger.exception("Unexpected error while processing %s", job.url)
            return await self._fail(delivery, state, PipelineError(ErrorKind.UNEXPECTED, str(exc)))

        await delivery.ack()
        logger.info("Added video to feed of user %s: %s", job.requester_id, item.title)
        return JobOutcome(job=job, state=JobState.ACKED, append_result=append_result, title=item.title)

    async def _fail(self, delivery: Delivery, failed_at: JobState, error: PipelineError) -> JobOutcome:
        job = delivery.job
        logger.error("Job %s for user %s failed after %s: %s", job.url, job.requester_id, failed_at.value, error)
        nack = await delivery.nack(requeue=error.retryable)
        if nack is NackOutcome.DEAD_LETTERED:
            await self._notify_failure(job, error)
        return JobOutcome(job=job, state=JobState.FAILED, failed_at=failed_at, error=error, nack=nack)

    async def _notify_failure(self, job: Job, error: PipelineError) -> None:
        if not self.notify_on_failure or self.notifier is None:
            return
        text = f"Could not add {job.url} to your feed ({error.kind.value})."
        try:
            await self.notifier.send_message(job.requester_id, text)
        except TelegramError as exc:
            logger.warning("Failure notice to user %s not delivered: %s", job.requester_id, exc)

    async def run(self, max_jobs: Optional[int] = None) -> int:
        """Consume until the broker connection is lost (or ``max_jobs`` processed)."""
        processed = 0
        stream = self.queue.consume()
        try:
            async for delivery in stream:
                await self.process(delivery)
                processed += 1
                if max_jobs is not None and processed >= max_jobs:
                    break
        finally:
            await stream.aclose()
        return processed
