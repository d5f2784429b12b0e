"""Turns chat text into queued download jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urlsplit

from models.job import Job
from services.job_queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntakeResult:
    accepted: bool
    reply_text: str
    job: Optional[Job] = None


def extract_media_url(raw_text: str, allowed_hosts: Iterable[str]) -> Optional[str]:
    """Return the trimmed text when it is an absolute http(s) URL on an allowed host."""
    text = (raw_text or "").strip()
    if not text or any(ch.isspace() for ch in text):
        return None
    try:
        parts = urlsplit(text)
        host = (parts.hostname or "").lower()
    except ValueError:
        return None
    if parts.scheme.lower() not in {"http", "https"} or not host:
        return None
    if host not in {h.strip().lower() for h in allowed_hosts}:
        return None
    return text


class JobIntake:
    def __init__(self, queue: JobQueue, allowed_hosts: Iterable[str]):
        self.queue = queue
        self.allowed_hosts = [h for h in allowed_hosts if h]

    async def submit(self, raw_text: str, requester_id: str) -> IntakeResult:
        """Queue a job for recognized URLs, echo anything else.

        ``QueueError`` from publishing propagates; no confirmation is produced
        for a job that did not reach the queue.
        """
        url = extract_media_url(raw_text, self.allowed_hosts)
        if url is None:
            return IntakeResult(accepted=False, reply_text=f"You said: {raw_text}")

        job = Job(url=url, requester_id=str(requester_id))
        logger.info("Detected media URL %s from user %s", url, requester_id)
        await self.queue.publish(job)
        return IntakeResult(accepted=True, reply_text=f"YouTube URL added to queue: {url}", job=job)
