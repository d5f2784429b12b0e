"""Durable job queue on Redis lists with explicit acknowledgment.

Layout for a queue named ``youtube_urls`` consumed under tag ``<tag>``:

- ``youtube_urls``: pending payloads; producers LPUSH, consumers take from the right.
- ``youtube_urls:processing:<tag>``: payloads delivered but not yet
  settled. BLMOVE puts them here atomically, so a crash never loses one.
- ``youtube_urls:consumer:<tag>``: heartbeat key with a TTL.
- ``youtube_urls:consumers``: tags that ever consumed from the queue.
- ``youtube_urls:attempts``: failed-attempt counters keyed by job fingerprint.
- ``youtube_urls:dead``: payloads that exhausted their attempts or were unreadable.

Tags default to ``<prefix>:<host>:<pid>:<random>`` so every consumer owns its
processing list. Delivery is at-least-once: while consuming, each consumer
keeps sweeping the processing lists of peers whose heartbeat expired back onto
the pending list.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from config import require_broker_url, settings
from models.job import Job
from services.errors import JobValidationError, QueueError

logger = logging.getLogger(__name__)

QUEUE_REGISTRY_KEY = "queues"


def get_redis_connection() -> Redis:
    """Build the broker connection from settings."""
    return Redis.from_url(require_broker_url())


def make_consumer_tag(prefix: str = "youtube_consumer") -> str:
    """Tag unique to this consumer instance, readable in ``<queue>:consumers``."""
    return f"{prefix}:{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class NackOutcome(str, Enum):
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class Delivery:
    """A job in a consumer's custody until ``ack`` or ``nack``."""

    job: Job
    payload: bytes
    queue: "JobQueue" = field(repr=False)
    settled: bool = False

    @property
    def fingerprint(self) -> str:
        return self.job.fingerprint

    def _settle(self) -> None:
        if self.settled:
            raise RuntimeError(f"delivery of {self.job.url} already settled")
        self.settled = True

    async def ack(self) -> None:
        self._settle()
        await self.queue._ack(self)

    async def nack(self, requeue: bool = True) -> NackOutcome:
        self._settle()
        return await self.queue._nack(self, requeue)


class JobQueue:
    def __init__(
        self,
        client: Redis,
        name: str = "youtube_urls",
        consumer_tag: Optional[str] = None,
        *,
        max_attempts: int = 3,
        heartbeat_ttl_seconds: int = 30,
        poll_timeout_seconds: int = 5,
    ):
        self.client = client
        self.name = name
        self.consumer_tag = consumer_tag or make_consumer_tag()
        self.max_attempts = max(int(max_attempts), 1)
        self.heartbeat_ttl_seconds = max(int(heartbeat_ttl_seconds), 3)
        self.poll_timeout_seconds = max(int(poll_timeout_seconds), 1)

    @classmethod
    def from_settings(cls, client: Redis) -> "JobQueue":
        return cls(
            client,
            name=settings.JOB_QUEUE_NAME,
            consumer_tag=make_consumer_tag(settings.CONSUMER_TAG),
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            heartbeat_ttl_seconds=settings.CONSUMER_HEARTBEAT_TTL_SECONDS,
            poll_timeout_seconds=settings.QUEUE_POLL_TIMEOUT_SECONDS,
        )

    def processing_key(self, tag: Optional[str] = None) -> str:
        return f"{self.name}:processing:{tag or self.consumer_tag}"

    def heartbeat_key(self, tag: Optional[str] = None) -> str:
        return f"{self.name}:consumer:{tag or self.consumer_tag}"

    @property
    def consumers_key(self) -> str:
        return f"{self.name}:consumers"

    @property
    def attempts_key(self) -> str:
        return f"{self.name}:attempts"

    @property
    def dead_letter_key(self) -> str:
        return f"{self.name}:dead"

    async def declare(self) -> None:
        """Register the queue name; declaring an existing queue is a no-op."""
        try:
            await self.client.sadd(QUEUE_REGISTRY_KEY, self.name)
        except RedisError as exc:
            raise QueueError(cause=f"declare {self.name} failed: {exc}") from exc

    async def publish(self, job: Job) -> None:
        try:
            await self.client.lpush(self.name, job.to_payload())
        except RedisError as exc:
            raise QueueError(cause=f"publish to {self.name} failed: {exc}") from exc
        logger.info("Published %s for user %s to %s", job.url, job.requester_id, self.name)

    async def depth(self) -> int:
        try:
            return int(await self.client.llen(self.name))
        except RedisError as exc:
            raise QueueError(cause=f"cannot read depth of {self.name}: {exc}") from exc

    async def dead_letters(self) -> List[bytes]:
        try:
            return list(await self.client.lrange(self.dead_letter_key, 0, -1))
        except RedisError as exc:
            raise QueueError(cause=f"cannot read {self.dead_letter_key}: {exc}") from exc

    async def _requeue_processing(self, tag: str) -> int:
        moved = 0
        # newest in-flight first onto the consuming end keeps the oldest in front
        while await self.client.lmove(self.processing_key(tag), self.name, "LEFT", "RIGHT") is not None:
            moved += 1
        return moved

    async def _recover_peers(self) -> int:
        recovered = 0
        for raw_tag in await self.client.smembers(self.consumers_key):
            tag = raw_tag.decode("utf-8") if isinstance(raw_tag, bytes) else str(raw_tag)
            if tag == self.consumer_tag:
                continue
            if await self.client.exists(self.heartbeat_key(tag)):
                continue
            stalled = await self._requeue_processing(tag)
            if stalled:
                logger.warning("Recovered %s stalled deliveries from consumer %s", stalled, tag)
            recovered += stalled
            await self.client.srem(self.consumers_key, tag)
        return recovered

    async def recover_stalled_deliveries(self, include_own: bool = True) -> int:
        """Return unsettled deliveries of dead consumers to the queue.

        With ``include_own`` this consumer's leftovers from a previous run are
        requeued too; never pass it while this consumer holds a delivery.
        """
        try:
            recovered = await self._requeue_processing(self.consumer_tag) if include_own else 0
            recovered += await self._recover_peers()
        except RedisError as exc:
            raise QueueError(cause=f"stalled delivery recovery failed: {exc}") from exc
        return recovered

    async def _beat(self) -> None:
        await self.client.set(self.heartbeat_key(), b"1", ex=self.heartbeat_ttl_seconds)

    async def _heartbeat_loop(self) -> None:
        interval = max(self.heartbeat_ttl_seconds / 3, 1)
        while True:
            await asyncio.sleep(interval)
            try:
                await self._beat()
            except RedisError as exc:
                logger.warning("Heartbeat for consumer %s failed: %s", self.consumer_tag, exc)

    async def consume(self) -> AsyncIterator[Delivery]:
        """Yield deliveries in arrival order until the broker connection fails.

        Raises ``QueueError`` on connection loss, or at start when another live
        consumer already uses this tag. Stalled peers are swept on every idle
        poll and at least once per heartbeat TTL.
        """
        await self.declare()
        try:
            if await self.client.exists(self.heartbeat_key()):
                raise QueueError(cause=f"consumer tag {self.consumer_tag} is held by a live consumer")
            await self.client.sadd(self.consumers_key, self.consumer_tag)
            await self._beat()
        except RedisError as exc:
            raise QueueError(cause=f"cannot register consumer {self.consumer_tag}: {exc}") from exc
        recovered = await self.recover_stalled_deliveries()
        if recovered:
            logger.warning("Requeued %s unacknowledged jobs before consuming %s", recovered, self.name)

        heartbeat = asyncio.create_task(self._heartbeat_loop())
        loop = asyncio.get_running_loop()
        next_sweep = loop.time() + self.heartbeat_ttl_seconds
        logger.info("Consumer %s waiting for jobs on %s", self.consumer_tag, self.name)
        try:
            while True:
                if loop.time() >= next_sweep:
                    await self.recover_stalled_deliveries(include_own=False)
                    next_sweep = loop.time() + self.heartbeat_ttl_seconds
                try:
                    payload = await self.client.blmove(
                        self.name,
                        self.processing_key(),
                        self.poll_timeout_seconds,
                        "RIGHT",
                        "LEFT",
                    )
                except RedisError as exc:
                    raise QueueError(cause=f"consume from {self.name} failed: {exc}") from exc
                if payload is None:
                    await self.recover_stalled_deliveries(include_own=False)
                    next_sweep = loop.time() + self.heartbeat_ttl_seconds
                    continue
                try:
                    job = Job.from_payload(payload)
                except JobValidationError as exc:
                    logger.error("Dead-lettering unreadable payload %r: %s", payload[:200], exc)
                    await self._move_to_dead_letter(payload, hashlib.sha256(payload).hexdigest())
                    continue
                yield Delivery(job=job, payload=payload, queue=self)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            # unsettled deliveries become recoverable by peers right away
            try:
                await self.client.delete(self.heartbeat_key())
            except RedisError as exc:
                logger.warning("Could not clear heartbeat of consumer %s: %s", self.consumer_tag, exc)

    async def _move_to_dead_letter(self, payload: bytes, fingerprint: str) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(self.processing_key(), 1, payload)
                pipe.lpush(self.dead_letter_key, payload)
                pipe.hdel(self.attempts_key, fingerprint)
                await pipe.execute()
        except RedisError as exc:
            raise QueueError(cause=f"dead-letter on {self.name} failed: {exc}") from exc

    async def _ack(self, delivery: Delivery) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(self.processing_key(), 1, delivery.payload)
                pipe.hdel(self.attempts_key, delivery.fingerprint)
                await pipe.execute()
        except RedisError as exc:
            raise QueueError(cause=f"ack on {self.name} failed: {exc}") from exc

    async def _nack(self, delivery: Delivery, requeue: bool) -> NackOutcome:
        try:
            attempts = int(await self.client.hincrby(self.attempts_key, delivery.fingerprint, 1))
            if requeue and attempts < self.max_attempts:
                async with self.client.pipeline(transaction=True) as pipe:
                    pipe.lrem(self.processing_key(), 1, delivery.payload)
                    pipe.lpush(self.name, delivery.payload)
                    await pipe.execute()
                logger.info(
                    "Requeued %s (attempt %s of %s)", delivery.job.url, attempts, self.max_attempts
                )
                return NackOutcome.REQUEUED
        except RedisError as exc:
            raise QueueError(cause=f"nack on {self.name} failed: {exc}") from exc

        await self._move_to_dead_letter(delivery.payload, delivery.fingerprint)
        logger.warning("Dead-lettered %s after %s attempt(s)", delivery.job.url, attempts)
        return NackOutcome.DEAD_LETTERED
