import asyncio
import stat
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.feed_store import FeedDocumentStore
from services.job_queue import JobQueue


Value = Union[bytes, str, int]


def _b(value: Value) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


class FakePipeline:
    """Queues commands and applies them on ``execute`` like a MULTI block."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self._commands = []

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self):
        self._redis._check()
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._commands = []
        return results


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis the queue uses."""

    def __init__(self):
        self.lists: Dict[str, List[bytes]] = {}
        self.sets: Dict[str, set] = {}
        self.hashes: Dict[str, Dict[str, int]] = {}
        self.strings: Dict[str, bytes] = {}
        self.connected = True
        self.closed = False

    def _check(self):
        if not self.connected:
            raise RedisConnectionError("Connection refused")

    def disconnect(self):
        self.connected = False

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        self.closed = True

    def pipeline(self, transaction: bool = True):
        return FakePipeline(self)

    async def sadd(self, key, *values):
        self._check()
        members = self.sets.setdefault(key, set())
        before = len(members)
        members.update(_b(v) for v in values)
        return len(members) - before

    async def srem(self, key, *values):
        self._check()
        members = self.sets.setdefault(key, set())
        removed = 0
        for value in values:
            if _b(value) in members:
                members.discard(_b(value))
                removed += 1
        return removed

    async def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))

    async def set(self, key, value, ex: Optional[int] = None):
        self._check()
        self.strings[key] = _b(value)
        return True

    async def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if key in self.strings or self.lists.get(key))

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            for store in (self.strings, self.lists, self.sets, self.hashes):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def lpush(self, key, *values):
        self._check()
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, _b(value))
        return len(items)

    async def rpush(self, key, *values):
        self._check()
        items = self.lists.setdefault(key, [])
        items.extend(_b(v) for v in values)
        return len(items)

    async def llen(self, key):
        self._check()
        return len(self.lists.get(key, []))

    async def lrange(self, key, start, end):
        self._check()
        items = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        return list(items[start:stop])

    async def lrem(self, key, count, value):
        self._check()
        target = _b(value)
        kept = []
        removed = 0
        for item in self.lists.get(key, []):
            if item == target and (not count or removed < count):
                removed += 1
                continue
            kept.append(item)
        self.lists[key] = kept
        return removed

    async def lmove(self, first_list, second_list, src="LEFT", dest="RIGHT"):
        self._check()
        source = self.lists.get(first_list, [])
        if not source:
            return None
        value = source.pop(0) if src == "LEFT" else source.pop()
        target = self.lists.setdefault(second_list, [])
        if dest == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def blmove(self, first_list, second_list, timeout, src="LEFT", dest="RIGHT"):
        self._check()
        if not self.lists.get(first_list):
            await asyncio.sleep(0.01)
            self._check()
            return None
        return await self.lmove(first_list, second_list, src, dest)

    async def hincrby(self, key, field, amount=1):
        self._check()
        values = self.hashes.setdefault(key, {})
        values[field] = values.get(field, 0) + amount
        return values[field]

    async def hget(self, key, field):
        self._check()
        value = self.hashes.get(key, {}).get(field)
        return None if value is None else _b(value)

    async def hdel(self, key, *fields):
        self._check()
        values = self.hashes.get(key, {})
        removed = 0
        for field in fields:
            if field in values:
                del values[field]
                removed += 1
        return removed


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def job_queue(fake_redis):
    return JobQueue(
        fake_redis,
        name="test_urls",
        consumer_tag="test_consumer",
        max_attempts=3,
        heartbeat_ttl_seconds=30,
        poll_timeout_seconds=1,
    )


@pytest.fixture
def feed_store(tmp_path):
    return FeedDocumentStore(tmp_path / "feeds")


TOOL_SCRIPT = """#!/bin/sh
echo "$@" >> "{calls}"
if [ "$1" = "-J" ]; then
{metadata_sleep}
  cat "{metadata}"
  echo "{stderr}" >&2
  exit {metadata_exit}
fi
if [ "$1" = "-o" ]; then
{download_sleep}
  if [ {download_exit} -eq 0 ]; then
    printf 'media' > "{media_name}"
  else
    echo "{stderr}" >&2
  fi
  exit {download_exit}
fi
exit 2
"""


@pytest.fixture
def make_tool(tmp_path):
    """Write a shell script honouring the ``-J`` / ``-o`` command-line contract."""

    def _make(
        metadata: str = '{"title": "Sample", "uploader": "Bob", "ext": "mp4"}',
        media_name: str = "Sample.mp4",
        metadata_exit: int = 0,
        download_exit: int = 0,
        stderr: str = "",
        metadata_sleep: Optional[float] = None,
        download_sleep: Optional[float] = None,
    ) -> Path:
        tool_dir = tmp_path / "tool"
        tool_dir.mkdir(exist_ok=True)
        metadata_path = tool_dir / "metadata.json"
        metadata_path.write_text(metadata, encoding="utf-8")
        script = tool_dir / "fake-yt-dlp"
        script.write_text(
            TOOL_SCRIPT.format(
                calls=tool_dir / "calls.log",
                metadata=metadata_path,
                stderr=stderr,
                metadata_exit=metadata_exit,
                download_exit=download_exit,
                media_name=media_name,
                metadata_sleep=f"  exec sleep {metadata_sleep}" if metadata_sleep else "",
                download_sleep=f"  exec sleep {download_sleep}" if download_sleep else "",
            ),
            encoding="utf-8",
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make


@pytest.fixture
def tool_calls():
    """Argument lines recorded by a script from ``make_tool``."""

    def _calls(script: Path) -> List[str]:
        log = script.parent / "calls.log"
        if not log.exists():
            return []
        return log.read_text(encoding="utf-8").splitlines()

    return _calls

