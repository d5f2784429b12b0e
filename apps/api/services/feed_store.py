"""Per-user podcast feed documents with serialized, all-or-nothing appends."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
import weakref
import xml.etree.ElementTree as ET
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional
from xml.sax.saxutils import escape, quoteattr

from redis.asyncio import Redis
from redis.exceptions import RedisError

from models.feed import FeedItem
from services.errors import DocumentError, ErrorKind

logger = logging.getLogger(__name__)

ITUNES_NS = "http://www.itunes.com/dtds/podcast-1.0.dtd"
FEED_SUFFIX = ".rss"

CHANNEL_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd" xmlns:content="http://purl.org/rss/1.0/modules/content/">
<channel>
    <title>YouTube Podcast</title>
    <description>Downloaded YouTube Videos as Podcast</description>
    <language>en-us</language>
    <itunes:author>YouTube Downloader</itunes:author>
    <itunes:summary>YouTube videos converted to podcast format</itunes:summary>
    <itunes:owner>
        <itunes:name>YouTube Downloader</itunes:name>
        <itunes:email>{owner_email}</itunes:email>
    </itunes:owner>
    <itunes:explicit>no</itunes:explicit>
    <itunes:category text="Technology"/>
    <itunes:image href={image_href}/>
</channel>
</rss>
"""

_CHANNEL_OPEN = re.compile(r"<channel[\s>]")
_FIRST_ITEM = re.compile(r"<item[\s>]")
_CHANNEL_CLOSE = "</channel>"

LockFactory = Callable[[str], AsyncContextManager[None]]


class AppendResult(str, Enum):
    APPENDED = "appended"
    DUPLICATE = "duplicate"


def safe_feed_name(user_id: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_.-]", "_", str(user_id or "").strip()).lstrip(".")
    return cleaned or "_"


def render_channel(owner_email: str, image_url: str) -> str:
    """Canonical empty-channel document."""
    return CHANNEL_TEMPLATE.format(owner_email=escape(owner_email), image_href=quoteattr(image_url))


def render_item(item: FeedItem) -> str:
    return (
        "<item>\n"
        f"        <title>{escape(item.title)}</title>\n"
        f"        <itunes:author>{escape(item.author)}</itunes:author>\n"
        f"        <itunes:summary>{escape(item.summary)}</itunes:summary>\n"
        f"        <enclosure url={quoteattr(item.enclosure_url)} type={quoteattr(item.enclosure_type)} "
        f"length=\"{int(item.enclosure_length)}\"/>\n"
        f"        <guid>{escape(item.guid)}</guid>\n"
        f"        <pubDate>{escape(item.published_at)}</pubDate>\n"
        f"        <itunes:duration>{int(item.duration_seconds)}</itunes:duration>\n"
        "        <itunes:explicit>no</itunes:explicit>\n"
        "    </item>"
    )


def parse_channel(content: str) -> ET.Element:
    """Return the ``<channel>`` element or raise MALFORMED_DOCUMENT."""
    try:
        root = ET.fromstring(content.encode("utf-8"))
    except ET.ParseError as exc:
        raise DocumentError(ErrorKind.MALFORMED_DOCUMENT, f"feed is not well-formed XML: {exc}") from exc
    channel = root.find("channel") if root.tag == "rss" else None
    if channel is None:
        raise DocumentError(ErrorKind.MALFORMED_DOCUMENT, "feed has no <rss><channel> structure")
    return channel


def splice_item(content: str, rendered_item: str) -> str:
    """Insert a rendered item right after the channel header (newest first)."""
    channel_open = _CHANNEL_OPEN.search(content)
    channel_close = content.rfind(_CHANNEL_CLOSE)
    if channel_open is None or channel_close < channel_open.end():
        raise DocumentError(ErrorKind.MALFORMED_DOCUMENT, "insertion anchor not found")

    first_item = _FIRST_ITEM.search(content, channel_open.end(), channel_close)
    if first_item is not None:
        pos = first_item.start()
        return f"{content[:pos]}{rendered_item}\n    {content[pos:]}"
    return f"{content[:channel_close]}    {rendered_item}\n{content[channel_close:]}"


def _write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Could not cleanup temporary feed file %s", tmp_name)
        raise


def redis_lock_factory(client: Redis, timeout_seconds: int, prefix: str = "feed:lock") -> LockFactory:
    """Cross-process per-user exclusion backed by a Redis lock."""

    @asynccontextmanager
    async def _lock(user_id: str) -> AsyncIterator[None]:
        lock = client.lock(
            f"{prefix}:{safe_feed_name(user_id)}",
            timeout=timeout_seconds,
            blocking_timeout=timeout_seconds,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise DocumentError(ErrorKind.IO_FAILURE, f"feed lock unavailable: {exc}") from exc
        if not acquired:
            raise DocumentError(ErrorKind.IO_FAILURE, f"timed out waiting for feed lock of {user_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except RedisError:
                logger.warning("Feed lock for %s expired before release", user_id)

    return _lock


class FeedDocumentStore:
    """Owns every ``<user>.rss`` document under ``feed_dir``."""

    def __init__(
        self,
        feed_dir: str | Path,
        *,
        owner_email: str = "noreply@example.com",
        image_url: str = "https://example.com/podcast.jpg",
        skip_duplicate_guids: bool = True,
        lock_factory: Optional[LockFactory] = None,
    ):
        self.feed_dir = Path(feed_dir)
        self.owner_email = owner_email
        self.image_url = image_url
        self.skip_duplicate_guids = skip_duplicate_guids
        self._external_lock = lock_factory
        # entries vanish once no append holds or awaits the lock
        self._local_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def feed_path(self, user_id: str) -> Path:
        return self.feed_dir / f"{safe_feed_name(user_id)}{FEED_SUFFIX}"

    @asynccontextmanager
    async def _exclusive(self, user_id: str) -> AsyncIterator[None]:
        key = safe_feed_name(user_id)
        local = self._local_locks.get(key)
        if local is None:
            local = asyncio.Lock()
            self._local_locks[key] = local
        async with local:
            if self._external_lock is None:
                yield
            else:
                async with self._external_lock(user_id):
                    yield

    async def append(self, user_id: str, item: FeedItem) -> AppendResult:
        """Insert ``item`` as the newest entry of the user's feed."""
        path = self.feed_path(user_id)
        async with self._exclusive(user_id):
            result = await asyncio.to_thread(self._append_sync, path, item)
        if result is AppendResult.DUPLICATE:
            logger.info("Feed %s already has guid %s, skipping", path.name, item.guid)
        else:
            logger.info("Appended %r to feed %s", item.title, path.name)
        return result

    def _load(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            raise DocumentError(ErrorKind.MALFORMED_DOCUMENT, f"{path.name} is not UTF-8") from exc
        except OSError as exc:
            raise DocumentError(ErrorKind.IO_FAILURE, f"cannot read {path}: {exc}") from exc

    def _append_sync(self, path: Path, item: FeedItem) -> AppendResult:
        content = self._load(path)
        if content is None:
            content = render_channel(self.owner_email, self.image_url)

        channel = parse_channel(content)
        if self.skip_duplicate_guids:
            for existing in channel.findall("item"):
                if (existing.findtext("guid") or "").strip() == item.guid:
                    return AppendResult.DUPLICATE

        merged = splice_item(content, render_item(item))
        parse_channel(merged)

        try:
            _write_atomic(path, merged)
        except OSError as exc:
            raise DocumentError(ErrorKind.IO_FAILURE, f"cannot write {path}: {exc}") from exc
        return AppendResult.APPENDED

    async def list_items(self, user_id: str) -> List[Dict[str, str]]:
        """Items of the user's feed in document order (newest first)."""
        content = await asyncio.to_thread(self._load, self.feed_path(user_id))
        if content is None:
            return []
        channel = parse_channel(content)
        return [_describe_item(item) for item in channel.findall("item")]


def _describe_item(item: ET.Element) -> Dict[str, str]:
    enclosure = item.find("enclosure")
    return {
        "title": item.findtext("title") or "",
        "author": item.findtext(f"{{{ITUNES_NS}}}author") or "",
        "summary": item.findtext(f"{{{ITUNES_NS}}}summary") or "",
        "guid": item.findtext("guid") or "",
        "pub_date": item.findtext("pubDate") or "",
        "duration": item.findtext(f"{{{ITUNES_NS}}}duration") or "0",
        "enclosure_url": enclosure.get("url", "") if enclosure is not None else "",
        "enclosure_type": enclosure.get("type", "") if enclosure is not None else "",
        "enclosure_length": enclosure.get("length", "0") if enclosure is not None else "0",
    }
