"""Feed item derived from a completed download."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict

from models.job import Job
from models.media import MediaFile, Metadata


MIME_BY_EXT = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "m4v": "video/x-m4v",
    "webm": "video/webm",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
    "m4a": "audio/mp4",
    "mp3": "audio/mpeg",
    "opus": "audio/ogg",
    "ogg": "audio/ogg",
}


def guess_mime(extension: str) -> str:
    return MIME_BY_EXT.get((extension or "").lower().lstrip("."), "video/mp4")


def format_pub_date(moment: datetime) -> str:
    """RFC 2822 timestamp in UTC, e.g. ``Sat, 17 Oct 2026 10:00:00 +0000``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return format_datetime(moment.astimezone(timezone.utc))


class FeedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    author: str
    summary: str
    enclosure_url: str
    enclosure_length: int = 0
    enclosure_type: str = "video/mp4"
    guid: str
    published_at: str
    duration_seconds: int = 0

    @classmethod
    def from_download(
        cls,
        job: Job,
        metadata: Metadata,
        media: MediaFile,
        *,
        now: Optional[datetime] = None,
        media_base_url: str = "",
    ) -> "FeedItem":
        """Build the item for a finished job; the summary repeats the title."""
        enclosure_url = media.file_name
        if media_base_url:
            enclosure_url = f"{media_base_url.rstrip('/')}/{quote(media.file_name)}"
        return cls(
            title=metadata.title,
            author=metadata.uploader,
            summary=metadata.title,
            enclosure_url=enclosure_url,
            enclosure_length=metadata.filesize_bytes,
            enclosure_type=guess_mime(media.extension),
            guid=job.url,
            published_at=format_pub_date(now or datetime.now(timezone.utc)),
            duration_seconds=metadata.duration_seconds,
        )
