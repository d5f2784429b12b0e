"""Download tool results."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict


UNTITLED = "Untitled"
UNKNOWN_UPLOADER = "Unknown"
DEFAULT_EXTENSION = "mp4"

# yt-dlp writes these look-alikes in place of path separators in %(title)s
_SEPARATOR_LOOKALIKES = str.maketrans({"/": "\u29f8", "\\": "\u29f9"})


def _coerce_count(value: Any) -> int:
    # bool is an int subclass; a flag is not a size or duration
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if value != value or value < 0:
        return 0
    try:
        return int(value)
    except (OverflowError, ValueError):
        return 0


def _coerce_text(value: Any, default: str) -> str:
    if not isinstance(value, str):
        return default
    text = value.strip()
    return text or default


class Metadata(BaseModel):
    """Best-effort view of the tool's JSON output."""

    model_config = ConfigDict(frozen=True)

    title: str = UNTITLED
    uploader: str = UNKNOWN_UPLOADER
    duration_seconds: int = 0
    filesize_bytes: int = 0
    file_extension: str = DEFAULT_EXTENSION

    @classmethod
    def from_tool_output(cls, data: Dict[str, Any]) -> "Metadata":
        return cls(
            title=_coerce_text(data.get("title"), UNTITLED),
            uploader=_coerce_text(data.get("uploader"), UNKNOWN_UPLOADER),
            duration_seconds=_coerce_count(data.get("duration")),
            filesize_bytes=_coerce_count(data.get("filesize")),
            file_extension=_coerce_text(data.get("ext"), DEFAULT_EXTENSION).lstrip("."),
        )

    @property
    def file_name(self) -> str:
        return f"{self.title.translate(_SEPARATOR_LOOKALIKES)}.{self.file_extension}"


class MediaFile(BaseModel):
    """A media file written by the download tool."""

    model_config = ConfigDict(frozen=True)

    path: Path
    extension: str = DEFAULT_EXTENSION

    @property
    def file_name(self) -> str:
        return self.path.name
