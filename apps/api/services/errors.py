"""Error taxonomy for the download pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID_JOB = "invalid_job"
    QUEUE_UNAVAILABLE = "queue_unavailable"
    METADATA_FETCH_FAILED = "metadata_fetch_failed"
    METADATA_PARSE_FAILED = "metadata_parse_failed"
    DOWNLOAD_FAILED = "download_failed"
    TIMEOUT = "timeout"
    TOOL_NOT_FOUND = "tool_not_found"
    IO_FAILURE = "io_failure"
    MALFORMED_DOCUMENT = "malformed_document"
    CHAT_UNAVAILABLE = "chat_unavailable"
    UNEXPECTED = "unexpected"


NON_RETRYABLE_KINDS = {
    ErrorKind.INVALID_JOB,
    ErrorKind.METADATA_PARSE_FAILED,
    ErrorKind.TOOL_NOT_FOUND,
    ErrorKind.MALFORMED_DOCUMENT,
}


class PipelineError(Exception):
    """Base error carrying a machine-readable kind and optional cause text."""

    default_kind = ErrorKind.IO_FAILURE

    def __init__(self, kind: Optional[ErrorKind] = None, cause: str = ""):
        self.kind = kind or self.default_kind
        self.cause = (cause or "").strip()
        message = self.kind.value if not self.cause else f"{self.kind.value}: {self.cause}"
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS


class JobValidationError(PipelineError):
    """Job payload could not be decoded into a Job."""

    default_kind = ErrorKind.INVALID_JOB


class QueueError(PipelineError):
    """Broker publish/consume/ack failure."""

    default_kind = ErrorKind.QUEUE_UNAVAILABLE


class ExternalToolError(PipelineError):
    """Download tool exited non-zero, timed out or produced unusable output."""

    default_kind = ErrorKind.DOWNLOAD_FAILED


class DocumentError(PipelineError):
    """Feed document could not be read, merged or written."""

    default_kind = ErrorKind.IO_FAILURE


class TelegramError(PipelineError):
    """Telegram Bot API call failed."""

    default_kind = ErrorKind.CHAT_UNAVAILABLE
