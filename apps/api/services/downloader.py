"""Process wrapper around the external media download tool (yt-dlp)."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from models.media import MediaFile, Metadata
from services.errors import ErrorKind, ExternalToolError

logger = logging.getLogger(__name__)

OUTPUT_TEMPLATE = "%(title)s.%(ext)s"
MAX_CAUSE_CHARS = 1000


def _decode_cause(stderr: bytes) -> str:
    text = stderr.decode("utf-8", errors="replace").strip()
    return text[-MAX_CAUSE_CHARS:] or "no error output"


class DownloadExecutor:
    """Runs the tool in metadata mode (``-J``) or download mode (``-o``).

    Each call blocks the calling task until the process exits or its deadline
    expires; on expiry the process is killed. Nothing is retried here.
    """

    def __init__(
        self,
        binary: str = "yt-dlp",
        download_dir: str | Path = ".",
        metadata_timeout: Optional[float] = 120.0,
        download_timeout: Optional[float] = 3600.0,
    ):
        self.binary = binary
        self.download_dir = Path(download_dir)
        self.metadata_timeout = metadata_timeout
        self.download_timeout = download_timeout

    async def _run(
        self,
        args: List[str],
        timeout: Optional[float],
        cwd: Optional[Path] = None,
    ) -> Tuple[int, bytes, bytes]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
            )
        except OSError as exc:
            raise ExternalToolError(ErrorKind.TOOL_NOT_FOUND, f"cannot execute {self.binary}: {exc}") from exc

        deadline = timeout if timeout and timeout > 0 else None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=deadline)
        except asyncio.TimeoutError as exc:
            await self._kill(proc)
            raise ExternalToolError(
                ErrorKind.TIMEOUT, f"{self.binary} {args[0]} did not finish within {deadline:g}s"
            ) from exc
        except asyncio.CancelledError:
            await self._kill(proc)
            raise
        return proc.returncode if proc.returncode is not None else -1, stdout, stderr

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()

    async def fetch_metadata(self, url: str) -> Metadata:
        """Resolve ``url`` to metadata without downloading the media."""
        logger.info("Fetching metadata for %s", url)
        returncode, stdout, stderr = await self._run(["-J", url], self.metadata_timeout)
        if returncode != 0:
            raise ExternalToolError(ErrorKind.METADATA_FETCH_FAILED, _decode_cause(stderr))
        try:
            data = json.loads(stdout.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ExternalToolError(ErrorKind.METADATA_PARSE_FAILED, f"invalid JSON output: {exc}") from exc
        if not isinstance(data, dict):
            raise ExternalToolError(ErrorKind.METADATA_PARSE_FAILED, "metadata output is not a JSON object")
        return Metadata.from_tool_output(data)

    async def fetch_media(self, url: str, metadata: Metadata) -> MediaFile:
        """Download ``url`` into the download directory as ``<title>.<ext>``."""
        self.download_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Downloading %s into %s", url, self.download_dir)
        returncode, _stdout, stderr = await self._run(
            ["-o", OUTPUT_TEMPLATE, url],
            self.download_timeout,
            cwd=self.download_dir,
        )
        if returncode != 0:
            raise ExternalToolError(ErrorKind.DOWNLOAD_FAILED, _decode_cause(stderr))

        path = self.download_dir / metadata.file_name
        if not path.exists():
            # the tool may sanitize the title; the feed only needs the name
            logger.warning("Downloaded file %s not found after %s finished", path, self.binary)
        return MediaFile(path=path, extension=metadata.file_extension)
