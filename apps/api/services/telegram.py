"""Minimal Telegram Bot API client."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from services.errors import TelegramError

logger = logging.getLogger(__name__)


class TelegramClient:
    """Sends replies and reads updates over the Bot API.

    Without a token the client only logs outgoing messages, which keeps the
    worker usable when chat notifications are not configured.
    """

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.token = (token or "").strip()
        self.api_base = api_base.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    async def _call(self, method: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        url = f"{self.api_base}/bot{self.token}/{method}"
        try:
            response = await self._http.post(url, json=payload, timeout=timeout or httpx.USE_CLIENT_DEFAULT)
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TelegramError(cause=f"{method} failed: {exc}") from exc
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise TelegramError(cause=f"{method} rejected: {description or response.status_code}")
        return data.get("result")

    async def send_message(self, chat_id: int | str, text: str) -> None:
        if not self.enabled:
            logger.info("Telegram disabled; reply to %s: %s", chat_id, text)
            return
        await self._call("sendMessage", {"chat_id": chat_id, "text": text})

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> List[Dict[str, Any]]:
        """Long-poll for new updates starting at ``offset``."""
        payload: Dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        result = await self._call("getUpdates", payload, timeout=timeout + 10)
        return list(result or [])

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
