"""Telegram webhook router."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from services.chat import handle_update
from services.errors import QueueError
from services.job_intake import JobIntake
from services.telegram import TelegramClient

logger = logging.getLogger(__name__)

router = APIRouter()


def get_intake(request: Request) -> JobIntake:
    return request.app.state.intake


def get_telegram(request: Request) -> TelegramClient:
    return request.app.state.telegram


@router.post("/webhook")
async def telegram_webhook(
    update: Dict[str, Any] = Body(...),
    intake: JobIntake = Depends(get_intake),
    telegram: TelegramClient = Depends(get_telegram),
):
    """Receive one Bot API update."""
    try:
        result = await handle_update(update, intake, telegram)
    except QueueError as exc:
        logger.error("Update %s not queued: %s", update.get("update_id"), exc)
        raise HTTPException(
            status_code=503,
            detail="Job queue unavailable. Check Redis availability and retry.",
        ) from exc
    return {"ok": True, "queued": bool(result and result.accepted)}
