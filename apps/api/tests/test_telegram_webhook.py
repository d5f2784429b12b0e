import json
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from main import app
from services.job_intake import JobIntake
from services.telegram import TelegramClient


def _update(text: str, user_id: int = 42, chat_id: int = 42, update_id: int = 1) -> dict:
    return {
        "update_id": update_id,
        "message": {
            "message_id": 10,
            "from": {"id": user_id, "is_bot": False, "first_name": "Test"},
            "chat": {"id": chat_id, "type": "private"},
            "date": 1760000000,
            "text": text,
        },
    }


@pytest_asyncio.fixture
async def webhook_client(job_queue, fake_redis):
    sent = []

    def _bot_api(request: httpx.Request) -> httpx.Response:
        sent.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True, "result": {}})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_bot_api))
    app.state.queue = job_queue
    app.state.intake = JobIntake(job_queue, ["www.youtube.com", "youtube.com"])
    app.state.telegram = TelegramClient("123:abc", http_client=http_client)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, sent, fake_redis
    await http_client.aclose()


@pytest.mark.asyncio
async def test_webhook_queues_recognized_url_and_confirms(webhook_client):
    client, sent, fake_redis = webhook_client

    response = await client.post("/telegram/webhook", json=_update("https://www.youtube.com/watch?v=abc123"))

    assert response.status_code == 200
    assert response.json() == {"ok": True, "queued": True}
    assert fake_redis.lists["test_urls"] == [b'{"url":"https://www.youtube.com/watch?v=abc123","user_id":"42"}']
    assert sent == [
        (
            "/bot123:abc/sendMessage",
            {"chat_id": 42, "text": "YouTube URL added to queue: https://www.youtube.com/watch?v=abc123"},
        )
    ]


@pytest.mark.asyncio
async def test_webhook_echoes_plain_text(webhook_client):
    client, sent, fake_redis = webhook_client

    response = await client.post("/telegram/webhook", json=_update("hello bot"))

    assert response.json() == {"ok": True, "queued": False}
    assert "test_urls" not in fake_redis.lists
    assert sent[0][1]["text"] == "You said: hello bot"


@pytest.mark.asyncio
async def test_webhook_answers_commands_without_queueing(webhook_client):
    client, sent, fake_redis = webhook_client

    await client.post("/telegram/webhook", json=_update("/help"))
    await client.post("/telegram/webhook", json=_update("/start@media_feed_bot"))
    await client.post("/telegram/webhook", json=_update("/get https://www.youtube.com/watch?v=abc123"))

    texts = [payload["text"] for _, payload in sent]
    assert texts[0].startswith("These are the supported commands:")
    assert "/get - gets the given url." in texts[0]
    assert texts[1].startswith("Welcome")
    assert texts[2] == "https://www.youtube.com/watch?v=abc123"
    assert "test_urls" not in fake_redis.lists


@pytest.mark.asyncio
async def test_webhook_reports_queue_outage_without_confirming(webhook_client):
    client, sent, fake_redis = webhook_client
    fake_redis.disconnect()

    response = await client.post("/telegram/webhook", json=_update("https://www.youtube.com/watch?v=abc123"))

    assert response.status_code == 503
    assert sent == []


@pytest.mark.asyncio
async def test_webhook_ignores_non_text_updates(webhook_client):
    client, sent, _ = webhook_client

    response = await client.post(
        "/telegram/webhook",
        json={"update_id": 5, "message": {"message_id": 1, "chat": {"id": 1}, "photo": []}},
    )

    assert response.json() == {"ok": True, "queued": False}
    assert sent == []


@pytest.mark.asyncio
async def test_health_reports_queue_depth(webhook_client):
    client, _, fake_redis = webhook_client
    await fake_redis.lpush("test_urls", b"{}")

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["redis"] == "up"
    assert response.json()["queue_depth"] == 1


@pytest.mark.asyncio
async def test_health_degrades_when_broker_down(webhook_client):
    client, _, fake_redis = webhook_client
    fake_redis.disconnect()

    payload = (await client.get("/health")).json()

    assert payload["status"] == "degraded"
    assert payload["redis"].startswith("down")


@pytest.mark.asyncio
async def test_ready_without_bot_token(webhook_client):
    client, _, _ = webhook_client

    with patch("config.settings.REDIS_URL", "redis://broker:6379/0"), patch("config.settings.TELEGRAM_BOT_TOKEN", ""):
        response = await client.get("/health/ready")

    assert response.status_code == 200
    assert response.json() == {"ready": True}


@pytest.mark.asyncio
async def test_not_ready_without_broker_url(webhook_client):
    client, _, _ = webhook_client

    with patch("config.settings.REDIS_URL", ""):
        response = await client.get("/health/ready")

    assert response.status_code == 503
    assert response.json() == {"ready": False, "missing": ["REDIS_URL"]}
