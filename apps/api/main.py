"""
Media Feed Bot - FastAPI Backend
Receives Telegram updates, validates download requests and queues them for the worker.
"""

from fastapi import FastAPI
from contextlib import asynccontextmanager

from config import settings, validate_runtime_settings
from logging_setup import setup_logging
from routers import health, telegram
from services.job_intake import JobIntake
from services.job_queue import JobQueue, get_redis_connection
from services.telegram import TelegramClient


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    print("🚀 Starting Media Feed Bot API...")
    validate_runtime_settings()

    redis_conn = get_redis_connection()
    queue = JobQueue.from_settings(redis_conn)
    await queue.declare()
    print(f"📬 Job queue '{queue.name}' declared.")

    app.state.queue = queue
    app.state.intake = JobIntake(queue, settings.ALLOWED_HOSTS)
    app.state.telegram = TelegramClient(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_API_BASE)
    if not app.state.telegram.enabled:
        print("⚠️ TELEGRAM_BOT_TOKEN missing; replies will only be logged.")
    yield
    # Shutdown
    await app.state.telegram.aclose()
    await redis_conn.aclose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Media Feed Bot API",
    description="Queue media links sent over chat and publish them as per-user podcast feeds",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(telegram.router, prefix="/telegram", tags=["Telegram"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Media Feed Bot API",
        "version": "0.1.0",
        "status": "running"
    }
