"""
FastAPI service entrypoint.

Responsibilities:
- Create FastAPI app
- Register routes (WhatsApp webhook, outbound media)
- Wire the dialogue side (state store, blob store, messenger, handler)
- Run the result consumer as one background task for the app's lifetime

Shutdown order:
1) stop pulling results (the message in hand is finished first)
2) wait for the consumer task
3) wait for in-flight job publishes, close Redis
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.pandoc_bot.api.media import router as media_router
from src.pandoc_bot.api.whatsapp_webhook import router as whatsapp_router
from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.dialogue.handler import ConversationHandler
from src.pandoc_bot.infra.blob_store import TwilioBlobStore
from src.pandoc_bot.infra.redis import RedisClient, RedisQueueGateway, RedisStateStore
from src.pandoc_bot.logging.logger import setup_logger
from src.pandoc_bot.messaging.twilio_whatsapp import TwilioWhatsAppMessenger
from src.pandoc_bot.routing.result_consumer import ResultConsumer

logger = setup_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis_client = RedisClient()
    gateway = RedisQueueGateway(redis_client)
    messenger = TwilioWhatsAppMessenger()

    app.state.blobs = TwilioBlobStore()
    app.state.handler = ConversationHandler(
        store=RedisStateStore(redis_client),
        messenger=messenger,
        publisher=gateway,
        blobs=app.state.blobs,
    )

    consumer = ResultConsumer(gateway, messenger)
    consumer_task = asyncio.create_task(consumer.run(), name="result-consumer")
    logger.info("Service started | env=%s | jobs=%s | results=%s", settings.app_env, settings.redis_stream_jobs, settings.redis_stream_results)

    try:
        yield
    finally:
        logger.info("Service shutting down")
        gateway.stop()
        await consumer_task
        await gateway.close()
        logger.info("Service stopped")


def create_app() -> FastAPI:
    """
    FastAPI application factory.
    """
    app = FastAPI(title="Pandoc WhatsApp Bot", lifespan=lifespan)

    app.include_router(whatsapp_router)
    app.include_router(media_router)

    logger.info("FastAPI app initialized | env=%s", settings.app_env)
    return app


# ASGI entrypoint (uvicorn src.pandoc_bot.main:app)
app = create_app()
