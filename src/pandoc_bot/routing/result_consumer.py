"""
Result consumer (delivery runtime).

Responsibilities:
- Consume worker responses from the results stream
- Decode, route and deliver each one to the originating conversation
- ACK only after successful delivery
- Dead-letter payloads that still fail to decode after a bounded number of
  deliveries (they are never dropped silently and never crash the loop)

IMPORTANT:
- The dialogue side never waits on this loop; it runs as one long-lived task.
- A failed delivery is NOT acked; the entry stays pending and is reclaimed.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

from src.pandoc_bot.codec.job_codec import decode_response
from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.errors import DecodeFailure, TransportFailure
from src.pandoc_bot.infra.redis.client import RedisClient
from src.pandoc_bot.infra.redis.queue_gateway import Delivery, RedisQueueGateway
from src.pandoc_bot.logging.logger import setup_logger
from src.pandoc_bot.messaging.messenger import Messenger
from src.pandoc_bot.messaging.twilio_whatsapp import TwilioWhatsAppMessenger
from src.pandoc_bot.routing.result_router import SendDocument, deliver, route

logger = setup_logger(__name__)


class ResultConsumer:
    def __init__(
        self,
        gateway: RedisQueueGateway,
        messenger: Messenger,
        *,
        queue_name: Optional[str] = None,
        max_decode_attempts: Optional[int] = None,
    ) -> None:
        self.gateway = gateway
        self.messenger = messenger
        self.queue_name = queue_name or settings.redis_stream_results
        self.max_decode_attempts = max(
            1,
            settings.result_max_decode_attempts if max_decode_attempts is None else max_decode_attempts,
        )

    async def run(self) -> None:
        """
        Consume until the gateway is stopped. A message already pulled is
        always finished (acked, dead-lettered or left pending) before exit.
        """
        logger.info("Result consumer started | stream=%s", self.queue_name)
        async for delivery in self.gateway.consume(self.queue_name):
            try:
                await self.process(delivery)
            except Exception as exc:
                logger.error("Result consumer error | id=%s", delivery.message_id, exc_info=exc)
        logger.info("Result consumer stopped | stream=%s", self.queue_name)

    async def process(self, delivery: Delivery) -> bool:
        """
        Handle one delivery. Returns True when the entry was acknowledged
        (delivered or dead-lettered), False when it was left pending.
        """
        t_start = time.perf_counter()

        try:
            response = decode_response(delivery.payload)
        except DecodeFailure as exc:
            return await self._on_decode_failure(delivery, exc)

        action = route(response)
        logger.info(
            "Routing result | id=%s | conversation_id=%s | kind=%s | attempts=%s",
            delivery.message_id,
            action.conversation_id,
            "document" if isinstance(action, SendDocument) else "text",
            delivery.attempts,
        )

        try:
            await deliver(action, self.messenger)
        except TransportFailure as exc:
            logger.error(
                "Result delivery failed | id=%s | conversation_id=%s",
                delivery.message_id,
                action.conversation_id,
                exc_info=exc,
            )
            # DO NOT ACK on failure -> will be reclaimed and retried
            return False

        await delivery.ack_handle.ack()
        logger.info(
            "Result acknowledged | id=%s | conversation_id=%s | total_s=%.3f",
            delivery.message_id,
            action.conversation_id,
            time.perf_counter() - t_start,
        )
        return True

    async def _on_decode_failure(self, delivery: Delivery, exc: DecodeFailure) -> bool:
        if delivery.attempts >= self.max_decode_attempts:
            await delivery.ack_handle.dead_letter(
                delivery.payload,
                reason=str(exc),
                attempts=delivery.attempts,
            )
            return True

        logger.warning(
            "Undecodable result left pending | id=%s | attempts=%s/%s | reason=%s",
            delivery.message_id,
            delivery.attempts,
            self.max_decode_attempts,
            exc,
        )
        return False


async def run_result_consumer() -> None:
    """
    Script entrypoint for running the result consumer on its own.
    """
    redis_client = RedisClient()
    gateway = RedisQueueGateway(redis_client)
    consumer = ResultConsumer(gateway, TwilioWhatsAppMessenger())
    try:
        await consumer.run()
    finally:
        await gateway.close()


if __name__ == "__main__":
    asyncio.run(run_result_consumer())
