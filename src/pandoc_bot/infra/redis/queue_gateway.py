"""
Queue gateway (Redis Streams).

Responsibilities:
- Publish job payloads to a stream and return only once Redis has the entry
- Consume payloads from a stream through a consumer group, forever
- Leave acknowledgement to the caller (explicit XACK, never auto-ack)
- Reclaim entries another consumer (or a crashed run of us) never acked
- Move poison entries to a dead-letter stream on request

Every entry carries one field, `payload`, holding the encoded envelope.

IMPORTANT:
- ACK only after the message was fully handled downstream.
- A crash before ACK leaves the entry pending; it is redelivered through
  XAUTOCLAIM once it has been idle for `claim_idle_ms`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Tuple

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.errors import TransportFailure
from src.pandoc_bot.infra.redis.client import RedisClient
from src.pandoc_bot.logging.logger import setup_logger

logger = setup_logger(__name__)

PAYLOAD_FIELD = b"payload"


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class AckHandle:
    """
    Acknowledgement handle for one consumed stream entry.
    """

    def __init__(self, gateway: "RedisQueueGateway", queue_name: str, message_id: str) -> None:
        self._gateway = gateway
        self.queue_name = queue_name
        self.message_id = message_id
        self.done = False

    async def ack(self) -> None:
        await self._gateway.ack(self.queue_name, self.message_id)
        self.done = True

    async def dead_letter(self, payload: bytes, *, reason: str, attempts: int) -> None:
        """
        Copy the entry to the dead-letter stream, then ACK it here.
        """
        await self._gateway.dead_letter(
            self.queue_name,
            self.message_id,
            payload,
            reason=reason,
            attempts=attempts,
        )
        self.done = True


@dataclass(frozen=True)
class Delivery:
    message_id: str
    payload: bytes
    attempts: int  # how many times Redis has delivered this entry (>= 1)
    ack_handle: AckHandle


class RedisQueueGateway:
    def __init__(
        self,
        redis_client: RedisClient,
        *,
        group_name: Optional[str] = None,
        consumer_name: Optional[str] = None,
        dead_letter_stream: Optional[str] = None,
        block_ms: Optional[int] = None,
        claim_idle_ms: Optional[int] = None,
        batch_size: int = 10,
        reconnect_backoff_seconds: Optional[float] = None,
        idle_poll_seconds: Optional[float] = None,
    ) -> None:
        self.redis_client = redis_client
        self.group_name = group_name or settings.redis_results_consumer_group
        self.consumer_name = consumer_name or settings.redis_results_consumer_name
        self.dead_letter_stream = dead_letter_stream or settings.redis_stream_dead_letter
        self.block_ms = settings.result_consume_block_ms if block_ms is None else block_ms
        self.claim_idle_ms = settings.result_claim_idle_ms if claim_idle_ms is None else claim_idle_ms
        self.batch_size = batch_size
        self.reconnect_backoff_seconds = (
            settings.queue_reconnect_backoff_seconds
            if reconnect_backoff_seconds is None
            else reconnect_backoff_seconds
        )
        self.idle_poll_seconds = settings.queue_idle_poll_seconds if idle_poll_seconds is None else idle_poll_seconds

        self._stopping = asyncio.Event()
        self._inflight_publishes = 0
        self._publishes_idle = asyncio.Event()
        self._publishes_idle.set()

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, queue_name: str, payload: bytes) -> str:
        """
        Append a payload to `queue_name`.

        Returns:
            stream_id (str): Redis-assigned entry id, i.e. the broker's confirmation.
        """
        self._inflight_publishes += 1
        self._publishes_idle.clear()
        try:
            client = await self.redis_client.get_client()
            stream_id = await client.xadd(name=queue_name, fields={PAYLOAD_FIELD: payload})
        except (RedisError, OSError) as exc:
            logger.error("Failed to publish to Redis Stream | stream=%s", queue_name, exc_info=exc)
            raise TransportFailure(f"Publish to {queue_name!r} failed") from exc
        finally:
            self._inflight_publishes -= 1
            if self._inflight_publishes == 0:
                self._publishes_idle.set()

        stream_id = _as_str(stream_id)
        logger.info(
            "Published to Redis Stream | stream=%s | stream_id=%s | bytes=%s",
            queue_name,
            stream_id,
            len(payload),
        )
        return stream_id

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    async def consume(self, queue_name: str) -> AsyncIterator[Delivery]:
        """
        Yield deliveries from `queue_name` until stop() is called.

        Stale pending entries are reclaimed before new ones are read. Connection
        loss is logged, the connection is dropped and reading resumes after a
        short backoff.
        """
        group_ready = False
        logger.info(
            "Queue consumer started | stream=%s | group=%s | consumer=%s",
            queue_name,
            self.group_name,
            self.consumer_name,
        )

        while not self._stopping.is_set():
            try:
                client = await self.redis_client.get_client()
                if not group_ready:
                    await self._ensure_consumer_group(client, queue_name)
                    group_ready = True

                batch = await self._claim_stale(client, queue_name)
                if not batch:
                    batch = await self._read_new(client, queue_name)
            except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
                logger.error("Queue connection lost | stream=%s", queue_name, exc_info=exc)
                await self.redis_client.reset()
                group_ready = False
                await self._backoff()
                continue
            except RedisError as exc:
                logger.error("Queue read error | stream=%s", queue_name, exc_info=exc)
                await self._backoff()
                continue

            if not batch and self.block_ms <= 0:
                # Non-blocking reads return at once; pace the loop instead of spinning.
                await self._wait_stopping(self.idle_poll_seconds)
                continue

            for message_id, payload, attempts in batch:
                yield Delivery(
                    message_id=message_id,
                    payload=payload,
                    attempts=attempts,
                    ack_handle=AckHandle(self, queue_name, message_id),
                )

        logger.info("Queue consumer stopped | stream=%s", queue_name)

    async def ack(self, queue_name: str, message_id: str) -> None:
        try:
            client = await self.redis_client.get_client()
            await client.xack(queue_name, self.group_name, message_id)
        except (RedisError, OSError) as exc:
            logger.error("ACK failed | stream=%s | id=%s", queue_name, message_id, exc_info=exc)
            raise TransportFailure(f"ACK of {message_id} on {queue_name!r} failed") from exc
        logger.debug("Message acknowledged | stream=%s | id=%s", queue_name, message_id)

    async def dead_letter(
        self,
        queue_name: str,
        message_id: str,
        payload: bytes,
        *,
        reason: str,
        attempts: int,
    ) -> None:
        fields = {
            PAYLOAD_FIELD: payload,
            b"source_stream": queue_name,
            b"source_id": message_id,
            b"reason": reason,
            b"attempts": str(attempts),
        }
        try:
            client = await self.redis_client.get_client()
            dead_id = await client.xadd(name=self.dead_letter_stream, fields=fields)
        except (RedisError, OSError) as exc:
            logger.error("Dead-letter publish failed | stream=%s | id=%s", queue_name, message_id, exc_info=exc)
            raise TransportFailure(f"Dead-lettering {message_id} failed") from exc

        logger.warning(
            "Message dead-lettered | stream=%s | id=%s | dead_letter_id=%s | attempts=%s | reason=%s",
            queue_name,
            message_id,
            _as_str(dead_id),
            attempts,
            reason,
        )
        await self.ack(queue_name, message_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """
        Stop handing out new deliveries. The current read (at most block_ms)
        finishes first; deliveries already yielded stay the caller's to ack.
        """
        if not self._stopping.is_set():
            logger.info("Queue gateway stopping")
        self._stopping.set()

    async def close(self) -> None:
        """
        Stop consuming, wait for in-flight publishes, then close the connection.
        """
        self.stop()
        if self._inflight_publishes:
            logger.info("Waiting for in-flight publishes | count=%s", self._inflight_publishes)
        await self._publishes_idle.wait()
        await self.redis_client.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ensure_consumer_group(self, client, queue_name: str) -> None:
        try:
            await client.xgroup_create(
                name=queue_name,
                groupname=self.group_name,
                id="0-0",
                mkstream=True,
            )
            logger.info("Redis consumer group created | stream=%s | group=%s", queue_name, self.group_name)
        except ResponseError as exc:
            if "BUSYGROUP" in str(exc):
                logger.debug("Redis consumer group already exists | stream=%s | group=%s", queue_name, self.group_name)
            else:
                raise

    async def _claim_stale(self, client, queue_name: str) -> List[Tuple[str, bytes, int]]:
        """
        Take over entries pending longer than claim_idle_ms.
        """
        result = await client.xautoclaim(
            name=queue_name,
            groupname=self.group_name,
            consumername=self.consumer_name,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=self.batch_size,
        )
        entries = result[1] if result and len(result) > 1 else []

        batch: List[Tuple[str, bytes, int]] = []
        for raw_id, fields in entries:
            if raw_id is None:
                continue
            message_id = _as_str(raw_id)
            if fields is None:
                # Entry was trimmed from the stream while pending; nothing to deliver.
                await client.xack(queue_name, self.group_name, message_id)
                continue
            attempts = await self._delivery_count(client, queue_name, message_id)
            batch.append((message_id, fields.get(PAYLOAD_FIELD) or b"", attempts))

        if batch:
            logger.info("Reclaimed pending messages | stream=%s | count=%s", queue_name, len(batch))
        return batch

    async def _read_new(self, client, queue_name: str) -> List[Tuple[str, bytes, int]]:
        response = await client.xreadgroup(
            groupname=self.group_name,
            consumername=self.consumer_name,
            streams={queue_name: ">"},
            count=self.batch_size,
            # BLOCK 0 means "wait forever" in Redis; treat 0 as non-blocking instead.
            block=self.block_ms if self.block_ms > 0 else None,
        )
        batch: List[Tuple[str, bytes, int]] = []
        for _, messages in response or []:
            for raw_id, fields in messages:
                batch.append((_as_str(raw_id), (fields or {}).get(PAYLOAD_FIELD) or b"", 1))
        return batch

    async def _delivery_count(self, client, queue_name: str, message_id: str) -> int:
        pending = await client.xpending_range(
            name=queue_name,
            groupname=self.group_name,
            min=message_id,
            max=message_id,
            count=1,
        )
        if not pending:
            return 1
        return max(int(pending[0].get("times_delivered") or 1), 1)

    async def _backoff(self) -> None:
        await self._wait_stopping(self.reconnect_backoff_seconds)

    async def _wait_stopping(self, timeout: float) -> None:
        # Returns early when stop() is called.
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
