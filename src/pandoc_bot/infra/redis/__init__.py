"""
Redis infrastructure package.

Contains:
- Redis connection wrapper
- Durable dialogue state store (one hash keyed by conversation id)
- Queue gateway over Redis Streams consumer groups
"""

from src.pandoc_bot.infra.redis.client import RedisClient
from src.pandoc_bot.infra.redis.queue_gateway import AckHandle, Delivery, RedisQueueGateway
from src.pandoc_bot.infra.redis.state_store import KeyedLock, RedisStateStore

__all__ = [
    "RedisClient",
    "AckHandle",
    "Delivery",
    "RedisQueueGateway",
    "KeyedLock",
    "RedisStateStore",
]
