"""
Dialogue state store (Redis-based).

Responsibilities:
- Persist the current ConversationState per conversation id
- Return Idle for conversations we have never seen
- Serialize concurrent work on the SAME conversation id (per-key lock)

Layout: a single Redis hash (settings.state_hash_key) whose fields are
conversation ids and whose values are JSON state documents, e.g.
    HGET dialogue:state 15551234567 -> {"state": "awaiting_file", ...}

Durability follows the Redis persistence config (AOF recommended).
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Optional

from redis.exceptions import RedisError

from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.dialogue.states import (
    ConversationState,
    Idle,
    state_from_document,
    state_tag,
    state_to_document,
)
from src.pandoc_bot.errors import StorageFailure
from src.pandoc_bot.infra.redis.client import RedisClient
from src.pandoc_bot.logging.logger import setup_logger

logger = setup_logger(__name__)


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped when unused.

    Different keys never wait on each other.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisStateStore:
    def __init__(
        self,
        redis_client: RedisClient,
        *,
        hash_key: Optional[str] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.redis_client = redis_client
        self.hash_key = hash_key or settings.state_hash_key
        self.locks = locks or KeyedLock()

    def lock(self, conversation_id: int):
        """
        Async context manager serializing load/transition/save for one conversation.
        """
        return self.locks.hold(conversation_id)

    async def load(self, conversation_id: int) -> ConversationState:
        """
        Load the current state. Absence is not an error: it means Idle.
        """
        try:
            client = await self.redis_client.get_client()
            raw = await client.hget(self.hash_key, str(conversation_id))
        except (RedisError, OSError) as exc:
            logger.error("State load failed | conversation_id=%s", conversation_id, exc_info=exc)
            raise StorageFailure(f"Could not load state for conversation {conversation_id}") from exc

        if raw is None:
            logger.debug("State miss | conversation_id=%s | state=idle", conversation_id)
            return Idle()

        try:
            doc = json.loads(raw)
        except ValueError as exc:
            raise StorageFailure(f"Persisted state for conversation {conversation_id} is not JSON") from exc

        state = state_from_document(doc)
        logger.debug("State hit | conversation_id=%s | state=%s", conversation_id, state_tag(state))
        return state

    async def save(self, conversation_id: int, state: ConversationState) -> None:
        payload = json.dumps(state_to_document(state), ensure_ascii=False)
        try:
            client = await self.redis_client.get_client()
            await client.hset(self.hash_key, str(conversation_id), payload)
        except (RedisError, OSError) as exc:
            logger.error("State save failed | conversation_id=%s", conversation_id, exc_info=exc)
            raise StorageFailure(f"Could not save state for conversation {conversation_id}") from exc

        logger.info("State saved | conversation_id=%s | state=%s", conversation_id, state_tag(state))
