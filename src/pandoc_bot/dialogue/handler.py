"""
Conversation handler (inbound event runtime).

Applies one inbound event to one conversation:

    lock(conversation) -> load state -> engine.transition
        -> publish jobs -> save state -> send messages

Ordering rules:
- Jobs are published BEFORE the state is saved: if the publish fails the
  conversation stays in AwaitingFile and the user can simply resend the file.
- The state is saved BEFORE messages are sent: a failed send leaves a
  consistent, already-accepted state behind (the user may miss one
  confirmation, the conversation is never corrupted).
- A rejected event returns the same state object and nothing is saved.
- A staged upload is discarded when its turn ends, whatever the outcome.

Errors (StorageFailure / TransportFailure) propagate to the caller.
"""

from __future__ import annotations

import time
from typing import Optional, Protocol

from src.pandoc_bot.codec.job_codec import encode_request
from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.contracts.jobs import ConversionRequest
from src.pandoc_bot.dialogue.engine import DialogueEngine
from src.pandoc_bot.dialogue.events import (
    Event,
    FileReceived,
    Noop,
    PublishJob,
    SendError,
    SendPrompt,
)
from src.pandoc_bot.dialogue.states import ConversationState, state_tag
from src.pandoc_bot.errors import StorageFailure
from src.pandoc_bot.messaging.messenger import Messenger
from src.pandoc_bot.logging.logger import setup_logger

logger = setup_logger(__name__)


class StateStore(Protocol):
    def lock(self, conversation_id: int): ...

    async def load(self, conversation_id: int) -> ConversationState: ...

    async def save(self, conversation_id: int, state: ConversationState) -> None: ...


class JobPublisher(Protocol):
    async def publish(self, queue_name: str, payload: bytes) -> str: ...


class BlobReader(Protocol):
    async def read(self, blob_ref: str) -> bytes: ...

    async def discard(self, blob_ref: str) -> None: ...


class ConversationHandler:
    def __init__(
        self,
        *,
        store: StateStore,
        messenger: Messenger,
        publisher: JobPublisher,
        blobs: BlobReader,
        engine: Optional[DialogueEngine] = None,
        jobs_queue: Optional[str] = None,
    ) -> None:
        self.store = store
        self.messenger = messenger
        self.publisher = publisher
        self.blobs = blobs
        self.engine = engine or DialogueEngine()
        self.jobs_queue = jobs_queue or settings.redis_stream_jobs

    async def handle(self, conversation_id: int, event: Event) -> ConversationState:
        """
        Apply `event` to the conversation and return the resulting state.
        """
        t_start = time.perf_counter()
        try:
            return await self._handle_locked(conversation_id, event, t_start)
        finally:
            if isinstance(event, FileReceived):
                await self._discard_upload(event.blob_ref)

    async def _handle_locked(self, conversation_id: int, event: Event, t_start: float) -> ConversationState:
        async with self.store.lock(conversation_id):
            state = await self.store.load(conversation_id)
            next_state, actions = self.engine.transition(state, event)

            accepted = next_state is not state
            logger.info(
                "Dialogue transition | conversation_id=%s | event=%s | from=%s | to=%s | accepted=%s",
                conversation_id,
                type(event).__name__,
                state_tag(state),
                state_tag(next_state),
                accepted,
            )

            for action in actions:
                if isinstance(action, PublishJob):
                    await self._publish_job(conversation_id, action)

            if accepted:
                await self.store.save(conversation_id, next_state)

            for action in actions:
                if isinstance(action, SendPrompt):
                    await self.messenger.send_prompt(conversation_id, action.text, action.options)
                elif isinstance(action, SendError):
                    await self.messenger.send_error(conversation_id, action.text, action.options)
                elif isinstance(action, (PublishJob, Noop)):
                    continue
                else:
                    raise TypeError(f"Unknown dialogue action: {action!r}")

        logger.debug(
            "Event handled | conversation_id=%s | actions=%s | total_s=%.3f",
            conversation_id,
            len(actions),
            time.perf_counter() - t_start,
        )
        return next_state

    async def _publish_job(self, conversation_id: int, job: PublishJob) -> str:
        data = await self.blobs.read(job.blob_ref)
        request = ConversionRequest(
            conversation_id=conversation_id,
            file_id=job.file_id,
            source_format=job.source_format,
            target_format=job.target_format,
            data=data,
            filename=job.filename or None,
        )
        stream_id = await self.publisher.publish(self.jobs_queue, encode_request(request))
        logger.info(
            "Conversion job submitted | conversation_id=%s | file_id=%s | from=%s | to=%s | bytes=%s | stream_id=%s",
            conversation_id,
            job.file_id,
            job.source_format,
            job.target_format,
            len(data),
            stream_id,
        )
        return stream_id

    async def _discard_upload(self, blob_ref: str) -> None:
        # The staged file is dead weight after this turn: its bytes are either
        # on the queue, or the upload was rejected and must be resent anyway.
        try:
            await self.blobs.discard(blob_ref)
        except StorageFailure as exc:
            logger.warning("Staged upload not removed | blob_ref=%s", blob_ref, exc_info=exc)
