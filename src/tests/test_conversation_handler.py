"""ConversationHandler: load/transition/publish/save/notify against in-memory fakes."""

import asyncio

import pytest

from src.pandoc_bot.codec.job_codec import decode_request
from src.pandoc_bot.dialogue.engine import PROCESSING_PROMPT, DialogueEngine
from src.pandoc_bot.dialogue.events import ChoiceSelected, FileReceived, TextReceived
from src.pandoc_bot.dialogue.handler import ConversationHandler
from src.pandoc_bot.dialogue.states import AwaitingFile, AwaitingSourceFormat, AwaitingTargetFormat, Idle
from src.pandoc_bot.errors import StorageFailure, TransportFailure
from src.tests.fakes import MemoryBlobs, MemoryStateStore, RecordingMessenger, RecordingPublisher


def _handler(**overrides):
    parts = dict(
        store=MemoryStateStore(),
        messenger=RecordingMessenger(),
        publisher=RecordingPublisher(),
        blobs=MemoryBlobs({"abc": b"# hello"}),
        engine=DialogueEngine(from_formats=["markdown", "asciidoc"], to_formats=["pdf", "latex"]),
        jobs_queue="jobs",
    )
    parts.update(overrides)
    return ConversationHandler(**parts), parts


def test_full_request_publishes_one_job():
    handler, parts = _handler()

    async def scenario():
        await handler.handle(7, ChoiceSelected("markdown"))
        await handler.handle(7, ChoiceSelected("pdf"))
        return await handler.handle(7, FileReceived(blob_ref="abc", filename="doc.md"))

    final = asyncio.run(scenario())
    assert final == Idle()
    assert parts["store"].states[7] == Idle()

    published = parts["publisher"].published
    assert len(published) == 1
    queue, payload = published[0]
    assert queue == "jobs"
    request = decode_request(payload)
    assert request.conversation_id == 7
    assert (request.source_format, request.target_format) == ("markdown", "pdf")
    assert request.data == b"# hello"
    assert request.file_id == "abc"
    assert request.filename == "doc.md"

    calls = parts["messenger"].calls
    assert [c[0] for c in calls] == ["prompt", "prompt", "prompt"]
    assert all(c[1] == 7 for c in calls)
    assert calls[-1][2] == PROCESSING_PROMPT


def test_rejected_event_sends_error_and_does_not_save():
    store = MemoryStateStore()
    store.states[3] = AwaitingSourceFormat()
    handler, parts = _handler(store=store)

    state = asyncio.run(handler.handle(3, ChoiceSelected("bogus")))

    assert state == AwaitingSourceFormat()
    assert store.saves == 0
    assert parts["messenger"].calls[0][0] == "error"


def test_conversations_progress_independently():
    handler, parts = _handler()

    async def scenario():
        await asyncio.gather(
            handler.handle(1, TextReceived("hi")),
            handler.handle(2, TextReceived("hello")),
        )
        await asyncio.gather(
            handler.handle(1, ChoiceSelected("markdown")),
            handler.handle(2, ChoiceSelected("asciidoc")),
        )
        await asyncio.gather(
            handler.handle(1, ChoiceSelected("pdf")),
            handler.handle(2, ChoiceSelected("latex")),
        )

    asyncio.run(scenario())
    assert parts["store"].states == {
        1: AwaitingFile("markdown", "pdf"),
        2: AwaitingFile("asciidoc", "latex"),
    }


def test_same_conversation_events_apply_one_at_a_time():
    handler, parts = _handler()
    store = parts["store"]

    async def scenario():
        # Both events race for conversation 5; the lock makes them sequential,
        # so the second sees the state written by the first.
        await asyncio.gather(
            handler.handle(5, TextReceived("hi")),
            handler.handle(5, ChoiceSelected("markdown")),
        )

    asyncio.run(scenario())
    assert store.states[5] == AwaitingTargetFormat("markdown")
    assert store.saves == 2


def test_publish_failure_leaves_state_unchanged():
    store = MemoryStateStore()
    store.states[4] = AwaitingFile("markdown", "pdf")
    handler, parts = _handler(store=store, publisher=RecordingPublisher(fail=True))

    with pytest.raises(TransportFailure):
        asyncio.run(handler.handle(4, FileReceived("abc", "doc.md")))

    assert store.states[4] == AwaitingFile("markdown", "pdf")
    assert store.saves == 0
    assert parts["messenger"].calls == []


def test_storage_failure_on_load_applies_nothing():
    store = MemoryStateStore()
    store.fail_load = True
    handler, parts = _handler(store=store)

    with pytest.raises(StorageFailure):
        asyncio.run(handler.handle(4, TextReceived("hi")))

    assert parts["messenger"].calls == []
    assert parts["publisher"].published == []


def test_storage_failure_on_save_sends_nothing():
    store = MemoryStateStore()
    store.fail_save = True
    handler, parts = _handler(store=store)

    with pytest.raises(StorageFailure):
        asyncio.run(handler.handle(4, TextReceived("hi")))

    assert parts["messenger"].calls == []


def test_send_failure_keeps_committed_state():
    handler, parts = _handler(messenger=RecordingMessenger(fail=True))

    with pytest.raises(TransportFailure):
        asyncio.run(handler.handle(8, TextReceived("hi")))

    assert parts["store"].states[8] == AwaitingSourceFormat()


def test_missing_blob_is_storage_failure_and_state_kept():
    store = MemoryStateStore()
    store.states[6] = AwaitingFile("markdown", "pdf")
    handler, _ = _handler(store=store, blobs=MemoryBlobs())

    with pytest.raises(StorageFailure):
        asyncio.run(handler.handle(6, FileReceived("gone", "doc.md")))

    assert store.states[6] == AwaitingFile("markdown", "pdf")


def test_published_upload_is_discarded():
    handler, parts = _handler()
    parts["store"].states[7] = AwaitingFile("markdown", "pdf")

    asyncio.run(handler.handle(7, FileReceived(blob_ref="abc", filename="doc.md")))

    assert len(parts["publisher"].published) == 1
    assert parts["blobs"].discarded == ["abc"]
    assert parts["blobs"].blobs == {}


def test_rejected_upload_is_discarded():
    handler, parts = _handler()
    parts["store"].states[9] = AwaitingSourceFormat()

    state = asyncio.run(handler.handle(9, FileReceived(blob_ref="abc", filename="doc.md")))

    assert state == AwaitingSourceFormat()
    assert parts["publisher"].published == []
    assert parts["blobs"].discarded == ["abc"]


def test_upload_is_discarded_when_publish_fails():
    store = MemoryStateStore()
    store.states[4] = AwaitingFile("markdown", "pdf")
    handler, parts = _handler(store=store, publisher=RecordingPublisher(fail=True))

    with pytest.raises(TransportFailure):
        asyncio.run(handler.handle(4, FileReceived("abc", "doc.md")))

    assert parts["blobs"].discarded == ["abc"]
