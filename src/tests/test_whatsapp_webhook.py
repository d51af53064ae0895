"""WhatsApp webhook: form payload -> dialogue event -> handler."""

import asyncio
import io

import pytest
from fastapi.testclient import TestClient

from src.pandoc_bot.api.whatsapp_webhook import (
    TwilioMediaItem,
    _filename_for,
    build_event,
    extract_media_items_from_form,
    text_event,
)
from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.dialogue.engine import DialogueEngine
from src.pandoc_bot.dialogue.events import ChoiceSelected, FileReceived, TextReceived
from src.pandoc_bot.dialogue.handler import ConversationHandler
from src.pandoc_bot.dialogue.states import AwaitingFile, AwaitingSourceFormat, Idle
from src.pandoc_bot.infra import blob_store
from src.pandoc_bot.infra.blob_store import TwilioBlobStore
from src.pandoc_bot.main import create_app
from src.tests.fakes import MemoryBlobs, MemoryStateStore, RecordingMessenger, RecordingPublisher

KNOWN = ("markdown", "asciidoc", "pdf", "latex")
MEDIA_URL = "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages/MM1/Media/ME42"


def test_text_matching_a_format_is_a_choice():
    assert text_event("PDF", KNOWN) == ChoiceSelected("PDF")
    assert text_event("hello there", KNOWN) == TextReceived("hello there")


def test_media_items_are_extracted():
    items = extract_media_items_from_form(
        {"NumMedia": "1", "MediaUrl0": MEDIA_URL, "MediaContentType0": "text/markdown"}
    )
    assert len(items) == 1
    assert items[0].media_sid == "ME42"


def test_media_message_is_staged_into_file_event():
    blobs = MemoryBlobs()
    form = {"NumMedia": "1", "MediaUrl0": MEDIA_URL, "MediaContentType0": "text/plain", "Body": "notes.md"}
    event = asyncio.run(build_event(form, known_formats=KNOWN, blobs=blobs))
    assert event == FileReceived(blob_ref="ME42", filename="notes.md", file_id="ME42")
    assert blobs.staged == [("ME42", MEDIA_URL)]


def test_empty_message_has_no_event():
    assert asyncio.run(build_event({"Body": "  "}, known_formats=KNOWN, blobs=MemoryBlobs())) is None


@pytest.fixture
def wired(monkeypatch):
    monkeypatch.setattr(settings, "twilio_validate_signature", False)
    app = create_app()
    store = MemoryStateStore()
    messenger = RecordingMessenger()
    publisher = RecordingPublisher()
    blobs = MemoryBlobs()
    app.state.blobs = blobs
    app.state.handler = ConversationHandler(
        store=store,
        messenger=messenger,
        publisher=publisher,
        blobs=blobs,
        engine=DialogueEngine(from_formats=["markdown", "asciidoc"], to_formats=["pdf", "latex"]),
        jobs_queue="jobs",
    )
    return TestClient(app), store, messenger, publisher


def _post(client, **form):
    form.setdefault("From", "whatsapp:+15551234567")
    form.setdefault("MessageSid", "SM1")
    return client.post("/webhooks/whatsapp", data=form)


def test_webhook_drives_a_full_conversation(wired):
    client, store, messenger, publisher = wired

    assert _post(client, Body="hi").status_code == 200
    assert store.states[15551234567] == AwaitingSourceFormat()

    _post(client, Body="markdown")
    _post(client, Body="pdf")
    assert store.states[15551234567] == AwaitingFile("markdown", "pdf")

    resp = _post(client, NumMedia="1", MediaUrl0=MEDIA_URL, MediaContentType0="text/markdown")
    assert resp.status_code == 200
    assert store.states[15551234567] == Idle()
    assert len(publisher.published) == 1
    assert all(call[1] == 15551234567 for call in messenger.calls)


def test_webhook_rejects_missing_sender(wired):
    client, *_ = wired
    assert client.post("/webhooks/whatsapp", data={"Body": "hi"}).status_code == 400


def test_webhook_reports_storage_failure(wired):
    client, store, messenger, _ = wired
    store.fail_load = True
    assert _post(client, Body="hi").status_code == 500
    assert messenger.calls == []


def test_webhook_checks_signature(monkeypatch):
    monkeypatch.setattr(settings, "twilio_validate_signature", True)
    monkeypatch.setattr(settings, "twilio_auth_token", "secret")
    client = TestClient(create_app())
    resp = client.post("/webhooks/whatsapp", data={"From": "whatsapp:+1555", "Body": "hi"})
    assert resp.status_code == 403


def test_caption_is_used_as_filename_only_when_it_looks_like_one():
    item = TwilioMediaItem(url=MEDIA_URL, content_type="text/markdown")
    assert _filename_for(item, "notes.md") == "notes.md"
    assert _filename_for(item, "Here it is.").startswith("ME42")
    assert _filename_for(item, "see notes.md").startswith("ME42")
    assert _filename_for(item, "").startswith("ME42")


class _Download(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


@pytest.fixture
def wired_on_disk(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "twilio_validate_signature", False)
    app = create_app()
    store = MemoryStateStore()
    messenger = RecordingMessenger()
    publisher = RecordingPublisher()
    blobs = TwilioBlobStore(root_dir=str(tmp_path), account_sid="AC1", auth_token="tok", max_bytes=10)
    app.state.blobs = blobs
    app.state.handler = ConversationHandler(
        store=store,
        messenger=messenger,
        publisher=publisher,
        blobs=blobs,
        engine=DialogueEngine(from_formats=["markdown", "asciidoc"], to_formats=["pdf", "latex"]),
        jobs_queue="jobs",
    )
    return TestClient(app), store, messenger, publisher, tmp_path / "uploads"


def _serve_download(monkeypatch, body):
    monkeypatch.setattr(blob_store, "urlopen", lambda req, timeout=None, context=None: _Download(body))


def test_published_upload_leaves_no_staged_file(wired_on_disk, monkeypatch):
    client, store, _, publisher, uploads = wired_on_disk
    store.states[15551234567] = AwaitingFile("markdown", "pdf")
    _serve_download(monkeypatch, b"# hi")

    resp = _post(client, NumMedia="1", MediaUrl0=MEDIA_URL, MediaContentType0="text/markdown")

    assert resp.status_code == 200
    assert store.states[15551234567] == Idle()
    assert len(publisher.published) == 1
    assert list(uploads.iterdir()) == []


def test_rejected_upload_leaves_no_staged_file(wired_on_disk, monkeypatch):
    client, store, messenger, publisher, uploads = wired_on_disk
    store.states[15551234567] = AwaitingSourceFormat()
    _serve_download(monkeypatch, b"# hi")

    resp = _post(client, NumMedia="1", MediaUrl0=MEDIA_URL, MediaContentType0="text/markdown")

    assert resp.status_code == 200
    assert store.states[15551234567] == AwaitingSourceFormat()
    assert publisher.published == []
    assert messenger.calls[0][0] == "error"
    assert list(uploads.iterdir()) == []


def test_oversize_upload_gets_a_corrective_reply(wired_on_disk, monkeypatch):
    client, store, messenger, publisher, uploads = wired_on_disk
    store.states[15551234567] = AwaitingFile("markdown", "pdf")
    _serve_download(monkeypatch, b"x" * 11)

    resp = _post(client, NumMedia="1", MediaUrl0=MEDIA_URL, MediaContentType0="text/markdown")

    assert resp.status_code == 200
    assert store.states[15551234567] == AwaitingFile("markdown", "pdf")
    assert store.saves == 0
    assert publisher.published == []
    [(kind, cid, text, _)] = messenger.calls
    assert (kind, cid) == ("error", 15551234567)
    assert "too large" in text
    assert "10 bytes" in text
    assert not uploads.exists() or list(uploads.iterdir()) == []
