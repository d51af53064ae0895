"""
WhatsApp webhook (Twilio).

Responsibilities:
- Receive inbound WhatsApp messages from Twilio
- (Optional) validate the Twilio request signature
- Turn the form payload into one dialogue event
  (media -> FileReceived, known format tag -> ChoiceSelected, else TextReceived)
- Stage uploaded files through the blob store
- Hand the event to the ConversationHandler
- Answer an upload over max_file_bytes with a corrective message (state kept)

NOTE:
- Replies are sent through the Twilio REST API by the handler, not as TwiML.
- The handler and blob store live on `request.app.state` (wired in main.py).
"""

from __future__ import annotations

import mimetypes
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from fastapi import APIRouter, Request, Response
from twilio.request_validator import RequestValidator

from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.dialogue.events import ChoiceSelected, Event, FileReceived, TextReceived
from src.pandoc_bot.errors import FileTooLarge, StorageFailure, TransportFailure
from src.pandoc_bot.logging.logger import setup_logger
from src.pandoc_bot.messaging.twilio_whatsapp import conversation_id_from_address

logger = setup_logger(__name__)

router = APIRouter()

# A single token ending in a short extension, e.g. "notes.md" or "guide.adoc".
_FILENAME = re.compile(r"^[^\s/\\]+\.[A-Za-z0-9]{1,8}$")

FILE_TOO_LARGE = "That file is too large (limit is {limit}). Please send a smaller file."


def _format_size(num_bytes: int) -> str:
    if num_bytes >= 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):g} MiB"
    if num_bytes >= 1024:
        return f"{num_bytes / 1024:g} KiB"
    return f"{num_bytes} bytes"


@dataclass(frozen=True)
class TwilioMediaItem:
    url: str
    content_type: str

    @property
    def media_sid(self) -> str:
        return self.url.rstrip("/").rsplit("/", 1)[-1]


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def extract_media_items_from_form(form: Mapping[str, Any]) -> List[TwilioMediaItem]:
    """
    Extract media items from a Twilio webhook form payload.
    """
    n = _safe_int(form.get("NumMedia"), 0)
    items: List[TwilioMediaItem] = []
    for i in range(max(n, 0)):
        url = (form.get(f"MediaUrl{i}") or "").strip()
        ctype = (form.get(f"MediaContentType{i}") or "").strip()
        if url:
            items.append(TwilioMediaItem(url=url, content_type=ctype))
    return items


def text_event(text: str, known_formats: Sequence[str]) -> Event:
    """
    A body that names one of our format tags is a choice; anything else is text.
    """
    if text.strip().lower() in known_formats:
        return ChoiceSelected(text.strip())
    return TextReceived(text)


def _filename_for(item: TwilioMediaItem, caption: str) -> str:
    # WhatsApp puts the document name in the body for document messages.
    if caption and _FILENAME.match(caption):
        return caption
    ext = mimetypes.guess_extension(item.content_type or "") or ""
    return f"{item.media_sid}{ext}"


def validate_twilio_signature(request: Request, form_data: Dict[str, Any], twilio_auth_token: str) -> bool:
    """
    Twilio signs: full URL + POST form params.
    """
    signature = request.headers.get("X-Twilio-Signature", "")
    validator = RequestValidator(twilio_auth_token)
    return validator.validate(str(request.url), form_data, signature)


async def build_event(form_data: Mapping[str, Any], *, known_formats: Sequence[str], blobs) -> Optional[Event]:
    text = (form_data.get("Body") or "").strip()
    media = extract_media_items_from_form(form_data)

    if media:
        item = media[0]
        filename = _filename_for(item, text)
        logger.info("Received document | name=%s | id=%s", filename, item.media_sid)
        blob_ref = await blobs.stage(item.media_sid, url=item.url)
        logger.info("Downloaded document | name=%s | id=%s", filename, item.media_sid)
        return FileReceived(blob_ref=blob_ref, filename=filename, file_id=item.media_sid)

    if text:
        return text_event(text, known_formats)
    return None


@router.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request) -> Response:
    """
    Twilio WhatsApp webhook entrypoint.
    """
    form = await request.form()
    form_data = dict(form)

    if settings.twilio_validate_signature:
        if not settings.twilio_auth_token:
            logger.error("Twilio signature validation enabled but twilio_auth_token is missing")
            return Response("Server misconfigured", status_code=500)
        if not validate_twilio_signature(request, form_data, settings.twilio_auth_token):
            logger.warning("Twilio signature validation failed | url=%s", str(request.url))
            return Response("Invalid signature", status_code=403)

    user_id = (form_data.get("From") or "").strip()
    message_sid = (form_data.get("MessageSid") or "").strip()
    try:
        conversation_id = conversation_id_from_address(user_id)
    except ValueError:
        logger.warning("Invalid WhatsApp payload received | form=%s", form_data)
        return Response(status_code=400)

    handler = request.app.state.handler
    try:
        try:
            event = await build_event(
                form_data,
                known_formats=handler.engine.known_formats,
                blobs=request.app.state.blobs,
            )
        except FileTooLarge as exc:
            logger.warning(
                "Upload rejected as too large | conversation_id=%s | message_sid=%s | max_bytes=%s",
                conversation_id,
                message_sid,
                exc.max_bytes,
            )
            await handler.messenger.send_error(
                conversation_id,
                FILE_TOO_LARGE.format(limit=_format_size(exc.max_bytes)),
            )
            return Response(status_code=200)

        if event is None:
            logger.warning("Empty WhatsApp message | user_id=%s | message_sid=%s", user_id, message_sid)
            return Response(status_code=400)

        logger.info(
            "WhatsApp message received | conversation_id=%s | message_sid=%s | event=%s",
            conversation_id,
            message_sid,
            type(event).__name__,
        )
        await handler.handle(conversation_id, event)
    except (StorageFailure, TransportFailure) as exc:
        logger.error(
            "Inbound event not applied | conversation_id=%s | message_sid=%s",
            conversation_id,
            message_sid,
            exc_info=exc,
        )
        return Response(status_code=500)

    return Response(status_code=200)
