"""
Twilio WhatsApp messenger.

Responsibilities:
- Map WhatsApp addresses to conversation ids and back
- Send prompts, errors and converted documents via the Twilio API
- Keep channel-specific logic isolated from the dialogue and routing layers

Conversation ids are the digits of the user's WhatsApp number:
    whatsapp:+15551234567  <->  15551234567

Documents are written under media_root_dir/outbox/<uuid>/ and served by the
ingress `/media` route; Twilio fetches them from the public base URL. Entries
older than outbox_ttl_seconds are swept before each new document is staged.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import Optional, Sequence

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.errors import TransportFailure
from src.pandoc_bot.logging.logger import setup_logger

logger = setup_logger(__name__)

_NON_DIGITS = re.compile(r"\D")


def conversation_id_from_address(address: str) -> int:
    """
    "whatsapp:+15551234567" -> 15551234567
    """
    digits = _NON_DIGITS.sub("", address or "")
    if not digits:
        raise ValueError(f"No phone number in address {address!r}")
    return int(digits)


def address_for(conversation_id: int) -> str:
    return f"whatsapp:+{conversation_id}"


def render_options(text: str, options: Optional[Sequence[str]]) -> str:
    """
    WhatsApp has no inline keyboards; list the accepted replies under the text.
    """
    if not options:
        return text
    return f"{text}\n\nReply with one of: {', '.join(options)}"


def build_public_media_url(*, rel_path: str) -> Optional[str]:
    """
    Build a publicly reachable URL for a file served by the ingress media route:
      GET /media/{rel_path:path}
    """
    base = (settings.media_public_base_url or settings.base_url or "").strip().rstrip("/")
    if not base:
        return None
    rel = rel_path.lstrip("/")
    return f"{base}/media/{rel}"


class TwilioWhatsAppMessenger:
    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        whatsapp_from: Optional[str] = None,
        media_root_dir: Optional[str] = None,
        outbox_ttl_seconds: Optional[int] = None,
        client: Optional[Client] = None,
    ) -> None:
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self.whatsapp_from = whatsapp_from or settings.twilio_whatsapp_from
        self.media_root = Path(media_root_dir or settings.media_root_dir)
        self.outbox_ttl_seconds = settings.outbox_ttl_seconds if outbox_ttl_seconds is None else outbox_ttl_seconds

        if not self.whatsapp_from:
            raise ValueError("TwilioWhatsAppMessenger: twilio_whatsapp_from is missing")
        if client is None:
            if not self.account_sid:
                raise ValueError("TwilioWhatsAppMessenger: twilio_account_sid is missing")
            if not self.auth_token:
                raise ValueError("TwilioWhatsAppMessenger: twilio_auth_token is missing")
            client = Client(self.account_sid, self.auth_token)

        self._client = client

    async def send_prompt(
        self,
        conversation_id: int,
        text: str,
        options: Optional[Sequence[str]] = None,
    ) -> None:
        await self._send(conversation_id, body=render_options(text, options))

    async def send_error(
        self,
        conversation_id: int,
        text: str,
        options: Optional[Sequence[str]] = None,
    ) -> None:
        await self._send(conversation_id, body=render_options(text, options))

    async def send_document(
        self,
        conversation_id: int,
        data: bytes,
        filename: str,
        caption: str,
    ) -> None:
        rel_path = f"outbox/{uuid.uuid4().hex}/{Path(filename).name}"
        media_url = build_public_media_url(rel_path=rel_path)
        if not media_url:
            raise TransportFailure("No public base URL configured for outbound documents")

        await self.sweep_outbox()

        dst = self.media_root / rel_path
        try:
            await asyncio.to_thread(self._write_blocking, dst, data)
        except OSError as exc:
            raise TransportFailure(f"Could not stage outbound document {filename!r}") from exc

        logger.debug("Outbound document staged | path=%s | bytes=%s", str(dst), len(data))
        await self._send(conversation_id, body=caption, media_url=[media_url])

    async def sweep_outbox(self) -> int:
        """
        Remove outbound documents older than outbox_ttl_seconds.

        Returns:
            removed (int): number of outbox entries deleted
        """
        cutoff = time.time() - self.outbox_ttl_seconds
        removed = await asyncio.to_thread(self._sweep_blocking, self.media_root / "outbox", cutoff)
        if removed:
            logger.info("Outbox swept | removed=%s", removed)
        return removed

    @staticmethod
    def _sweep_blocking(outbox: Path, cutoff: float) -> int:
        if not outbox.is_dir():
            return 0
        removed = 0
        for entry in outbox.iterdir():
            try:
                if entry.stat().st_mtime >= cutoff:
                    continue
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed += 1
            except OSError as exc:
                # A stale entry left behind is retried on the next sweep.
                logger.warning("Outbox entry not removed | path=%s", str(entry), exc_info=exc)
        return removed

    @staticmethod
    def _write_blocking(dst: Path, data: bytes) -> None:
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst.write_bytes(data)

    async def _send(self, conversation_id: int, *, body: str, media_url: Optional[list] = None) -> str:
        to = address_for(conversation_id)
        kwargs = {"from_": self.whatsapp_from, "to": to, "body": body or ""}
        if media_url:
            kwargs["media_url"] = media_url

        logger.info(
            "Sending WhatsApp message via Twilio | to=%s | media_count=%s",
            to,
            len(media_url or []),
        )
        try:
            msg = await asyncio.to_thread(self._client.messages.create, **kwargs)
        except (TwilioException, OSError) as exc:
            logger.error("Twilio send failed | to=%s", to, exc_info=exc)
            raise TransportFailure(f"Twilio send to {to} failed") from exc

        logger.info("Twilio send success | sid=%s | to=%s", msg.sid, to)
        return msg.sid
