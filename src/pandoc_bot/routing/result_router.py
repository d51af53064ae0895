"""
Result router.

Turns a worker response into the one message the user should get. Routing is
a pure function of the response: no dialogue state is read or written (the
conversation went back to Idle when the job was submitted). Redelivered
responses are routed again and re-sent; there is no dedup.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from src.pandoc_bot.contracts.jobs import ConversionFailure, ConversionResponse, ConversionSuccess
from src.pandoc_bot.messaging.messenger import Messenger

SUCCESS_CAPTION = "Here is your converted document."
FAILURE_TEXT = "Sorry, the conversion failed: {error}"

# Output format tag -> file extension. Unknown tags use the tag itself.
_EXTENSIONS = {
    "pdf": "pdf",
    "latex": "tex",
    "tex": "tex",
    "markdown": "md",
    "asciidoc": "adoc",
    "html": "html",
    "docx": "docx",
    "odt": "odt",
    "epub": "epub",
}


@dataclass(frozen=True)
class SendDocument:
    conversation_id: int
    data: bytes
    filename: str
    caption: str


@dataclass(frozen=True)
class SendText:
    conversation_id: int
    text: str


RoutedAction = Union[SendDocument, SendText]


def filename_for(target_format: str, stem: str = "converted") -> str:
    tag = (target_format or "").strip().lower()
    ext = _EXTENSIONS.get(tag, tag or "bin")
    return f"{stem}.{ext}"


def route(response: ConversionResponse) -> RoutedAction:
    if isinstance(response, ConversionSuccess):
        return SendDocument(
            conversation_id=response.conversation_id,
            data=response.data,
            filename=filename_for(response.target_format),
            caption=SUCCESS_CAPTION,
        )
    if isinstance(response, ConversionFailure):
        return SendText(
            conversation_id=response.conversation_id,
            text=FAILURE_TEXT.format(error=response.error_message),
        )
    raise TypeError(f"Unknown conversion response: {response!r}")


async def deliver(action: RoutedAction, messenger: Messenger) -> None:
    if isinstance(action, SendDocument):
        await messenger.send_document(action.conversation_id, action.data, action.filename, action.caption)
    elif isinstance(action, SendText):
        await messenger.send_error(action.conversation_id, action.text)
    else:
        raise TypeError(f"Unknown routed action: {action!r}")
