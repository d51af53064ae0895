"""
Inbound events and outbound dialogue actions.

Events (closed set):
- TextReceived(text)
- ChoiceSelected(tag)
- FileReceived(blob_ref, filename, file_id)

Actions (closed set):
- SendPrompt(text, options)
- SendError(text)
- PublishJob(source_format, target_format, blob_ref, file_id, filename)
- Noop

Actions are plain data. The handler turns them into Messenger calls and
queue publishes, so the engine never touches a transport.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class TextReceived:
    text: str


@dataclass(frozen=True)
class ChoiceSelected:
    tag: str


@dataclass(frozen=True)
class FileReceived:
    blob_ref: str
    filename: str
    # Upstream file identifier; falls back to blob_ref when the transport has none.
    file_id: str = ""


Event = Union[TextReceived, ChoiceSelected, FileReceived]


@dataclass(frozen=True)
class SendPrompt:
    text: str
    options: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class SendError:
    text: str
    options: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class PublishJob:
    """
    Request to submit a conversion job.

    The conversation id and file bytes are attached by the handler when it
    builds the ConversionRequest; the engine only knows what was collected.
    """

    source_format: str
    target_format: str
    blob_ref: str
    file_id: str
    filename: str


@dataclass(frozen=True)
class Noop:
    pass


Action = Union[SendPrompt, SendError, PublishJob, Noop]
