"""
Conversation states.

A conversation is always in exactly one of four states. Each state carries
exactly the fields collected so far, nothing more:

- Idle                                  ready for a new request
- AwaitingSourceFormat                  asked for the input format
- AwaitingTargetFormat(source_format)   asked for the output format
- AwaitingFile(source_format, target_format)

States are persisted as small JSON documents: {"state": <tag>, ...fields}.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Union

from src.pandoc_bot.errors import StorageFailure


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class AwaitingSourceFormat:
    pass


@dataclass(frozen=True)
class AwaitingTargetFormat:
    source_format: str


@dataclass(frozen=True)
class AwaitingFile:
    source_format: str
    target_format: str


ConversationState = Union[Idle, AwaitingSourceFormat, AwaitingTargetFormat, AwaitingFile]

_TAGS: Dict[type, str] = {
    Idle: "idle",
    AwaitingSourceFormat: "awaiting_source_format",
    AwaitingTargetFormat: "awaiting_target_format",
    AwaitingFile: "awaiting_file",
}


def state_tag(state: ConversationState) -> str:
    return _TAGS[type(state)]


def state_to_document(state: ConversationState) -> Dict[str, Any]:
    """
    Serialize a state into its persisted document (tag + fields).
    """
    doc: Dict[str, Any] = {"state": state_tag(state)}
    if isinstance(state, AwaitingTargetFormat):
        doc["source_format"] = state.source_format
    elif isinstance(state, AwaitingFile):
        doc["source_format"] = state.source_format
        doc["target_format"] = state.target_format
    return doc


def _required_str(doc: Dict[str, Any], field_name: str) -> str:
    value = doc.get(field_name)
    if not isinstance(value, str) or not value:
        raise StorageFailure(f"Persisted state {doc.get('state')!r} is missing field {field_name!r}")
    return value


def state_from_document(doc: Any) -> ConversationState:
    """
    Rebuild a state from its persisted document.

    An unknown tag or a missing field raises StorageFailure; we never hand a
    half-filled state to the engine.
    """
    if not isinstance(doc, dict):
        raise StorageFailure(f"Persisted state must be an object, got {type(doc).__name__}")

    tag = doc.get("state")
    if tag == "idle":
        return Idle()
    if tag == "awaiting_source_format":
        return AwaitingSourceFormat()
    if tag == "awaiting_target_format":
        return AwaitingTargetFormat(source_format=_required_str(doc, "source_format"))
    if tag == "awaiting_file":
        return AwaitingFile(
            source_format=_required_str(doc, "source_format"),
            target_format=_required_str(doc, "target_format"),
        )
    raise StorageFailure(f"Unknown persisted state tag {tag!r}")
